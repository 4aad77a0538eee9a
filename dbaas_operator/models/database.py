"""
Pydantic models for the MongoDB custom resource.

The models mirror the camelCase wire format of ``kubedb.com/v1alpha2``
objects. Unknown fields are ignored so that newer CRD versions still parse.
Helper methods compute the derived names, labels and secret references
every other component relies on.
"""
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


GROUP = "kubedb.com"
VERSION = "v1alpha2"
API_VERSION = f"{GROUP}/{VERSION}"
KIND = "MongoDB"
PLURAL = "mongodbs"

FINALIZER = "kubedb.com"
ANNOTATION_INITIALIZED = "kubedb.com/initialized"

LABEL_NAME = "app.kubernetes.io/name"
LABEL_INSTANCE = "app.kubernetes.io/instance"
LABEL_MANAGED_BY = "app.kubernetes.io/managed-by"
LABEL_DATABASE_KIND = "kubedb.com/kind"
LABEL_DATABASE_NAME = "kubedb.com/name"
LABEL_ROLE = "kubedb.com/role"
LABEL_NODE_SHARD = "mongodb.kubedb.com/node.shard"
LABEL_NODE_CONFIG = "mongodb.kubedb.com/node.config"
LABEL_NODE_MONGOS = "mongodb.kubedb.com/node.mongos"

MONGODB_PORT = 27017
EXPORTER_PORT = 56790
CONFIG_SERVER_REPLSET = "cnfRepSet"
STATS_PATH = "/metrics"


class Phase(str, Enum):
    """Database lifecycle phases"""
    CREATING = "Creating"
    INITIALIZING = "Initializing"
    RUNNING = "Running"
    HALTED = "Halted"
    TERMINATING = "Terminating"
    FAILED = "Failed"


class TerminationPolicy(str, Enum):
    """What happens to durable dependents when the database goes away."""
    DO_NOT_TERMINATE = "DoNotTerminate"
    HALT = "Halt"
    DELETE = "Delete"
    WIPE_OUT = "WipeOut"
    # Deprecated alias of HALT
    PAUSE = "Pause"


class StorageType(str, Enum):
    DURABLE = "Durable"
    EPHEMERAL = "Ephemeral"


class SSLMode(str, Enum):
    DISABLED = "disabled"
    ALLOW = "allowSSL"
    PREFER = "preferSSL"
    REQUIRE = "requireSSL"


class ClusterAuthMode(str, Enum):
    KEY_FILE = "keyFile"
    SEND_KEY_FILE = "sendKeyFile"
    SEND_X509 = "sendX509"
    X509 = "x509"


class CertificateAlias(str, Enum):
    SERVER = "server"
    CLIENT = "client"
    METRICS_EXPORTER = "metrics-exporter"


class KubeModel(BaseModel):
    """Base model for camelCase Kubernetes objects."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class ObjectMeta(KubeModel):
    name: str
    namespace: str = "default"
    uid: Optional[str] = None
    generation: int = 0
    resource_version: Optional[str] = None
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)
    finalizers: List[str] = Field(default_factory=list)
    deletion_timestamp: Optional[str] = None


class SecretReference(KubeModel):
    name: str
    externally_managed: bool = False


class LocalObjectReference(KubeModel):
    name: str


class TemplateMeta(KubeModel):
    annotations: Dict[str, str] = Field(default_factory=dict)
    labels: Dict[str, str] = Field(default_factory=dict)


class PodSpec(KubeModel):
    """Subset of a pod spec users may override."""

    args: List[str] = Field(default_factory=list)
    env: List[Dict[str, Any]] = Field(default_factory=list)
    resources: Dict[str, Any] = Field(default_factory=dict)
    affinity: Optional[Dict[str, Any]] = None
    tolerations: List[Dict[str, Any]] = Field(default_factory=list)
    node_selector: Dict[str, str] = Field(default_factory=dict)
    scheduler_name: Optional[str] = None
    service_account_name: Optional[str] = None
    image_pull_secrets: List[Dict[str, Any]] = Field(default_factory=list)
    priority_class_name: Optional[str] = None
    priority: Optional[int] = None
    security_context: Optional[Dict[str, Any]] = None
    liveness_probe: Optional[Dict[str, Any]] = None
    readiness_probe: Optional[Dict[str, Any]] = None


class PodTemplateSpec(KubeModel):
    metadata: TemplateMeta = Field(default_factory=TemplateMeta)
    controller: TemplateMeta = Field(default_factory=TemplateMeta)
    spec: PodSpec = Field(default_factory=PodSpec)


class ServiceTemplateSpec(KubeModel):
    metadata: TemplateMeta = Field(default_factory=TemplateMeta)
    spec: Dict[str, Any] = Field(default_factory=dict)


class ReplicaSetSpec(KubeModel):
    name: str


class ShardNode(KubeModel):
    shards: int = 0
    replicas: int = 0
    prefix: Optional[str] = None
    pod_template: PodTemplateSpec = Field(default_factory=PodTemplateSpec)
    storage: Optional[Dict[str, Any]] = None
    config_secret: Optional[LocalObjectReference] = None


class ConfigNode(KubeModel):
    replicas: int = 0
    prefix: Optional[str] = None
    pod_template: PodTemplateSpec = Field(default_factory=PodTemplateSpec)
    storage: Optional[Dict[str, Any]] = None
    config_secret: Optional[LocalObjectReference] = None


class MongosNode(KubeModel):
    replicas: int = 0
    prefix: Optional[str] = None
    strategy: Dict[str, Any] = Field(default_factory=dict)
    pod_template: PodTemplateSpec = Field(default_factory=PodTemplateSpec)
    config_secret: Optional[LocalObjectReference] = None


class ShardTopology(KubeModel):
    shard: ShardNode = Field(default_factory=ShardNode)
    config_server: ConfigNode = Field(default_factory=ConfigNode)
    mongos: MongosNode = Field(default_factory=MongosNode)


class CertificateSpec(KubeModel):
    alias: str
    secret_name: Optional[str] = None


class TLSConfig(KubeModel):
    issuer_ref: Optional[Dict[str, Any]] = None
    certificates: List[CertificateSpec] = Field(default_factory=list)


class ExporterSpec(KubeModel):
    port: int = EXPORTER_PORT
    args: List[str] = Field(default_factory=list)
    env: List[Dict[str, Any]] = Field(default_factory=list)
    resources: Dict[str, Any] = Field(default_factory=dict)
    security_context: Optional[Dict[str, Any]] = None


class PrometheusSpec(KubeModel):
    exporter: ExporterSpec = Field(default_factory=ExporterSpec)


class MonitorSpec(KubeModel):
    agent: str = ""
    prometheus: PrometheusSpec = Field(default_factory=PrometheusSpec)


class InitSpec(KubeModel):
    script: Optional[Dict[str, Any]] = None
    wait_for_initial_restore: bool = False
    stash_restore_session: Optional[LocalObjectReference] = None

    @property
    def waits_for_restore(self) -> bool:
        return self.wait_for_initial_restore or self.stash_restore_session is not None


class MongoDBSpec(KubeModel):
    version: str = ""
    replicas: Optional[int] = None
    replica_set: Optional[ReplicaSetSpec] = None
    shard_topology: Optional[ShardTopology] = None
    storage_type: Optional[StorageType] = None
    storage: Optional[Dict[str, Any]] = None
    storage_engine: str = "wiredTiger"
    auth_secret: Optional[SecretReference] = None
    key_file_secret: Optional[SecretReference] = None
    ssl_mode: Optional[SSLMode] = None
    cluster_auth_mode: Optional[ClusterAuthMode] = None
    tls: Optional[TLSConfig] = None
    init: Optional[InitSpec] = None
    monitor: Optional[MonitorSpec] = None
    config_secret: Optional[LocalObjectReference] = None
    pod_template: Optional[PodTemplateSpec] = None
    service_template: Optional[ServiceTemplateSpec] = None
    termination_policy: Optional[TerminationPolicy] = None
    halted: bool = False


class MongoDBStatus(KubeModel):
    phase: Optional[Phase] = None
    observed_generation: int = 0
    reason: Optional[str] = None


class MongoDB(KubeModel):
    """A managed MongoDB instance: desired spec plus observed status."""

    api_version: str = API_VERSION
    kind: str = KIND
    metadata: ObjectMeta
    spec: MongoDBSpec = Field(default_factory=MongoDBSpec)
    status: MongoDBStatus = Field(default_factory=MongoDBStatus)

    @classmethod
    def from_object(cls, obj: Dict[str, Any]) -> "MongoDB":
        """Parse a raw object as returned by the object store."""
        return cls.model_validate(obj)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def key(self) -> str:
        return f"{self.metadata.namespace}/{self.metadata.name}"

    # Topology shape

    @property
    def is_sharded(self) -> bool:
        return self.spec.shard_topology is not None

    # Names

    def offshoot_name(self) -> str:
        return self.metadata.name

    def shard_node_name(self, index: int) -> str:
        prefix = "shard"
        if self.spec.shard_topology and self.spec.shard_topology.shard.prefix:
            prefix = self.spec.shard_topology.shard.prefix
        return f"{self.metadata.name}-{prefix}{index}"

    def config_server_node_name(self) -> str:
        prefix = "configsvr"
        if self.spec.shard_topology and self.spec.shard_topology.config_server.prefix:
            prefix = self.spec.shard_topology.config_server.prefix
        return f"{self.metadata.name}-{prefix}"

    def mongos_node_name(self) -> str:
        prefix = "mongos"
        if self.spec.shard_topology and self.spec.shard_topology.mongos.prefix:
            prefix = self.spec.shard_topology.mongos.prefix
        return f"{self.metadata.name}-{prefix}"

    @staticmethod
    def governing_service_name(node_name: str) -> str:
        return f"{node_name}-pods"

    def stats_service_name(self) -> str:
        return f"{self.metadata.name}-stats"

    def replica_set_name(self) -> Optional[str]:
        if self.spec.replica_set is None:
            return None
        return self.spec.replica_set.name

    @staticmethod
    def shard_replica_set_name(index: int) -> str:
        return f"shard{index}"

    def service_account_name(self) -> str:
        pt = self.spec.pod_template
        if pt is not None and pt.spec.service_account_name:
            return pt.spec.service_account_name
        return self.offshoot_name()

    # Labels

    def offshoot_selectors(self) -> Dict[str, str]:
        return {
            LABEL_NAME: f"{PLURAL}.{GROUP}",
            LABEL_INSTANCE: self.metadata.name,
            LABEL_MANAGED_BY: GROUP,
        }

    def offshoot_labels(self) -> Dict[str, str]:
        labels = dict(self.offshoot_selectors())
        labels[LABEL_DATABASE_KIND] = KIND
        labels[LABEL_DATABASE_NAME] = self.metadata.name
        return labels

    def _node_selectors(self, label: str, node_name: str) -> Dict[str, str]:
        selectors = self.offshoot_selectors()
        selectors[label] = node_name
        return selectors

    def shard_selectors(self, index: int) -> Dict[str, str]:
        return self._node_selectors(LABEL_NODE_SHARD, self.shard_node_name(index))

    def config_server_selectors(self) -> Dict[str, str]:
        return self._node_selectors(LABEL_NODE_CONFIG, self.config_server_node_name())

    def mongos_selectors(self) -> Dict[str, str]:
        return self._node_selectors(LABEL_NODE_MONGOS, self.mongos_node_name())

    def stats_service_labels(self) -> Dict[str, str]:
        labels = self.offshoot_labels()
        labels[LABEL_ROLE] = "stats"
        return labels

    def owns_labels(self, labels: Optional[Dict[str, str]]) -> bool:
        """Whether an object's labels mark it as belonging to this database."""
        labels = labels or {}
        return (
            labels.get(LABEL_DATABASE_KIND) == KIND
            and labels.get(LABEL_DATABASE_NAME) == self.metadata.name
        )

    # TLS and auth

    def effective_ssl_mode(self) -> SSLMode:
        if self.spec.ssl_mode is not None:
            return self.spec.ssl_mode
        if self.spec.tls is not None:
            return SSLMode.REQUIRE
        return SSLMode.DISABLED

    def effective_cluster_auth_mode(self) -> ClusterAuthMode:
        if self.spec.cluster_auth_mode is not None:
            return self.spec.cluster_auth_mode
        if self.tls_enabled():
            return ClusterAuthMode.X509
        return ClusterAuthMode.KEY_FILE

    def tls_enabled(self) -> bool:
        return self.spec.tls is not None and self.effective_ssl_mode() != SSLMode.DISABLED

    def auth_secret_name(self) -> str:
        if self.spec.auth_secret is not None:
            return self.spec.auth_secret.name
        return f"{self.metadata.name}-auth"

    def requires_key_file(self) -> bool:
        return (
            self.effective_ssl_mode() != SSLMode.DISABLED
            or self.spec.replica_set is not None
            or self.spec.shard_topology is not None
        )

    def key_file_secret_name(self) -> Optional[str]:
        if not self.requires_key_file():
            return None
        if self.spec.key_file_secret is not None:
            return self.spec.key_file_secret.name
        return f"{self.metadata.name}-key"

    def cert_secret_name(self, alias: CertificateAlias, node_name: str = "") -> str:
        """
        Name of the TLS secret for a certificate alias.

        Server certificates are issued per workload in a sharded cluster, so
        the node name is part of the default name. An explicit secretName in
        spec.tls.certificates wins only for database-wide certificates.
        """
        if self.spec.tls is not None and not node_name:
            for cert in self.spec.tls.certificates:
                if cert.alias == alias.value and cert.secret_name:
                    return cert.secret_name
        base = node_name or self.metadata.name
        return f"{base}-{alias.value}-cert"

    def get_secrets(self) -> List[str]:
        """Secrets this database creates or references for credentials."""
        secrets = [self.auth_secret_name()]
        key_file = self.key_file_secret_name()
        if key_file:
            secrets.append(key_file)
        return secrets

    # Monitoring

    def monitoring_enabled(self) -> bool:
        monitor = self.spec.monitor
        return monitor is not None and monitor.agent.startswith("prometheus.io")

    def exporter_port(self) -> int:
        if self.spec.monitor is None:
            return EXPORTER_PORT
        return self.spec.monitor.prometheus.exporter.port

    # Lifecycle

    def termination_policy(self) -> TerminationPolicy:
        policy = self.spec.termination_policy or TerminationPolicy.DELETE
        if policy == TerminationPolicy.PAUSE:
            return TerminationPolicy.HALT
        return policy

    def storage_type(self) -> StorageType:
        return self.spec.storage_type or StorageType.DURABLE

    def being_deleted(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    def has_finalizer(self) -> bool:
        return FINALIZER in self.metadata.finalizers

    def is_initialized(self) -> bool:
        return ANNOTATION_INITIALIZED in self.metadata.annotations

    def needs_initialization(self) -> bool:
        init = self.spec.init
        return init is not None and init.waits_for_restore and not self.is_initialized()

    def owner_reference(self) -> Dict[str, Any]:
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.metadata.name,
            "uid": self.metadata.uid,
            "controller": True,
            "blockOwnerDeletion": True,
        }
