"""
Workload synthesis: build the desired StatefulSet for one node role.

Everything here is pure. Given the same database, role and version metadata
the builders return equal dicts, so repeated reconciliation never produces
spurious diffs. Store I/O and merging with live objects happen in
``services.converge``.
"""
import json
from typing import Any, Dict, Iterable, List, Optional

from dbaas_operator.core.topology import NodeRole, RoleKind
from dbaas_operator.exceptions import ValidationError, VersionNotFoundError
from dbaas_operator.models.database import (
    CONFIG_SERVER_REPLSET,
    MONGODB_PORT,
    STATS_PATH,
    CertificateAlias,
    MongoDB,
    PodTemplateSpec,
    SSLMode,
    StorageType,
)
from dbaas_operator.models.version import MongoDBVersion
from dbaas_operator.utils.version import uses_tls_flags

DB_CONTAINER = "mongodb"
INIT_CONTAINER = "copy-config"
EXPORTER_CONTAINER = "exporter"
DB_PORT_NAME = "db"
EXPORTER_PORT_NAME = "metrics"

WORK_DIR = ("workdir", "/work-dir")
CONFIG_DIR = ("config", "/data/configdb")
DATA_DIR = ("datadir", "/data/db")
INIT_SCRIPTS_DIR = ("init-scripts", "/init-scripts")
CERT_DIR = ("certdir", "/var/run/mongodb/tls")
CLIENT_CERT_DIR = ("client-cert", "/client-cert")
SERVER_CERT_DIR = ("server-cert", "/server-cert")
KEY_DIR = ("keydir", "/keydir-readonly")
CUSTOM_CONFIG_DIR = ("custom-config", "/configdb-readonly")
INITIAL_SCRIPT_DIR = ("initial-script", "/docker-entrypoint-initdb.d")

KEY_FILE = "key.txt"
CA_FILE = "ca.crt"
SERVER_PEM = "mongo.pem"
CLIENT_PEM = "client.pem"

SECRET_VOLUME_MODE = 0o400
SHARD_INDEX_VAR = "${SHARD_INDEX}"

_TLS_MODES = {
    SSLMode.ALLOW: "allowTLS",
    SSLMode.PREFER: "preferTLS",
    SSLMode.REQUIRE: "requireTLS",
}

_POST_START_SCRIPTS = {
    RoleKind.REPLICA_SET: "replicaset.sh",
    RoleKind.SHARD: "sharding.sh",
    RoleKind.CONFIG_SERVER: "configdb.sh",
}


# Upsert helpers. Each returns a new list and never mutates its inputs.

def upsert_env_vars(base: Iterable[Dict[str, Any]], *overrides: Dict[str, Any]) -> List[Dict[str, Any]]:
    """
    Merge env vars by name.

    A later entry with an existing name replaces it in place, new names are
    appended, and the order of first appearance is kept.
    """
    return upsert_by_name(base, *overrides)


def upsert_by_name(base: Iterable[Dict[str, Any]], *overrides: Dict[str, Any]) -> List[Dict[str, Any]]:
    merged = [dict(item) for item in base]
    index = {item["name"]: i for i, item in enumerate(merged)}
    for item in overrides:
        name = item["name"]
        if name in index:
            merged[index[name]] = dict(item)
        else:
            index[name] = len(merged)
            merged.append(dict(item))
    return merged


def _arg_key(arg: str) -> str:
    return arg.split("=", 1)[0]


def upsert_argument_list(base: Iterable[str], overrides: Iterable[str]) -> List[str]:
    """Merge ``--flag=value`` style arguments, keyed by flag."""
    merged = list(base)
    index = {_arg_key(arg): i for i, arg in enumerate(merged)}
    for arg in overrides:
        key = _arg_key(arg)
        if key in index:
            merged[index[key]] = arg
        else:
            index[key] = len(merged)
            merged.append(arg)
    return merged


def compact(obj: Dict[str, Any]) -> Dict[str, Any]:
    """Drop keys whose value is None or an empty collection."""
    return {k: v for k, v in obj.items() if v is not None and v != [] and v != {}}


# Building blocks

def _mount(volume: tuple) -> Dict[str, Any]:
    name, path = volume
    return {"name": name, "mountPath": path}


def _empty_dir(volume: tuple) -> Dict[str, Any]:
    return {"name": volume[0], "emptyDir": {}}


def _secret_volume(volume: tuple, secret_name: str) -> Dict[str, Any]:
    return {
        "name": volume[0],
        "secret": {"secretName": secret_name, "defaultMode": SECRET_VOLUME_MODE},
    }


def credential_env(db: MongoDB) -> List[Dict[str, Any]]:
    secret = db.auth_secret_name()
    return [
        {
            "name": "MONGO_INITDB_ROOT_USERNAME",
            "valueFrom": {"secretKeyRef": {"name": secret, "key": "username"}},
        },
        {
            "name": "MONGO_INITDB_ROOT_PASSWORD",
            "valueFrom": {"secretKeyRef": {"name": secret, "key": "password"}},
        },
    ]


def build_env(db: MongoDB, role: NodeRole) -> List[Dict[str, Any]]:
    """Baseline < topology < pod template, merged with upsert semantics."""
    baseline = credential_env(db)
    baseline.append({"name": "SSL_MODE", "value": db.effective_ssl_mode().value})
    topology: List[Dict[str, Any]] = []
    if role.clustered:
        baseline.append({"name": "AUTH", "value": "true"})
        baseline.append({"name": "CLUSTER_AUTH_MODE", "value": db.effective_cluster_auth_mode().value})
        topology.append({
            "name": "POD_NAMESPACE",
            "valueFrom": {"fieldRef": {"apiVersion": "v1", "fieldPath": "metadata.namespace"}},
        })
        if role.replica_set_name:
            topology.append({"name": "REPLICA_SET", "value": role.replica_set_name})

    env = upsert_env_vars(baseline, *topology)
    return upsert_env_vars(env, *role.pod_template.spec.env)


def tls_args(db: MongoDB, engine_version: str) -> List[str]:
    if not db.tls_enabled():
        return []
    mode = db.effective_ssl_mode()
    ca_file = f"{CERT_DIR[1]}/{CA_FILE}"
    pem_file = f"{CERT_DIR[1]}/{SERVER_PEM}"
    if uses_tls_flags(engine_version):
        return [
            f"--tlsMode={_TLS_MODES[mode]}",
            f"--tlsCAFile={ca_file}",
            f"--tlsPEMKeyFile={pem_file}",
        ]
    return [
        f"--sslMode={mode.value}",
        f"--sslCAFile={ca_file}",
        f"--sslPEMKeyFile={pem_file}",
    ]


def config_server_dsn(db: MongoDB) -> str:
    """``cnfRepSet/host-0,host-1,...`` for the router's --configdb."""
    node = db.config_server_node_name()
    service = db.governing_service_name(node)
    replicas = db.spec.shard_topology.config_server.replicas
    hosts = [
        f"{node}-{i}.{service}.{db.namespace}.svc:{MONGODB_PORT}"
        for i in range(replicas)
    ]
    return f"{CONFIG_SERVER_REPLSET}/{','.join(hosts)}"


def build_args(db: MongoDB, role: NodeRole, engine_version: str) -> List[str]:
    key_file = f"--keyFile={CONFIG_DIR[1]}/{KEY_FILE}"
    cluster_auth = f"--clusterAuthMode={db.effective_cluster_auth_mode().value}"

    if role.kind == RoleKind.ROUTER:
        args = [
            "--bind_ip=0.0.0.0",
            f"--port={MONGODB_PORT}",
            f"--configdb={config_server_dsn(db)}",
            cluster_auth,
            key_file,
        ]
    else:
        args = [
            f"--dbpath={DATA_DIR[1]}",
            "--auth",
            "--bind_ip=0.0.0.0",
            f"--port={MONGODB_PORT}",
        ]
        if role.kind == RoleKind.SHARD:
            args.append("--shardsvr")
        elif role.kind == RoleKind.CONFIG_SERVER:
            args.append("--configsvr")
        if role.replica_set_name:
            args.extend([f"--replSet={role.replica_set_name}", cluster_auth, key_file])

    args.extend(tls_args(db, engine_version))
    if role.data_bearing and db.spec.storage_engine == "inMemory":
        args.append("--storageEngine=inMemory")
    return upsert_argument_list(args, role.pod_template.spec.args)


def _mounts_init_script(db: MongoDB, role: NodeRole) -> bool:
    init = db.spec.init
    if init is None or init.script is None:
        return False
    # In a sharded cluster only the router runs init scripts
    return role.kind == RoleKind.ROUTER or not db.is_sharded


def _server_cert_secret(db: MongoDB, role: NodeRole) -> str:
    node = role.workload_name if db.is_sharded else ""
    return db.cert_secret_name(CertificateAlias.SERVER, node)


def build_init_container(db: MongoDB, role: NodeRole, version: MongoDBVersion) -> Dict[str, Any]:
    mounts = [_mount(CONFIG_DIR), _mount(INIT_SCRIPTS_DIR), _mount(CERT_DIR)]
    if db.tls_enabled():
        mounts.extend([_mount(CLIENT_CERT_DIR), _mount(SERVER_CERT_DIR)])
    if db.key_file_secret_name():
        mounts.append(_mount(KEY_DIR))
    if role.config_secret:
        mounts.append(_mount(CUSTOM_CONFIG_DIR))

    env = []
    if not db.tls_enabled():
        env.append({"name": "SSL_MODE", "value": SSLMode.DISABLED.value})

    return compact({
        "name": INIT_CONTAINER,
        "image": version.spec.init_container.image,
        "imagePullPolicy": "IfNotPresent",
        "command": ["/bin/sh"],
        "args": ["-c", "echo \"running install.sh\"\n/scripts/install.sh"],
        "env": env,
        "resources": role.pod_template.spec.resources,
        "volumeMounts": mounts,
    })


def build_volumes(db: MongoDB, role: NodeRole) -> List[Dict[str, Any]]:
    volumes = [
        _empty_dir(WORK_DIR),
        _empty_dir(INIT_SCRIPTS_DIR),
        _empty_dir(CERT_DIR),
        _empty_dir(CONFIG_DIR),
    ]
    if db.tls_enabled():
        volumes.append(_secret_volume(
            CLIENT_CERT_DIR, db.cert_secret_name(CertificateAlias.CLIENT)
        ))
        volumes.append(_secret_volume(SERVER_CERT_DIR, _server_cert_secret(db, role)))
    key_file = db.key_file_secret_name()
    if key_file:
        volumes.append(_secret_volume(KEY_DIR, key_file))
    if role.config_secret:
        volumes.append(_secret_volume(CUSTOM_CONFIG_DIR, role.config_secret))
    if _mounts_init_script(db, role):
        volumes.append({"name": INITIAL_SCRIPT_DIR[0], **db.spec.init.script})
    if role.data_bearing and db.storage_type() == StorageType.EPHEMERAL:
        empty_dir: Dict[str, Any] = {}
        size = _storage_request(role.storage)
        if size:
            empty_dir["sizeLimit"] = size
        volumes.append({"name": DATA_DIR[0], "emptyDir": empty_dir})
    return volumes


def _storage_request(storage: Optional[Dict[str, Any]]) -> Optional[str]:
    if not storage:
        return None
    return storage.get("resources", {}).get("requests", {}).get("storage")


def build_volume_claim_templates(db: MongoDB, role: NodeRole) -> List[Dict[str, Any]]:
    if not role.data_bearing or db.storage_type() != StorageType.DURABLE:
        return []
    spec = dict(role.storage or {})
    if not spec.get("accessModes"):
        spec["accessModes"] = ["ReadWriteOnce"]
    metadata: Dict[str, Any] = {"name": DATA_DIR[0]}
    if spec.get("storageClassName"):
        metadata["annotations"] = {
            "volume.beta.kubernetes.io/storage-class": spec["storageClassName"],
        }
    return [{"metadata": metadata, "spec": spec}]


def _lifecycle(db: MongoDB, role: NodeRole) -> Optional[Dict[str, Any]]:
    scripts = INIT_SCRIPTS_DIR[1]
    if role.kind == RoleKind.ROUTER:
        command = f"{scripts}/mongos.sh"
    elif role.kind in _POST_START_SCRIPTS:
        command = (
            f"{scripts}/peer-finder -on-start={scripts}/{_POST_START_SCRIPTS[role.kind]}"
            f" -service={role.governing_service_name}"
        )
    else:
        return None
    return {"postStart": {"exec": {"command": ["/bin/bash", "-c", command]}}}


def build_db_container(db: MongoDB, role: NodeRole, version: MongoDBVersion) -> Dict[str, Any]:
    pod = role.pod_template.spec
    engine_version = version.spec.version or db.spec.version

    mounts = [_mount(WORK_DIR), _mount(CONFIG_DIR), _mount(INIT_SCRIPTS_DIR)]
    if role.data_bearing:
        mounts.append(_mount(DATA_DIR))
    if db.tls_enabled():
        mounts.append(_mount(CERT_DIR))
    if _mounts_init_script(db, role):
        mounts.append(_mount(INITIAL_SCRIPT_DIR))

    return compact({
        "name": DB_CONTAINER,
        "image": version.spec.db.image,
        "imagePullPolicy": "IfNotPresent",
        "command": ["mongos"] if role.kind == RoleKind.ROUTER else ["mongod"],
        "args": build_args(db, role, engine_version),
        "ports": [{"name": DB_PORT_NAME, "containerPort": MONGODB_PORT, "protocol": "TCP"}],
        "env": build_env(db, role),
        "resources": pod.resources,
        "lifecycle": _lifecycle(db, role),
        "livenessProbe": pod.liveness_probe or None,
        "readinessProbe": pod.readiness_probe or None,
        "volumeMounts": mounts,
    })


def build_exporter_container(db: MongoDB, version: MongoDBVersion) -> Dict[str, Any]:
    exporter = db.spec.monitor.prometheus.exporter
    if "percona" in version.spec.exporter.image:
        metrics_path = f"--web.telemetry-path={STATS_PATH}"
    else:
        metrics_path = f"--web.metrics-path={STATS_PATH}"

    args = [
        "--mongodb.uri=mongodb://$(MONGO_INITDB_ROOT_USERNAME):$(MONGO_INITDB_ROOT_PASSWORD)"
        f"@localhost:{MONGODB_PORT}/admin",
        f"--web.listen-address=:{exporter.port}",
        metrics_path,
    ]
    args.extend(exporter.args)
    if db.tls_enabled():
        args.extend([
            "--mongodb.tls",
            "--mongodb.tls-ca",
            f"{CERT_DIR[1]}/{CA_FILE}",
            "--mongodb.tls-cert",
            f"{CERT_DIR[1]}/{CLIENT_PEM}",
        ])

    return compact({
        "name": EXPORTER_CONTAINER,
        "image": version.spec.exporter.image,
        "args": args,
        "ports": [{"name": EXPORTER_PORT_NAME, "containerPort": exporter.port, "protocol": "TCP"}],
        "env": upsert_env_vars(credential_env(db), *exporter.env),
        "resources": exporter.resources,
        "securityContext": exporter.security_context,
        "volumeMounts": [_mount(CERT_DIR)],
    })


def substitute_shard_index(pod_template: PodTemplateSpec, index: int) -> PodTemplateSpec:
    """Replace ``${SHARD_INDEX}`` in a shard's affinity rules."""
    affinity = pod_template.spec.affinity
    if not affinity:
        return pod_template
    resolved = json.loads(json.dumps(affinity).replace(SHARD_INDEX_VAR, str(index)))
    spec = pod_template.spec.model_copy(update={"affinity": resolved})
    return pod_template.model_copy(update={"spec": spec})


def build_statefulset(db: MongoDB, role: NodeRole, version: Optional[MongoDBVersion]) -> Dict[str, Any]:
    """
    Desired StatefulSet for ``role``.

    Raises:
        VersionNotFoundError: if ``version`` is None
        ValidationError: if the version metadata lacks an image
    """
    if version is None:
        raise VersionNotFoundError(db.spec.version)
    missing = version.missing_images()
    if missing:
        raise ValidationError(
            f"MongoDBVersion '{version.name}' is incomplete",
            details={"missing": missing},
        )

    pod_template = role.pod_template
    if role.kind == RoleKind.SHARD and role.shard_index is not None:
        pod_template = substitute_shard_index(pod_template, role.shard_index)
        role = role.model_copy(update={"pod_template": pod_template})
    pod = pod_template.spec

    containers = [build_db_container(db, role, version)]
    if db.monitoring_enabled():
        containers.append(build_exporter_container(db, version))

    pod_spec = compact({
        "initContainers": [build_init_container(db, role, version)],
        "containers": containers,
        "volumes": build_volumes(db, role),
        "serviceAccountName": pod.service_account_name or db.service_account_name(),
        "nodeSelector": pod.node_selector,
        "affinity": pod.affinity,
        "tolerations": pod.tolerations,
        "schedulerName": pod.scheduler_name,
        "imagePullSecrets": pod.image_pull_secrets,
        "priorityClassName": pod.priority_class_name,
        "priority": pod.priority,
        "securityContext": pod.security_context,
    })

    spec = compact({
        "replicas": role.replicas,
        "serviceName": role.governing_service_name,
        "selector": {"matchLabels": dict(role.selectors)},
        "template": {
            "metadata": compact({
                "labels": dict(role.selectors),
                "annotations": dict(pod_template.metadata.annotations),
            }),
            "spec": pod_spec,
        },
        "updateStrategy": dict(role.strategy) or {"type": "OnDelete"},
        "volumeClaimTemplates": build_volume_claim_templates(db, role),
    })

    return {
        "apiVersion": "apps/v1",
        "kind": "StatefulSet",
        "metadata": compact({
            "name": role.workload_name,
            "namespace": db.namespace,
            "labels": dict(role.labels),
            "annotations": dict(pod_template.controller.annotations),
            "ownerReferences": [db.owner_reference()],
        }),
        "spec": spec,
    }
