"""
Topology resolution: map a database spec to the node roles that realize it.
"""
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from dbaas_operator.models.database import (
    CONFIG_SERVER_REPLSET,
    MongoDB,
    PodTemplateSpec,
)


class RoleKind(str, Enum):
    STANDALONE = "standalone"
    REPLICA_SET = "replicaset"
    CONFIG_SERVER = "configsvr"
    SHARD = "shard"
    ROUTER = "mongos"


class NodeRole(BaseModel):
    """A named group of identical replicas within a topology."""

    model_config = ConfigDict(frozen=True)

    kind: RoleKind
    name: str
    workload_name: str
    governing_service_name: str
    replicas: int
    selectors: Dict[str, str]
    labels: Dict[str, str]
    data_bearing: bool = True
    replica_set_name: Optional[str] = None
    shard_index: Optional[int] = None
    pod_template: PodTemplateSpec = Field(default_factory=PodTemplateSpec)
    storage: Optional[Dict[str, Any]] = None
    config_secret: Optional[str] = None
    strategy: Dict[str, Any] = Field(default_factory=dict)

    @property
    def clustered(self) -> bool:
        return self.kind != RoleKind.STANDALONE


def _role(db: MongoDB, kind: RoleKind, workload_name: str, selectors: Dict[str, str], **kwargs) -> NodeRole:
    labels = db.offshoot_labels()
    labels.update(selectors)
    return NodeRole(
        kind=kind,
        name=kind.value if kwargs.get("shard_index") is None else f"{kind.value}{kwargs['shard_index']}",
        workload_name=workload_name,
        governing_service_name=db.governing_service_name(workload_name),
        selectors=selectors,
        labels=labels,
        **kwargs,
    )


def resolve_node_roles(db: MongoDB) -> List[NodeRole]:
    """
    Resolve the node roles for a validated spec, in creation order.

    Sharded clusters come back as config server, then shards by index, then
    the router, which is the order their workloads must become ready in.
    """
    spec = db.spec
    config_secret = spec.config_secret.name if spec.config_secret else None

    if spec.shard_topology is None:
        pod_template = spec.pod_template or PodTemplateSpec()
        if spec.replica_set is not None:
            return [
                _role(
                    db,
                    RoleKind.REPLICA_SET,
                    db.offshoot_name(),
                    db.offshoot_selectors(),
                    replicas=spec.replicas or 1,
                    replica_set_name=spec.replica_set.name,
                    pod_template=pod_template,
                    storage=spec.storage,
                    config_secret=config_secret,
                )
            ]
        return [
            _role(
                db,
                RoleKind.STANDALONE,
                db.offshoot_name(),
                db.offshoot_selectors(),
                replicas=1,
                pod_template=pod_template,
                storage=spec.storage,
                config_secret=config_secret,
            )
        ]

    topology = spec.shard_topology
    roles = [
        _role(
            db,
            RoleKind.CONFIG_SERVER,
            db.config_server_node_name(),
            db.config_server_selectors(),
            replicas=topology.config_server.replicas,
            replica_set_name=CONFIG_SERVER_REPLSET,
            pod_template=topology.config_server.pod_template,
            storage=topology.config_server.storage,
            config_secret=_secret_name(topology.config_server.config_secret),
        )
    ]
    for index in range(topology.shard.shards):
        roles.append(
            _role(
                db,
                RoleKind.SHARD,
                db.shard_node_name(index),
                db.shard_selectors(index),
                replicas=topology.shard.replicas,
                replica_set_name=db.shard_replica_set_name(index),
                shard_index=index,
                pod_template=topology.shard.pod_template,
                storage=topology.shard.storage,
                config_secret=_secret_name(topology.shard.config_secret),
            )
        )
    roles.append(
        _role(
            db,
            RoleKind.ROUTER,
            db.mongos_node_name(),
            db.mongos_selectors(),
            replicas=topology.mongos.replicas,
            data_bearing=False,
            pod_template=topology.mongos.pod_template,
            config_secret=_secret_name(topology.mongos.config_secret),
            strategy=topology.mongos.strategy,
        )
    )
    return roles


def _secret_name(ref) -> Optional[str]:
    return ref.name if ref is not None else None
