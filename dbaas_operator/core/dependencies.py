"""
Dependency gate: workloads are only created once every secret they mount exists.

A missing dependency is not an error. The gate reports it and the reconciler
defers until a later event (usually the secret's own creation) retriggers it.
"""
from typing import Iterable, List

from pydantic import BaseModel, Field

from dbaas_operator.config.logging import get_logger
from dbaas_operator.core.topology import NodeRole
from dbaas_operator.models.database import CertificateAlias, MongoDB
from dbaas_operator.services.object_store import SECRET, ObjectStore

logger = get_logger(__name__)


class GateResult(BaseModel):
    ready: bool
    missing: List[str] = Field(default_factory=list)


def dependency_set(db: MongoDB, role: NodeRole) -> List[str]:
    """Names of the secrets ``role``'s workload needs before it can be created."""
    names = list(db.get_secrets())
    if db.tls_enabled():
        names.append(db.cert_secret_name(CertificateAlias.CLIENT))
        node = role.workload_name if db.is_sharded else ""
        names.append(db.cert_secret_name(CertificateAlias.SERVER, node))
        if db.monitoring_enabled():
            names.append(db.cert_secret_name(CertificateAlias.METRICS_EXPORTER))
    return _unique(names)


def all_dependencies(db: MongoDB, roles: Iterable[NodeRole]) -> List[str]:
    names: List[str] = []
    for role in roles:
        names.extend(dependency_set(db, role))
    return _unique(names)


def _unique(names: Iterable[str]) -> List[str]:
    seen = set()
    result = []
    for name in names:
        if name not in seen:
            seen.add(name)
            result.append(name)
    return result


class DependencyGate:
    """Existence probe against the object store."""

    def __init__(self, store: ObjectStore):
        self.store = store

    async def check(self, namespace: str, names: Iterable[str]) -> GateResult:
        missing = []
        for name in names:
            if await self.store.get(SECRET, namespace, name) is None:
                missing.append(name)
        if missing:
            logger.info("dependencies_pending", namespace=namespace, missing=missing)
        return GateResult(ready=not missing, missing=missing)
