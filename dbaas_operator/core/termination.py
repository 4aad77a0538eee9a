"""
Termination policy engine.

Decides, per owned object, whether it is deleted, kept with its owner
reference stripped, or wiped outright when a database is halted or deleted.

Policy matrix (delete mode):

    policy          workloads/services/RBAC   PVCs       secrets
    Halt / Pause    deleted                   kept       kept
    Delete          deleted                   deleted    kept
    WipeOut         deleted                   deleted    deleted unless used by a peer
    DoNotTerminate  rejected before anything is touched

Kept objects always lose this database's owner reference so that garbage
collection of the database does not take them along.
"""
from typing import Any, Dict, List, Set

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from dbaas_operator.config.logging import get_logger
from dbaas_operator.exceptions import TerminationDeniedError
from dbaas_operator.models.database import MongoDB, TerminationPolicy
from dbaas_operator.services.converge import remove_owner_reference
from dbaas_operator.services.object_store import (
    MONGODB,
    POD,
    PVC,
    ROLE,
    ROLE_BINDING,
    SECRET,
    SERVICE,
    SERVICE_ACCOUNT,
    STATEFULSET,
    ObjectStore,
)
from dbaas_operator.utils.wait import poll_until

logger = get_logger(__name__)


class OwnedObjectSet(BaseModel):
    """Every dependent object of one database, as currently stored."""

    statefulsets: List[Dict[str, Any]] = Field(default_factory=list)
    services: List[Dict[str, Any]] = Field(default_factory=list)
    service_accounts: List[Dict[str, Any]] = Field(default_factory=list)
    roles: List[Dict[str, Any]] = Field(default_factory=list)
    role_bindings: List[Dict[str, Any]] = Field(default_factory=list)
    pvcs: List[Dict[str, Any]] = Field(default_factory=list)
    secrets: List[Dict[str, Any]] = Field(default_factory=list)

    def disposable(self):
        """(kind, object) pairs that never outlive the database."""
        for kind, items in (
            (STATEFULSET, self.statefulsets),
            (SERVICE, self.services),
            (ROLE_BINDING, self.role_bindings),
            (ROLE, self.roles),
            (SERVICE_ACCOUNT, self.service_accounts),
        ):
            for obj in items:
                yield kind, obj


def _name(obj: Dict[str, Any]) -> str:
    return obj.get("metadata", {}).get("name", "")


def referenced_secrets(obj: Dict[str, Any]) -> List[str]:
    """Secret names a raw MongoDB object references."""
    try:
        return MongoDB.from_object(obj).get_secrets()
    except PydanticValidationError:
        # Unparseable peers still count; fall back to the raw references
        meta = obj.get("metadata", {})
        spec = obj.get("spec") or {}
        names = []
        for field, suffix in (("authSecret", "auth"), ("keyFileSecret", "key")):
            ref = spec.get(field) or {}
            names.append(ref.get("name") or f"{meta.get('name', '')}-{suffix}")
        return names


def _wiping_out(obj: Dict[str, Any]) -> bool:
    """Whether a raw MongoDB object is being deleted under WipeOut."""
    spec = obj.get("spec") or {}
    return (
        bool(obj.get("metadata", {}).get("deletionTimestamp"))
        and spec.get("terminationPolicy") == TerminationPolicy.WIPE_OUT.value
    )


class TerminationEngine:
    """Executes halt and delete for a database according to its policy."""

    def __init__(self, store: ObjectStore, poll_interval: float = 2.0, timeout: float = 180.0):
        self.store = store
        self.poll_interval = poll_interval
        self.timeout = timeout

    async def collect(self, db: MongoDB) -> OwnedObjectSet:
        ns = db.namespace
        selectors = db.offshoot_selectors()
        secrets = []
        for name in db.get_secrets():
            secret = await self.store.get(SECRET, ns, name)
            if secret is not None:
                secrets.append(secret)
        return OwnedObjectSet(
            statefulsets=await self.store.list(STATEFULSET, ns, selectors),
            services=await self.store.list(SERVICE, ns, selectors),
            service_accounts=await self.store.list(SERVICE_ACCOUNT, ns, selectors),
            roles=await self.store.list(ROLE, ns, selectors),
            role_bindings=await self.store.list(ROLE_BINDING, ns, selectors),
            pvcs=await self.store.list(PVC, ns, selectors),
            secrets=secrets,
        )

    async def secrets_used_by_peers(self, db: MongoDB) -> Set[str]:
        """
        Secret names referenced by other MongoDB objects in the namespace.

        Always read fresh from the store: a peer may have been created or
        changed since the last call. Peers that are themselves being wiped
        out no longer hold on to their secrets.
        """
        used: Set[str] = set()
        for peer in await self.store.list(MONGODB, db.namespace):
            if _name(peer) == db.name or _wiping_out(peer):
                continue
            used.update(referenced_secrets(peer))
        return used

    async def _strip_owner(self, kind: str, db: MongoDB, obj: Dict[str, Any]) -> None:
        meta = obj.get("metadata", {})
        refs = meta.get("ownerReferences") or []
        remaining = remove_owner_reference(refs, db.metadata.uid)
        if len(remaining) == len(refs):
            return
        await self.store.patch(
            kind,
            db.namespace,
            meta["name"],
            {"metadata": {"ownerReferences": remaining}},
            resource_version=meta.get("resourceVersion"),
        )
        logger.info("owner_reference_removed", kind=kind, namespace=db.namespace, name=meta["name"])

    async def _delete(self, kind: str, db: MongoDB, obj: Dict[str, Any]) -> None:
        if await self.store.delete(kind, db.namespace, _name(obj)):
            logger.info("owned_object_deleted", kind=kind, namespace=db.namespace, name=_name(obj))

    async def _delete_disposable(self, db: MongoDB, owned: OwnedObjectSet) -> None:
        for kind, obj in owned.disposable():
            await self._delete(kind, db, obj)

    async def _workloads_gone(self, db: MongoDB) -> bool:
        selectors = db.offshoot_selectors()
        if await self.store.list(STATEFULSET, db.namespace, selectors):
            return False
        return not await self.store.list(POD, db.namespace, selectors)

    async def wait_until_gone(self, db: MongoDB) -> None:
        """
        Raises:
            ReadinessTimeout: if pods or StatefulSets are still around after the timeout
        """
        await poll_until(
            lambda: self._workloads_gone(db),
            interval=self.poll_interval,
            timeout=self.timeout,
            description=f"pods of {db.key} to terminate",
        )

    async def halt(self, db: MongoDB) -> None:
        """Park the database: keep PVCs and secrets, remove everything else."""
        logger.info("halting_database", namespace=db.namespace, name=db.name)
        owned = await self.collect(db)
        for pvc in owned.pvcs:
            await self._strip_owner(PVC, db, pvc)
        for secret in owned.secrets:
            await self._strip_owner(SECRET, db, secret)
        await self._delete_disposable(db, owned)
        await self.wait_until_gone(db)

    async def terminate(self, db: MongoDB) -> None:
        """
        Run delete mode for the database's termination policy.

        Raises:
            TerminationDeniedError: for DoNotTerminate; nothing is touched
        """
        policy = db.termination_policy()
        if policy == TerminationPolicy.DO_NOT_TERMINATE:
            raise TerminationDeniedError(
                f'MongoDB "{db.key}" can\'t be terminated. '
                "To delete, change spec.terminationPolicy",
                details={"policy": policy.value},
            )

        logger.info("terminating_database", namespace=db.namespace, name=db.name, policy=policy.value)
        if policy == TerminationPolicy.HALT:
            await self.halt(db)
            return

        owned = await self.collect(db)
        if policy == TerminationPolicy.WIPE_OUT:
            in_use = await self.secrets_used_by_peers(db)
            for secret in owned.secrets:
                if _name(secret) in in_use:
                    logger.info("secret_kept_used_by_peer", namespace=db.namespace, name=_name(secret))
                    await self._strip_owner(SECRET, db, secret)
                else:
                    await self._delete(SECRET, db, secret)
        else:
            for secret in owned.secrets:
                await self._strip_owner(SECRET, db, secret)

        await self._delete_disposable(db, owned)
        for pvc in owned.pvcs:
            await self._delete(PVC, db, pvc)
