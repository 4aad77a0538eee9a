"""
Reconciler for MongoDB objects.

One call to ``reconcile(key)`` is one pass of the control loop for one
database: load the object, resolve its topology, gate on prerequisite
secrets, converge every dependent object and advance ``status.phase``
through ``PhaseStateMachine``.

Outcome contract (the controller acts on it):
- fatal problems (invalid spec, naming collision) are recorded in status and
  as a warning event and the pass returns normally
- pending dependencies return ``ReconcileResult(requeue=True)``
- ``TransientStoreError`` and ``ReadinessTimeout`` propagate and are retried
  with backoff by the controller
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from dbaas_operator.config.logging import get_logger
from dbaas_operator.config.settings import Settings, settings as default_settings
from dbaas_operator.core.admission import validate_spec
from dbaas_operator.core.dependencies import DependencyGate, all_dependencies
from dbaas_operator.core.resources import (
    build_auth_secret,
    build_client_service,
    build_governing_service,
    build_key_file_secret,
    build_rbac,
    build_stats_service,
)
from dbaas_operator.core.state_machine import PhaseStateMachine
from dbaas_operator.core.termination import TerminationEngine
from dbaas_operator.core.topology import NodeRole, RoleKind, resolve_node_roles
from dbaas_operator.core.workload import build_statefulset
from dbaas_operator.exceptions import (
    NamingCollisionError,
    OperatorError,
    TerminationDeniedError,
    TransientStoreError,
    ValidationError,
)
from dbaas_operator.models.database import FINALIZER, MongoDB, Phase, TerminationPolicy
from dbaas_operator.models.version import MongoDBVersion
from dbaas_operator.services import event_recorder as events
from dbaas_operator.services.converge import Verb, combine_verbs, converge, ensure_exists
from dbaas_operator.services.event_recorder import EventRecorder
from dbaas_operator.services.object_store import (
    MONGODB,
    ROLE,
    ROLE_BINDING,
    SECRET,
    SERVICE,
    SERVICE_ACCOUNT,
    STATEFULSET,
    ObjectStore,
)
from dbaas_operator.services.version_catalog import VersionCatalog
from dbaas_operator.utils.wait import poll_until

logger = get_logger(__name__)


class ReconcileResult(BaseModel):
    """Outcome of one reconciliation pass."""

    requeue: bool = False
    pending: List[str] = Field(default_factory=list)
    phase: Optional[Phase] = None


def split_key(key: str):
    namespace, _, name = key.partition("/")
    return namespace, name


class Reconciler:
    """
    Drives one MongoDB object towards its desired state.

    Holds no per-database state between passes; everything is re-read from
    the store, so any number of reconcilers may share one store.
    """

    def __init__(
        self,
        store: ObjectStore,
        catalog: VersionCatalog,
        recorder: EventRecorder,
        settings: Optional[Settings] = None,
        termination: Optional[TerminationEngine] = None,
    ):
        self.store = store
        self.catalog = catalog
        self.recorder = recorder
        self.settings = settings or default_settings
        self.gate = DependencyGate(store)
        self.termination = termination or TerminationEngine(
            store,
            poll_interval=self.settings.readiness_poll_interval,
            timeout=self.settings.termination_timeout,
        )

    async def reconcile(self, key: str) -> ReconcileResult:
        namespace, name = split_key(key)
        obj = await self.store.get(MONGODB, namespace, name)
        if obj is None:
            logger.debug("database_not_found", namespace=namespace, name=name)
            return ReconcileResult()

        try:
            db = MongoDB.from_object(obj)
        except PydanticValidationError as e:
            return await self._reject_unparseable(obj, e)

        if db.being_deleted():
            return await self._finalize(db)

        if not db.has_finalizer():
            db = await self._add_finalizer(db)

        phase = db.status.phase
        if phase == Phase.FAILED and db.status.observed_generation == db.metadata.generation:
            # Stays failed until the spec changes
            return ReconcileResult(phase=phase)

        version = await self.catalog.get(db.spec.version) if db.spec.version else None
        try:
            validate_spec(db, version)
        except ValidationError as e:
            return await self._fail(db, e)

        if phase in (None, Phase.FAILED):
            db = await self._set_phase(db, Phase.CREATING, reason=None)

        if db.spec.halted:
            return await self._halt(db)

        if db.status.phase == Phase.HALTED:
            logger.info("resuming_database", namespace=db.namespace, name=db.name)
            db = await self._set_phase(db, Phase.CREATING, reason=None)

        try:
            return await self._ensure(db, version)
        except (NamingCollisionError, ValidationError) as e:
            return await self._fail(db, e)

    # Phase bookkeeping

    async def _set_phase(
        self,
        db: MongoDB,
        phase: Phase,
        reason: Optional[str] = None,
        observed_generation: Optional[int] = None,
    ) -> MongoDB:
        """
        Write a phase (and optionally reason and observedGeneration) through the
        state machine. Writes nothing if the status already says so.
        """
        status = db.status
        og = status.observed_generation if observed_generation is None else observed_generation
        if status.phase == phase and status.reason == reason and status.observed_generation == og:
            return db

        PhaseStateMachine.validate_transition(status.phase, phase, database=db.key)
        patch: Dict[str, Any] = {"phase": phase.value, "reason": reason}
        if observed_generation is not None:
            patch["observedGeneration"] = observed_generation
        await self.store.patch_status(MONGODB, db.namespace, db.name, patch)

        logger.info(
            "phase_changed",
            namespace=db.namespace,
            name=db.name,
            from_phase=status.phase.value if status.phase else None,
            to_phase=phase.value,
            reason=reason,
        )
        new_status = status.model_copy(update={"phase": phase, "reason": reason, "observed_generation": og})
        return db.model_copy(update={"status": new_status})

    async def _fail(self, db: MongoDB, error: OperatorError) -> ReconcileResult:
        logger.warning(
            "reconcile_failed",
            namespace=db.namespace,
            name=db.name,
            reason=error.reason,
            error=error.message,
        )
        updated = await self._set_phase(
            db, Phase.FAILED, reason=error.message, observed_generation=db.metadata.generation
        )
        if updated is not db:
            await self.recorder.warning(db, error.reason, error.message)
        return ReconcileResult(phase=Phase.FAILED)

    async def _reject_unparseable(self, obj: Dict[str, Any], error: PydanticValidationError) -> ReconcileResult:
        meta = obj.get("metadata", {})
        namespace, name = meta.get("namespace", ""), meta.get("name", "")
        logger.warning("database_unparseable", namespace=namespace, name=name, error=str(error))
        if meta.get("deletionTimestamp") and FINALIZER in (meta.get("finalizers") or []):
            # Nothing can be terminated without a parseable spec
            await self._remove_finalizer(namespace, name, meta)
            return ReconcileResult()
        status = obj.get("status") or {}
        if status.get("phase") != Phase.FAILED.value:
            await self.store.patch_status(
                MONGODB,
                namespace,
                name,
                {
                    "phase": Phase.FAILED.value,
                    "reason": "spec could not be parsed",
                    "observedGeneration": meta.get("generation", 0),
                },
            )
        return ReconcileResult(phase=Phase.FAILED)

    # Finalizer

    async def _add_finalizer(self, db: MongoDB) -> MongoDB:
        finalizers = list(db.metadata.finalizers) + [FINALIZER]
        await self.store.patch(
            MONGODB,
            db.namespace,
            db.name,
            {"metadata": {"finalizers": finalizers}},
            resource_version=db.metadata.resource_version,
        )
        logger.debug("finalizer_added", namespace=db.namespace, name=db.name)
        meta = db.metadata.model_copy(update={"finalizers": finalizers})
        return db.model_copy(update={"metadata": meta})

    async def _remove_finalizer(self, namespace: str, name: str, meta: Dict[str, Any]) -> None:
        finalizers = [f for f in meta.get("finalizers") or [] if f != FINALIZER]
        await self.store.patch(
            MONGODB,
            namespace,
            name,
            {"metadata": {"finalizers": finalizers}},
            resource_version=meta.get("resourceVersion"),
        )
        logger.info("finalizer_removed", namespace=namespace, name=name)

    async def _finalize(self, db: MongoDB) -> ReconcileResult:
        if not db.has_finalizer():
            return ReconcileResult()

        if db.termination_policy() != TerminationPolicy.DO_NOT_TERMINATE:
            db = await self._set_phase(db, Phase.TERMINATING, reason=db.status.reason)
        try:
            await self.termination.terminate(db)
        except TerminationDeniedError as e:
            logger.warning("termination_denied", namespace=db.namespace, name=db.name)
            await self.recorder.warning(db, events.REASON_TERMINATION_DENIED, e.message)
            return ReconcileResult(phase=db.status.phase)

        # Status writes moved the resourceVersion on
        fresh = await self.store.get(MONGODB, db.namespace, db.name)
        if fresh is not None:
            await self._remove_finalizer(db.namespace, db.name, fresh.get("metadata", {}))
        return ReconcileResult(phase=Phase.TERMINATING)

    # Halt

    async def _halt(self, db: MongoDB) -> ReconcileResult:
        if db.status.phase == Phase.HALTED:
            return ReconcileResult(phase=Phase.HALTED)

        await self.termination.halt(db)
        await self._set_phase(db, Phase.HALTED, reason=None, observed_generation=db.metadata.generation)
        await self.recorder.normal(db, events.REASON_HALTED, f"Successfully halted MongoDB {db.key}")
        return ReconcileResult(phase=Phase.HALTED)

    # Creation path

    async def _ensure_secrets(self, db: MongoDB) -> List[Verb]:
        verbs = []
        auth = db.spec.auth_secret
        if auth is None or not auth.externally_managed:
            verb, _ = await ensure_exists(self.store, SECRET, build_auth_secret(db))
            verbs.append(verb)
        key_file = db.spec.key_file_secret
        if db.requires_key_file() and (key_file is None or not key_file.externally_managed):
            verb, _ = await ensure_exists(self.store, SECRET, build_key_file_secret(db))
            verbs.append(verb)
        return verbs

    async def _ensure_rbac(self, db: MongoDB) -> List[Verb]:
        pod_template = db.spec.pod_template
        if pod_template is not None and pod_template.spec.service_account_name:
            # User-supplied service account; RBAC is theirs to manage
            return []
        service_account, role, role_binding = build_rbac(db)
        verbs = []
        for kind, desired in (
            (SERVICE_ACCOUNT, service_account),
            (ROLE, role),
            (ROLE_BINDING, role_binding),
        ):
            verb, _ = await converge(self.store, kind, desired, db)
            verbs.append(verb)
        return verbs

    async def _workload_ready(self, db: MongoDB, role: NodeRole) -> bool:
        sts = await self.store.get(STATEFULSET, db.namespace, role.workload_name)
        if sts is None:
            return False
        status = sts.get("status") or {}
        generation = sts.get("metadata", {}).get("generation", 0)
        return (
            status.get("readyReplicas", 0) == sts.get("spec", {}).get("replicas", role.replicas)
            and status.get("observedGeneration", 0) >= generation
        )

    async def _wait_ready(self, db: MongoDB, roles: List[NodeRole]) -> None:
        for role in roles:
            await poll_until(
                lambda role=role: self._workload_ready(db, role),
                interval=self.settings.readiness_poll_interval,
                timeout=self.settings.readiness_timeout,
                description=f"StatefulSet {db.namespace}/{role.workload_name} to be ready",
            )

    async def _ensure_workloads(self, db: MongoDB, roles: List[NodeRole], version: MongoDBVersion) -> List[Verb]:
        """Converge StatefulSets; routers only once every data-bearing role is ready."""
        desired = {role.workload_name: build_statefulset(db, role, version) for role in roles}
        verbs = []
        for stage in (
            [r for r in roles if r.kind != RoleKind.ROUTER],
            [r for r in roles if r.kind == RoleKind.ROUTER],
        ):
            if not stage:
                continue
            for role in stage:
                verb, _ = await converge(self.store, STATEFULSET, desired[role.workload_name], db)
                verbs.append(verb)
            await self._wait_ready(db, stage)
        return verbs

    async def _ensure_stats_service(self, db: MongoDB) -> None:
        if not db.monitoring_enabled():
            stale = await self.store.get(SERVICE, db.namespace, db.stats_service_name())
            if stale is not None and db.owns_labels(stale.get("metadata", {}).get("labels")):
                await self.store.delete(SERVICE, db.namespace, db.stats_service_name())
                logger.info("stats_service_deleted", namespace=db.namespace, name=db.name)
            return
        try:
            await converge(self.store, SERVICE, build_stats_service(db), db)
        except (NamingCollisionError, TransientStoreError) as e:
            logger.error("stats_service_failed", namespace=db.namespace, name=db.name, error=e.message)
            await self.recorder.warning(
                db,
                events.REASON_FAILED,
                f"Failed to manage monitoring system. Reason: {e.message}",
            )

    async def _ensure(self, db: MongoDB, version: MongoDBVersion) -> ReconcileResult:
        roles = resolve_node_roles(db)

        service_verbs = []
        for role in roles:
            verb, _ = await converge(self.store, SERVICE, build_governing_service(db, role), db)
            service_verbs.append(verb)
        await self._ensure_rbac(db)
        verb, _ = await converge(self.store, SERVICE, build_client_service(db), db)
        service_verbs.append(verb)
        await self._ensure_secrets(db)

        gate = await self.gate.check(db.namespace, all_dependencies(db, roles))
        if not gate.ready:
            return ReconcileResult(requeue=True, pending=gate.missing, phase=db.status.phase)

        workload_verbs = await self._ensure_workloads(db, roles, version)

        overall = combine_verbs(service_verbs + workload_verbs)
        if overall == Verb.CREATED:
            await self.recorder.normal(db, events.REASON_SUCCESSFUL, "Successfully created MongoDB")
        elif overall == Verb.PATCHED:
            await self.recorder.normal(db, events.REASON_SUCCESSFUL, "Successfully patched MongoDB")

        if db.needs_initialization():
            if db.status.phase != Phase.INITIALIZING:
                db = await self._set_phase(db, Phase.INITIALIZING, reason=None)
                await self.recorder.normal(
                    db,
                    events.REASON_INITIALIZING,
                    "MongoDB is waiting for its initial restore to complete",
                )
            return ReconcileResult(phase=Phase.INITIALIZING)

        was_running = db.status.phase == Phase.RUNNING
        db = await self._set_phase(db, Phase.RUNNING, reason=None, observed_generation=db.metadata.generation)
        if not was_running:
            await self.recorder.normal(db, events.REASON_RUNNING, f"MongoDB {db.key} is running")

        await self._ensure_stats_service(db)
        return ReconcileResult(phase=Phase.RUNNING)
