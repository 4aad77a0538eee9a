"""
Events/audit sink.

Reconciliation outcomes are published as core/v1 Events attached to the
database object. Failing to record an event is logged and never fails the
reconciliation that produced it.
"""
import secrets
from datetime import datetime, timezone
from typing import Any, Dict

from dbaas_operator.config.logging import get_logger
from dbaas_operator.exceptions import TransientStoreError
from dbaas_operator.models.database import MongoDB
from dbaas_operator.services.object_store import EVENT, ObjectStore

logger = get_logger(__name__)

NORMAL = "Normal"
WARNING = "Warning"

# Event reasons
REASON_SUCCESSFUL = "Successful"
REASON_INITIALIZING = "Initializing"
REASON_RUNNING = "Running"
REASON_HALTED = "Halted"
REASON_FAILED = "Failed"
REASON_TERMINATION_DENIED = "TerminationDenied"
REASON_REQUEUES_EXHAUSTED = "RequeuesExhausted"


class EventRecorder:
    """Interface for recording events against a database."""

    async def record(self, db: MongoDB, event_type: str, reason: str, message: str) -> None:
        raise NotImplementedError

    async def normal(self, db: MongoDB, reason: str, message: str) -> None:
        await self.record(db, NORMAL, reason, message)

    async def warning(self, db: MongoDB, reason: str, message: str) -> None:
        await self.record(db, WARNING, reason, message)


class KubernetesEventRecorder(EventRecorder):
    """Writes core/v1 Events through the object store."""

    def __init__(self, store: ObjectStore, component: str):
        self.store = store
        self.component = component

    def _build(self, db: MongoDB, event_type: str, reason: str, message: str) -> Dict[str, Any]:
        now = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        return {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {
                "name": f"{db.name}.{secrets.token_hex(8)}",
                "namespace": db.namespace,
            },
            "involvedObject": {
                "apiVersion": db.api_version,
                "kind": db.kind,
                "name": db.name,
                "namespace": db.namespace,
                "uid": db.metadata.uid,
                "resourceVersion": db.metadata.resource_version,
            },
            "type": event_type,
            "reason": reason,
            "message": message,
            "source": {"component": self.component},
            "firstTimestamp": now,
            "lastTimestamp": now,
            "count": 1,
        }

    async def record(self, db: MongoDB, event_type: str, reason: str, message: str) -> None:
        logger.info(
            "event_recorded",
            namespace=db.namespace,
            name=db.name,
            type=event_type,
            reason=reason,
            message=message,
        )
        try:
            await self.store.create(EVENT, self._build(db, event_type, reason, message))
        except TransientStoreError as e:
            logger.warning(
                "event_record_failed",
                namespace=db.namespace,
                name=db.name,
                reason=reason,
                error=str(e),
            )
