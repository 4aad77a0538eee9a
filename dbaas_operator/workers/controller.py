"""
Controller: watch streams in, reconcile calls out.

Watch events for MongoDB objects and for Secrets become typed
``Created``/``Updated``/``Deleted`` events, are reduced to a
``namespace/name`` key and land in a deduplicating ``WorkQueue``. A fixed
pool of workers pulls keys and calls ``Reconciler.reconcile``.

Features:
- At most one in-flight reconcile per key (enforced by the queue)
- Exponential backoff for transient failures and pending dependencies
- Secret events re-enqueue every database that references the secret
- Watches resume from the last seen resourceVersion and start over on 410
- Periodic full resync
"""
import asyncio
from typing import List, Optional, Set

import structlog
from pydantic import ValidationError as PydanticValidationError

from dbaas_operator.config.logging import get_logger
from dbaas_operator.config.settings import Settings, settings as default_settings
from dbaas_operator.core.dependencies import all_dependencies
from dbaas_operator.core.topology import resolve_node_roles
from dbaas_operator.core.work_queue import QueueShutDown, WorkQueue
from dbaas_operator.exceptions import OperatorError, TransientStoreError
from dbaas_operator.models.database import KIND, MongoDB
from dbaas_operator.models.events import ObjectEvent, from_watch, object_key
from dbaas_operator.services import event_recorder as events
from dbaas_operator.services.event_recorder import EventRecorder
from dbaas_operator.services.object_store import MONGODB, SECRET, ObjectStore
from dbaas_operator.services.version_catalog import VersionCatalog
from dbaas_operator.utils.shutdown import ShutdownHandler
from dbaas_operator.workers.reconciler import Reconciler, split_key

logger = get_logger(__name__)

WATCH_RETRY_DELAY = 5.0
GONE = 410


class Controller:
    """Runs the watch loops, the resync loop and the worker pool."""

    def __init__(
        self,
        store: ObjectStore,
        reconciler: Reconciler,
        recorder: EventRecorder,
        settings: Optional[Settings] = None,
        shutdown: Optional[ShutdownHandler] = None,
        catalog: Optional[VersionCatalog] = None,
    ):
        self.store = store
        self.reconciler = reconciler
        self.recorder = recorder
        self.catalog = catalog
        self.settings = settings or default_settings
        self.shutdown = shutdown or ShutdownHandler()
        self.namespace = self.settings.watch_namespace
        self.queue = self._new_queue()

    def _new_queue(self) -> WorkQueue:
        return WorkQueue(
            base_delay=self.settings.requeue_base_delay,
            max_delay=self.settings.requeue_max_delay,
        )

    # Event handlers

    async def on_database_event(self, event: ObjectEvent) -> None:
        logger.debug("database_event", type=event.type, key=event.key)
        self.queue.add(event.key)

    async def databases_for_secret(self, secret: dict) -> Set[str]:
        """Keys of the databases that own or reference ``secret``."""
        meta = secret.get("metadata", {})
        namespace, name = meta.get("namespace", ""), meta.get("name", "")
        keys = {
            f"{namespace}/{ref['name']}"
            for ref in meta.get("ownerReferences") or []
            if ref.get("kind") == KIND
        }
        for obj in await self.store.list(MONGODB, namespace):
            try:
                db = MongoDB.from_object(obj)
            except PydanticValidationError:
                continue
            if name in all_dependencies(db, resolve_node_roles(db)):
                keys.add(db.key)
        return keys

    async def on_secret_event(self, event: ObjectEvent) -> None:
        for key in await self.databases_for_secret(event.object):
            logger.debug("secret_event_enqueued", secret=event.key, key=key)
            self.queue.add(key)

    # Watch and resync loops

    async def watch(self, kind: str, handler) -> None:
        resource_version: Optional[str] = None
        while not self.shutdown.is_shutting_down():
            try:
                async for event_type, obj in self.store.watch(
                    kind,
                    self.namespace,
                    resource_version=resource_version,
                    timeout_seconds=self.settings.watch_timeout,
                ):
                    resource_version = obj.get("metadata", {}).get("resourceVersion", resource_version)
                    event = from_watch(event_type, obj)
                    if event is not None:
                        await handler(event)
            except TransientStoreError as e:
                if e.status == GONE:
                    logger.info("watch_expired_restarting", kind=kind)
                    resource_version = None
                    continue
                logger.warning("watch_failed", kind=kind, error=e.message)
                if await self.shutdown.wait_or_shutdown(WATCH_RETRY_DELAY):
                    break

    async def resync(self) -> int:
        """Enqueue every database once and drop cached version metadata."""
        if self.catalog is not None:
            logger.info("version_catalog_stats", **self.catalog.get_stats())
            self.catalog.invalidate()
        items = await self.store.list(MONGODB, self.namespace)
        for obj in items:
            self.queue.add(object_key(obj))
        logger.debug("resync_enqueued", count=len(items))
        return len(items)

    async def resync_loop(self) -> None:
        while not await self.shutdown.wait_or_shutdown(self.settings.resync_period):
            try:
                await self.resync()
            except TransientStoreError as e:
                logger.warning("resync_failed", error=e.message)

    # Workers

    async def _record_exhausted(self, key: str, error: Exception) -> None:
        namespace, name = split_key(key)
        try:
            obj = await self.store.get(MONGODB, namespace, name)
        except TransientStoreError:
            obj = None
        if obj is None:
            return
        try:
            db = MongoDB.from_object(obj)
        except PydanticValidationError as e:
            logger.warning("requeues_exhausted_unparseable", key=key, error=str(e))
            return
        await self.recorder.warning(
            db,
            events.REASON_REQUEUES_EXHAUSTED,
            f"Giving up after {self.settings.max_requeues} retries: {error}",
        )

    async def _requeue(self, key: str, error: Optional[Exception] = None) -> None:
        if self.queue.num_requeues(key) >= self.settings.max_requeues:
            logger.warning(
                "requeues_exhausted",
                key=key,
                requeues=self.queue.num_requeues(key),
                error=str(error) if error else None,
            )
            self.queue.forget(key)
            if error is not None:
                await self._record_exhausted(key, error)
            return
        delay = self.queue.add_rate_limited(key)
        logger.info("reconcile_requeued", key=key, delay_seconds=delay)

    async def process_next(self) -> bool:
        """
        Reconcile one key from the queue.

        Returns:
            False once the queue has been shut down
        """
        try:
            key = await self.queue.get()
        except QueueShutDown:
            return False

        with structlog.contextvars.bound_contextvars(key=key):
            try:
                await self._handle(key)
            finally:
                self.queue.done(key)
        return True

    async def _handle(self, key: str) -> None:
        error: Optional[Exception] = None
        try:
            result = await self.reconciler.reconcile(key)
            if not result.requeue:
                self.queue.forget(key)
                return
            logger.info("reconcile_deferred", pending=result.pending)
        except asyncio.CancelledError:
            raise
        except OperatorError as e:
            logger.warning("reconcile_error", error=e.message, reason=e.reason, retryable=e.retryable)
            error = e
        except Exception as e:
            logger.error("reconcile_unexpected_error", error=str(e), exc_info=True)
            error = e

        # The worker outlives anything that goes wrong while requeueing
        try:
            await self._requeue(key, error)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("requeue_failed", error=str(e), exc_info=True)

    async def worker(self, index: int) -> None:
        logger.info("worker_started", worker=index)
        while await self.process_next():
            pass
        logger.info("worker_stopped", worker=index)

    # Lifecycle

    async def run(self) -> None:
        """Run until shutdown is requested or the task is cancelled."""
        if self.queue.shutting_down:
            self.queue = self._new_queue()

        logger.info(
            "controller_starting",
            namespace=self.namespace or "<all>",
            workers=self.settings.worker_count,
        )
        background: List[asyncio.Task] = [
            asyncio.create_task(self.watch(MONGODB, self.on_database_event)),
            asyncio.create_task(self.watch(SECRET, self.on_secret_event)),
            asyncio.create_task(self.resync_loop()),
        ]
        workers = [asyncio.create_task(self.worker(i)) for i in range(self.settings.worker_count)]
        try:
            await self.shutdown.wait()
        finally:
            logger.info("controller_stopping")
            self.queue.shutdown()
            for task in background:
                task.cancel()
            await asyncio.gather(*background, return_exceptions=True)
            await asyncio.gather(*workers, return_exceptions=True)
            logger.info("controller_stopped")
