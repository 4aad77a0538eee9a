"""
Pytest configuration and fixtures.
"""
import pytest

from dbaas_operator.config.settings import Settings
from dbaas_operator.models.database import MongoDB
from dbaas_operator.services.object_store import MONGODB, MONGODB_VERSION
from dbaas_operator.services.version_catalog import VersionCatalog
from dbaas_operator.workers.reconciler import Reconciler
from tests.fakes import FakeEventRecorder, FakeObjectStore, mongodb_version


@pytest.fixture
def test_settings() -> Settings:
    """Settings with timings shrunk for tests."""
    return Settings(
        environment="testing",
        readiness_poll_interval=0.01,
        readiness_timeout=0.1,
        termination_timeout=0.1,
        requeue_base_delay=0.01,
        requeue_max_delay=0.05,
        max_requeues=2,
        worker_count=1,
    )


@pytest.fixture
def store() -> FakeObjectStore:
    store = FakeObjectStore()
    store.put(MONGODB_VERSION, mongodb_version())
    return store


@pytest.fixture
def recorder() -> FakeEventRecorder:
    return FakeEventRecorder()


@pytest.fixture
def catalog(store) -> VersionCatalog:
    return VersionCatalog(store, ttl_seconds=0)


@pytest.fixture
def reconciler(store, catalog, recorder, test_settings) -> Reconciler:
    return Reconciler(store, catalog, recorder, test_settings)


@pytest.fixture
def load(store):
    """Read a MongoDB back from the store as a model."""

    def _load(name: str, namespace: str = "demo") -> MongoDB:
        obj = store.peek(MONGODB, namespace, name)
        assert obj is not None, f"{namespace}/{name} not in store"
        return MongoDB.from_object(obj)

    return _load
