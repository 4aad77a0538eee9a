"""
Tests for the version catalog cache.
"""
import pytest
import yaml

from dbaas_operator.config.settings import Settings
from dbaas_operator.exceptions import TransientStoreError
from dbaas_operator.services.object_store import MONGODB_VERSION
from dbaas_operator.services.version_catalog import VersionCatalog, load_catalog_file
from tests.fakes import FakeObjectStore, mongodb_version


class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.mark.asyncio
async def test_reads_from_store_and_caches():
    store = FakeObjectStore()
    store.put(MONGODB_VERSION, mongodb_version("4.4.6"))
    clock = Clock()
    catalog = VersionCatalog(store, ttl_seconds=30, clock=clock)

    first = await catalog.get("4.4.6")
    store.objects.clear()
    second = await catalog.get("4.4.6")

    assert first.spec.db.image == "kubedb/mongo:4.4.6"
    assert second is first
    assert catalog.get_stats()["hits"] == 1


@pytest.mark.asyncio
async def test_cache_expires():
    store = FakeObjectStore()
    store.put(MONGODB_VERSION, mongodb_version("4.4.6"))
    clock = Clock()
    catalog = VersionCatalog(store, ttl_seconds=30, clock=clock)
    await catalog.get("4.4.6")

    store.objects.clear()
    clock.now += 31

    assert await catalog.get("4.4.6") is None
    assert catalog.get_stats()["misses"] == 1


@pytest.mark.asyncio
async def test_invalidate_forces_reread():
    store = FakeObjectStore()
    store.put(MONGODB_VERSION, mongodb_version("4.4.6"))
    catalog = VersionCatalog(store, ttl_seconds=30)
    await catalog.get("4.4.6")

    store.put(MONGODB_VERSION, mongodb_version("4.4.6", deprecated=True))
    catalog.invalidate("4.4.6")

    assert (await catalog.get("4.4.6")).spec.deprecated


@pytest.mark.asyncio
async def test_unknown_version_is_none():
    catalog = VersionCatalog(FakeObjectStore())

    assert await catalog.get("1.0.0") is None


@pytest.mark.asyncio
async def test_store_errors_propagate():
    store = FakeObjectStore()
    store.fail("get", MONGODB_VERSION, TransientStoreError("unavailable", status=503))

    with pytest.raises(TransientStoreError):
        await VersionCatalog(store).get("4.4.6")


@pytest.mark.asyncio
async def test_falls_back_to_catalog_file(tmp_path):
    path = tmp_path / "versions.yaml"
    path.write_text(yaml.safe_dump_all([
        mongodb_version("3.6.8"),
        {"items": [mongodb_version("4.0.5"), mongodb_version("4.2.3")]},
    ]))

    catalog = VersionCatalog.from_settings(
        FakeObjectStore(),
        Settings(environment="testing", version_catalog_path=str(path)),
    )

    assert sorted(load_catalog_file(str(path))) == ["3.6.8", "4.0.5", "4.2.3"]
    version = await catalog.get("4.0.5")
    assert version.spec.db.image == "kubedb/mongo:4.0.5"
    assert catalog.get_stats()["fallback_hits"] == 1
