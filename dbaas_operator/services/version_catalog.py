"""
Engine version metadata, read through a short-lived in-memory cache.

Architecture:
- L1 Cache: in-memory, per catalog instance, short TTL
- Source: MongoDBVersion objects in the cluster
- Fallback: an optional YAML catalog file for clusters without the catalog CRD

The catalog is passed explicitly to the reconciler; there is no
module-level cache.
"""
import time
from typing import Any, Callable, Dict, Optional

import yaml

from dbaas_operator.config.logging import get_logger
from dbaas_operator.models.version import MongoDBVersion
from dbaas_operator.services.object_store import MONGODB_VERSION, ObjectStore

logger = get_logger(__name__)


def load_catalog_file(path: str) -> Dict[str, MongoDBVersion]:
    """
    Load MongoDBVersion documents from a YAML file.

    The file may hold several documents, each either a single object or a
    list of objects.
    """
    versions: Dict[str, MongoDBVersion] = {}
    with open(path, "r", encoding="utf-8") as f:
        for doc in yaml.safe_load_all(f):
            if doc is None:
                continue
            items = doc if isinstance(doc, list) else doc.get("items", [doc])
            for item in items:
                version = MongoDBVersion.from_object(item)
                versions[version.name] = version
    logger.info("version_catalog_file_loaded", path=path, count=len(versions))
    return versions


class VersionCatalog:
    """Read-through cache of MongoDBVersion metadata."""

    def __init__(
        self,
        store: ObjectStore,
        ttl_seconds: float = 30,
        fallback: Optional[Dict[str, MongoDBVersion]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.fallback = fallback or {}
        self._clock = clock
        self._memory_cache: Dict[str, tuple[MongoDBVersion, float]] = {}
        self._stats = {"hits": 0, "source_hits": 0, "fallback_hits": 0, "misses": 0}

    @classmethod
    def from_settings(cls, store: ObjectStore, settings: Any) -> "VersionCatalog":
        fallback = None
        if settings.version_catalog_path:
            fallback = load_catalog_file(settings.version_catalog_path)
        return cls(store, ttl_seconds=settings.version_cache_ttl, fallback=fallback)

    def _get_from_memory(self, name: str) -> Optional[MongoDBVersion]:
        if name in self._memory_cache:
            data, expires_at = self._memory_cache[name]
            if self._clock() < expires_at:
                self._stats["hits"] += 1
                return data
            del self._memory_cache[name]
        return None

    def _store_in_memory(self, name: str, data: MongoDBVersion):
        if self.ttl_seconds > 0:
            self._memory_cache[name] = (data, self._clock() + self.ttl_seconds)

    async def get(self, name: str) -> Optional[MongoDBVersion]:
        """
        Version metadata for ``name``, or None if it is unknown.

        Raises:
            TransientStoreError: if the store cannot be reached
        """
        cached = self._get_from_memory(name)
        if cached is not None:
            return cached

        obj = await self.store.get(MONGODB_VERSION, "", name)
        if obj is not None:
            self._stats["source_hits"] += 1
            version = MongoDBVersion.from_object(obj)
            self._store_in_memory(name, version)
            return version

        if name in self.fallback:
            self._stats["fallback_hits"] += 1
            return self.fallback[name]

        self._stats["misses"] += 1
        logger.debug("version_not_found", version=name)
        return None

    def invalidate(self, name: Optional[str] = None):
        if name is None:
            self._memory_cache.clear()
        else:
            self._memory_cache.pop(name, None)

    def get_stats(self) -> Dict[str, int]:
        return dict(self._stats)
