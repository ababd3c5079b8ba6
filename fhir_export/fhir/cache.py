from __future__ import annotations

import threading
from collections.abc import Iterable

from fhir_export.core.logging import log
from fhir_export.fhir.client import FHIRClient

_MISSING = object()


class ResourceCache:
    """Per-run cache of resolved resources keyed by (resource type, id). Misses are cached as None."""

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: dict[tuple[str, str], dict | None] = {}
        self.hits = 0
        self.misses = 0

    def get(self, resource_type: str, resource_id: str):
        with self._lock:
            value = self._entries.get((resource_type, resource_id), _MISSING)
            if value is _MISSING:
                self.misses += 1
            else:
                self.hits += 1
            return value

    def put(self, resource_type: str, resource_id: str, resource: dict | None) -> None:
        with self._lock:
            self._entries[(resource_type, resource_id)] = resource

    def clear(self) -> None:
        with self._lock:
            size = len(self._entries)
            self._entries.clear()
            self.hits = self.misses = 0
        log.debug("resource_cache_cleared", entries=size)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class CachingResourceReader:
    def __init__(self, client: FHIRClient, cache: ResourceCache, uncached_types: Iterable[str] = ()):
        self.client = client
        self.cache = cache
        self.uncached_types = frozenset(uncached_types)

    def read(self, resource_type: str, resource_id: str) -> dict | None:
        if resource_type in self.uncached_types:
            return self.client.read(resource_type, resource_id)
        cached = self.cache.get(resource_type, resource_id)
        if cached is not _MISSING:
            return cached
        resource = self.client.read(resource_type, resource_id)
        self.cache.put(resource_type, resource_id, resource)
        return resource
