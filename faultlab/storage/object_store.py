"""
Object store contract and in-memory implementation.

Keys are hierarchical strings (``continuous/2025-01-01/traces/x.otlp.gz``).
Listing is paginated and ordered by key, like S3 ``ListObjectsV2``.
"""
from __future__ import annotations

import asyncio
import bisect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol, runtime_checkable

from faultlab.core.exceptions import ObjectNotFound, StorageFailure

logger = logging.getLogger(__name__)

# S3 never returns more than this per list call
MAX_KEYS_PER_PAGE = 1000


@dataclass
class ObjectInfo:
    """Listing entry for one stored object."""
    key: str
    size: int = 0
    last_modified: Optional[datetime] = None


@dataclass
class ObjectPage:
    """One page of a listing."""
    objects: List[ObjectInfo] = field(default_factory=list)
    next_token: Optional[str] = None

    @property
    def is_truncated(self) -> bool:
        return self.next_token is not None


@runtime_checkable
class ObjectStore(Protocol):
    """Async blob store under hierarchical keys."""

    async def list_objects(
        self,
        prefix: str = "",
        max_keys: int = MAX_KEYS_PER_PAGE,
        continuation_token: Optional[str] = None,
    ) -> ObjectPage: ...

    async def get(self, key: str) -> bytes: ...

    async def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None: ...

    async def delete(self, key: str) -> None: ...

    async def head(self, key: str) -> Optional[ObjectInfo]: ...


@dataclass
class CollectedObjects:
    """Result of a bounded multi-page listing."""
    objects: List[ObjectInfo]
    truncated: bool
    pages: int


async def collect_objects(store: ObjectStore, prefix: str, limit: int) -> CollectedObjects:
    """
    List at most ``limit`` objects under ``prefix``, following pagination.

    Never requests more keys than remain under the limit, so the number of
    listed objects is bounded regardless of namespace size.
    """
    objects: List[ObjectInfo] = []
    token: Optional[str] = None
    pages = 0
    truncated = False

    while len(objects) < limit:
        want = min(MAX_KEYS_PER_PAGE, limit - len(objects))
        page = await store.list_objects(prefix, max_keys=want, continuation_token=token)
        pages += 1
        objects.extend(page.objects[:want])
        token = page.next_token
        if token is None:
            break
    else:
        truncated = token is not None

    return CollectedObjects(objects=objects, truncated=truncated, pages=pages)


class InMemoryObjectStore:
    """
    Dict-backed ObjectStore.

    Used for local runs and tests. Tracks how many objects were handed out by
    listing calls (``listed_objects``) and supports injected per-key failures.
    """

    def __init__(self):
        self._data: Dict[str, bytes] = {}
        self._modified: Dict[str, datetime] = {}
        self._keys: List[str] = []
        self._lock = asyncio.Lock()

        self.list_calls = 0
        self.listed_objects = 0
        self.fail_deletes: set[str] = set()
        self.fail_gets: set[str] = set()
        self.fail_list = False

    async def list_objects(
        self,
        prefix: str = "",
        max_keys: int = MAX_KEYS_PER_PAGE,
        continuation_token: Optional[str] = None,
    ) -> ObjectPage:
        if self.fail_list:
            raise StorageFailure(f"Injected list failure for prefix {prefix!r}")

        max_keys = max(1, min(int(max_keys), MAX_KEYS_PER_PAGE))
        async with self._lock:
            start_key = continuation_token or prefix
            i = bisect.bisect_left(self._keys, start_key)
            if continuation_token is not None and i < len(self._keys) and self._keys[i] == continuation_token:
                i += 1

            out: List[ObjectInfo] = []
            while i < len(self._keys) and len(out) < max_keys:
                key = self._keys[i]
                if not key.startswith(prefix):
                    break
                out.append(ObjectInfo(key=key, size=len(self._data[key]), last_modified=self._modified[key]))
                i += 1

            has_more = i < len(self._keys) and self._keys[i].startswith(prefix)
            next_token = out[-1].key if (has_more and out) else None

        self.list_calls += 1
        self.listed_objects += len(out)
        return ObjectPage(objects=out, next_token=next_token)

    async def get(self, key: str) -> bytes:
        if key in self.fail_gets:
            raise StorageFailure(f"Injected get failure for {key}")
        async with self._lock:
            if key not in self._data:
                raise ObjectNotFound(key)
            return self._data[key]

    async def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        async with self._lock:
            if key not in self._data:
                bisect.insort(self._keys, key)
            self._data[key] = bytes(data)
            self._modified[key] = datetime.now(timezone.utc)

    async def delete(self, key: str) -> None:
        if key in self.fail_deletes:
            raise StorageFailure(f"Injected delete failure for {key}")
        async with self._lock:
            if key not in self._data:
                return
            del self._data[key]
            del self._modified[key]
            i = bisect.bisect_left(self._keys, key)
            if i < len(self._keys) and self._keys[i] == key:
                self._keys.pop(i)

    async def head(self, key: str) -> Optional[ObjectInfo]:
        async with self._lock:
            if key not in self._data:
                return None
            return ObjectInfo(key=key, size=len(self._data[key]), last_modified=self._modified[key])

    def keys(self, prefix: str = "") -> List[str]:
        """Snapshot of stored keys (test helper)."""
        return [k for k in self._keys if k.startswith(prefix)]

    def __len__(self) -> int:
        return len(self._keys)
