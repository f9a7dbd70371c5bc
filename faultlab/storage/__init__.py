"""Object storage for captured telemetry."""

from faultlab.storage.object_store import (
    CollectedObjects,
    InMemoryObjectStore,
    ObjectInfo,
    ObjectPage,
    ObjectStore,
    collect_objects,
)

__all__ = [
    "CollectedObjects",
    "InMemoryObjectStore",
    "ObjectInfo",
    "ObjectPage",
    "ObjectStore",
    "collect_objects",
]
