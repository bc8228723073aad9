from __future__ import annotations

from mediaflow.media_engine.storage import ObjectStore, get_object_store


def get_store() -> ObjectStore:
    return get_object_store()
