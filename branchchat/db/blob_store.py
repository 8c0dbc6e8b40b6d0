"""Raw attachment bytes, read by the ingestion pipeline."""

import asyncio
from functools import lru_cache
from typing import Protocol

from branchchat.core.config import get_settings
from branchchat.db.supabase_client import get_supabase


class BlobStore(Protocol):
    async def get(self, key: str) -> bytes | None: ...


class SupabaseBlobStore:
    """Reads objects from a Supabase Storage bucket."""

    def __init__(self, bucket: str | None = None):
        self.bucket = bucket or get_settings().UPLOADS_BUCKET

    async def get(self, key: str) -> bytes | None:
        supabase = get_supabase()
        # storage3 raises for missing objects; ingestion records the message as a failure
        return await asyncio.to_thread(supabase.storage.from_(self.bucket).download, key)


class MemoryBlobStore:
    """In-memory blob store for development and tests."""

    def __init__(self, objects: dict[str, bytes] | None = None):
        self.objects: dict[str, bytes] = dict(objects or {})

    def put(self, key: str, data: bytes) -> None:
        self.objects[key] = data

    async def get(self, key: str) -> bytes | None:
        return self.objects.get(key)


@lru_cache(maxsize=1)
def get_blob_store() -> BlobStore:
    """Blob store matching the configured backend (cached singleton)."""
    if get_settings().STORE_BACKEND == "memory":
        return MemoryBlobStore()
    return SupabaseBlobStore()
