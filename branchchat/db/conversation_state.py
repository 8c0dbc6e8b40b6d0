"""Durable state backends for conversation stores.

Each conversation persists as a single JSON document (graph snapshot, version, retrieval
collections). The store owner loads it once and rewrites it after every committed
mutation.
"""

import asyncio
import copy
from functools import lru_cache
from typing import Any, Protocol

from branchchat.core.config import get_settings
from branchchat.core.logging import get_logger
from branchchat.core.schemas_conversation import utc_now_iso
from branchchat.db.supabase_client import execute_async, get_supabase

logger = get_logger(__name__)


class StateBackend(Protocol):
    """Persistence contract used by ConversationGraphStore."""

    async def load(self, conversation_id: str) -> dict[str, Any] | None: ...

    async def save(self, conversation_id: str, state: dict[str, Any]) -> None: ...


class SupabaseStateBackend:
    """Stores one row per conversation in the configured state table."""

    def __init__(self, table: str | None = None):
        self.table = table or get_settings().STORE_STATE_TABLE

    async def load(self, conversation_id: str) -> dict[str, Any] | None:
        supabase = get_supabase()
        response = await execute_async(
            supabase.table(self.table)
            .select("state")
            .eq("conversation_id", conversation_id)
            .limit(1)
        )
        if not response.data:
            return None
        return response.data[0].get("state")

    async def save(self, conversation_id: str, state: dict[str, Any]) -> None:
        supabase = get_supabase()
        row = {
            "conversation_id": conversation_id,
            "version": state.get("version", 0),
            "state": state,
            "updated_at": utc_now_iso(),
        }
        await execute_async(
            supabase.table(self.table).upsert(row, on_conflict="conversation_id")
        )
        logger.debug(
            f"Saved conversation state {conversation_id}",
            extra={"conversation_id": conversation_id, "version": row["version"]},
        )


class MemoryStateBackend:
    """Process-local backend for development and tests."""

    def __init__(self):
        self._rows: dict[str, dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def load(self, conversation_id: str) -> dict[str, Any] | None:
        row = self._rows.get(conversation_id)
        return copy.deepcopy(row) if row is not None else None

    async def save(self, conversation_id: str, state: dict[str, Any]) -> None:
        async with self._lock:
            self._rows[conversation_id] = copy.deepcopy(state)


@lru_cache(maxsize=1)
def get_state_backend() -> StateBackend:
    """
    Get the configured state backend (cached singleton).

    Raises:
        ValueError: If STORE_BACKEND names an unknown backend
    """
    backend = get_settings().STORE_BACKEND
    if backend == "supabase":
        return SupabaseStateBackend()
    if backend == "memory":
        return MemoryStateBackend()
    raise ValueError(f"Unknown STORE_BACKEND: {backend}")
