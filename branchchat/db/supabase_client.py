"""Supabase client initialization and async execution helper."""

import asyncio
from functools import lru_cache
from typing import Any

from supabase import Client, create_client

from branchchat.core.config import get_settings


@lru_cache(maxsize=1)
def get_supabase() -> Client:
    """
    Get Supabase client instance (cached singleton).

    Returns:
        Supabase client configured with service role key

    Raises:
        RuntimeError: If client initialization fails
    """
    try:
        settings = get_settings()
        return create_client(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_ROLE_KEY)
    except Exception as e:
        raise RuntimeError(f"Failed to initialize Supabase client: {e}") from e


async def execute_async(query: Any) -> Any:
    """Run a blocking Supabase query builder's ``execute()`` off the event loop."""
    return await asyncio.to_thread(query.execute)
