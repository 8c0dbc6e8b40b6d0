"""Pytest configuration and fixtures."""

import os

import pytest

from branchchat.core.graph_store import ConversationGraphStore, reset_conversation_stores
from branchchat.db.conversation_state import MemoryStateBackend


@pytest.fixture(scope="session", autouse=True)
def setup_test_env():
    """Set up test environment variables."""
    os.environ["SUPABASE_URL"] = "https://test.supabase.co"
    os.environ["SUPABASE_SERVICE_ROLE_KEY"] = "test-key"
    os.environ["OPENAI_API_KEY"] = "test-openai-key"
    os.environ["BRANCHCHAT_ENV"] = "test"
    os.environ["STORE_BACKEND"] = "memory"


@pytest.fixture(autouse=True)
def reset_singletons():
    """Drop cached stores, backends and the broker between tests."""
    from branchchat.core.config import get_settings
    from branchchat.core.stream_broker import get_stream_broker
    from branchchat.db.blob_store import get_blob_store
    from branchchat.db.conversation_state import get_state_backend

    yield

    reset_conversation_stores()
    get_state_backend.cache_clear()
    get_blob_store.cache_clear()
    get_stream_broker.cache_clear()
    get_settings.cache_clear()


@pytest.fixture
def memory_backend() -> MemoryStateBackend:
    return MemoryStateBackend()


@pytest.fixture
def store(memory_backend) -> ConversationGraphStore:
    return ConversationGraphStore("conv-1", backend=memory_backend)
