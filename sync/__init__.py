"""
Sync package: backing stores for sessions, scores, users and groups.

Provides the FocusStore protocol, an in-memory store and a
Supabase-backed store, plus ``create_store`` to pick one from config.
"""

import logging

import config
from sync.store import ConditionalCheckFailed, FocusStore, InMemoryStore

logger = logging.getLogger(__name__)


async def create_store(backend: str = "") -> FocusStore:
    """
    Create the backing store selected by STORE_BACKEND.

    Supported backends: "memory" (default), "supabase".

    Args:
        backend: Override for config.STORE_BACKEND.

    Returns:
        A FocusStore implementation.
    """
    backend = (backend or config.STORE_BACKEND).lower()

    if backend == "supabase":
        from sync.supabase_client import SupabaseStore
        logger.info("Using Supabase store")
        return await SupabaseStore.connect()
    if backend != "memory":
        logger.warning(f"Unknown store backend '{backend}', defaulting to memory. "
                       f"Supported backends: 'memory', 'supabase'")
    logger.info("Using in-memory store")
    return InMemoryStore()


__all__ = ["ConditionalCheckFailed", "FocusStore", "InMemoryStore", "create_store"]
