"""
Store Factory — Create the record store backend from configuration.

Only the in-memory backend ships today. Horizontal scaling needs an
external backend implementing BaseRecordStore; selection happens here.

Usage:
    from database.store_factory import create_store, get_store
    store = create_store({"store_backend": "memory"})
    store = get_store()              # Get singleton instance
"""
from __future__ import annotations

import structlog
from typing import Optional

from database.store_base import BaseRecordStore

logger = structlog.get_logger()

_instance: Optional[BaseRecordStore] = None


def create_store(config: dict = None) -> BaseRecordStore:
    """
    Factory: create the record store backend.

    Args:
        config: dict with keys:
            store_backend: "memory"  (default: "memory")
    """
    global _instance
    if _instance is not None:
        return _instance

    config = config or {}
    backend = config.get("store_backend", "memory")

    if backend != "memory":
        raise ValueError(f"Unsupported store backend: {backend}. Supported: memory")

    from database.store_memory import InMemoryRecordStore
    _instance = InMemoryRecordStore()
    logger.info("store_created", backend="memory")
    return _instance


def get_store() -> BaseRecordStore:
    """Return the singleton store instance, creating a memory store if none exists."""
    global _instance
    if _instance is None:
        _instance = create_store()
    return _instance


def reset_store() -> None:
    """Reset the singleton (for testing)."""
    global _instance
    _instance = None
