"""
Database layer — record persistence for calls, runs and knowledge bases.

Quick start:
  from database import create_store, get_store
  store = create_store({"store_backend": "memory"})
  call = await store.get_call("abc123")
"""
from database.store_base import BaseRecordStore, NotFoundError
from database.store_memory import InMemoryRecordStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    "BaseRecordStore", "NotFoundError",
    "InMemoryRecordStore",
    "create_store", "get_store", "reset_store",
]
