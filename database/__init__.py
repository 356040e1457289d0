"""
Database layer — ticket cache and archive persistence.

Cache backends:
  - Redis (durable primary, TTL-bound payloads)
  - In-memory (dict-based secondary, development/testing)
  - Failover (Redis primary → in-memory secondary, sticky)

Archive:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)

Quick start:
  from database import create_store
  store = create_store({"backend": "memory"})
  ticket = await store.get("ticket-id")
"""
from database.models import Base, ArchivedTicketRow
from database.session import ArchiveDatabase
from database.store_base import BaseTicketStore, CacheKeys
from database.store_memory import InMemoryTicketStore
from database.store_redis import RedisTicketStore
from database.store_failover import CacheHealth, FailoverTicketStore
from database.store_factory import create_store

__all__ = [
    # ORM models
    "Base", "ArchivedTicketRow",
    # Session management
    "ArchiveDatabase",
    # Store interface
    "BaseTicketStore", "CacheKeys",
    # Store backends
    "InMemoryTicketStore", "RedisTicketStore",
    "FailoverTicketStore", "CacheHealth",
    # Factory
    "create_store",
]
