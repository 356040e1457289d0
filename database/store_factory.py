"""
Store Factory — Create the right ticket cache backend from configuration.

Configuration in settings.yaml:
    cache:
      #   "memory"  in-memory only (development, testing)
      #   "redis"   Redis primary with in-memory failover (production)
      backend: "redis"
      redis_url: "redis://localhost:6379"
      key_prefix: "TicketSystem:"
      ttl_days: 7

Usage:
    from database.store_factory import create_store
    store = create_store(config)

Each call builds a new store; the composition root owns the instance.
"""
from __future__ import annotations

import structlog
from datetime import timedelta

from database.store_base import BaseTicketStore
from database.store_failover import FailoverTicketStore
from database.store_memory import InMemoryTicketStore

logger = structlog.get_logger()


def create_store(config: dict = None) -> BaseTicketStore:
    """
    Factory: create the appropriate ticket store backend.

    Args:
        config: dict with keys:
            backend: "redis" | "memory"  (default: "memory")
            redis_url: str (empty → start degraded on the secondary)
            key_prefix: str
            ttl_days: int
            io_timeout_seconds: float
    """
    config = config or {}
    backend = config.get("backend", "memory")
    prefix = config.get("key_prefix", "TicketSystem:")

    if backend == "redis":
        from database.store_redis import RedisTicketStore
        redis_url = config.get("redis_url", "")
        primary = RedisTicketStore(
            redis_url=redis_url or "redis://localhost:6379",
            key_prefix=prefix,
            ttl=timedelta(days=config.get("ttl_days", 7)),
            socket_timeout=config.get("io_timeout_seconds", 5.0),
        )
        store = FailoverTicketStore(
            primary=primary,
            secondary=InMemoryTicketStore(key_prefix=prefix),
            start_degraded=not redis_url,
        )
        logger.info("store_created", backend="redis", failover="memory")
        return store

    logger.info("store_created", backend="memory")
    return InMemoryTicketStore(key_prefix=prefix)
