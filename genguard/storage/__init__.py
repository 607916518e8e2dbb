"""Storage layer for genguard."""

from .redis_store import RedisStore, get_redis_store, reset_redis_store

__all__ = [
    "RedisStore",
    "get_redis_store",
    "reset_redis_store",
]
