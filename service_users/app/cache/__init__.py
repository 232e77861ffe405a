"""
Cache package for the Users service.

Provides a Redis client whose connection is watched by a background
supervisor. The cache only ever holds derived data and may be flushed at
any time.
"""

from .redis_cache import ConnectionState, RedisCache

__all__ = ["ConnectionState", "RedisCache"]
