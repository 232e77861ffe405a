"""
User directory: cache-aside coordination between Redis and PostgreSQL.
"""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING, Any, List, Optional

from shared.errors import CacheDegradedError, NotFoundError
from shared.logging import bind_operation, get_logger

from ..models import User

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector
    from ..cache.redis_cache import RedisCache
    from ..persistence.postgres import UserStore


DEFAULT_COLLECTION_KEY = "users:all"
DEFAULT_COLLECTION_TTL = 60


class UserDirectory:
    """Coordinates Redis cache reads and PostgreSQL lookups for users.

    Only the full, id-ordered collection is cached. Reads by id always go to
    the store. Writes go to the store first and, once the store has returned
    the affected row, delete the collection key so the next list recomputes
    it. Cache failures are logged and never reach the caller; store errors
    (``NotFoundError``, ``ConflictError``, ``StoreUnavailableError``)
    propagate unchanged.
    """

    def __init__(
        self,
        store: "UserStore",
        cache: "RedisCache",
        *,
        collection_key: str = DEFAULT_COLLECTION_KEY,
        collection_ttl_seconds: int = DEFAULT_COLLECTION_TTL,
        single_flight: bool = True,
        metrics: Optional["MetricsCollector"] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.collection_key = collection_key
        self.collection_ttl_seconds = collection_ttl_seconds
        self.single_flight = single_flight
        self.metrics = metrics
        self.logger = get_logger("users.directory")

        # Bumped on every invalidation; a load that started under an older
        # generation must not write its snapshot back to the cache.
        self._generation = 0
        self._inflight: Optional[asyncio.Future] = None

    async def list_users(self) -> List[User]:
        """Return all users ordered by id, from cache when possible."""
        with bind_operation("list_users"):
            cached = await self._read_collection()
            if cached is not None:
                self._count("cache_hits_total", cache_type="users_collection")
                self.logger.debug("Cache hit", key=self.collection_key, count=len(cached))
                return cached

            self._count("cache_misses_total", cache_type="users_collection")
            self.logger.debug("Cache miss", key=self.collection_key)

            if not self.single_flight:
                return await self._load_collection()

            if self._inflight is None:
                self._inflight = asyncio.ensure_future(self._load_collection())
                self._inflight.add_done_callback(self._clear_inflight)
            return list(await asyncio.shield(self._inflight))

    async def get_user(self, user_id: int) -> User:
        """Return one user straight from the store."""
        with bind_operation("get_user"):
            user = await self._store_call("select_by_id", self.store.select_by_id(user_id))
            if user is None:
                raise NotFoundError("User not found", {"id": user_id})
            return user

    async def create_user(self, name: str, email: str) -> User:
        with bind_operation("create_user"):
            user = await self._store_call("insert", self.store.insert(name, email))
            await self._invalidate_collection("create", user.id)
            self.logger.info("User created", user_id=user.id)
            return user

    async def update_user(self, user_id: int, name: str, email: str) -> User:
        with bind_operation("update_user"):
            user = await self._store_call("update", self.store.update(user_id, name, email))
            if user is None:
                raise NotFoundError("User not found", {"id": user_id})
            await self._invalidate_collection("update", user_id)
            self.logger.info("User updated", user_id=user_id)
            return user

    async def delete_user(self, user_id: int) -> User:
        with bind_operation("delete_user"):
            user = await self._store_call("delete", self.store.delete_by_id(user_id))
            if user is None:
                raise NotFoundError("User not found", {"id": user_id})
            await self._invalidate_collection("delete", user_id)
            self.logger.info("User deleted", user_id=user_id)
            return user

    async def _load_collection(self) -> List[User]:
        """Read the collection from the store and repopulate the cache."""
        generation = self._generation
        users = await self._store_call("select_all", self.store.select_all())

        if generation != self._generation:
            self.logger.debug(
                "Skipping cache populate, collection invalidated during load",
                key=self.collection_key,
            )
            return users

        payload = json.dumps([user.to_dict() for user in users]).encode("utf-8")
        try:
            await self.cache.set(self.collection_key, payload, self.collection_ttl_seconds)
        except CacheDegradedError as exc:
            self._count("cache_errors_total", operation="set")
            self.logger.warning("Cache populate failed", key=self.collection_key, error=exc.message, details=exc.details)
        return users

    async def _read_collection(self) -> Optional[List[User]]:
        """Read and decode the cached collection; any failure counts as a miss."""
        try:
            value = await self.cache.get(self.collection_key)
        except CacheDegradedError as exc:
            self._count("cache_errors_total", operation="get")
            self.logger.warning("Cache read failed", key=self.collection_key, error=exc.message, details=exc.details)
            return None

        if value is None:
            return None

        try:
            return [User.from_dict(item) for item in json.loads(value)]
        except (TypeError, ValueError, KeyError) as exc:
            self.logger.warning("Discarding malformed cache payload", key=self.collection_key, error=str(exc))
            return None

    async def _invalidate_collection(self, operation: str, user_id: int) -> None:
        """Drop the collection snapshot after a committed write."""
        self._generation += 1
        # Reads issued from here on must not join a load that saw pre-write data
        self._inflight = None

        try:
            await self.cache.delete(self.collection_key)
        except CacheDegradedError as exc:
            self._count("cache_errors_total", operation="delete")
            self._count("cache_invalidations_total", result="error")
            self.logger.error(
                "Cache invalidation failed, collection may be stale until TTL expiry",
                key=self.collection_key,
                operation=operation,
                user_id=user_id,
                ttl_seconds=self.collection_ttl_seconds,
                error=exc.message,
            )
            return

        self._count("cache_invalidations_total", result="ok")

    async def _store_call(self, operation: str, call: Any) -> Any:
        try:
            result = await call
        except Exception:
            self._count("store_operations_total", operation=operation, result="error")
            raise
        self._count("store_operations_total", operation=operation, result="ok")
        return result

    def _clear_inflight(self, future: asyncio.Future) -> None:
        if self._inflight is future:
            self._inflight = None
        # Retrieve the exception so an unawaited failure is not reported as lost
        if not future.cancelled():
            future.exception()

    def _count(self, metric_name: str, **labels) -> None:
        if self.metrics:
            self.metrics.increment_counter(metric_name, **labels)
