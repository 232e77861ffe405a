"""
Redis caching layer for the Users service.
"""

import asyncio
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError, TimeoutError as RedisTimeoutError

from shared.errors import CacheDegradedError
from shared.logging import get_logger
from shared.retry import RetryConfig, calculate_delay

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


class ConnectionState(str, Enum):
    """Observable state of the Redis connection."""
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"
    CLOSED = "closed"


# Errors that mean the connection itself is unhealthy, not just one command
CONNECTION_ERRORS = (RedisConnectionError, RedisTimeoutError, OSError, asyncio.TimeoutError)


class RedisCache:
    """Redis client with a supervised connection.

    ``get``/``set``/``delete`` raise ``CacheDegradedError`` on any failure and
    fail fast while the connection is not ``CONNECTED``. A background
    supervisor pings Redis, and after a connection error retries with capped
    exponential backoff until it recovers (or, when ``max_reconnect_attempts``
    is set, gives up and moves to ``FAILED``).
    """

    def __init__(
        self,
        redis_url: str,
        *,
        connect_timeout: float = 10.0,
        socket_timeout: float = 5.0,
        health_check_interval: float = 10.0,
        reconnect_base_delay: float = 0.05,
        reconnect_max_delay: float = 3.0,
        max_reconnect_attempts: int = 0,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.redis_url = redis_url
        self.connect_timeout = connect_timeout
        self.socket_timeout = socket_timeout
        self.health_check_interval = health_check_interval
        self.max_reconnect_attempts = max_reconnect_attempts
        self.backoff = RetryConfig(
            base_delay=reconnect_base_delay,
            max_delay=reconnect_max_delay,
            jitter=True,
        )
        self.metrics = metrics
        self.logger = get_logger("users.cache.redis")
        self.redis: Optional[redis.Redis] = None

        self._state = ConnectionState.CLOSED
        self._reconnect_attempts = 0
        self._last_error: Optional[str] = None
        self._wake = asyncio.Event()
        self._supervisor_task: Optional[asyncio.Task] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_available(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    async def start(self):
        """Create the client and start the connection supervisor.

        A Redis that is down at startup is not fatal: the supervisor keeps
        retrying in the background and cache calls degrade until it connects.
        """
        self.redis = redis.from_url(
            self.redis_url,
            socket_connect_timeout=self.connect_timeout,
            socket_timeout=self.socket_timeout,
            socket_keepalive=True,
        )
        self._set_state(ConnectionState.CONNECTING)

        if await self._ping():
            self._set_state(ConnectionState.CONNECTED)
            self.logger.info("Redis cache started")
        else:
            self._set_state(ConnectionState.RECONNECTING)
            self.logger.warning("Redis unavailable at startup, reconnecting in background", error=self._last_error)

        self._supervisor_task = asyncio.create_task(self._supervise())

    async def stop(self):
        """Stop the supervisor and close the client."""
        task, self._supervisor_task = self._supervisor_task, None
        if task:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if self.redis:
            await self.redis.aclose()
            self.redis = None
            self.logger.info("Redis cache stopped")

        self._set_state(ConnectionState.CLOSED)

    async def get(self, key: str) -> Optional[bytes]:
        """Return the raw value for ``key`` or ``None`` when absent."""
        return await self._call("get", key)

    async def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        """Store ``value`` under ``key`` expiring after ``ttl_seconds``."""
        await self._call("set", key, value, ex=ttl_seconds)

    async def delete(self, key: str) -> int:
        """Delete ``key``; returns the number of keys removed."""
        return await self._call("delete", key)

    def get_status(self) -> Dict[str, Any]:
        """Connection state for health reporting."""
        return {
            "state": self._state.value,
            "reconnect_attempts": self._reconnect_attempts,
            "last_error": self._last_error,
        }

    async def _call(self, command: str, *args, **kwargs) -> Any:
        if self.redis is None or not self.is_available:
            raise CacheDegradedError(
                "Redis not connected",
                {"command": command, "state": self._state.value},
            )

        try:
            return await getattr(self.redis, command)(*args, **kwargs)
        except CONNECTION_ERRORS as e:
            self._connection_lost(str(e))
            raise CacheDegradedError("Redis connection error", {"command": command, "error": str(e)}) from e
        except RedisError as e:
            raise CacheDegradedError("Redis command failed", {"command": command, "error": str(e)}) from e

    async def _ping(self) -> bool:
        try:
            await self.redis.ping()
            return True
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            self._last_error = str(e)
            return False

    def _connection_lost(self, error: str):
        """Mark the connection as lost and wake the supervisor."""
        self._last_error = error
        if self._state == ConnectionState.CONNECTED:
            self.logger.warning("Redis connection lost, reconnecting", error=error)
            self._set_state(ConnectionState.RECONNECTING)
            self._wake.set()

    async def _supervise(self):
        """Keep the connection healthy until stopped or reconnects are exhausted."""
        while True:
            if self._state == ConnectionState.CONNECTED:
                await self._wait_for_wake(self.health_check_interval)
                if self._state == ConnectionState.CONNECTED and not await self._ping():
                    self._connection_lost(self._last_error or "health check failed")
                continue

            delay = await self._attempt_reconnect()
            if delay is None:
                if self._state == ConnectionState.FAILED:
                    return
                continue
            await asyncio.sleep(delay)

    async def _attempt_reconnect(self) -> Optional[float]:
        """Try one reconnect.

        Returns ``None`` when the connection is restored or reconnects are
        exhausted, otherwise the delay to wait before the next attempt.
        """
        self._reconnect_attempts += 1

        if await self._ping():
            self.logger.info("Reconnected to Redis", attempts=self._reconnect_attempts)
            self._reconnect_attempts = 0
            self._last_error = None
            self._set_state(ConnectionState.CONNECTED)
            return None

        if self.max_reconnect_attempts and self._reconnect_attempts >= self.max_reconnect_attempts:
            self.logger.error(
                "Giving up reconnecting to Redis",
                attempts=self._reconnect_attempts,
                error=self._last_error,
            )
            self._set_state(ConnectionState.FAILED)
            return None

        delay = calculate_delay(self._reconnect_attempts, self.backoff)
        self.logger.debug(
            "Redis reconnect attempt failed",
            attempt=self._reconnect_attempts,
            delay=delay,
            error=self._last_error,
        )
        return delay

    async def _wait_for_wake(self, timeout: float):
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        self._wake.clear()

    def _set_state(self, state: ConnectionState):
        self._state = state
        if self.metrics:
            for candidate in ConnectionState:
                self.metrics.set_gauge(
                    "cache_connection_state",
                    1.0 if candidate == state else 0.0,
                    state=candidate.value,
                )
