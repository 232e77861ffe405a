"""
Shared fixtures for Users service tests.
"""

import asyncio
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import pytest

from shared.errors import CacheDegradedError, ConflictError, StoreUnavailableError
from service_users.app.models import User


class FakeStore:
    """In-memory stand-in for UserStore with PostgreSQL-like semantics."""

    def __init__(self):
        self.rows: Dict[int, User] = {}
        self.next_id = 1
        self.select_all_calls = 0
        self.unavailable = False
        # When set, the next select_all snapshots rows, then waits on the gate
        self.select_all_gate: Optional[asyncio.Event] = None

    def _check_available(self):
        if self.unavailable:
            raise StoreUnavailableError("Store unavailable", {"operation": "test"})

    def _check_email(self, email: str, exclude_id: Optional[int] = None):
        for row in self.rows.values():
            if row.email == email and row.id != exclude_id:
                raise ConflictError("A user with this email already exists")

    async def insert(self, name: str, email: str) -> User:
        self._check_available()
        self._check_email(email)
        user = User(id=self.next_id, name=name, email=email, created_at=datetime.now(timezone.utc))
        self.rows[user.id] = user
        self.next_id += 1
        return user

    async def select_all(self) -> List[User]:
        self._check_available()
        self.select_all_calls += 1
        snapshot = [self.rows[key] for key in sorted(self.rows)]
        gate, self.select_all_gate = self.select_all_gate, None
        if gate is not None:
            await gate.wait()
        return snapshot

    async def select_by_id(self, user_id: int) -> Optional[User]:
        self._check_available()
        return self.rows.get(user_id)

    async def update(self, user_id: int, name: str, email: str) -> Optional[User]:
        self._check_available()
        current = self.rows.get(user_id)
        if current is None:
            return None
        self._check_email(email, exclude_id=user_id)
        user = User(id=user_id, name=name, email=email, created_at=current.created_at)
        self.rows[user_id] = user
        return user

    async def delete_by_id(self, user_id: int) -> Optional[User]:
        self._check_available()
        return self.rows.pop(user_id, None)


class FakeCache:
    """In-memory stand-in for RedisCache that records every call."""

    def __init__(self):
        self.entries: Dict[str, Tuple[bytes, int]] = {}
        self.gets: List[str] = []
        self.sets: List[Tuple[str, int]] = []
        self.deletes: List[str] = []
        self.fail_get = False
        self.fail_set = False
        self.fail_delete = False

    async def get(self, key: str) -> Optional[bytes]:
        self.gets.append(key)
        if self.fail_get:
            raise CacheDegradedError("Redis not connected", {"command": "get"})
        entry = self.entries.get(key)
        return entry[0] if entry else None

    async def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        self.sets.append((key, ttl_seconds))
        if self.fail_set:
            raise CacheDegradedError("Redis not connected", {"command": "set"})
        self.entries[key] = (value, ttl_seconds)

    async def delete(self, key: str) -> int:
        self.deletes.append(key)
        if self.fail_delete:
            raise CacheDegradedError("Redis not connected", {"command": "delete"})
        return 1 if self.entries.pop(key, None) else 0

    def expire(self, key: str):
        """Simulate TTL expiry."""
        self.entries.pop(key, None)


class DummyMetrics:
    """Minimal metrics collector stub."""

    def __init__(self):
        self.counters = []
        self.gauges = []

    def increment_counter(self, metric_name: str, **labels):
        self.counters.append((metric_name, labels))

    def set_gauge(self, metric_name: str, value: float, **labels):
        self.gauges.append((metric_name, value, labels))

    def count(self, metric_name: str, **labels) -> int:
        return sum(
            1 for name, recorded in self.counters
            if name == metric_name and all(recorded.get(k) == v for k, v in labels.items())
        )


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def cache():
    return FakeCache()


@pytest.fixture
def metrics():
    return DummyMetrics()
