"""
PostgreSQL persistence layer for the Users service.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, List, Mapping, Optional

import asyncpg

from shared.errors import ConflictError, StoreUnavailableError
from shared.logging import get_logger
from shared.retry import RetryConfig, RetryError, retry_on_exception

from ..models import User


# Driver-level failures that mean the store cannot answer right now
STORE_FAILURES = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)

# Range of the SERIAL (int4) id column
MIN_USER_ID = -2 ** 31
MAX_USER_ID = 2 ** 31 - 1


class UserStore:
    """Source of truth for user rows.

    Every mutating statement uses ``RETURNING *`` so callers get the affected
    row back, or ``None`` when the id did not match anything.
    """

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 2,
        max_size: int = 10,
        command_timeout: float = 30.0,
        connect_attempts: int = 5,
    ):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self.connect_retry = RetryConfig(max_attempts=connect_attempts, base_delay=0.5, max_delay=10.0)
        self.logger = get_logger("users.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Create the connection pool and ensure the table exists."""
        create_pool = retry_on_exception(STORE_FAILURES, self.connect_retry)(self._create_pool)
        try:
            self.pool = await create_pool()
        except RetryError as e:
            self.logger.error("Failed to start PostgreSQL persistence", error=str(e.last_exception))
            raise StoreUnavailableError(
                "Could not connect to PostgreSQL",
                {"attempts": e.attempts, "error": str(e.last_exception)},
            ) from e

        await self.create_table()
        self.logger.info("PostgreSQL persistence started")

    async def stop(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("PostgreSQL persistence stopped")

    async def _create_pool(self) -> asyncpg.Pool:
        return await asyncpg.create_pool(
            self.dsn,
            min_size=self.min_size,
            max_size=self.max_size,
            command_timeout=self.command_timeout
        )

    async def create_table(self):
        """Create the users table if it does not exist."""
        await self._execute("create_table", """
            CREATE TABLE IF NOT EXISTS users (
                id SERIAL PRIMARY KEY,
                name VARCHAR(100) NOT NULL,
                email VARCHAR(100) UNIQUE NOT NULL,
                created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
            );
        """)
        self.logger.info("Users table ready")

    async def insert(self, name: str, email: str) -> User:
        """Insert a user and return the stored row."""
        row = await self._fetchrow(
            "insert",
            "INSERT INTO users (name, email) VALUES ($1, $2) RETURNING *",
            name, email,
        )
        return self._row_to_user(row)

    async def select_all(self) -> List[User]:
        """Return every user ordered by id ascending."""
        rows = await self._fetch("select_all", "SELECT * FROM users ORDER BY id ASC")
        return [self._row_to_user(row) for row in rows]

    async def select_by_id(self, user_id: int) -> Optional[User]:
        if not _is_storable_id(user_id):
            return None
        row = await self._fetchrow("select_by_id", "SELECT * FROM users WHERE id = $1", user_id)
        return self._row_to_user(row) if row else None

    async def update(self, user_id: int, name: str, email: str) -> Optional[User]:
        """Replace name and email; ``None`` when no row has this id."""
        if not _is_storable_id(user_id):
            return None
        row = await self._fetchrow(
            "update",
            "UPDATE users SET name = $1, email = $2 WHERE id = $3 RETURNING *",
            name, email, user_id,
        )
        return self._row_to_user(row) if row else None

    async def delete_by_id(self, user_id: int) -> Optional[User]:
        """Delete a row and return it; ``None`` when no row has this id."""
        if not _is_storable_id(user_id):
            return None
        row = await self._fetchrow("delete", "DELETE FROM users WHERE id = $1 RETURNING *", user_id)
        return self._row_to_user(row) if row else None

    async def health_check(self) -> bool:
        """Check database health."""
        if not self.pool:
            return False
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception:
            return False

    async def _execute(self, operation: str, query: str, *args) -> str:
        async with self._connection(operation) as conn:
            return await conn.execute(query, *args)

    async def _fetch(self, operation: str, query: str, *args) -> List[Any]:
        async with self._connection(operation) as conn:
            return await conn.fetch(query, *args)

    async def _fetchrow(self, operation: str, query: str, *args) -> Optional[Any]:
        async with self._connection(operation) as conn:
            return await conn.fetchrow(query, *args)

    @asynccontextmanager
    async def _connection(self, operation: str) -> AsyncIterator[asyncpg.Connection]:
        """Acquire a pooled connection and map driver errors to service errors."""
        if not self.pool:
            raise StoreUnavailableError("PostgreSQL persistence not started", {"operation": operation})

        try:
            async with self.pool.acquire() as conn:
                yield conn
        except asyncpg.UniqueViolationError as e:
            self.logger.info(
                "Unique constraint rejected write",
                operation=operation,
                constraint=e.constraint_name,
            )
            raise ConflictError(
                "A user with this email already exists",
                {"constraint": e.constraint_name},
            ) from e
        except STORE_FAILURES as e:
            self.logger.error("PostgreSQL query failed", operation=operation, error=str(e))
            raise StoreUnavailableError("Store unavailable", {"operation": operation}) from e

    def _row_to_user(self, row: Mapping[str, Any]) -> User:
        """Convert database row to User object."""
        return User(
            id=row["id"],
            name=row["name"],
            email=row["email"],
            created_at=row["created_at"],
        )


def _is_storable_id(user_id: int) -> bool:
    """Ids outside the column range cannot match a row."""
    return MIN_USER_ID <= user_id <= MAX_USER_ID
