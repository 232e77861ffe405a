"""
Users service: CRUD over PostgreSQL with a Redis collection cache.
"""

from typing import Any, Dict, List, Tuple

from fastapi import Path, status

from shared.base_service import BaseService
from shared.errors import ErrorResponse

from .cache.redis_cache import RedisCache
from .directory.service import UserDirectory
from .models import UserResponse, UserWriteRequest
from .persistence.postgres import UserStore


USER_ERROR_RESPONSES: Dict[int, Dict[str, Any]] = {
    404: {"model": ErrorResponse, "description": "User not found"},
    409: {"model": ErrorResponse, "description": "Email already in use"},
}


class UsersService(BaseService):
    """Users service implementation."""

    def __init__(self):
        super().__init__("users")

        self.persistence = UserStore(
            self.config.postgres_dsn,
            min_size=self.config.postgres_min_pool_size,
            max_size=self.config.postgres_max_pool_size,
            command_timeout=self.config.postgres_command_timeout,
            connect_attempts=self.config.postgres_connect_attempts,
        )
        self.cache = RedisCache(
            self.config.redis_url,
            connect_timeout=self.config.redis_connect_timeout,
            socket_timeout=self.config.redis_socket_timeout,
            health_check_interval=self.config.redis_health_check_interval,
            reconnect_base_delay=self.config.redis_reconnect_base_delay,
            reconnect_max_delay=self.config.redis_reconnect_max_delay,
            max_reconnect_attempts=self.config.redis_reconnect_max_attempts,
            metrics=self.metrics,
        )
        self.directory = UserDirectory(
            self.persistence,
            self.cache,
            collection_key=self.config.cache_key,
            collection_ttl_seconds=self.config.cache_ttl_seconds,
            single_flight=self.config.list_single_flight,
            metrics=self.metrics,
        )

        @self.app.on_event("startup")
        async def _startup():
            await self.start()

        @self.app.on_event("shutdown")
        async def _shutdown():
            await self.stop()

        self._setup_users_routes()

        # Expose service instance via app state for introspection/testing
        self.app.state.users_service = self

    def _setup_users_routes(self):
        """Set up users-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "users",
                "message": "Users API with PostgreSQL and Redis cache",
                "version": "1.0.0",
                "capabilities": ["persistence", "caching"]
            }

        @self.app.get("/users", response_model=List[UserResponse], tags=["Users"])
        async def list_users():
            """Return all users ordered by id (served from the Redis cache when warm)."""
            users = await self.directory.list_users()
            return [UserResponse.from_user(user) for user in users]

        @self.app.get(
            "/users/{user_id}",
            response_model=UserResponse,
            responses={404: USER_ERROR_RESPONSES[404]},
            tags=["Users"],
        )
        async def get_user(user_id: int = Path(..., description="User ID")):
            """Fetch a user by id."""
            user = await self.directory.get_user(user_id)
            return UserResponse.from_user(user)

        @self.app.post(
            "/users",
            response_model=UserResponse,
            status_code=status.HTTP_201_CREATED,
            responses={409: USER_ERROR_RESPONSES[409]},
            tags=["Users"],
        )
        async def create_user(request: UserWriteRequest):
            """Create a user and invalidate the collection cache."""
            user = await self.directory.create_user(request.name, request.email)
            return UserResponse.from_user(user)

        @self.app.put(
            "/users/{user_id}",
            response_model=UserResponse,
            responses=USER_ERROR_RESPONSES,
            tags=["Users"],
        )
        async def update_user(request: UserWriteRequest, user_id: int = Path(..., description="User ID")):
            """Replace a user's name and email and invalidate the collection cache."""
            user = await self.directory.update_user(user_id, request.name, request.email)
            return UserResponse.from_user(user)

        @self.app.delete(
            "/users/{user_id}",
            response_model=UserResponse,
            responses={404: USER_ERROR_RESPONSES[404]},
            tags=["Users"],
        )
        async def delete_user(user_id: int = Path(..., description="User ID")):
            """Delete a user, returning the removed row, and invalidate the collection cache."""
            user = await self.directory.delete_user(user_id)
            return UserResponse.from_user(user)

    async def _check_dependencies(self) -> Tuple[str, Dict[str, Any]]:
        """Check users service dependencies.

        The store is required; a missing cache only degrades the service.
        Redis is reported from the supervisor's state rather than pinged here.
        """
        postgres_ok = await self.persistence.health_check()
        redis_ok = self.cache.is_available

        dependencies = {
            "postgres": "ok" if postgres_ok else "error",
            "redis": "ok" if redis_ok else "error",
            "cache_connection": self.cache.get_status(),
        }

        if not postgres_ok:
            return "error", dependencies
        if not redis_ok:
            return "degraded", dependencies
        return "ok", dependencies

    async def start(self):
        """Start users service components."""
        await self.persistence.start()
        await self.cache.start()
        self.logger.info("Users service started", cache_state=self.cache.state.value)

    async def stop(self):
        """Stop users service components."""
        await self.cache.stop()
        await self.persistence.stop()
        self.logger.info("Users service stopped")


def create_app():
    """Create users service application."""
    service = UsersService()
    return service.app


def main():
    """Run the users service with uvicorn."""
    service = UsersService()
    service.run()


if __name__ == "__main__":
    main()
