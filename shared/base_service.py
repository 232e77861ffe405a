"""
Base service class for HTTP services.
"""

from fastapi import FastAPI, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST
from typing import Dict, Any, Tuple
import time
import os

from shared.config import get_config
from shared.logging import configure_logging, get_logger, set_request_id, clear_context
from shared.metrics import get_metrics_collector
from shared.errors import ServiceException, ValidationError


class BaseService:
    """Base service class with common functionality."""

    def __init__(self, service_name: str):
        self.service_name = service_name
        self.config = get_config(service_name)
        self.port = self.config.port

        configure_logging(service_name, self.config.log_level)

        self.logger = get_logger(service_name)
        self.metrics = get_metrics_collector(service_name)
        self._start_time = time.time()

        self.app = self._create_app()
        self._setup_middleware()
        self._setup_routes()

    def _create_app(self) -> FastAPI:
        """Create FastAPI application."""
        return FastAPI(
            title=f"{self.service_name.title()} Service",
            description=f"{self.service_name.title()} API backed by PostgreSQL with a Redis collection cache",
            version="1.0.0",
            docs_url="/docs" if self.config.env == "local" else None,
            redoc_url="/redoc" if self.config.env == "local" else None,
        )

    def _setup_middleware(self):
        """Set up middleware."""

        allow_all = self.config.env == "local" or "*" in self.config.cors_origins
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"] if allow_all else self.config.cors_origins,
            allow_credentials=not allow_all,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        @self.app.middleware("http")
        async def add_request_context(request: Request, call_next):
            request_id = set_request_id(request.headers.get("X-Request-ID"))
            # Unhandled errors are rendered after this middleware has cleared the context
            request.state.request_id = request_id
            start_time = time.time()

            try:
                response = await call_next(request)

                duration = time.time() - start_time
                route = request.scope.get("route")
                endpoint = getattr(route, "path", request.url.path)

                self.metrics.record_http_request(
                    method=request.method,
                    endpoint=endpoint,
                    status_code=response.status_code,
                    duration=duration
                )

                self.logger.info(
                    "HTTP request",
                    method=request.method,
                    path=request.url.path,
                    status_code=response.status_code,
                    duration_ms=round(duration * 1000, 2)
                )

                response.headers["X-Request-ID"] = request_id
                return response
            finally:
                clear_context()

    def _setup_routes(self):
        """Set up common routes."""

        @self.app.get("/health")
        async def health_check():
            """Health check endpoint."""
            try:
                status, dependencies = await self._check_dependencies()
            except Exception as e:
                self.logger.error("Health check failed", error=str(e))
                self.metrics.record_health_check("error")
                return JSONResponse(
                    status_code=503,
                    content={
                        "service": self.service_name,
                        "status": "error",
                        "error": str(e)
                    }
                )

            self.metrics.record_health_check(status)
            body = {
                "service": self.service_name,
                "status": status,
                "uptime_seconds": self._get_uptime(),
                "dependencies": dependencies,
                "version": "1.0.0",
                "commit": os.getenv("GIT_COMMIT", "unknown")
            }
            if status == "error":
                return JSONResponse(status_code=503, content=body)
            return body

        @self.app.get("/metrics")
        async def metrics_endpoint():
            """Prometheus metrics endpoint."""
            return Response(
                content=self.metrics.export(),
                media_type=CONTENT_TYPE_LATEST
            )

        @self.app.exception_handler(ServiceException)
        async def service_exception_handler(request: Request, exc: ServiceException):
            """Render ServiceException subclasses with their status code."""
            log = self.logger.error if exc.status_code >= 500 else self.logger.info
            log(
                "Service error",
                code=exc.code,
                message=exc.message,
                details=exc.details,
                path=request.url.path
            )
            self.metrics.record_error(exc.code)
            return JSONResponse(
                status_code=exc.status_code,
                content=exc.to_response().model_dump()
            )

        @self.app.exception_handler(RequestValidationError)
        async def request_validation_handler(request: Request, exc: RequestValidationError):
            """Render request validation failures in the shared error format."""
            error = ValidationError(
                "Request validation failed",
                {"errors": jsonable_encoder(exc.errors())}
            )
            return await service_exception_handler(request, error)

        @self.app.exception_handler(Exception)
        async def general_exception_handler(request: Request, exc: Exception):
            """Handle general exceptions."""
            request_id = getattr(request.state, "request_id", None)
            self.logger.error("Unhandled exception", error=str(exc), request_id=request_id, exc_info=True)
            self.metrics.record_error("INTERNAL_ERROR")
            error = ServiceException("INTERNAL_ERROR", "Internal server error")
            headers = {"X-Request-ID": request_id} if request_id else None
            return JSONResponse(
                status_code=500,
                content=error.to_response(request_id).model_dump(),
                headers=headers
            )

    async def _check_dependencies(self) -> Tuple[str, Dict[str, Any]]:
        """Return overall status ("ok", "degraded", "error") and per-dependency detail.

        Override in subclasses.
        """
        return "ok", {}

    def _get_uptime(self) -> float:
        """Get service uptime in seconds."""
        return time.time() - self._start_time

    def run(self):
        """Run the service."""
        import uvicorn
        uvicorn.run(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level=self.config.log_level.lower()
        )
