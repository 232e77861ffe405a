"""
Shared utilities for the Users service.

This package aggregates common building blocks consumed by the service:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry decorators and backoff calculation
- base_service: FastAPI application scaffolding (health, metrics, errors)

Do not import from service_* packages into shared/.
"""
