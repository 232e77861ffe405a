"""
Users Service package.

Exposes a collection of user records over HTTP. PostgreSQL is the source
of truth; Redis holds a disposable snapshot of the full collection.

- app.main: FastAPI app, routes, and lifecycle wiring.
- app.directory: cache-aside coordination of reads and writes.
- app.cache: supervised Redis client.
- app.persistence: PostgreSQL persistence for user rows.
- app.models: User row and request/response models.
"""
