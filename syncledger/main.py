"""FastAPI application wiring for the connector sync service.

- Loads ``.env`` and builds :class:`RecoverySettings` once.
- Creates the SQLAlchemy session factory from ``DATABASE_URL`` (unless one is
  injected, as the tests do).
- Shares one :class:`RecoveryMetrics`, ledger and state store through
  ``app.state``.
- Configures logging and exposes Prometheus metrics (HTTP plus recovery counters) at
  ``/api/metrics``.
"""

from __future__ import annotations

import logging

from dotenv import load_dotenv
from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy.orm import Session, sessionmaker

from .__version__ import __build_date__, __commit_sha__, __version__
from .app_logging import init_logging
from .connectors import ErrorRecoveryLedger, RecoveryMetrics, SyncStateStore
from .core.config import RecoverySettings, get_recovery_settings
from .models.session import get_sessionmaker
from .routers import connectors

logger = logging.getLogger(__name__)


def create_app(
    *,
    session_factory: sessionmaker[Session] | None = None,
    settings: RecoverySettings | None = None,
    metrics: RecoveryMetrics | None = None,
) -> FastAPI:
    """Build the application; arguments override environment-derived defaults."""

    load_dotenv()
    settings = settings or get_recovery_settings()
    metrics = metrics or RecoveryMetrics()

    app = FastAPI(title="syncledger", version=__version__)
    init_logging(app)

    app.state.settings = settings
    app.state.session_factory = session_factory or get_sessionmaker()
    app.state.recovery_metrics = metrics
    app.state.ledger = ErrorRecoveryLedger(settings, metrics=metrics)
    app.state.state_store = SyncStateStore()
    app.include_router(connectors.router)

    @app.get("/api/health")
    def health() -> dict[str, object]:
        return {
            "status": "ok",
            "version": __version__,
            "build_date": __build_date__,
            "commit_sha": __commit_sha__,
        }

    # HTTP metrics share the per-app registry with the recovery counters.
    Instrumentator(registry=metrics.registry).instrument(app).expose(
        app, include_in_schema=False, endpoint="/api/metrics"
    )
    logger.info(
        "syncledger started (max_attempts=%s, retry_base_seconds=%s)",
        settings.max_attempts,
        settings.retry_base_seconds,
    )
    return app
