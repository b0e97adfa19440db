"""SQLAlchemy declarative base and connector persistence models.

This package hosts the SQLAlchemy models used by the sync layer. It exposes a
single declarative ``Base`` class that migrations, tests and the session
helpers share. Individual models live in dedicated modules within this
package.
"""

from __future__ import annotations

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy declarative models."""


# Re-export the connector models so callers can write
# ``from syncledger.models import ConnectorError``.
from .connector import (  # noqa: E402
    ACTIVE_ERROR_STATUSES,
    ConnectorError,
    ConnectorSyncState,
    ErrorStatus,
    SyncStatus,
)


__all__ = [
    "ACTIVE_ERROR_STATUSES",
    "Base",
    "ConnectorError",
    "ConnectorSyncState",
    "ErrorStatus",
    "SyncStatus",
]
