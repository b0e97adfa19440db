"""Connector sync-state and error-ledger SQLAlchemy models.

The models mirror the DDL maintained in
``syncledger/migrations/001_create_connector_tables.py``. Two uniqueness rules
carry the concurrency guarantees of the sync layer:

* ``connector_sync_state`` is keyed on ``(tenant_id, connector)``.
* ``connector_errors`` allows at most one *active* row (``pending`` or
  ``retrying``) per ``(tenant_id, connector, dedupe_key)`` through the partial
  unique index ``uq_connector_errors_active``.
"""

from __future__ import annotations

import datetime as dt
import uuid
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from . import Base


class SyncStatus(str, Enum):
    """Outcome of the most recent sync attempt for a connector."""

    RUNNING = "running"
    OK = "ok"
    FAILED = "failed"


class ErrorStatus(str, Enum):
    """Lifecycle states of a deduplicated connector error."""

    PENDING = "pending"
    RETRYING = "retrying"
    DEAD_LETTER = "dead_letter"
    RESOLVED = "resolved"


ACTIVE_ERROR_STATUSES: tuple[str, ...] = (
    ErrorStatus.PENDING.value,
    ErrorStatus.RETRYING.value,
)

# Literal SQL so the partial index predicate and the ON CONFLICT target
# predicate render identically on PostgreSQL and SQLite.
ACTIVE_ERROR_PREDICATE = "status IN ('pending', 'retrying')"

_JSON = JSON().with_variant(JSONB(), "postgresql")
_ID = BigInteger().with_variant(Integer(), "sqlite")


def _utcnow() -> dt.datetime:
    """Return the current UTC timestamp with timezone awareness."""

    return dt.datetime.now(dt.timezone.utc)


class ConnectorSyncState(Base):
    """Progress marker and last-run outcome for one connector of one tenant.

    Attributes:
        tenant_id: Owning tenant.
        connector: Lower-case connector name (``chatwoot``, ``linear`` ...).
        mode: Transport used by the last run (``http`` or ``mcp``).
        cursor_ts: Timestamp watermark of the last confirmed sync.
        cursor_id: Identifier watermark paired with ``cursor_ts``.
        page_cursor: Opaque upstream page token.
        status: One of :class:`SyncStatus`.
        retry_count: Consecutive failures of the sync run itself.
        last_error: Truncated message of the last failure.
        meta: Free-form result details of the last successful run.
    """

    __tablename__ = "connector_sync_state"

    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    connector: Mapped[str] = mapped_column(String(length=64), primary_key=True)
    mode: Mapped[str] = mapped_column(
        String(length=32), nullable=False, server_default=text("'http'")
    )
    cursor_ts: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))
    cursor_id: Mapped[str | None] = mapped_column(Text())
    page_cursor: Mapped[str | None] = mapped_column(Text())
    last_success_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))
    last_attempt_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))
    status: Mapped[str] = mapped_column(
        String(length=16), nullable=False, server_default=text("'ok'")
    )
    retry_count: Mapped[int] = mapped_column(
        Integer(), nullable=False, default=0, server_default=text("0")
    )
    last_error: Mapped[str | None] = mapped_column(Text())
    meta: Mapped[dict[str, Any] | None] = mapped_column(_JSON)
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


class ConnectorError(Base):
    """A deduplicated failure tracked by the recovery ledger."""

    __tablename__ = "connector_errors"
    __table_args__ = (
        Index(
            "uq_connector_errors_active",
            "tenant_id",
            "connector",
            "dedupe_key",
            unique=True,
            postgresql_where=text(ACTIVE_ERROR_PREDICATE),
            sqlite_where=text(ACTIVE_ERROR_PREDICATE),
        ),
        Index("ix_connector_errors_due", "tenant_id", "status", "next_retry_at", "id"),
        Index("ix_connector_errors_dead_letter", "tenant_id", "status", "updated_at"),
        CheckConstraint(
            "status IN ('pending', 'retrying', 'dead_letter', 'resolved')",
            name="ck_connector_errors_status",
        ),
    )

    id: Mapped[int] = mapped_column(_ID, primary_key=True, autoincrement=True)
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    connector: Mapped[str] = mapped_column(String(length=64), nullable=False)
    mode: Mapped[str] = mapped_column(String(length=32), nullable=False)
    operation: Mapped[str] = mapped_column(String(length=200), nullable=False)
    source_ref: Mapped[str | None] = mapped_column(String(length=500))
    error_kind: Mapped[str] = mapped_column(String(length=200), nullable=False)
    error_message: Mapped[str] = mapped_column(Text(), nullable=False)
    payload: Mapped[dict[str, Any] | None] = mapped_column(_JSON)
    attempt: Mapped[int] = mapped_column(Integer(), nullable=False, default=1)
    next_retry_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(length=16), nullable=False)
    dedupe_key: Mapped[str] = mapped_column(String(length=64), nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    resolved_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))


__all__ = [
    "ACTIVE_ERROR_PREDICATE",
    "ACTIVE_ERROR_STATUSES",
    "ConnectorError",
    "ConnectorSyncState",
    "ErrorStatus",
    "SyncStatus",
]
