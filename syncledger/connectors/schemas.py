"""Pydantic models exchanged with callers of the sync layer."""

from __future__ import annotations

import datetime as dt
from collections.abc import Mapping
from typing import Any, Dict, List, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..models.connector import ErrorStatus, SyncStatus

__all__ = [
    "ConnectorErrorView",
    "ConnectorSyncStateView",
    "RegisterErrorOptions",
    "RegisteredError",
    "SyncCycleSummary",
    "SyncOutcome",
    "SyncPatch",
]

OPERATION_MAX_LENGTH = 200
SOURCE_REF_MAX_LENGTH = 500
ERROR_KIND_MAX_LENGTH = 200
ERROR_MESSAGE_MAX_LENGTH = 4000


def as_utc(value: dt.datetime) -> dt.datetime:
    """Attach UTC to naive timestamps (SQLite drops tzinfo on round-trips)."""

    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


class _UtcModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    @field_validator("*", mode="after")
    @classmethod
    def _normalize_timestamps(cls, value: Any) -> Any:
        if isinstance(value, dt.datetime):
            return as_utc(value)
        return value


# ---------------------------------------------------------------------------
# Sync state
# ---------------------------------------------------------------------------


class ConnectorSyncStateView(_UtcModel):
    """Read model of a ``connector_sync_state`` row."""

    tenant_id: UUID
    connector: str
    mode: str
    cursor_ts: dt.datetime | None = None
    cursor_id: str | None = None
    page_cursor: str | None = None
    last_success_at: dt.datetime | None = None
    last_attempt_at: dt.datetime | None = None
    status: SyncStatus
    retry_count: int = 0
    last_error: str | None = None
    meta: Dict[str, Any] | None = None
    updated_at: dt.datetime


class SyncPatch(_UtcModel):
    """Cursor values reported by a successful sync run.

    The store writes these verbatim; it does not check that the cursor moves
    forward.
    """

    cursor_ts: dt.datetime | None = None
    cursor_id: str | None = None
    page_cursor: str | None = None
    meta: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("cursor_ts", mode="before")
    @classmethod
    def _parse_cursor_ts(cls, value: Any) -> Any:
        if not isinstance(value, str):
            return value
        text = value.strip()
        if not text:
            return None
        try:
            return dt.datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            # Opaque upstream markers are not a timestamp watermark.
            return None

    @field_validator("cursor_id", "page_cursor", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if value is None:
            return None
        text = str(value).strip()
        return text[:2000] or None

    @field_validator("meta", mode="before")
    @classmethod
    def _normalize_meta(cls, value: Any) -> Dict[str, Any]:
        if isinstance(value, Mapping):
            return dict(value)
        return {}


# ---------------------------------------------------------------------------
# Error ledger
# ---------------------------------------------------------------------------


class RegisterErrorOptions(BaseModel):
    """Description of a failed operation handed to the recovery ledger.

    Every field is coerced and truncated rather than rejected so malformed
    diagnostics never prevent an error from being recorded.
    """

    connector: str = ""
    mode: str = "http"
    operation: str = "sync"
    source_ref: str | None = None
    error_kind: str = "connector_error"
    error_message: str = "connector error"
    payload: Dict[str, Any] = Field(default_factory=dict)
    dedupe_key: str | None = None

    model_config = ConfigDict(extra="ignore")

    @field_validator("connector", mode="before")
    @classmethod
    def _normalize_connector(cls, value: Any) -> str:
        return str(value or "").strip().lower()

    @field_validator("mode", mode="before")
    @classmethod
    def _normalize_mode(cls, value: Any) -> str:
        return str(value or "http").strip().lower()

    @field_validator("operation", mode="before")
    @classmethod
    def _normalize_operation(cls, value: Any) -> str:
        return str(value or "sync").strip()[:OPERATION_MAX_LENGTH]

    @field_validator("source_ref", mode="before")
    @classmethod
    def _normalize_source_ref(cls, value: Any) -> str | None:
        return str(value or "").strip()[:SOURCE_REF_MAX_LENGTH] or None

    @field_validator("error_kind", mode="before")
    @classmethod
    def _normalize_error_kind(cls, value: Any) -> str:
        return str(value or "connector_error").strip()[:ERROR_KIND_MAX_LENGTH]

    @field_validator("error_message", mode="before")
    @classmethod
    def _normalize_error_message(cls, value: Any) -> str:
        return str(value or "connector error").strip()[:ERROR_MESSAGE_MAX_LENGTH]

    @field_validator("payload", mode="before")
    @classmethod
    def _normalize_payload(cls, value: Any) -> Dict[str, Any]:
        if isinstance(value, Mapping):
            return dict(value)
        return {}

    @field_validator("dedupe_key", mode="before")
    @classmethod
    def _normalize_dedupe_key(cls, value: Any) -> str | None:
        if value is None:
            return None
        return str(value).strip()[:64] or None


class RegisteredError(_UtcModel):
    """Result of :meth:`ErrorRecoveryLedger.register_error`."""

    id: int
    attempt: int
    status: ErrorStatus
    next_retry_at: dt.datetime
    dedupe_key: str


class ConnectorErrorView(_UtcModel):
    """Read model of a ``connector_errors`` row."""

    id: int
    tenant_id: UUID
    connector: str
    mode: str
    operation: str
    source_ref: str | None = None
    error_kind: str
    error_message: str
    payload: Dict[str, Any] | None = None
    attempt: int
    next_retry_at: dt.datetime
    status: ErrorStatus
    dedupe_key: str
    created_at: dt.datetime
    updated_at: dt.datetime
    resolved_at: dt.datetime | None = None


# ---------------------------------------------------------------------------
# Sync orchestration
# ---------------------------------------------------------------------------


class SyncOutcome(BaseModel):
    """Result of one connector sync run."""

    connector: str
    mode: str
    status: Literal["ok", "failed"]
    resolved_errors: int = 0
    error: str | None = None
    registered_error: RegisteredError | None = None
    patch: SyncPatch | None = None


class SyncCycleSummary(BaseModel):
    """Aggregate of a sync cycle over several connectors."""

    total: int
    ok: int
    failed: int
    results: List[SyncOutcome]
