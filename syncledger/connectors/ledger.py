"""Retry / dead-letter ledger for individual connector failures.

Each distinct failure (identified by its dedupe key) owns one *active* row in
``connector_errors`` while it is ``pending`` or ``retrying``. Recurrences bump
``attempt`` and push ``next_retry_at`` out exponentially; once ``attempt``
reaches ``max_attempts`` the row is dead-lettered and waits for an operator.

Registration is a single ``INSERT ... ON CONFLICT DO UPDATE`` against the
partial unique index ``uq_connector_errors_active``: the increment and the
status/backoff computation happen inside the statement that owns the row
lock, so concurrent registrations of the same fingerprint serialize on the
index instead of racing to insert duplicates.

State transitions::

    (none)            -- first failure -------------> pending
    pending/retrying  -- recurrence, attempt < max --> retrying
    pending/retrying  -- recurrence, attempt >= max -> dead_letter
    pending/retrying  -- owning sync succeeds ------> resolved
    dead_letter       -- manual retry --------------> pending (attempt = 0)
    any               -- manual resolve ------------> resolved
"""

from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Callable, Mapping
from typing import Any
from uuid import UUID

from sqlalchemy import DateTime, case, exists, literal, select, text, update
from sqlalchemy.orm import Session

from ..core.config import RecoverySettings, clamp_int
from ..models.connector import (
    ACTIVE_ERROR_PREDICATE,
    ACTIVE_ERROR_STATUSES,
    ConnectorError,
    ErrorStatus,
)
from .backoff import MAX_BACKOFF_POWER, add_seconds, next_backoff_seconds
from .dialects import upsert_insert
from .keys import dedupe_key_for_error
from .metrics import RecoveryMetrics
from .schemas import ConnectorErrorView, RegisteredError, RegisterErrorOptions

__all__ = ["ErrorRecoveryLedger", "LIST_LIMIT_MAX"]

logger = logging.getLogger(__name__)

LIST_LIMIT_MAX = 500

_TABLE = ConnectorError.__table__


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class ErrorRecoveryLedger:
    """Deduplicated, backed-off error records with dead-letter semantics.

    Args:
        settings: Retry limits; ``max_attempts`` and ``retry_base_seconds``
            are already clamped by :class:`RecoverySettings`.
        metrics: Counters updated on every transition. A private instance is
            created when omitted.
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        settings: RecoverySettings,
        metrics: RecoveryMetrics | None = None,
        clock: Callable[[], dt.datetime] | None = None,
    ) -> None:
        self.settings = settings
        self.metrics = metrics or RecoveryMetrics()
        self._clock = clock or _utcnow

    # ------------------------------------------------------------------
    # Policy helpers
    # ------------------------------------------------------------------

    def status_for_attempt(self, attempt: int) -> ErrorStatus:
        if attempt >= self.settings.max_attempts:
            return ErrorStatus.DEAD_LETTER
        if attempt > 1:
            return ErrorStatus.RETRYING
        return ErrorStatus.PENDING

    def retry_at(self, now: dt.datetime, attempt: int) -> dt.datetime:
        delay = next_backoff_seconds(
            attempt,
            self.settings.retry_base_seconds,
            self.settings.retry_cap_seconds,
        )
        return add_seconds(now, delay)

    def _status_expr(self, attempt_expr: Any) -> Any:
        return case(
            (attempt_expr >= self.settings.max_attempts, ErrorStatus.DEAD_LETTER.value),
            (attempt_expr > 1, ErrorStatus.RETRYING.value),
            else_=ErrorStatus.PENDING.value,
        )

    def _retry_at_expr(self, attempt_expr: Any, now: dt.datetime) -> Any:
        # Backoff saturates after MAX_BACKOFF_POWER doublings, so a finite
        # CASE covers every attempt value.
        timestamp = DateTime(timezone=True)
        whens = [
            (attempt_expr == attempt, literal(self.retry_at(now, attempt), timestamp))
            for attempt in range(1, MAX_BACKOFF_POWER + 1)
        ]
        saturated = literal(self.retry_at(now, MAX_BACKOFF_POWER + 1), timestamp)
        return case(*whens, else_=saturated)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def register_error(
        self,
        session: Session,
        options: RegisterErrorOptions | Mapping[str, Any] | None,
        *,
        tenant_id: UUID,
    ) -> RegisteredError:
        """Record one occurrence of a failure and return its ledger position.

        The first occurrence inserts ``attempt = 1``; a recurrence while the
        fingerprint is still active increments the existing row.
        """

        if not isinstance(options, RegisterErrorOptions):
            options = RegisterErrorOptions.model_validate(dict(options or {}))
        dedupe_key = options.dedupe_key or dedupe_key_for_error(
            options.connector,
            options.mode,
            options.operation,
            options.source_ref,
            options.error_kind,
        )
        payload = options.model_dump(mode="json", include={"payload"})["payload"]
        now = self._clock()

        stmt = upsert_insert(session, _TABLE).values(
            tenant_id=tenant_id,
            connector=options.connector,
            mode=options.mode,
            operation=options.operation,
            source_ref=options.source_ref,
            error_kind=options.error_kind,
            error_message=options.error_message,
            payload=payload,
            attempt=1,
            next_retry_at=self.retry_at(now, 1),
            status=self.status_for_attempt(1).value,
            dedupe_key=dedupe_key,
            created_at=now,
            updated_at=now,
        )
        attempt_expr = _TABLE.c.attempt + 1
        stmt = stmt.on_conflict_do_update(
            index_elements=[_TABLE.c.tenant_id, _TABLE.c.connector, _TABLE.c.dedupe_key],
            index_where=text(ACTIVE_ERROR_PREDICATE),
            set_={
                "mode": stmt.excluded.mode,
                "operation": stmt.excluded.operation,
                "source_ref": stmt.excluded.source_ref,
                "error_kind": stmt.excluded.error_kind,
                "error_message": stmt.excluded.error_message,
                "payload": stmt.excluded.payload,
                "attempt": attempt_expr,
                "status": self._status_expr(attempt_expr),
                "next_retry_at": self._retry_at_expr(attempt_expr, now),
                "updated_at": now,
            },
        ).returning(
            _TABLE.c.id,
            _TABLE.c.attempt,
            _TABLE.c.status,
            _TABLE.c.next_retry_at,
        )
        row = session.execute(stmt).one()

        result = RegisteredError(
            id=row.id,
            attempt=row.attempt,
            status=row.status,
            next_retry_at=row.next_retry_at,
            dedupe_key=dedupe_key,
        )
        self.metrics.record_registration(result.status)
        log_extra = {
            "connector": options.connector,
            "tenant_id": str(tenant_id),
            "dedupe_key": dedupe_key,
            "attempt": result.attempt,
        }
        if result.status is ErrorStatus.DEAD_LETTER:
            logger.warning("Connector error dead-lettered", extra=log_extra)
        else:
            logger.info("Connector error registered (%s)", result.status.value, extra=log_extra)
        return result

    def resolve_errors(self, session: Session, connector: str, *, tenant_id: UUID) -> int:
        """Resolve every pending/retrying error of ``connector``; return the count."""

        now = self._clock()
        result = session.execute(
            update(_TABLE)
            .where(
                _TABLE.c.tenant_id == tenant_id,
                _TABLE.c.connector == str(connector or "").strip().lower(),
                _TABLE.c.status.in_(ACTIVE_ERROR_STATUSES),
            )
            .values(
                status=ErrorStatus.RESOLVED.value,
                resolved_at=now,
                updated_at=now,
            )
        )
        count = int(result.rowcount or 0)
        self.metrics.record_resolved(count, reason="sync_success")
        if count:
            logger.info(
                "Resolved %d connector errors",
                count,
                extra={"connector": connector, "tenant_id": str(tenant_id)},
            )
        return count

    def list_due(
        self, session: Session, limit: Any = 20, *, tenant_id: UUID
    ) -> list[ConnectorErrorView]:
        """Active errors whose ``next_retry_at`` has passed, oldest first.

        Ties on ``next_retry_at`` are broken by ``id`` so repeated polls walk
        the backlog in a stable order.
        """

        now = self._clock()
        rows = session.scalars(
            select(ConnectorError)
            .where(
                ConnectorError.tenant_id == tenant_id,
                ConnectorError.status.in_(ACTIVE_ERROR_STATUSES),
                ConnectorError.next_retry_at <= now,
            )
            .order_by(ConnectorError.next_retry_at.asc(), ConnectorError.id.asc())
            .limit(clamp_int(limit, 20, 1, LIST_LIMIT_MAX))
            .execution_options(populate_existing=True)
        ).all()
        return [ConnectorErrorView.model_validate(row) for row in rows]

    def list_dead_letter(
        self, session: Session, limit: Any = 50, *, tenant_id: UUID
    ) -> list[ConnectorErrorView]:
        """Dead-lettered errors, most recently updated first."""

        rows = session.scalars(
            select(ConnectorError)
            .where(
                ConnectorError.tenant_id == tenant_id,
                ConnectorError.status == ErrorStatus.DEAD_LETTER.value,
            )
            .order_by(ConnectorError.updated_at.desc(), ConnectorError.id.asc())
            .limit(clamp_int(limit, 50, 1, LIST_LIMIT_MAX))
            .execution_options(populate_existing=True)
        ).all()
        return [ConnectorErrorView.model_validate(row) for row in rows]

    def list_errors(
        self,
        session: Session,
        status: Any = None,
        limit: Any = 100,
        *,
        tenant_id: UUID,
    ) -> list[ConnectorErrorView]:
        """All errors of the tenant, optionally filtered by status."""

        stmt = select(ConnectorError).where(ConnectorError.tenant_id == tenant_id)
        status_filter = str(status or "").strip().lower()
        if status_filter:
            stmt = stmt.where(ConnectorError.status == status_filter)
        rows = session.scalars(
            stmt.order_by(ConnectorError.updated_at.desc(), ConnectorError.id.desc())
            .limit(clamp_int(limit, 100, 1, LIST_LIMIT_MAX))
            .execution_options(populate_existing=True)
        ).all()
        return [ConnectorErrorView.model_validate(row) for row in rows]

    def retry_dead_letter(
        self, session: Session, error_id: int, *, tenant_id: UUID
    ) -> ConnectorErrorView | None:
        """Send a dead-lettered error back to ``pending`` with a fresh budget.

        Returns ``None`` without touching anything when the record does not
        exist, is not dead-lettered, or its fingerprint already has a newer
        active record.
        """

        now = self._clock()
        active = _TABLE.alias("active")
        newer_active = exists().where(
            active.c.tenant_id == _TABLE.c.tenant_id,
            active.c.connector == _TABLE.c.connector,
            active.c.dedupe_key == _TABLE.c.dedupe_key,
            active.c.status.in_(ACTIVE_ERROR_STATUSES),
        )
        row = session.execute(
            update(_TABLE)
            .where(
                _TABLE.c.id == error_id,
                _TABLE.c.tenant_id == tenant_id,
                _TABLE.c.status == ErrorStatus.DEAD_LETTER.value,
                ~newer_active,
            )
            .values(
                status=ErrorStatus.PENDING.value,
                attempt=0,
                next_retry_at=now,
                updated_at=now,
            )
            .returning(*_TABLE.c)
        ).first()
        if row is None:
            return None
        self.metrics.record_dead_letter_retry()
        logger.info(
            "Dead-letter error %s reset to pending",
            error_id,
            extra={"connector": row.connector, "tenant_id": str(tenant_id)},
        )
        return ConnectorErrorView.model_validate(dict(row._mapping))

    def resolve_by_id(self, session: Session, error_id: int, *, tenant_id: UUID) -> int | None:
        """Mark one error resolved whatever its status; return its id or ``None``."""

        now = self._clock()
        resolved_id = session.execute(
            update(_TABLE)
            .where(_TABLE.c.id == error_id, _TABLE.c.tenant_id == tenant_id)
            .values(
                status=ErrorStatus.RESOLVED.value,
                resolved_at=now,
                updated_at=now,
            )
            .returning(_TABLE.c.id)
        ).scalar_one_or_none()
        if resolved_id is not None:
            self.metrics.record_resolved(1, reason="manual")
        return resolved_id
