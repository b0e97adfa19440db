"""Per-connector sync progress (cursor/watermark) and run status.

Every write is a single ``INSERT ... ON CONFLICT (tenant_id, connector)``
statement. The new row is computed from values supplied by the caller (in
particular the previously fetched state), never from a read performed inside
the write, so there is no read-modify-write window on the row itself. Callers
should fetch the state right before a run and pass it back in.

The caller owns the session and the transaction boundary.
"""

from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Callable, Mapping
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..core.config import clamp_int
from ..models.connector import ConnectorSyncState, SyncStatus
from .dialects import upsert_insert
from .schemas import ConnectorSyncStateView, SyncPatch

__all__ = ["LAST_ERROR_MAX_LENGTH", "RETRY_COUNT_MAX", "SyncStateStore"]

logger = logging.getLogger(__name__)

LAST_ERROR_MAX_LENGTH = 2000
RETRY_COUNT_MAX = 1000

_TABLE = ConnectorSyncState.__table__


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _normalize_connector(connector: str) -> str:
    return str(connector or "").strip().lower()


def _prior_retry_count(prior_state: Any) -> int:
    if prior_state is None:
        return 0
    if isinstance(prior_state, Mapping):
        raw = prior_state.get("retry_count")
    else:
        raw = getattr(prior_state, "retry_count", None)
    return clamp_int(raw, 0, 0, RETRY_COUNT_MAX)


class SyncStateStore:
    """Read and upsert ``connector_sync_state`` rows."""

    def __init__(self, clock: Callable[[], dt.datetime] | None = None) -> None:
        self._clock = clock or _utcnow

    def get_state(
        self, session: Session, connector: str, *, tenant_id: UUID
    ) -> ConnectorSyncStateView | None:
        """Return the sync state of ``connector`` or ``None`` if it never ran."""

        row = session.scalars(
            select(ConnectorSyncState)
            .where(
                ConnectorSyncState.tenant_id == tenant_id,
                ConnectorSyncState.connector == _normalize_connector(connector),
            )
            .limit(1)
            .execution_options(populate_existing=True)
        ).first()
        if row is None:
            return None
        return ConnectorSyncStateView.model_validate(row)

    def list_states(self, session: Session, *, tenant_id: UUID) -> list[ConnectorSyncStateView]:
        rows = session.scalars(
            select(ConnectorSyncState)
            .where(ConnectorSyncState.tenant_id == tenant_id)
            .order_by(ConnectorSyncState.connector.asc())
            .execution_options(populate_existing=True)
        ).all()
        return [ConnectorSyncStateView.model_validate(row) for row in rows]

    def _upsert(
        self,
        session: Session,
        *,
        tenant_id: UUID,
        connector: str,
        mode: str,
        values: dict[str, Any],
    ) -> None:
        stmt = upsert_insert(session, _TABLE).values(
            tenant_id=tenant_id,
            connector=connector,
            mode=mode,
            **values,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[_TABLE.c.tenant_id, _TABLE.c.connector],
            set_={"mode": stmt.excluded.mode, **values},
        )
        session.execute(stmt)

    def mark_running(
        self,
        session: Session,
        connector: str,
        mode: str,
        prior_state: Any = None,
        *,
        tenant_id: UUID,
    ) -> None:
        """Flag a sync as started, carrying over the run-level retry count.

        Calling it repeatedly with the same prior state leaves the row
        unchanged apart from ``last_attempt_at``.
        """

        now = self._clock()
        connector = _normalize_connector(connector)
        retry_count = _prior_retry_count(prior_state)
        self._upsert(
            session,
            tenant_id=tenant_id,
            connector=connector,
            mode=mode,
            values={
                "status": SyncStatus.RUNNING.value,
                "retry_count": retry_count,
                "last_attempt_at": now,
                "updated_at": now,
            },
        )
        logger.debug(
            "Connector sync running",
            extra={"connector": connector, "tenant_id": str(tenant_id), "retry_count": retry_count},
        )

    def mark_success(
        self,
        session: Session,
        connector: str,
        mode: str,
        patch: SyncPatch | Mapping[str, Any] | None = None,
        *,
        tenant_id: UUID,
    ) -> None:
        """Record a successful run and move the cursor to ``patch``.

        ``retry_count`` returns to zero and ``last_error`` is cleared whatever
        the previous state was.
        """

        now = self._clock()
        connector = _normalize_connector(connector)
        if patch is None:
            patch = SyncPatch()
        elif not isinstance(patch, SyncPatch):
            patch = SyncPatch.model_validate(dict(patch))
        meta = patch.model_dump(mode="json", include={"meta"})["meta"]
        self._upsert(
            session,
            tenant_id=tenant_id,
            connector=connector,
            mode=mode,
            values={
                "cursor_ts": patch.cursor_ts,
                "cursor_id": patch.cursor_id,
                "page_cursor": patch.page_cursor,
                "last_success_at": now,
                "last_attempt_at": now,
                "status": SyncStatus.OK.value,
                "retry_count": 0,
                "last_error": None,
                "meta": meta,
                "updated_at": now,
            },
        )
        logger.info(
            "Connector sync succeeded",
            extra={"connector": connector, "tenant_id": str(tenant_id)},
        )

    def mark_failure(
        self,
        session: Session,
        connector: str,
        mode: str,
        error_message: Any,
        prior_state: Any = None,
        *,
        tenant_id: UUID,
    ) -> None:
        """Record a failed run; ``retry_count`` becomes the prior count plus one."""

        now = self._clock()
        connector = _normalize_connector(connector)
        retry_count = _prior_retry_count(prior_state) + 1
        message = str(error_message or "")[:LAST_ERROR_MAX_LENGTH]
        self._upsert(
            session,
            tenant_id=tenant_id,
            connector=connector,
            mode=mode,
            values={
                "status": SyncStatus.FAILED.value,
                "retry_count": retry_count,
                "last_error": message,
                "last_attempt_at": now,
                "updated_at": now,
            },
        )
        logger.warning(
            "Connector sync failed",
            extra={"connector": connector, "tenant_id": str(tenant_id), "retry_count": retry_count},
        )
