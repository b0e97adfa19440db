"""Drive a connector sync run through the state store and the recovery ledger.

The network pull itself is out of scope here: callers pass a *runner*, a
callable receiving the previously stored state and returning the new cursor
(a :class:`SyncPatch` or a mapping with the same keys). Anything the runner
raises is treated as an operational failure: it is recorded in both the sync
state and the ledger and reported back as a failed :class:`SyncOutcome`.
The returned cursor is normalised by :class:`SyncPatch` after the runner has
returned, so a malformed cursor value never counts as an upstream failure.
Database errors are not caught.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from ..core.config import RecoverySettings
from ..core.exceptions import UnsupportedConnectorError
from .ledger import ErrorRecoveryLedger
from .metrics import RecoveryMetrics
from .schemas import (
    ConnectorSyncStateView,
    RegisterErrorOptions,
    SyncCycleSummary,
    SyncOutcome,
    SyncPatch,
)
from .state import SyncStateStore

__all__ = ["ConnectorRunner", "ConnectorSyncService"]

logger = logging.getLogger(__name__)

ConnectorRunner = Callable[[ConnectorSyncStateView | None], SyncPatch | Mapping[str, Any] | None]


def _error_message(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


class ConnectorSyncService:
    """Run connector syncs and keep their bookkeeping consistent."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        settings: RecoverySettings,
        ledger: ErrorRecoveryLedger | None = None,
        state_store: SyncStateStore | None = None,
        metrics: RecoveryMetrics | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.settings = settings
        if ledger is None:
            ledger = ErrorRecoveryLedger(settings, metrics=metrics)
        self.ledger = ledger
        self.metrics = metrics or ledger.metrics
        self.state_store = state_store or SyncStateStore()

    def run_connector_sync(
        self,
        connector: str,
        runner: ConnectorRunner,
        *,
        tenant_id: UUID,
    ) -> SyncOutcome:
        """Run one sync of ``connector`` for ``tenant_id``.

        On success the new cursor is stored and the connector's pending and
        retrying ledger entries are resolved in the same transaction. On
        failure a ``sync_failed`` ledger entry is registered and the run-level
        retry count is bumped.
        """

        name = str(connector or "").strip().lower()
        if not self.settings.supports(name):
            raise UnsupportedConnectorError(name)
        mode = self.settings.mode_for(name)

        with self._session_factory.begin() as session:
            prior_state = self.state_store.get_state(session, name, tenant_id=tenant_id)
            self.state_store.mark_running(session, name, mode, prior_state, tenant_id=tenant_id)

        try:
            raw = runner(prior_state)
        except Exception as exc:
            return self._record_failure(name, mode, exc, prior_state, tenant_id=tenant_id)
        patch = raw if isinstance(raw, SyncPatch) else SyncPatch.model_validate(dict(raw or {}))

        with self._session_factory.begin() as session:
            self.state_store.mark_success(session, name, mode, patch, tenant_id=tenant_id)
            resolved = self.ledger.resolve_errors(session, name, tenant_id=tenant_id)

        self.metrics.record_sync("ok")
        return SyncOutcome(
            connector=name,
            mode=mode,
            status="ok",
            resolved_errors=resolved,
            patch=patch,
        )

    def _record_failure(
        self,
        connector: str,
        mode: str,
        exc: Exception,
        prior_state: ConnectorSyncStateView | None,
        *,
        tenant_id: UUID,
    ) -> SyncOutcome:
        message = _error_message(exc)
        logger.warning(
            "Connector sync run failed: %s",
            message,
            exc_info=exc,
            extra={"connector": connector, "tenant_id": str(tenant_id)},
        )
        # Independent writes: the ledger entry and the run-level counter are
        # not required to commit together.
        with self._session_factory.begin() as session:
            registered = self.ledger.register_error(
                session,
                RegisterErrorOptions(
                    connector=connector,
                    mode=mode,
                    operation="sync",
                    source_ref=connector,
                    error_kind="sync_failed",
                    error_message=message,
                    payload={"connector": connector, "mode": mode},
                ),
                tenant_id=tenant_id,
            )
        with self._session_factory.begin() as session:
            self.state_store.mark_failure(
                session, connector, mode, message, prior_state, tenant_id=tenant_id
            )
        self.metrics.record_sync("failed")
        return SyncOutcome(
            connector=connector,
            mode=mode,
            status="failed",
            error=message,
            registered_error=registered,
        )

    def run_all(
        self,
        runners: Mapping[str, ConnectorRunner],
        *,
        tenant_id: UUID,
    ) -> SyncCycleSummary:
        """Sync every configured connector that has a runner."""

        results: list[SyncOutcome] = []
        for name in self.settings.connectors:
            runner = runners.get(name)
            if runner is None:
                logger.debug("No runner registered for connector %s; skipping", name)
                continue
            results.append(self.run_connector_sync(name, runner, tenant_id=tenant_id))

        ok = sum(1 for outcome in results if outcome.status == "ok")
        summary = SyncCycleSummary(
            total=len(results),
            ok=ok,
            failed=len(results) - ok,
            results=results,
        )
        if summary.failed:
            logger.warning(
                "One or more connectors failed in sync cycle",
                extra={"tenant_id": str(tenant_id), "failed": summary.failed},
            )
        return summary
