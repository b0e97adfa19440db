"""Connector sync state and error-recovery ledger."""

from __future__ import annotations

from .backoff import add_seconds, next_backoff_seconds
from .keys import dedupe_key_for_error
from .ledger import ErrorRecoveryLedger
from .metrics import RecoveryMetrics, RecoveryMetricsSnapshot
from .schemas import (
    ConnectorErrorView,
    ConnectorSyncStateView,
    RegisteredError,
    RegisterErrorOptions,
    SyncCycleSummary,
    SyncOutcome,
    SyncPatch,
)
from .state import SyncStateStore
from .sync import ConnectorRunner, ConnectorSyncService

__all__ = [
    "ConnectorErrorView",
    "ConnectorRunner",
    "ConnectorSyncService",
    "ConnectorSyncStateView",
    "ErrorRecoveryLedger",
    "RecoveryMetrics",
    "RecoveryMetricsSnapshot",
    "RegisterErrorOptions",
    "RegisteredError",
    "SyncCycleSummary",
    "SyncOutcome",
    "SyncPatch",
    "SyncStateStore",
    "add_seconds",
    "dedupe_key_for_error",
    "next_backoff_seconds",
]
