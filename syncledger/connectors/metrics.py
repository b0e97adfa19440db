"""Counters describing ledger and sync activity.

Each :class:`RecoveryMetrics` owns a private
:class:`prometheus_client.CollectorRegistry`; nothing is registered on the
process-global default registry. The instance is handed to the ledger and the
sync service when they are constructed, and :meth:`RecoveryMetrics.snapshot`
returns the current values as an immutable value object.
"""

from __future__ import annotations

import dataclasses

from prometheus_client import CollectorRegistry, Counter

from ..models.connector import ErrorStatus

__all__ = ["RecoveryMetrics", "RecoveryMetricsSnapshot"]


@dataclasses.dataclass(frozen=True)
class RecoveryMetricsSnapshot:
    registered: int = 0
    retrying: int = 0
    dead_lettered: int = 0
    resolved_by_sync: int = 0
    resolved_manually: int = 0
    dead_letter_retries: int = 0
    sync_ok: int = 0
    sync_failed: int = 0


class RecoveryMetrics:
    """Prometheus counters scoped to one registry."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry(auto_describe=True)
        self._registrations = Counter(
            "connector_error_registrations",
            "Connector error occurrences recorded by the ledger, by resulting status.",
            ["status"],
            registry=self.registry,
        )
        self._resolutions = Counter(
            "connector_error_resolutions",
            "Connector errors moved to resolved, by trigger.",
            ["reason"],
            registry=self.registry,
        )
        self._dead_letter_retries = Counter(
            "connector_dead_letter_retries",
            "Dead-letter errors manually reset to pending.",
            registry=self.registry,
        )
        self._sync_runs = Counter(
            "connector_sync_runs",
            "Connector sync runs, by outcome.",
            ["outcome"],
            registry=self.registry,
        )

    def record_registration(self, status: ErrorStatus | str) -> None:
        value = status.value if isinstance(status, ErrorStatus) else str(status)
        self._registrations.labels(status=value).inc()

    def record_resolved(self, count: int, *, reason: str) -> None:
        if count > 0:
            self._resolutions.labels(reason=reason).inc(count)

    def record_dead_letter_retry(self) -> None:
        self._dead_letter_retries.inc()

    def record_sync(self, outcome: str) -> None:
        self._sync_runs.labels(outcome=outcome).inc()

    def _sample(self, name: str, **labels: str) -> int:
        value = self.registry.get_sample_value(f"{name}_total", labels or None)
        return int(value or 0)

    def snapshot(self) -> RecoveryMetricsSnapshot:
        """Return the current counter values."""

        by_status = {
            status: self._sample("connector_error_registrations", status=status.value)
            for status in ErrorStatus
        }
        return RecoveryMetricsSnapshot(
            registered=sum(by_status.values()),
            retrying=by_status[ErrorStatus.RETRYING],
            dead_lettered=by_status[ErrorStatus.DEAD_LETTER],
            resolved_by_sync=self._sample("connector_error_resolutions", reason="sync_success"),
            resolved_manually=self._sample("connector_error_resolutions", reason="manual"),
            dead_letter_retries=self._sample("connector_dead_letter_retries"),
            sync_ok=self._sample("connector_sync_runs", outcome="ok"),
            sync_failed=self._sample("connector_sync_runs", outcome="failed"),
        )
