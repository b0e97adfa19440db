"""Runtime configuration for connector sync and error recovery.

Limits are read from the environment once, clamped into safe ranges and kept
in an immutable :class:`RecoverySettings` value that is passed explicitly to
the ledger and the sync service. Tests build their own instances instead of
mutating the process environment.
"""

from __future__ import annotations

import dataclasses
import math
import os
import re
from collections.abc import Mapping
from functools import lru_cache
from typing import Any

__all__ = [
    "DEFAULT_CONNECTORS",
    "RecoverySettings",
    "clamp_int",
    "get_recovery_settings",
    "load_recovery_settings",
    "reset_recovery_settings_cache",
]

DEFAULT_CONNECTORS: tuple[str, ...] = ("chatwoot", "linear", "attio")

_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


def clamp_int(
    value: Any,
    fallback: int,
    minimum: int = 0,
    maximum: int = 1000,
) -> int:
    """Parse ``value`` as an integer and clamp it into ``[minimum, maximum]``.

    Strings are read up to the first non-digit, so ``"5abc"`` is 5 and
    ``"3.7"`` is 3; input without a leading integer (``None``, empty strings,
    garbage) yields ``fallback`` unchanged. Floats are truncated towards zero.
    """

    if isinstance(value, bool):
        return fallback
    if isinstance(value, float):
        if not math.isfinite(value):
            return fallback
        parsed = int(value)
    elif isinstance(value, int):
        parsed = value
    else:
        match = _LEADING_INT.match(str(value if value is not None else ""))
        if match is None:
            return fallback
        parsed = int(match.group(1))
    return max(minimum, min(maximum, parsed))


@dataclasses.dataclass(frozen=True)
class RecoverySettings:
    """Retry limits and connector modes used by the recovery ledger."""

    max_attempts: int = 5
    retry_base_seconds: int = 30
    retry_cap_seconds: int = 6 * 60 * 60
    default_mode: str = "http"
    connector_modes: Mapping[str, str] = dataclasses.field(default_factory=dict)
    connectors: tuple[str, ...] = DEFAULT_CONNECTORS

    def __post_init__(self) -> None:
        object.__setattr__(self, "max_attempts", clamp_int(self.max_attempts, 5, 1, 20))
        object.__setattr__(
            self, "retry_base_seconds", clamp_int(self.retry_base_seconds, 30, 5, 300)
        )

    def mode_for(self, connector: str) -> str:
        """Return the sync mode for ``connector`` (``http`` unless overridden)."""

        name = connector.strip().lower()
        specific = (self.connector_modes.get(name) or "").strip().lower()
        if specific:
            return specific
        return (self.default_mode or "").strip().lower() or "http"

    def supports(self, connector: str) -> bool:
        return connector.strip().lower() in self.connectors


def load_recovery_settings(environ: Mapping[str, str] | None = None) -> RecoverySettings:
    """Build :class:`RecoverySettings` from ``environ`` (defaults to ``os.environ``)."""

    env = os.environ if environ is None else environ
    connectors = tuple(
        name.strip().lower()
        for name in env.get("CONNECTORS", ",".join(DEFAULT_CONNECTORS)).split(",")
        if name.strip()
    )
    modes: dict[str, str] = {}
    for name in connectors:
        value = env.get(f"CONNECTOR_{name.upper()}_MODE", "").strip().lower()
        if value:
            modes[name] = value
    return RecoverySettings(
        max_attempts=clamp_int(env.get("CONNECTOR_MAX_RETRIES"), 5, 1, 20),
        retry_base_seconds=clamp_int(env.get("CONNECTOR_RETRY_BASE_SECONDS"), 30, 5, 300),
        default_mode=env.get("CONNECTOR_MODE", "").strip().lower() or "http",
        connector_modes=modes,
        connectors=connectors or DEFAULT_CONNECTORS,
    )


@lru_cache(maxsize=1)
def get_recovery_settings() -> RecoverySettings:
    """Load settings from the process environment once per process."""

    return load_recovery_settings()


def reset_recovery_settings_cache() -> None:
    """Clear cached settings; useful in tests when env vars change."""

    get_recovery_settings.cache_clear()
