"""Exception hierarchy for the connector sync layer."""

from __future__ import annotations

__all__ = ["SyncLedgerError", "UnsupportedConnectorError"]


class SyncLedgerError(Exception):
    """Base class for errors raised by :mod:`syncledger`."""


class UnsupportedConnectorError(SyncLedgerError, ValueError):
    """Raised when a sync is requested for a connector that is not configured."""

    def __init__(self, connector: str) -> None:
        super().__init__(f"unsupported connector: {connector!r}")
        self.connector = connector
