"""Connector sync state tracking and error-recovery ledger."""

from .__version__ import __version__

__all__ = ["__version__"]
