"""Deterministic fingerprints for connector error occurrences."""

from __future__ import annotations

import hashlib

__all__ = ["dedupe_key_for_error"]


def dedupe_key_for_error(
    connector: str,
    mode: str,
    operation: str,
    source_ref: str | None = None,
    error_kind: str | None = None,
) -> str:
    """Return the 40-character SHA-1 fingerprint identifying "the same failure".

    ``connector`` and ``mode`` are lower-cased; ``operation``, ``source_ref``
    and ``error_kind`` are hashed as given so callers control their identity.
    """

    raw = ":".join(
        (
            connector.lower(),
            mode.lower(),
            operation,
            source_ref or "",
            error_kind or "",
        )
    )
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()
