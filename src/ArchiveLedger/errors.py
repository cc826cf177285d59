"""Error taxonomy for archive ingestion.

Responsibilities
----------------
- Define the exception types the pipeline raises and catches while moving an
  archive through its lifecycle (:class:`ExtractionError`,
  :class:`MissingSourceError`, :class:`TransientIOError`).
- Give the ledger a dedicated :class:`InvalidTransitionError` so rejected state
  changes can be logged and ignored in one place.
- Provide the fixed failure reasons written to ``last_error`` so operators can
  grep for them.

Design Notes
------------
- Only failures that prevent completing an archive surface as a ``failed``
  status. Best-effort failures (fingerprints, timestamp hints) never reach
  these types; callers absorb them locally.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

__all__ = (
    "ArchiveLedgerError",
    "LedgerError",
    "InvalidTransitionError",
    "ExtractionError",
    "MissingSourceError",
    "TransientIOError",
    "PipelineBusyError",
    "PipelineCancelled",
    "REASON_MISSING_SOURCE",
    "REASON_DELETE_FAILED",
    "REASON_UNKNOWN",
    "describe_exception",
)

REASON_MISSING_SOURCE = "archive missing from downloads folder"
REASON_DELETE_FAILED = "processed but could not delete archive"
REASON_UNKNOWN = "unknown error"


class ArchiveLedgerError(Exception):
    """Base class for all errors raised by this package."""


class LedgerError(ArchiveLedgerError):
    """Raised when the persistent ledger cannot complete an operation."""

    def __init__(self, message: str, *, operation: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.operation = operation
        self.details = details or {}


class InvalidTransitionError(ArchiveLedgerError):
    """Raised when an archive is asked to move along an edge not in the table."""

    def __init__(self, name: str, current: Optional[str], wanted: str):
        super().__init__(
            f"state_transition_denied archive={name} wants={wanted} have={current or 'MISSING'}"
        )
        self.name = name
        self.current = current
        self.wanted = wanted


class ExtractionError(ArchiveLedgerError):
    """Raised when an archive is corrupt, unreadable or contains unsafe members."""

    def __init__(self, message: str, *, archive: Optional[Path] = None):
        super().__init__(message)
        self.archive = archive


class MissingSourceError(ArchiveLedgerError):
    """Raised when no on-disk file can be resolved for a tracked archive."""

    def __init__(self, name: str):
        super().__init__(REASON_MISSING_SOURCE)
        self.name = name


class TransientIOError(ArchiveLedgerError):
    """File-lock contention or similar condition worth retrying."""

    def __init__(self, message: str, *, path: Optional[Path] = None):
        super().__init__(message)
        self.path = path


class PipelineBusyError(ArchiveLedgerError):
    """Raised when another pipeline worker already owns the working area."""


class PipelineCancelled(ArchiveLedgerError):
    """Raised when an abort is requested while an archive is in flight."""


def describe_exception(exc: BaseException) -> str:
    """Return the message stored in ``last_error`` for ``exc``."""

    message = str(exc).strip()
    if not message:
        return f"{type(exc).__name__}: {REASON_UNKNOWN}"
    return message
