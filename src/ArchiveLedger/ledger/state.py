# === NAVMAP v1 ===
# {
#   "module": "ArchiveLedger.ledger.state",
#   "purpose": "Archive lifecycle transition table",
#   "sections": [
#     {
#       "id": "is-allowed",
#       "name": "is_allowed",
#       "anchor": "function-is-allowed",
#       "kind": "function"
#     },
#     {
#       "id": "check-transition",
#       "name": "check_transition",
#       "anchor": "function-check-transition",
#       "kind": "function"
#     },
#     {
#       "id": "allowed-from",
#       "name": "allowed_from",
#       "anchor": "function-allowed-from",
#       "kind": "function"
#     }
#   ]
# }
# === /NAVMAP ===

"""Archive lifecycle transition table.

State Machine Diagram:
  (absent)
    └─(discover)→ PENDING
        └─(acquire)→ DOWNLOADING
            └─(saved)→ DOWNLOADED ←──────────────┐
                ├─(claim)→ PROCESSING            │
                │   ├─(deleted)→ DONE            │
                │   └─(error)→ FAILED ──(re-arm)─┘
                └─(missing source)→ FAILED

  (startup) PROCESSING → DOWNLOADED is a crash-recovery edge owned by
  :meth:`SQLiteLedger.reset_stuck_processing_to_downloaded`; record
  operations never take it.

DOWNLOADING and DOWNLOADED may be re-recorded onto themselves so the
acquisition side and startup reconciliation can refresh size, observed
filename and fingerprint. DONE is terminal: every transition out of it is
rejected, which is what makes re-running the pipeline idempotent.
"""

from __future__ import annotations

from typing import Mapping, Optional

from ArchiveLedger.errors import InvalidTransitionError
from ArchiveLedger.ledger.models import ArchiveStatus

__all__ = [
    "ALLOWED_TRANSITIONS",
    "CRASH_RECOVERY_FROM",
    "is_allowed",
    "check_transition",
    "allowed_from",
]

_S = ArchiveStatus

ALLOWED_TRANSITIONS: Mapping[Optional[ArchiveStatus], frozenset[ArchiveStatus]] = {
    None: frozenset({_S.PENDING, _S.DOWNLOADING, _S.DOWNLOADED}),
    _S.PENDING: frozenset({_S.DOWNLOADING, _S.DOWNLOADED}),
    _S.DOWNLOADING: frozenset({_S.DOWNLOADING, _S.DOWNLOADED}),
    _S.DOWNLOADED: frozenset({_S.DOWNLOADED, _S.PROCESSING, _S.FAILED}),
    _S.PROCESSING: frozenset({_S.DONE, _S.FAILED}),
    _S.FAILED: frozenset({_S.DOWNLOADED}),
    _S.DONE: frozenset(),
}

CRASH_RECOVERY_FROM = _S.PROCESSING


def is_allowed(current: Optional[ArchiveStatus], wanted: ArchiveStatus) -> bool:
    """Return True when ``current → wanted`` is an edge of the table."""

    return wanted in ALLOWED_TRANSITIONS.get(current, frozenset())


def check_transition(name: str, current: Optional[ArchiveStatus], wanted: ArchiveStatus) -> None:
    """Raise :class:`InvalidTransitionError` if the edge is not allowed.

    Parameters
    ----------
    name : str
        Tracked archive name (for the error message only)
    current : ArchiveStatus or None
        Stored status, ``None`` when the archive is unknown
    wanted : ArchiveStatus
        Requested status
    """

    if not is_allowed(current, wanted):
        raise InvalidTransitionError(
            name, current.value if current is not None else None, wanted.value
        )


def allowed_from(wanted: ArchiveStatus) -> tuple[ArchiveStatus, ...]:
    """Stored statuses from which ``wanted`` may be reached (excludes absent rows)."""

    return tuple(
        state
        for state, targets in ALLOWED_TRANSITIONS.items()
        if state is not None and wanted in targets
    )
