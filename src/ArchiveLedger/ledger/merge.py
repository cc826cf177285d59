"""Merge rules applied by the ledger before every write.

The store reads the current row, calls one of these functions and writes the
result back inside a single transaction, so the invariants below live here
and nowhere else:

- :func:`merge_archive` is *fill-missing-only*: an incoming optional field is
  used only when the stored value is absent. ``status``, ``completed_at`` and
  ``last_error`` always take the incoming value.
- :func:`merge_payload` only ever refines a payload row: location and size
  track the latest observation, the original name keeps the shortest value
  seen and the original timestamp keeps the earliest.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from typing import Optional

from ArchiveLedger.ledger.models import ArchiveRecord, PayloadRecord

__all__ = [
    "merge_archive",
    "merge_payload",
    "normalize_original_name",
    "normalize_timestamp",
]


def _fill(stored, incoming):
    return stored if stored is not None else incoming


def merge_archive(stored: Optional[ArchiveRecord], incoming: ArchiveRecord) -> ArchiveRecord:
    """Combine an incoming archive observation with the stored row.

    Args:
        stored: Current row, or ``None`` if the archive is unknown
        incoming: Observation carrying the requested status

    Returns:
        Record to persist
    """
    if stored is None:
        return incoming
    if stored.name != incoming.name:
        raise ValueError(f"cannot merge archive {incoming.name!r} into {stored.name!r}")

    return ArchiveRecord(
        name=stored.name,
        status=incoming.status,
        size_bytes=_fill(stored.size_bytes, incoming.size_bytes),
        started_at=_fill(stored.started_at, incoming.started_at),
        completed_at=incoming.completed_at,
        last_error=incoming.last_error,
        last_observed_filename=_fill(
            stored.last_observed_filename, incoming.last_observed_filename
        ),
        structural_fingerprint=_fill(
            stored.structural_fingerprint, incoming.structural_fingerprint
        ),
    )


def normalize_original_name(name: Optional[str]) -> Optional[str]:
    """Strip whitespace; blank names count as absent."""

    if name is None:
        return None
    trimmed = name.strip()
    return trimmed or None


def normalize_timestamp(value: Optional[datetime]) -> Optional[datetime]:
    """Return ``value`` as an aware UTC datetime (naive values are taken as UTC)."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _better_name(stored: Optional[str], incoming: Optional[str]) -> Optional[str]:
    # Shorter usually means fewer "(1)" / "-edited" suffixes.
    if incoming is None:
        return stored
    if stored is None or len(incoming) < len(stored):
        return incoming
    return stored


def _better_timestamp(
    stored: Optional[datetime], incoming: Optional[datetime]
) -> Optional[datetime]:
    if incoming is None:
        return stored
    if stored is None or incoming < stored:
        return incoming
    return stored


def merge_payload(stored: Optional[PayloadRecord], incoming: PayloadRecord) -> PayloadRecord:
    """Refine the stored payload row with a new sighting of the same content.

    Args:
        stored: Current row, or ``None`` if the hash is new
        incoming: Latest observation of the content

    Returns:
        Record to persist
    """
    incoming = replace(
        incoming,
        best_known_original_name=normalize_original_name(incoming.best_known_original_name),
        best_known_original_timestamp=normalize_timestamp(
            incoming.best_known_original_timestamp
        ),
    )
    if stored is None:
        return incoming
    if stored.content_hash != incoming.content_hash:
        raise ValueError(
            f"cannot merge payload {incoming.content_hash} into {stored.content_hash}"
        )

    return PayloadRecord(
        content_hash=stored.content_hash,
        storage_path=incoming.storage_path,
        first_seen_at=stored.first_seen_at,
        size_bytes=incoming.size_bytes,
        best_known_original_name=_better_name(
            stored.best_known_original_name, incoming.best_known_original_name
        ),
        best_known_original_timestamp=_better_timestamp(
            normalize_timestamp(stored.best_known_original_timestamp),
            incoming.best_known_original_timestamp,
        ),
    )
