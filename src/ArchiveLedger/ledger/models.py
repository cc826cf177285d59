"""Record types persisted by the ledger."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

__all__ = [
    "ArchiveStatus",
    "ArchiveRecord",
    "PayloadRecord",
    "STATUS_ORDER",
    "utcnow",
]


class ArchiveStatus(str, Enum):
    """Lifecycle states of an archive, stored by value."""

    PENDING = "pending"
    DOWNLOADING = "downloading"
    DOWNLOADED = "downloaded"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value


# Reporting order for status summaries.
STATUS_ORDER: tuple[ArchiveStatus, ...] = (
    ArchiveStatus.PENDING,
    ArchiveStatus.DOWNLOADING,
    ArchiveStatus.DOWNLOADED,
    ArchiveStatus.PROCESSING,
    ArchiveStatus.DONE,
    ArchiveStatus.FAILED,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ArchiveRecord:
    """One row per archive ever observed.

    ``name`` is the natural key and never changes. Every other field may be
    refined over the archive's lifetime; rows are never deleted.
    """

    name: str
    status: ArchiveStatus
    size_bytes: Optional[int] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    last_observed_filename: Optional[str] = None
    structural_fingerprint: Optional[str] = None

    @property
    def attempted(self) -> bool:
        return self.started_at is not None


@dataclass(frozen=True)
class PayloadRecord:
    """One row per unique payload content hash ever stored."""

    content_hash: str
    storage_path: str
    first_seen_at: datetime
    size_bytes: int
    best_known_original_name: Optional[str] = None
    best_known_original_timestamp: Optional[datetime] = None
