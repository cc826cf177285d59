"""
Persistent archive ledger.

Durable record of every archive's lifecycle state and of every deduplicated
payload's content hash and storage location, backed by SQLite in WAL mode.
"""

from __future__ import annotations

from ArchiveLedger.ledger.merge import merge_archive, merge_payload
from ArchiveLedger.ledger.models import ArchiveRecord, ArchiveStatus, PayloadRecord
from ArchiveLedger.ledger.store import SQLiteLedger

__all__ = [
    "ArchiveRecord",
    "ArchiveStatus",
    "PayloadRecord",
    "SQLiteLedger",
    "merge_archive",
    "merge_payload",
]
