"""Ledger calls made by the acquisition agent.

The agent that drives the authenticated download flow runs in its own
process. It never extracts or deletes anything; it only drops archives into
the downloads directory and tells the ledger about them::

    if should_acquire(ledger, name, suggested_name, downloads_dir):
        path = agent.download(name)
        register_acquired(ledger, path, name, suggested_name=path.name)
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from ArchiveLedger.fingerprint import structural_fingerprint
from ArchiveLedger.ledger.models import ArchiveRecord
from ArchiveLedger.ledger.store import SQLiteLedger

logger = logging.getLogger(__name__)


def should_acquire(
    ledger: SQLiteLedger,
    name: str,
    suggested_name: Optional[str] = None,
    downloads_dir: Optional[Path] = None,
) -> bool:
    """True unless the archive is already in flight, recorded or on disk."""
    skip = ledger.should_skip_acquisition(name, suggested_name, downloads_dir)
    if skip:
        logger.info(f"[skip] {name} already downloaded/recorded", extra={"stage": "intake"})
    return not skip


def mark_acquiring(
    ledger: SQLiteLedger,
    name: str,
    suggested_name: Optional[str] = None,
    size_bytes: Optional[int] = None,
) -> bool:
    """Record that the agent has started saving ``name``."""
    ledger.record_discovered(name)
    return ledger.record_downloading(name, size_bytes=size_bytes, observed_filename=suggested_name)


def register_acquired(
    ledger: SQLiteLedger,
    path: Path,
    name: str,
    suggested_name: Optional[str] = None,
) -> Optional[ArchiveRecord]:
    """Record a finished acquisition: discovered, downloading, then downloaded.

    The final size and the structural fingerprint are taken from ``path``. The
    suggested filename is stored only when it differs from the tracked name.

    Args:
        ledger: Open ledger
        path: Where the archive was saved
        name: Tracked archive name
        suggested_name: Filename the download was saved under

    Returns:
        The stored row after the calls
    """
    observed = suggested_name if suggested_name and suggested_name != name else None
    size = path.stat().st_size if path.is_file() else None
    fingerprint = structural_fingerprint(path)

    ledger.record_discovered(name)
    ledger.record_downloading(name, size_bytes=size, observed_filename=observed)
    ledger.record_downloaded(
        name, size_bytes=size, observed_filename=observed, fingerprint=fingerprint
    )
    return ledger.get_archive(name)
