"""Locate the on-disk file for a tracked archive.

The acquisition agent does not always save an archive under its tracked name:
browsers add `` (1)`` suffixes, and a redownload may land under an entirely
different name. Resolution tries, in order:

1. ``downloads/<name>``
2. ``downloads/<last_observed_filename>``
3. any archive in ``downloads`` whose structural fingerprint equals the one
   recorded for this archive
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from ArchiveLedger.errors import MissingSourceError
from ArchiveLedger.fingerprint import structural_fingerprint
from ArchiveLedger.ledger.models import ArchiveRecord

logger = logging.getLogger(__name__)


def _safe_child(directory: Path, filename: Optional[str]) -> Optional[Path]:
    if not filename or not filename.strip():
        return None
    candidate = directory / Path(filename.strip()).name
    return candidate if candidate.is_file() else None


def scan_for_fingerprint(
    downloads_dir: Path, fingerprint: str, archive_glob: str = "*.zip"
) -> Optional[Path]:
    """Return the first archive (by name) whose structural fingerprint matches."""

    wanted = fingerprint.lower()
    for candidate in sorted(downloads_dir.glob(archive_glob)):
        if not candidate.is_file():
            continue
        # Unreadable candidates fingerprint as None and are skipped.
        if structural_fingerprint(candidate) == wanted:
            return candidate
    return None


def resolve_archive_path(
    record: ArchiveRecord,
    downloads_dir: Path,
    archive_glob: str = "*.zip",
) -> Optional[Path]:
    """Return the current on-disk path of ``record``'s archive, or None.

    Args:
        record: Ledger row for the archive
        downloads_dir: Directory the acquisition agent writes into
        archive_glob: Pattern used by the fingerprint scan
    """
    primary = _safe_child(downloads_dir, record.name)
    if primary is not None:
        return primary

    observed = _safe_child(downloads_dir, record.last_observed_filename)
    if observed is not None:
        logger.info(
            f"Resolved {record.name} via observed filename {observed.name}",
            extra={"stage": "resolve", "archive": record.name},
        )
        return observed

    if record.structural_fingerprint and downloads_dir.is_dir():
        match = scan_for_fingerprint(downloads_dir, record.structural_fingerprint, archive_glob)
        if match is not None:
            logger.info(
                f"Resolved {record.name} via structural fingerprint to {match.name}",
                extra={"stage": "resolve", "archive": record.name},
            )
            return match

    return None


def require_archive_path(
    record: ArchiveRecord,
    downloads_dir: Path,
    archive_glob: str = "*.zip",
) -> Path:
    """Like :func:`resolve_archive_path` but raise when nothing resolves.

    Raises:
        MissingSourceError: If no strategy finds the archive on disk
    """
    path = resolve_archive_path(record, downloads_dir, archive_glob)
    if path is None:
        raise MissingSourceError(record.name)
    return path
