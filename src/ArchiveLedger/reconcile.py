"""Bring the ledger in line with the archives actually on disk.

Run at startup (after crash recovery, before any work is claimed) and from
the ``reconcile`` command. Also hosts the manual Failed → Downloaded re-arm
used by the ``retry`` command.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from ArchiveLedger.fingerprint import structural_fingerprint
from ArchiveLedger.ledger.models import ArchiveStatus
from ArchiveLedger.ledger.store import SQLiteLedger
from ArchiveLedger.resolution import resolve_archive_path

logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    """Outcome of one reconciliation pass."""

    recorded: List[str] = field(default_factory=list)
    matched: Dict[str, str] = field(default_factory=dict)
    ignored: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.recorded) + len(self.matched) + len(self.ignored)


def _match_tracked(ledger: SQLiteLedger, filename: str, fingerprint: Optional[str]) -> Optional[str]:
    tracked = ledger.find_by_observed_filename(filename)
    if tracked is None and fingerprint:
        tracked = ledger.find_by_fingerprint(fingerprint)
    return tracked


def reconcile_existing_downloads(
    ledger: SQLiteLedger,
    downloads_dir: Path,
    archive_glob: str = "*.zip",
) -> ReconcileReport:
    """Record every archive in ``downloads_dir`` as downloaded.

    A file whose name is not a tracked name is first matched against tracked
    rows by last observed filename, then by structural fingerprint; a match
    re-arms that row instead of tracking the same archive twice. Archives in a
    status that cannot move to downloaded (``done``, ``processing``) are left
    alone.

    Args:
        ledger: Open ledger
        downloads_dir: Directory scanned (top level only)
        archive_glob: Archive filename pattern

    Returns:
        What happened to each file
    """
    report = ReconcileReport()
    if not downloads_dir.is_dir():
        return report

    for path in sorted(downloads_dir.glob(archive_glob)):
        if not path.is_file():
            continue
        filename = path.name
        size = path.stat().st_size
        existing = ledger.get_archive(filename)

        if existing is not None:
            fingerprint = None
            if existing.structural_fingerprint is None:
                fingerprint = structural_fingerprint(path)
            if ledger.record_downloaded(filename, size_bytes=size, fingerprint=fingerprint):
                report.recorded.append(filename)
            else:
                report.ignored.append(filename)
            continue

        fingerprint = structural_fingerprint(path)
        tracked = _match_tracked(ledger, filename, fingerprint)
        if tracked is not None:
            if ledger.record_downloaded(
                tracked, size_bytes=size, observed_filename=filename, fingerprint=fingerprint
            ):
                report.matched[filename] = tracked
                logger.info(
                    f"Matched {filename} to tracked archive {tracked}",
                    extra={"stage": "reconcile", "archive": tracked},
                )
            else:
                report.ignored.append(filename)
            continue

        if ledger.record_downloaded(filename, size_bytes=size, fingerprint=fingerprint):
            report.recorded.append(filename)
        else:
            report.ignored.append(filename)

    logger.info(
        f"Reconciled {report.total} archive(s) on disk: {len(report.recorded)} recorded, "
        f"{len(report.matched)} matched, {len(report.ignored)} ignored",
        extra={"stage": "reconcile"},
    )
    return report


def retry_failed(
    ledger: SQLiteLedger,
    downloads_dir: Path,
    names: Optional[Iterable[str]] = None,
    archive_glob: str = "*.zip",
) -> List[str]:
    """Re-arm failed archives whose file still resolves on disk.

    Args:
        ledger: Open ledger
        downloads_dir: Directory the archives live in
        names: Restrict to these tracked names (default: every failed archive)
        archive_glob: Pattern used by the fingerprint fallback

    Returns:
        Names moved back to downloaded
    """
    failed = {record.name: record for record in ledger.list_archives(ArchiveStatus.FAILED)}
    if names is not None:
        wanted = list(dict.fromkeys(names))
        for name in wanted:
            if name not in failed:
                logger.warning(f"Not retrying {name}: not in failed status")
        candidates = [failed[name] for name in wanted if name in failed]
    else:
        candidates = [failed[name] for name in sorted(failed)]

    rearmed: List[str] = []
    for record in candidates:
        path = resolve_archive_path(record, downloads_dir, archive_glob)
        if path is None:
            logger.warning(
                f"Not retrying {record.name}: archive no longer on disk",
                extra={"stage": "retry", "archive": record.name},
            )
            continue
        observed = path.name if path.name != record.name else None
        if ledger.record_downloaded(
            record.name, size_bytes=path.stat().st_size, observed_filename=observed
        ):
            rearmed.append(record.name)
    return rearmed
