# === NAVMAP v1 ===
# {
#   "module": "ArchiveLedger.pipeline",
#   "purpose": "Single-worker driver that drains downloaded archives into the payload store",
#   "sections": [
#     {"id": "open-ledger", "name": "open_ledger", "anchor": "function-open-ledger", "kind": "function"},
#     {"id": "payloadoutcome", "name": "PayloadOutcome", "anchor": "class-payloadoutcome", "kind": "class"},
#     {"id": "archiveoutcome", "name": "ArchiveOutcome", "anchor": "class-archiveoutcome", "kind": "class"},
#     {"id": "pipelinesummary", "name": "PipelineSummary", "anchor": "class-pipelinesummary", "kind": "class"},
#     {"id": "archivepipeline", "name": "ArchivePipeline", "anchor": "class-archivepipeline", "kind": "class"}
#   ]
# }
# === /NAVMAP ===
"""Sequential archive ingestion pipeline.

Responsibilities
----------------
- Startup: create the working area, recover archives left ``processing`` by a
  crash, reconcile the downloads directory with the ledger.
- Claim one ``downloaded`` archive at a time, extract it into the scratch
  directory, hash and deduplicate every recognised media file into the flat
  payload store, delete the source archive and record the terminal state.
- Poll for new work while the acquisition agent keeps adding archives.

Design Notes
------------
- Exactly one worker may run; :func:`ArchiveLedger.locks.pipeline_lock` is held
  for the whole of :meth:`ArchivePipeline.run`.
- Each ledger call is its own commit point. The ordering below (claim, store
  payloads, delete, mark done) means a crash at any point is either retried
  from scratch after recovery or already complete.
- A stop request finishes the current archive; an abort request stops between
  payloads and leaves the archive ``processing`` for the next startup to reset.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from ArchiveLedger.config.models import ArchiveLedgerConfig
from ArchiveLedger.errors import (
    REASON_DELETE_FAILED,
    MissingSourceError,
    PipelineCancelled,
    describe_exception,
)
from ArchiveLedger.extraction import MEDIA_EXTENSIONS, extract_zip_safe, iter_media_files
from ArchiveLedger.fingerprint import DEFAULT_CHUNK_BYTES, content_hash
from ArchiveLedger.layout import PathLayout
from ArchiveLedger.ledger.merge import normalize_original_name
from ArchiveLedger.ledger.models import STATUS_ORDER, ArchiveRecord, ArchiveStatus
from ArchiveLedger.ledger.store import SQLiteLedger
from ArchiveLedger.locks import pipeline_lock
from ArchiveLedger.reconcile import ReconcileReport, reconcile_existing_downloads
from ArchiveLedger.resolution import require_archive_path
from ArchiveLedger.retry import delete_with_retry
from ArchiveLedger.storage import build_storage_name, relocate, scratch_workspace
from ArchiveLedger.timestamps import FFprobeTimestampSource, TimestampSource, original_timestamp

logger = logging.getLogger(__name__)


def open_ledger(config: ArchiveLedgerConfig, layout: PathLayout) -> SQLiteLedger:
    """Open the ledger described by ``config`` inside ``layout``."""
    return SQLiteLedger(
        layout.ledger_path,
        downloads_dir=layout.downloads,
        wal_mode=config.ledger.wal_mode,
        busy_timeout_ms=config.ledger.busy_timeout_ms,
        promote_after=config.ledger.promote_after(),
    )


class PayloadOutcome(str, Enum):
    STORED = "stored"  # moved into the store
    DUPLICATE = "duplicate"  # content already stored under another file
    EXISTING = "existing"  # destination already on disk; ledger repaired if needed


@dataclass
class ArchiveOutcome:
    """What happened to one claimed archive."""

    name: str
    status: ArchiveStatus
    claimed: bool = True
    payloads: Dict[PayloadOutcome, int] = field(
        default_factory=lambda: {outcome: 0 for outcome in PayloadOutcome}
    )
    error: Optional[str] = None


@dataclass
class PipelineSummary:
    """Per-status counts reported when the pipeline exits."""

    counts: Dict[ArchiveStatus, int]
    archives_on_disk: int
    processed: int = 0
    cancelled: bool = False

    def lines(self) -> List[str]:
        rows = [f"{status.value}: {self.counts.get(status, 0)}" for status in STATUS_ORDER]
        rows.append(f"archives on disk: {self.archives_on_disk}")
        return rows


class ArchivePipeline:
    """Drains ``downloaded`` archives one at a time.

    Usage:
        with open_ledger(config, layout) as ledger:
            pipeline = ArchivePipeline.from_config(config, ledger, layout)
            summary = pipeline.run(once=True)
    """

    def __init__(
        self,
        ledger: SQLiteLedger,
        layout: PathLayout,
        *,
        media_extensions: Iterable[str] = MEDIA_EXTENSIONS,
        archive_glob: str = "*.zip",
        poll_interval_s: float = 5.0,
        delete_attempts: int = 3,
        delete_backoff_s: float = 2.0,
        hash_chunk_bytes: int = DEFAULT_CHUNK_BYTES,
        timestamp_source: Optional[TimestampSource] = None,
        sleep: Optional[Callable[[float], object]] = None,
        remove: Callable[[Path], None] = os.remove,
    ) -> None:
        """Wire the pipeline to its ledger and working area.

        Args:
            ledger: Open ledger
            layout: Working area
            media_extensions: Recognised payload extensions
            archive_glob: Archive filename pattern in the downloads directory
            poll_interval_s: Idle wait when no archive is eligible
            delete_attempts: Source archive deletion attempts
            delete_backoff_s: Initial deletion backoff
            hash_chunk_bytes: Content hash read size
            timestamp_source: Embedded timestamp reader (``None``: filesystem only)
            sleep: Replaces every wait (idle polling and deletion backoff);
                by default waits are interruptible by stop/abort requests
            remove: File deletion primitive
        """
        self.ledger = ledger
        self.layout = layout
        self.media_extensions = frozenset(ext.lower() for ext in media_extensions)
        self.archive_glob = archive_glob
        self.poll_interval_s = poll_interval_s
        self.delete_attempts = delete_attempts
        self.delete_backoff_s = delete_backoff_s
        self.hash_chunk_bytes = hash_chunk_bytes
        self.timestamp_source = timestamp_source
        self._sleep = sleep
        self._remove = remove
        self.stop_event = threading.Event()
        self.abort_event = threading.Event()

    @classmethod
    def from_config(
        cls,
        config: ArchiveLedgerConfig,
        ledger: SQLiteLedger,
        layout: Optional[PathLayout] = None,
        **overrides,
    ) -> "ArchivePipeline":
        layout = layout or PathLayout.from_config(config)
        settings = config.pipeline
        if "timestamp_source" not in overrides:
            overrides["timestamp_source"] = _default_timestamp_source(config)
        return cls(
            ledger,
            layout,
            media_extensions=settings.media_extensions,
            archive_glob=settings.archive_glob,
            poll_interval_s=settings.poll_interval_s,
            delete_attempts=settings.delete_attempts,
            delete_backoff_s=settings.delete_backoff_s,
            hash_chunk_bytes=settings.hash_chunk_bytes,
            **overrides,
        )

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def request_stop(self) -> None:
        """Finish the current archive, then exit."""
        if not self.stop_event.is_set():
            logger.warning("Stop requested. Finishing current archive...")
        self.stop_event.set()

    def request_abort(self) -> None:
        """Stop between payloads; the current archive stays ``processing``."""
        logger.warning("Abort requested. Stopping after the current payload...")
        self.stop_event.set()
        self.abort_event.set()

    def _idle_wait(self, seconds: float) -> None:
        if self._sleep is not None:
            self._sleep(seconds)
        else:
            self.stop_event.wait(seconds)

    def _backoff_wait(self, seconds: float) -> object:
        if self._sleep is not None:
            return self._sleep(seconds)
        return self.abort_event.wait(seconds)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def prepare(self) -> ReconcileReport:
        """Startup sequence; must run before any work is claimed."""
        self.layout.ensure_directories()
        self.ledger.reset_stuck_processing_to_downloaded()
        return reconcile_existing_downloads(
            self.ledger, self.layout.downloads, self.archive_glob
        )

    def run(self, once: bool = False) -> PipelineSummary:
        """Hold the worker lock, prepare, then drain eligible archives.

        Args:
            once: Exit when no archive is eligible instead of polling

        Returns:
            Final status summary

        Raises:
            PipelineBusyError: If another worker is running
        """
        processed = 0
        cancelled = False
        with pipeline_lock(self.layout.lock_dir):
            self.prepare()
            logger.info(f"Watching downloads folder: {self.layout.downloads}")
            try:
                while not self.stop_event.is_set():
                    outcome = self.process_next()
                    if outcome is None or not outcome.claimed:
                        if once:
                            break
                        self._idle_wait(self.poll_interval_s)
                        continue
                    processed += 1
            except PipelineCancelled as e:
                cancelled = True
                logger.warning(f"Pipeline aborted: {e}")
            finally:
                summary = self.summary(processed=processed, cancelled=cancelled)
                self.log_summary(summary)
        return summary

    def process_next(self) -> Optional[ArchiveOutcome]:
        """Claim and process the next eligible archive, if any."""
        record = self.ledger.next_eligible_archive()
        if record is None:
            return None

        statuses = self.ledger.snapshot_statuses()
        total = len(statuses)
        index = sum(1 for status in statuses.values() if status is ArchiveStatus.DONE) + 1
        percent = round(index / max(1, total) * 100)
        logger.info(
            f"Processing {index} of {total} ({percent}%): {record.name}",
            extra={"stage": "progress", "archive": record.name},
        )
        return self.process_archive(record)

    def process_archive(self, record: ArchiveRecord) -> ArchiveOutcome:
        """Take one archive from ``downloaded`` to ``done`` or ``failed``.

        Raises:
            PipelineCancelled: If an abort was requested mid-archive
        """
        name = record.name
        try:
            source = require_archive_path(record, self.layout.downloads, self.archive_glob)
        except MissingSourceError as e:
            logger.warning(f"{name}: {e}", extra={"stage": "resolve", "archive": name})
            self.ledger.record_failed(name, str(e))
            return ArchiveOutcome(name, ArchiveStatus.FAILED, error=str(e))

        if not self.ledger.record_processing(name):
            current = self.ledger.get_archive(name)
            return ArchiveOutcome(
                name, current.status if current else ArchiveStatus.DOWNLOADED, claimed=False
            )

        outcome = ArchiveOutcome(name, ArchiveStatus.PROCESSING)
        try:
            with scratch_workspace(
                self.layout.scratch, protected=self.layout.protected_paths()
            ) as scratch:
                extract_zip_safe(source, scratch)
                for media in iter_media_files(scratch, self.media_extensions):
                    if self.abort_event.is_set():
                        raise PipelineCancelled(f"aborted while processing {name}")
                    result = self._handle_payload(media)
                    outcome.payloads[result] += 1
        except PipelineCancelled:
            raise
        except Exception as e:
            reason = describe_exception(e)
            logger.error(f"Failed {name}: {reason}", extra={"stage": "extract", "archive": name})
            self.ledger.record_failed(name, reason)
            outcome.status = ArchiveStatus.FAILED
            outcome.error = reason
            return outcome

        if delete_with_retry(
            source,
            attempts=self.delete_attempts,
            backoff_s=self.delete_backoff_s,
            sleep=self._backoff_wait,
            remove=self._remove,
            cancel_event=self.abort_event,
        ):
            self.ledger.record_done(name)
            outcome.status = ArchiveStatus.DONE
            logger.info(
                f"Completed {name}: {outcome.payloads[PayloadOutcome.STORED]} stored, "
                f"{outcome.payloads[PayloadOutcome.DUPLICATE]} duplicate, "
                f"{outcome.payloads[PayloadOutcome.EXISTING]} already present",
                extra={"stage": "done", "archive": name},
            )
        elif self.abort_event.is_set():
            raise PipelineCancelled(f"aborted while deleting {name}")
        else:
            self.ledger.record_failed(name, REASON_DELETE_FAILED)
            outcome.status = ArchiveStatus.FAILED
            outcome.error = REASON_DELETE_FAILED
            logger.warning(
                f"Processed {name} but failed to delete it; status set to failed for retry",
                extra={"stage": "cleanup", "archive": name},
            )
        return outcome

    def _handle_payload(self, path: Path) -> PayloadOutcome:
        digest = content_hash(path, self.hash_chunk_bytes)
        original_name = normalize_original_name(path.name)
        taken_at = original_timestamp(path, self.timestamp_source)
        extra = {"stage": "payload", "payload": path.name, "hash": digest}

        known = self.ledger.get_payload(digest)
        if known is not None and Path(known.storage_path).is_file():
            stored_path = Path(known.storage_path)
            self.ledger.upsert_payload(
                digest, stored_path, stored_path.stat().st_size, original_name, taken_at
            )
            logger.info(f"Already have {stored_path.name} (from {path.name})", extra=extra)
            return PayloadOutcome.DUPLICATE

        destination = self.layout.store / build_storage_name(path.name, digest, path.suffix)
        if destination.exists():
            self.ledger.upsert_payload(
                digest, destination, destination.stat().st_size, original_name, taken_at
            )
            logger.info(f"Already have {destination.name}", extra=extra)
            return PayloadOutcome.EXISTING

        relocate(path, destination)
        self.ledger.upsert_payload(
            digest, destination, destination.stat().st_size, original_name, taken_at
        )
        logger.info(f"Stored {destination.name}", extra=extra)
        return PayloadOutcome.STORED

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def summary(self, processed: int = 0, cancelled: bool = False) -> PipelineSummary:
        return PipelineSummary(
            counts=self.ledger.status_counts(),
            archives_on_disk=len(self.layout.archives_on_disk(self.archive_glob)),
            processed=processed,
            cancelled=cancelled,
        )

    @staticmethod
    def log_summary(summary: PipelineSummary) -> None:
        logger.info("Final status summary:")
        for line in summary.lines():
            logger.info(f"  {line}")


def _default_timestamp_source(config: ArchiveLedgerConfig) -> Optional[TimestampSource]:
    settings = config.timestamps
    if not settings.enabled:
        return None
    source = FFprobeTimestampSource(settings.ffprobe_path, timeout_s=settings.timeout_s)
    if not source.available:
        logger.info(
            f"{settings.ffprobe_path} not found; original timestamps fall back to file times"
        )
        return None
    return source
