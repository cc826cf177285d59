"""SQLite-based implementation of the archive ledger."""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional

from ArchiveLedger.errors import REASON_UNKNOWN, InvalidTransitionError, LedgerError
from ArchiveLedger.ledger.merge import merge_archive, merge_payload, normalize_timestamp
from ArchiveLedger.ledger.models import (
    STATUS_ORDER,
    ArchiveRecord,
    ArchiveStatus,
    PayloadRecord,
    utcnow,
)
from ArchiveLedger.ledger.schema import apply_schema
from ArchiveLedger.ledger.state import CRASH_RECOVERY_FROM, check_transition

logger = logging.getLogger(__name__)

# Statuses that mean "already in flight or finished" for acquisition purposes.
_ACQUIRED_STATUSES = (
    ArchiveStatus.DOWNLOADING,
    ArchiveStatus.DOWNLOADED,
    ArchiveStatus.PROCESSING,
    ArchiveStatus.DONE,
)

_ARCHIVE_COLUMNS = (
    "name, status, size_bytes, started_at, completed_at, last_error, "
    "last_observed_filename, structural_fingerprint"
)
_PAYLOAD_COLUMNS = (
    "content_hash, storage_path, first_seen_at, size_bytes, original_name, original_timestamp"
)


def _to_db(value: Optional[datetime]) -> Optional[str]:
    value = normalize_timestamp(value)
    return value.isoformat(timespec="microseconds") if value is not None else None


def _from_db(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return normalize_timestamp(datetime.fromisoformat(value))


class SQLiteLedger:
    """Durable record of archive lifecycle and payload deduplication.

    Every public method runs in its own ``BEGIN IMMEDIATE`` transaction and is
    therefore a commit point: a crash between two calls leaves exactly one of
    them (or neither) applied. There is no cross-call transaction.

    WAL mode lets the pipeline and the acquisition process share the file; the
    in-process lock only serialises threads that share this connection.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        downloads_dir: Optional[Path] = None,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        promote_after: Optional[timedelta] = None,
        now_fn: Callable[[], datetime] = utcnow,
    ):
        """Open (and create or upgrade) the ledger at ``path``.

        Args:
            path: SQLite database file
            downloads_dir: Working directory consulted by
                :meth:`should_skip_acquisition` when no directory is passed
            wal_mode: Enable write-ahead logging for concurrent writers
            busy_timeout_ms: Wait on a locked database before failing
            promote_after: Attempted archives whose last attempt is older than
                this are ordered with untried ones (``None`` = never promote)
            now_fn: Clock, injectable for tests

        Raises:
            LedgerError: If the database cannot be opened or migrated
        """
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.downloads_dir = Path(downloads_dir) if downloads_dir is not None else None
        self.promote_after = promote_after
        self._now = now_fn
        self._lock = threading.RLock()

        try:
            self.conn = sqlite3.connect(
                str(self.path),
                isolation_level=None,
                check_same_thread=False,
                timeout=busy_timeout_ms / 1000.0,
            )
            self.conn.row_factory = sqlite3.Row
            apply_schema(self.conn, wal_mode=wal_mode, busy_timeout_ms=busy_timeout_ms)
        except sqlite3.Error as e:
            raise LedgerError(
                f"Failed to open ledger at {self.path}: {e}", operation="open"
            ) from e
        logger.info(f"Opened ledger at {self.path}")

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                self.conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise LedgerError(f"{operation}: {e}", operation=operation) from e
            try:
                yield self.conn
            except sqlite3.Error as e:
                self._rollback(operation)
                raise LedgerError(f"{operation}: {e}", operation=operation) from e
            except BaseException:
                self._rollback(operation)
                raise
            try:
                self.conn.execute("COMMIT")
            except sqlite3.Error as e:
                self._rollback(operation)
                raise LedgerError(f"{operation}: commit failed: {e}", operation=operation) from e

    def _rollback(self, operation: str) -> None:
        if not self.conn.in_transaction:
            return
        try:
            self.conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            logger.error(f"{operation}: rollback failed: {e}")

    @contextmanager
    def _read(self, operation: str) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self.conn
            except sqlite3.Error as e:
                raise LedgerError(f"{operation}: {e}", operation=operation) from e

    @staticmethod
    def _row_to_archive(row: sqlite3.Row) -> ArchiveRecord:
        return ArchiveRecord(
            name=row["name"],
            status=ArchiveStatus(row["status"]),
            size_bytes=row["size_bytes"],
            started_at=_from_db(row["started_at"]),
            completed_at=_from_db(row["completed_at"]),
            last_error=row["last_error"],
            last_observed_filename=row["last_observed_filename"],
            structural_fingerprint=row["structural_fingerprint"],
        )

    @staticmethod
    def _row_to_payload(row: sqlite3.Row) -> PayloadRecord:
        return PayloadRecord(
            content_hash=row["content_hash"],
            storage_path=row["storage_path"],
            first_seen_at=_from_db(row["first_seen_at"]),
            size_bytes=row["size_bytes"],
            best_known_original_name=row["original_name"],
            best_known_original_timestamp=_from_db(row["original_timestamp"]),
        )

    def _fetch_archive(self, cx: sqlite3.Connection, name: str) -> Optional[ArchiveRecord]:
        row = cx.execute(
            f"SELECT {_ARCHIVE_COLUMNS} FROM archives WHERE name = ?", (name,)
        ).fetchone()
        return self._row_to_archive(row) if row else None

    def _fetch_payload(self, cx: sqlite3.Connection, content_hash: str) -> Optional[PayloadRecord]:
        row = cx.execute(
            f"SELECT {_PAYLOAD_COLUMNS} FROM payloads WHERE content_hash = ?", (content_hash,)
        ).fetchone()
        return self._row_to_payload(row) if row else None

    @staticmethod
    def _write_archive(cx: sqlite3.Connection, record: ArchiveRecord) -> None:
        cx.execute(
            f"""
            INSERT INTO archives ({_ARCHIVE_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(name) DO UPDATE SET
                status = excluded.status,
                size_bytes = excluded.size_bytes,
                started_at = excluded.started_at,
                completed_at = excluded.completed_at,
                last_error = excluded.last_error,
                last_observed_filename = excluded.last_observed_filename,
                structural_fingerprint = excluded.structural_fingerprint
            """,
            (
                record.name,
                record.status.value,
                record.size_bytes,
                _to_db(record.started_at),
                _to_db(record.completed_at),
                record.last_error,
                record.last_observed_filename,
                record.structural_fingerprint,
            ),
        )

    def _transition(
        self,
        name: str,
        wanted: ArchiveStatus,
        build: Callable[[Optional[ArchiveRecord]], ArchiveRecord],
    ) -> bool:
        """Apply one checked state change; rejected edges are logged and ignored."""
        with self._transaction(f"record_{wanted.value}") as cx:
            stored = self._fetch_archive(cx, name)
            current = stored.status if stored else None
            try:
                check_transition(name, current, wanted)
            except InvalidTransitionError as e:
                logger.warning(f"Ignoring transition: {e}")
                return False
            self._write_archive(cx, build(stored))
        logger.info(
            f"{name}: {current.value if current else 'new'} -> {wanted.value}",
            extra={"stage": "ledger", "archive": name, "status": wanted.value},
        )
        return True

    # ------------------------------------------------------------------
    # Archive lifecycle
    # ------------------------------------------------------------------

    def record_discovered(self, name: str) -> bool:
        """Insert a pending row for ``name`` if unknown.

        Returns:
            True if a row was created, False if ``name`` was already tracked
        """
        with self._transaction("record_discovered") as cx:
            cur = cx.execute(
                "INSERT INTO archives (name, status) VALUES (?, ?) ON CONFLICT(name) DO NOTHING",
                (name, ArchiveStatus.PENDING.value),
            )
            created = cur.rowcount == 1
        if created:
            logger.info(f"Discovered {name}", extra={"stage": "ledger", "archive": name})
        return created

    def record_downloading(
        self,
        name: str,
        size_bytes: Optional[int] = None,
        observed_filename: Optional[str] = None,
    ) -> bool:
        """Mark acquisition in progress, filling missing optional fields."""

        incoming = ArchiveRecord(
            name=name,
            status=ArchiveStatus.DOWNLOADING,
            size_bytes=size_bytes,
            last_observed_filename=observed_filename,
        )
        return self._transition(
            name, ArchiveStatus.DOWNLOADING, lambda stored: merge_archive(stored, incoming)
        )

    def record_downloaded(
        self,
        name: str,
        size_bytes: Optional[int] = None,
        observed_filename: Optional[str] = None,
        fingerprint: Optional[str] = None,
    ) -> bool:
        """Mark the archive present on disk and eligible for processing.

        Also the re-arm path for failed archives: the stale error is cleared.
        """
        incoming = ArchiveRecord(
            name=name,
            status=ArchiveStatus.DOWNLOADED,
            size_bytes=size_bytes,
            last_observed_filename=observed_filename,
            structural_fingerprint=fingerprint.lower() if fingerprint else None,
        )
        return self._transition(
            name, ArchiveStatus.DOWNLOADED, lambda stored: merge_archive(stored, incoming)
        )

    def record_processing(self, name: str) -> bool:
        """Claim ``name``: status processing, ``started_at`` now, ``completed_at`` kept."""

        now = self._now()

        def build(stored: Optional[ArchiveRecord]) -> ArchiveRecord:
            incoming = ArchiveRecord(
                name=name,
                status=ArchiveStatus.PROCESSING,
                completed_at=stored.completed_at if stored else None,
            )
            return replace(merge_archive(stored, incoming), started_at=now)

        return self._transition(name, ArchiveStatus.PROCESSING, build)

    def record_done(self, name: str) -> bool:
        """Terminal success: ``completed_at`` now, transient error cleared."""

        incoming = ArchiveRecord(name=name, status=ArchiveStatus.DONE, completed_at=self._now())
        return self._transition(
            name, ArchiveStatus.DONE, lambda stored: merge_archive(stored, incoming)
        )

    def record_failed(self, name: str, reason: Optional[str]) -> bool:
        """Terminal-but-recoverable failure with ``reason`` kept in ``last_error``."""

        incoming = ArchiveRecord(
            name=name,
            status=ArchiveStatus.FAILED,
            last_error=(reason or "").strip() or REASON_UNKNOWN,
        )
        return self._transition(
            name, ArchiveStatus.FAILED, lambda stored: merge_archive(stored, incoming)
        )

    def reset_stuck_processing_to_downloaded(self) -> int:
        """Return every row left in processing by a crash to downloaded.

        Run once at startup, before any work is claimed. Timestamps are
        cleared so the archive is retried from scratch as untried work.

        Returns:
            Number of rows reset
        """
        with self._transaction("reset_stuck_processing") as cx:
            cur = cx.execute(
                """
                UPDATE archives
                SET status = ?, started_at = NULL, completed_at = NULL
                WHERE status = ?
                """,
                (ArchiveStatus.DOWNLOADED.value, CRASH_RECOVERY_FROM.value),
            )
            count = cur.rowcount
        if count:
            logger.warning(
                f"Reset {count} archive(s) stuck in processing back to downloaded",
                extra={"stage": "recovery", "count": count},
            )
        return count

    # ------------------------------------------------------------------
    # Archive queries
    # ------------------------------------------------------------------

    def get_archive(self, name: str) -> Optional[ArchiveRecord]:
        """Return the row for ``name`` or None."""
        with self._read("get_archive") as cx:
            return self._fetch_archive(cx, name)

    def list_archives(self, status: Optional[ArchiveStatus] = None) -> List[ArchiveRecord]:
        """Return all rows (optionally filtered by status) ordered by name."""
        with self._read("list_archives") as cx:
            if status is None:
                rows = cx.execute(f"SELECT {_ARCHIVE_COLUMNS} FROM archives ORDER BY name")
            else:
                rows = cx.execute(
                    f"SELECT {_ARCHIVE_COLUMNS} FROM archives WHERE status = ? ORDER BY name",
                    (status.value,),
                )
            return [self._row_to_archive(row) for row in rows.fetchall()]

    def find_by_fingerprint(self, fingerprint: str) -> Optional[str]:
        """Return the tracked name already associated with ``fingerprint``."""
        if not fingerprint:
            return None
        with self._read("find_by_fingerprint") as cx:
            row = cx.execute(
                "SELECT name FROM archives WHERE structural_fingerprint = ? ORDER BY name LIMIT 1",
                (fingerprint.lower(),),
            ).fetchone()
            return row["name"] if row else None

    def find_by_observed_filename(self, filename: str) -> Optional[str]:
        """Return the tracked name whose last observed on-disk name is ``filename``."""
        with self._read("find_by_observed_filename") as cx:
            row = cx.execute(
                "SELECT name FROM archives WHERE last_observed_filename = ? ORDER BY name LIMIT 1",
                (filename,),
            ).fetchone()
            return row["name"] if row else None

    def should_skip_acquisition(
        self,
        name: str,
        alt_name: Optional[str] = None,
        downloads_dir: Optional[Path] = None,
    ) -> bool:
        """True if either name is already acquired/in flight or already on disk.

        Args:
            name: Tracked archive name
            alt_name: Acquisition-suggested filename, if different
            downloads_dir: Working directory (defaults to the ledger's)
        """
        names: list[str] = []
        for candidate in (name, alt_name):
            if candidate and candidate not in names:
                names.append(candidate)

        acquired = tuple(status.value for status in _ACQUIRED_STATUSES)
        placeholders = ",".join("?" * len(acquired))
        with self._read("should_skip_acquisition") as cx:
            for candidate in names:
                row = cx.execute(
                    f"SELECT 1 FROM archives WHERE name = ? AND status IN ({placeholders})",
                    (candidate, *acquired),
                ).fetchone()
                if row:
                    return True

        directory = Path(downloads_dir) if downloads_dir is not None else self.downloads_dir
        if directory is None:
            return False
        return any((directory / candidate).is_file() for candidate in names)

    def next_eligible_archive(self) -> Optional[ArchiveRecord]:
        """Return one downloaded archive, untried ones first, then by name."""

        cutoff = None
        if self.promote_after is not None:
            cutoff = _to_db(self._now() - self.promote_after)
        with self._read("next_eligible_archive") as cx:
            row = cx.execute(
                f"""
                SELECT {_ARCHIVE_COLUMNS} FROM archives
                WHERE status = ?
                ORDER BY (started_at IS NOT NULL AND (? IS NULL OR started_at >= ?)), name
                LIMIT 1
                """,
                (ArchiveStatus.DOWNLOADED.value, cutoff, cutoff),
            ).fetchone()
            return self._row_to_archive(row) if row else None

    def snapshot_statuses(self) -> Dict[str, ArchiveStatus]:
        """Return a mapping of every tracked name to its status."""
        with self._read("snapshot_statuses") as cx:
            rows = cx.execute("SELECT name, status FROM archives").fetchall()
            return {row["name"]: ArchiveStatus(row["status"]) for row in rows}

    def status_counts(self) -> Dict[ArchiveStatus, int]:
        """Per-status archive counts in reporting order (zero counts included)."""
        counts = {status: 0 for status in STATUS_ORDER}
        for status in self.snapshot_statuses().values():
            counts[status] += 1
        return counts

    # ------------------------------------------------------------------
    # Payload registry
    # ------------------------------------------------------------------

    def is_payload_known(self, content_hash: str) -> bool:
        """True if ``content_hash`` has a payload row."""
        with self._read("is_payload_known") as cx:
            row = cx.execute(
                "SELECT 1 FROM payloads WHERE content_hash = ? LIMIT 1", (content_hash,)
            ).fetchone()
            return row is not None

    def get_payload(self, content_hash: str) -> Optional[PayloadRecord]:
        """Return the payload row for ``content_hash`` or None."""
        with self._read("get_payload") as cx:
            return self._fetch_payload(cx, content_hash)

    def payload_count(self) -> int:
        with self._read("payload_count") as cx:
            return cx.execute("SELECT COUNT(*) FROM payloads").fetchone()[0]

    def upsert_payload(
        self,
        content_hash: str,
        storage_path: str | Path,
        size_bytes: int,
        original_name: Optional[str] = None,
        original_timestamp: Optional[datetime] = None,
    ) -> bool:
        """Register or refine the payload row for ``content_hash``.

        Returns:
            True if this call inserted a new row, False if it refined one
        """
        incoming = PayloadRecord(
            content_hash=content_hash,
            storage_path=str(storage_path),
            first_seen_at=self._now(),
            size_bytes=size_bytes,
            best_known_original_name=original_name,
            best_known_original_timestamp=original_timestamp,
        )
        with self._transaction("upsert_payload") as cx:
            stored = self._fetch_payload(cx, content_hash)
            merged = merge_payload(stored, incoming)
            cx.execute(
                f"""
                INSERT INTO payloads ({_PAYLOAD_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(content_hash) DO UPDATE SET
                    storage_path = excluded.storage_path,
                    size_bytes = excluded.size_bytes,
                    original_name = excluded.original_name,
                    original_timestamp = excluded.original_timestamp
                """,
                (
                    merged.content_hash,
                    merged.storage_path,
                    _to_db(merged.first_seen_at),
                    merged.size_bytes,
                    merged.best_known_original_name,
                    _to_db(merged.best_known_original_timestamp),
                ),
            )
        return stored is None

    # ------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self.conn:
                self.conn.close()
                logger.debug("Ledger connection closed")

    def __enter__(self) -> "SQLiteLedger":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
