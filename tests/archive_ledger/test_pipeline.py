"""End-to-end tests for the archive pipeline.

Each test builds real ZIP files in a temporary working area and drives
:class:`ArchivePipeline` with an injected sleep, so nothing waits.
"""

from __future__ import annotations

import hashlib
import os
from datetime import datetime, timezone
from pathlib import Path

import pytest

from ArchiveLedger.errors import REASON_DELETE_FAILED, REASON_MISSING_SOURCE, PipelineBusyError
from ArchiveLedger.fingerprint import structural_fingerprint
from ArchiveLedger.ledger.models import ArchiveStatus
from ArchiveLedger.locks import pipeline_lock
from ArchiveLedger.pipeline import ArchivePipeline, PayloadOutcome
from ArchiveLedger.reconcile import retry_failed
from ArchiveLedger.storage import build_storage_name

VIDEO = b"\x00\x00\x00\x18ftypmp42" + b"frame" * 64


def _sha(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _store_files(layout) -> list[Path]:
    return sorted(p for p in layout.store.iterdir() if p.is_file())


class FlakyRemove:
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    def __call__(self, path: Path) -> None:
        self.calls += 1
        if self.calls <= self.failures:
            raise PermissionError(13, "file in use", str(path))
        os.remove(path)


class AbortingTimestampSource:
    """Requests an abort while the first payload is being handled."""

    def __init__(self) -> None:
        self.pipeline = None

    def candidates(self, path: Path):
        self.pipeline.request_abort()
        return []


class TestDeduplication:
    def test_same_content_in_two_archives_stored_once(self, pipeline, ledger, layout, make_zip):
        make_zip(layout.downloads / "a.zip", {"Takeout/Google Photos/video.mp4": VIDEO})
        make_zip(layout.downloads / "b.zip", {"clip.mp4": VIDEO})

        summary = pipeline.run(once=True)

        digest = _sha(VIDEO)
        assert [p.name for p in _store_files(layout)] == [f"video-{digest[:8]}.mp4"]
        assert ledger.payload_count() == 1
        payload = ledger.get_payload(digest)
        assert payload.best_known_original_name == "clip.mp4"
        assert payload.size_bytes == len(VIDEO)

        assert ledger.get_archive("a.zip").status is ArchiveStatus.DONE
        assert ledger.get_archive("b.zip").status is ArchiveStatus.DONE
        assert not (layout.downloads / "a.zip").exists()
        assert not (layout.downloads / "b.zip").exists()
        assert summary.processed == 2
        assert summary.counts[ArchiveStatus.DONE] == 2
        assert summary.archives_on_disk == 0
        assert "done: 2" in summary.lines()

    def test_outcomes_reported_per_archive(self, pipeline, ledger, layout, make_zip):
        make_zip(layout.downloads / "a.zip", {"video.mp4": VIDEO, "other.mov": b"other"})
        make_zip(layout.downloads / "b.zip", {"clip.mp4": VIDEO})
        pipeline.prepare()

        first = pipeline.process_next()
        second = pipeline.process_next()

        assert first.payloads[PayloadOutcome.STORED] == 2
        assert second.payloads[PayloadOutcome.DUPLICATE] == 1
        assert second.payloads[PayloadOutcome.STORED] == 0
        assert pipeline.process_next() is None

    def test_non_media_members_ignored(self, pipeline, ledger, layout, make_zip):
        make_zip(
            layout.downloads / "a.zip",
            {"video.MP4": VIDEO, "video.mp4.json": b"{}", "notes.txt": b"hello"},
        )
        pipeline.run(once=True)

        assert len(_store_files(layout)) == 1
        assert _store_files(layout)[0].suffix == ".mp4"
        assert ledger.get_archive("a.zip").status is ArchiveStatus.DONE

    def test_existing_destination_registered_without_move(self, pipeline, ledger, layout, make_zip):
        digest = _sha(VIDEO)
        prior = layout.store / build_storage_name("video.mp4", digest, ".mp4")
        prior.write_bytes(VIDEO)
        make_zip(layout.downloads / "a.zip", {"video.mp4": VIDEO})
        pipeline.prepare()

        outcome = pipeline.process_next()

        assert outcome.payloads[PayloadOutcome.EXISTING] == 1
        assert ledger.get_payload(digest).storage_path == str(prior)
        assert _store_files(layout) == [prior]

    def test_stale_payload_row_relocated(self, pipeline, ledger, layout, make_zip):
        digest = _sha(VIDEO)
        ledger.upsert_payload(digest, layout.store / "vanished.mp4", len(VIDEO), "vanished.mp4")
        make_zip(layout.downloads / "a.zip", {"video.mp4": VIDEO})

        pipeline.run(once=True)

        stored = ledger.get_payload(digest)
        assert Path(stored.storage_path).is_file()
        assert Path(stored.storage_path).name == f"video-{digest[:8]}.mp4"
        assert stored.best_known_original_name == "video.mp4"


class TestLifecycle:
    def test_done_archives_never_reprocessed(self, pipeline, ledger, layout, make_zip, clock):
        make_zip(layout.downloads / "a.zip", {"video.mp4": VIDEO})
        pipeline.run(once=True)
        completed_at = ledger.get_archive("a.zip").completed_at

        clock.advance(hours=1)
        make_zip(layout.downloads / "a.zip", {"video.mp4": VIDEO})
        summary = pipeline.run(once=True)

        assert summary.processed == 0
        assert (layout.downloads / "a.zip").exists()
        record = ledger.get_archive("a.zip")
        assert record.status is ArchiveStatus.DONE
        assert record.completed_at == completed_at

    def test_processing_row_recovered_on_startup(self, pipeline, ledger, layout, make_zip):
        make_zip(layout.downloads / "a.zip", {"video.mp4": VIDEO})
        ledger.record_downloaded("a.zip")
        ledger.record_processing("a.zip")

        summary = pipeline.run(once=True)

        assert summary.processed == 1
        assert ledger.get_archive("a.zip").status is ArchiveStatus.DONE

    def test_untried_archives_first(self, pipeline, ledger, layout, make_zip, clock):
        make_zip(layout.downloads / "a.zip", {"a.mp4": b"a"})
        make_zip(layout.downloads / "b.zip", {"b.mp4": b"b"})
        ledger.record_downloaded("a.zip")
        ledger.record_processing("a.zip")
        ledger.record_failed("a.zip", "transient")
        retry_failed(ledger, layout.downloads)
        pipeline.prepare()

        outcome = pipeline.process_next()
        assert outcome.name == "b.zip"

    def test_renamed_archive_resolved_by_fingerprint(self, tmp_path, pipeline, ledger, layout, make_zip):
        members = {"video.mp4": VIDEO}
        fingerprint = structural_fingerprint(make_zip(tmp_path / "orig.zip", members))
        ledger.record_downloaded("takeout-001.zip", fingerprint=fingerprint)
        renamed = make_zip(layout.downloads / "takeout-001 (1).zip", members)

        outcome = pipeline.process_next()

        assert outcome.status is ArchiveStatus.DONE
        assert not renamed.exists()
        assert ledger.get_archive("takeout-001.zip").status is ArchiveStatus.DONE

    def test_missing_source_fails(self, pipeline, ledger, layout):
        ledger.record_downloaded("gone.zip")

        pipeline.run(once=True)

        record = ledger.get_archive("gone.zip")
        assert record.status is ArchiveStatus.FAILED
        assert record.last_error == REASON_MISSING_SOURCE

    def test_corrupt_archive_fails_and_is_kept(self, pipeline, ledger, layout):
        (layout.downloads / "bad.zip").write_bytes(b"this is not a zip file")

        pipeline.run(once=True)

        record = ledger.get_archive("bad.zip")
        assert record.status is ArchiveStatus.FAILED
        assert record.last_error.startswith("Corrupt archive bad.zip")
        assert (layout.downloads / "bad.zip").exists()
        assert list(layout.scratch.iterdir()) == []

    def test_unsafe_archive_rejected(self, pipeline, ledger, layout, make_zip):
        make_zip(layout.downloads / "evil.zip", {"../escape.mp4": VIDEO})

        pipeline.run(once=True)

        assert ledger.get_archive("evil.zip").status is ArchiveStatus.FAILED
        assert "Unsafe path" in ledger.get_archive("evil.zip").last_error
        assert _store_files(layout) == []
        assert ledger.payload_count() == 0


class TestDeletion:
    def _pipeline(self, ledger, layout, sleep, remove):
        return ArchivePipeline(ledger, layout, sleep=sleep, remove=remove)

    def test_transient_lock_retried(self, ledger, layout, make_zip, sleep):
        make_zip(layout.downloads / "a.zip", {"video.mp4": VIDEO})
        remove = FlakyRemove(failures=2)

        self._pipeline(ledger, layout, sleep, remove).run(once=True)

        assert remove.calls == 3
        assert sleep.calls == [2.0, 4.0]
        assert ledger.get_archive("a.zip").status is ArchiveStatus.DONE

    def test_persistent_lock_marks_failed(self, ledger, layout, make_zip, sleep):
        make_zip(layout.downloads / "a.zip", {"video.mp4": VIDEO})

        self._pipeline(ledger, layout, sleep, FlakyRemove(failures=99)).run(once=True)

        record = ledger.get_archive("a.zip")
        assert record.status is ArchiveStatus.FAILED
        assert record.last_error == REASON_DELETE_FAILED
        assert (layout.downloads / "a.zip").exists()
        assert ledger.payload_count() == 1

        assert retry_failed(ledger, layout.downloads) == ["a.zip"]
        outcome = self._pipeline(ledger, layout, sleep, os.remove).process_next()

        assert outcome.status is ArchiveStatus.DONE
        assert outcome.payloads[PayloadOutcome.DUPLICATE] == 1
        assert len(_store_files(layout)) == 1

    def test_abort_during_backoff_stops_retrying(self, ledger, layout, make_zip):
        make_zip(layout.downloads / "a.zip", {"video.mp4": VIDEO})
        remove = FlakyRemove(failures=99)
        waits = []

        def sleep(seconds):
            waits.append(seconds)
            pipeline.request_abort()

        pipeline = ArchivePipeline(ledger, layout, sleep=sleep, remove=remove)
        summary = pipeline.run(once=True)

        assert summary.cancelled is True
        assert remove.calls == 2
        assert waits == [2.0]
        assert ledger.get_archive("a.zip").status is ArchiveStatus.PROCESSING
        assert (layout.downloads / "a.zip").exists()



class TestTimestamps:
    def test_embedded_timestamp_preferred(self, ledger, layout, make_zip, sleep, make_timestamp_source):
        taken = datetime(2019, 1, 1, 8, 0, tzinfo=timezone.utc)
        source = make_timestamp_source({"video.mp4": [taken]})
        make_zip(layout.downloads / "a.zip", {"video.mp4": VIDEO})

        ArchivePipeline(ledger, layout, sleep=sleep, timestamp_source=source).run(once=True)

        assert ledger.get_payload(_sha(VIDEO)).best_known_original_timestamp == taken

    def test_member_date_used_as_fallback(self, pipeline, ledger, layout, make_zip):
        make_zip(layout.downloads / "a.zip", {"video.mp4": VIDEO}, date_time=(2020, 7, 4, 12, 0, 0))

        pipeline.run(once=True)

        stamp = ledger.get_payload(_sha(VIDEO)).best_known_original_timestamp
        assert stamp is not None
        assert stamp.date().year == 2020

    def test_earliest_timestamp_kept_across_archives(self, pipeline, ledger, layout, make_zip):
        make_zip(layout.downloads / "a.zip", {"video.mp4": VIDEO}, date_time=(2022, 1, 1, 0, 0, 0))
        make_zip(layout.downloads / "b.zip", {"video.mp4": VIDEO}, date_time=(2018, 6, 1, 0, 0, 0))

        pipeline.run(once=True)

        assert ledger.get_payload(_sha(VIDEO)).best_known_original_timestamp.year == 2018

    def test_reader_failure_does_not_fail_archive(self, ledger, layout, make_zip, sleep, make_timestamp_source):
        make_zip(layout.downloads / "a.zip", {"video.mp4": VIDEO})

        ArchivePipeline(
            ledger, layout, sleep=sleep, timestamp_source=make_timestamp_source(fail=True)
        ).run(once=True)

        assert ledger.get_archive("a.zip").status is ArchiveStatus.DONE


class TestCancellation:
    def test_stop_before_start_processes_nothing(self, pipeline, ledger, layout, make_zip):
        make_zip(layout.downloads / "a.zip", {"video.mp4": VIDEO})
        pipeline.request_stop()

        summary = pipeline.run()

        assert summary.processed == 0
        assert summary.counts[ArchiveStatus.DOWNLOADED] == 1

    def test_idle_poll_until_stopped(self, ledger, layout, make_zip):
        make_zip(layout.downloads / "a.zip", {"video.mp4": VIDEO})
        waits = []

        def sleep(seconds):
            waits.append(seconds)
            pipeline.request_stop()

        pipeline = ArchivePipeline(ledger, layout, poll_interval_s=7.5, sleep=sleep)
        summary = pipeline.run()

        assert summary.processed == 1
        assert waits == [7.5]

    def test_abort_leaves_archive_processing(self, ledger, layout, make_zip, sleep):
        make_zip(layout.downloads / "a.zip", {"one.mp4": b"one", "two.mp4": b"two"})
        source = AbortingTimestampSource()
        pipeline = ArchivePipeline(ledger, layout, sleep=sleep, timestamp_source=source)
        source.pipeline = pipeline

        summary = pipeline.run()

        assert summary.cancelled is True
        assert ledger.get_archive("a.zip").status is ArchiveStatus.PROCESSING
        assert (layout.downloads / "a.zip").exists()
        assert ledger.payload_count() == 1
        assert list(layout.scratch.iterdir()) == []

        rerun = ArchivePipeline(ledger, layout, sleep=sleep).run(once=True)
        assert rerun.processed == 1
        assert ledger.get_archive("a.zip").status is ArchiveStatus.DONE
        assert ledger.payload_count() == 2
        assert len(_store_files(layout)) == 2


class TestSingleWorker:
    def test_second_worker_refused(self, pipeline, layout):
        with pipeline_lock(layout.lock_dir):
            with pytest.raises(PipelineBusyError):
                pipeline.run(once=True)
