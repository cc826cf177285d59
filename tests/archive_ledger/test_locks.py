"""Tests for the single-worker pipeline lock."""

from __future__ import annotations

import pytest

from ArchiveLedger.errors import PipelineBusyError
from ArchiveLedger.locks import PIPELINE_LOCK_NAME, pipeline_lock


class TestPipelineLock:
    def test_creates_lock_file(self, tmp_path):
        lock_dir = tmp_path / "locks"
        with pipeline_lock(lock_dir) as lock_file:
            assert lock_file == lock_dir / PIPELINE_LOCK_NAME
            assert lock_dir.is_dir()

    def test_second_worker_fails_fast(self, tmp_path):
        with pipeline_lock(tmp_path):
            with pytest.raises(PipelineBusyError, match="only one may run"):
                with pipeline_lock(tmp_path):
                    pass

    def test_released_on_exit(self, tmp_path):
        with pipeline_lock(tmp_path):
            pass
        with pipeline_lock(tmp_path):
            pass

    def test_released_on_error(self, tmp_path):
        with pytest.raises(RuntimeError):
            with pipeline_lock(tmp_path):
                raise RuntimeError("boom")
        with pipeline_lock(tmp_path):
            pass
