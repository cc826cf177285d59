"""Tests for destination naming, relocation and the scratch workspace."""

from __future__ import annotations

import pytest

from ArchiveLedger.storage import (
    build_storage_name,
    relocate,
    sanitize_basename,
    scratch_workspace,
)

HASH = "3fa9c2d1e8b7a6f5" + "0" * 48


class TestBuildStorageName:
    def test_basename_hash_prefix_lowercase_extension(self):
        assert build_storage_name("clip.MP4", HASH, ".MP4") == "clip-3fa9c2d1.mp4"

    def test_blank_name_uses_generic_basename(self):
        assert build_storage_name("", HASH, ".mov") == "video-3fa9c2d1.mov"
        assert build_storage_name(None, HASH, ".mov") == "video-3fa9c2d1.mov"
        assert build_storage_name("   ", HASH, ".mov") == "video-3fa9c2d1.mov"

    def test_missing_extension_uses_generic(self):
        assert build_storage_name("clip", HASH, "") == "clip-3fa9c2d1.bin"

    def test_invalid_characters_replaced(self):
        assert build_storage_name('a<b>c:"d|e?f*.mp4', HASH, ".mp4") == "a_b_c__d_e_f_-3fa9c2d1.mp4"

    def test_long_basename_truncated(self):
        name = "x" * 250 + ".mp4"
        result = build_storage_name(name, HASH, ".mp4")
        assert result == "x" * 100 + "-3fa9c2d1.mp4"

    def test_sanitize_keeps_ordinary_names(self):
        assert sanitize_basename("IMG_0001 (edited)") == "IMG_0001 (edited)"


class TestRelocate:
    def test_moves_not_copies(self, tmp_path):
        source = tmp_path / "scratch" / "clip.mp4"
        source.parent.mkdir()
        source.write_bytes(b"v")
        destination = tmp_path / "store" / "clip-3fa9c2d1.mp4"

        relocate(source, destination)

        assert destination.read_bytes() == b"v"
        assert not source.exists()


class TestScratchWorkspace:
    def test_cleared_on_entry_and_exit(self, tmp_path):
        scratch = tmp_path / "scratch"
        scratch.mkdir()
        (scratch / "stale.mp4").write_bytes(b"old")

        with scratch_workspace(scratch) as workdir:
            assert list(workdir.iterdir()) == []
            (workdir / "fresh.mp4").write_bytes(b"new")

        assert scratch.is_dir()
        assert list(scratch.iterdir()) == []

    def test_cleared_when_body_raises(self, tmp_path):
        scratch = tmp_path / "scratch"
        with pytest.raises(RuntimeError):
            with scratch_workspace(scratch) as workdir:
                (workdir / "partial.mp4").write_bytes(b"x")
                raise RuntimeError("extraction blew up")
        assert list(scratch.iterdir()) == []
