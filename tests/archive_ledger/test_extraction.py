"""Tests for safe ZIP extraction and media enumeration."""

from __future__ import annotations

import stat
import zipfile
from datetime import datetime

import pytest

from ArchiveLedger.errors import ExtractionError
from ArchiveLedger.extraction import extract_zip_safe, iter_media_files


class TestExtractZipSafe:
    def test_extracts_nested_members(self, tmp_path, make_zip):
        archive = make_zip(
            tmp_path / "a.zip",
            {"Takeout/Google Photos/clip.mp4": b"v", "Takeout/archive_browser.html": b"h"},
        )
        out = tmp_path / "out"
        files = extract_zip_safe(archive, out)

        assert sorted(p.name for p in files) == ["archive_browser.html", "clip.mp4"]
        assert (out / "Takeout" / "Google Photos" / "clip.mp4").read_bytes() == b"v"

    def test_member_mtime_restored(self, tmp_path, make_zip):
        archive = make_zip(tmp_path / "a.zip", {"clip.mp4": b"v"}, date_time=(2019, 7, 4, 8, 0, 0))
        out = tmp_path / "out"
        extract_zip_safe(archive, out)

        expected = datetime(2019, 7, 4, 8, 0, 0).timestamp()
        assert (out / "clip.mp4").stat().st_mtime == pytest.approx(expected, abs=2)

    def test_overwrites_existing_files(self, tmp_path, make_zip):
        archive = make_zip(tmp_path / "a.zip", {"clip.mp4": b"new"})
        out = tmp_path / "out"
        out.mkdir()
        (out / "clip.mp4").write_bytes(b"old")
        extract_zip_safe(archive, out)
        assert (out / "clip.mp4").read_bytes() == b"new"

    @pytest.mark.parametrize("member", ["../escape.mp4", "/etc/passwd", "a/../../b.mp4", "C:/x.mp4"])
    def test_unsafe_paths_rejected_before_writing(self, tmp_path, member):
        archive = tmp_path / "evil.zip"
        with zipfile.ZipFile(archive, "w") as zf:
            zf.writestr("good.mp4", b"ok")
            zf.writestr(member, b"bad")
        out = tmp_path / "out"

        with pytest.raises(ExtractionError):
            extract_zip_safe(archive, out)
        assert not (out / "good.mp4").exists()

    def test_symlink_member_rejected(self, tmp_path):
        archive = tmp_path / "link.zip"
        info = zipfile.ZipInfo("link.mp4")
        info.external_attr = (stat.S_IFLNK | 0o777) << 16
        with zipfile.ZipFile(archive, "w") as zf:
            zf.writestr(info, "target")
        with pytest.raises(ExtractionError):
            extract_zip_safe(archive, tmp_path / "out")

    def test_corrupt_archive(self, tmp_path):
        bad = tmp_path / "bad.zip"
        bad.write_bytes(b"PK\x03\x04 definitely truncated")
        with pytest.raises(ExtractionError) as excinfo:
            extract_zip_safe(bad, tmp_path / "out")
        assert "bad.zip" in str(excinfo.value)

    def test_missing_archive(self, tmp_path):
        with pytest.raises(ExtractionError):
            extract_zip_safe(tmp_path / "nope.zip", tmp_path / "out")


class TestIterMediaFiles:
    def test_recognised_extensions_case_insensitive(self, tmp_path):
        for name in ("a.MP4", "b.mov", "c.M4V", "d.avi", "e.3gp", "f.MTS", "g.jpg", "h.json", "mp4"):
            (tmp_path / name).write_bytes(b"x")
        nested = tmp_path / "deep" / "er"
        nested.mkdir(parents=True)
        (nested / "i.Mp4").write_bytes(b"x")

        found = sorted(p.name for p in iter_media_files(tmp_path))
        assert found == ["a.MP4", "b.mov", "c.M4V", "d.avi", "e.3gp", "f.MTS", "i.Mp4"]

    def test_custom_extension_set(self, tmp_path):
        (tmp_path / "a.mp4").write_bytes(b"x")
        (tmp_path / "b.mkv").write_bytes(b"x")
        assert [p.name for p in iter_media_files(tmp_path, [".MKV"])] == ["b.mkv"]
