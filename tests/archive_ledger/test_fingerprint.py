"""Tests for structural fingerprints and payload content hashes."""

from __future__ import annotations

import hashlib
import zipfile

from ArchiveLedger.fingerprint import content_hash, structural_fingerprint


class TestStructuralFingerprint:
    """Same entry listing, same fingerprint; payload bytes never read."""

    def test_same_archive_under_another_name(self, tmp_path, make_zip):
        members = {"Takeout/Photos/clip.mp4": b"x" * 100, "Takeout/index.html": b"<html/>"}
        first = make_zip(tmp_path / "takeout-001.zip", members)
        second = make_zip(tmp_path / "takeout-001 (1).zip", members)

        fp = structural_fingerprint(first)
        assert fp is not None
        assert fp == structural_fingerprint(second)
        assert fp == fp.lower()
        assert len(fp) == 64

    def test_insertion_order_does_not_matter(self, tmp_path, make_zip):
        a = make_zip(tmp_path / "a.zip", {"b.mp4": b"1", "A.mp4": b"2"})
        b = make_zip(tmp_path / "b.zip", {"A.mp4": b"2", "b.mp4": b"1"})
        assert structural_fingerprint(a) == structural_fingerprint(b)

    def test_different_entries_differ(self, tmp_path, make_zip):
        a = make_zip(tmp_path / "a.zip", {"clip.mp4": b"1"})
        b = make_zip(tmp_path / "b.zip", {"clip.mp4": b"12"})
        c = make_zip(tmp_path / "c.zip", {"clip.mp4": b"1"}, date_time=(2022, 1, 1, 0, 0, 0))
        assert structural_fingerprint(a) != structural_fingerprint(b)
        assert structural_fingerprint(a) != structural_fingerprint(c)

    def test_manifest_format(self, tmp_path, make_zip):
        path = make_zip(tmp_path / "a.zip", {"clip.mp4": b"payload"})
        with zipfile.ZipFile(path) as archive:
            info = archive.getinfo("clip.mp4")
        expected_line = f"clip.mp4|{info.file_size}|{info.compress_size}|2021-05-01T10:30:00+00:00"
        expected = hashlib.sha256(expected_line.encode("utf-8")).hexdigest()
        assert structural_fingerprint(path) == expected

    def test_invalid_member_date_kept_as_stored(self, tmp_path):
        path = tmp_path / "a.zip"
        with zipfile.ZipFile(path, "w") as archive:
            archive.writestr(zipfile.ZipInfo("clip.mp4", date_time=(2021, 0, 0, 0, 0, 0)), b"payload")
        with zipfile.ZipFile(path) as archive:
            info = archive.getinfo("clip.mp4")
        expected_line = f"clip.mp4|{info.file_size}|{info.compress_size}|2021-00-00T00:00:00+00:00"
        expected = hashlib.sha256(expected_line.encode("utf-8")).hexdigest()
        assert structural_fingerprint(path) == expected


    def test_missing_file_returns_none(self, tmp_path):
        assert structural_fingerprint(tmp_path / "nope.zip") is None
        assert structural_fingerprint(None) is None

    def test_corrupt_file_returns_none(self, tmp_path):
        bad = tmp_path / "bad.zip"
        bad.write_bytes(b"this is not a zip")
        assert structural_fingerprint(bad) is None


class TestContentHash:
    """Streaming SHA-256 of payload files."""

    def test_matches_hashlib(self, tmp_path):
        data = b"video-bytes" * 1000
        path = tmp_path / "clip.mp4"
        path.write_bytes(data)
        assert content_hash(path) == hashlib.sha256(data).hexdigest()

    def test_small_chunks_same_digest(self, tmp_path):
        data = bytes(range(256)) * 50
        path = tmp_path / "clip.mp4"
        path.write_bytes(data)
        assert content_hash(path, chunk_size=7) == content_hash(path)

    def test_name_independent(self, tmp_path):
        (tmp_path / "a.mp4").write_bytes(b"same")
        (tmp_path / "b.mov").write_bytes(b"same")
        assert content_hash(tmp_path / "a.mp4") == content_hash(tmp_path / "b.mov")
