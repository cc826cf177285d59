# === NAVMAP v1 ===
# {
#   "module": "ArchiveLedger.fingerprint",
#   "purpose": "Structural archive fingerprints and payload content hashes",
#   "sections": [
#     {
#       "id": "structural-fingerprint",
#       "name": "structural_fingerprint",
#       "anchor": "function-structural-fingerprint",
#       "kind": "function"
#     },
#     {
#       "id": "content-hash",
#       "name": "content_hash",
#       "anchor": "function-content-hash",
#       "kind": "function"
#     }
#   ]
# }
# === /NAVMAP ===

"""Structural archive fingerprints and payload content hashes.

Two identities that are never interchanged:

- :func:`structural_fingerprint` recognises "the same archive under another
  filename". It hashes the central directory (entry path, sizes and
  modification time) and never reads member payloads, so it stays cheap on
  multi-gigabyte archives.
- :func:`content_hash` identifies payload content for global deduplication.
  It streams the whole file through SHA-256.
"""

from __future__ import annotations

import hashlib
import logging
import zipfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_BYTES = 1 << 20


def _format_entry(info: zipfile.ZipInfo) -> str:
    # ZIP stores local wall-clock time without a zone; it is read as UTC so
    # the same archive fingerprints identically on every machine.
    try:
        modified = datetime(*info.date_time, tzinfo=timezone.utc).isoformat()
    except ValueError:
        # Out-of-range DOS dates (month 0, day 0) are kept as stored.
        modified = "%04d-%02d-%02dT%02d:%02d:%02d+00:00" % info.date_time
    return f"{info.filename}|{info.file_size}|{info.compress_size}|{modified}"


def structural_fingerprint(archive_path: Path | str | None) -> Optional[str]:
    """Return the lowercase hex fingerprint of an archive's entry listing.

    Entries are sorted case-insensitively by full path, formatted as
    ``path|uncompressed|compressed|modified`` and joined with newlines; the
    UTF-8 bytes are hashed with SHA-256.

    Args:
        archive_path: ZIP archive to fingerprint

    Returns:
        Hex digest, or ``None`` when the archive is missing or unreadable
    """
    if not archive_path:
        return None
    path = Path(archive_path)
    if not path.is_file():
        return None

    try:
        with zipfile.ZipFile(path) as archive:
            entries = sorted(archive.infolist(), key=lambda info: info.filename.upper())
            manifest = "\n".join(_format_entry(info) for info in entries)
    except (OSError, zipfile.BadZipFile, ValueError) as e:
        logger.debug(f"Cannot fingerprint {path}: {e}")
        return None

    return hashlib.sha256(manifest.encode("utf-8")).hexdigest()


def content_hash(file_path: Path | str, chunk_size: int = DEFAULT_CHUNK_BYTES) -> str:
    """Compute the SHA-256 of a file without buffering it whole.

    Args:
        file_path: File to hash
        chunk_size: Read chunk size (default 1 MiB)

    Returns:
        SHA-256 hash in lowercase hex

    Raises:
        OSError: If the file cannot be read
    """
    hasher = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            hasher.update(chunk)
    return hasher.hexdigest()
