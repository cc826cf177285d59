"""Safe archive extraction and media enumeration."""

from __future__ import annotations

import logging
import os
import shutil
import stat
import zipfile
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Iterable, Iterator, List

from ArchiveLedger.errors import ExtractionError

__all__ = [
    "MEDIA_EXTENSIONS",
    "extract_zip_safe",
    "iter_media_files",
]

logger = logging.getLogger(__name__)

MEDIA_EXTENSIONS: frozenset[str] = frozenset({".mp4", ".mov", ".m4v", ".avi", ".3gp", ".mts"})


def _validate_member_path(member_name: str) -> Path:
    """Validate archive member paths to prevent traversal attacks."""

    normalized = member_name.replace("\\", "/")
    relative = PurePosixPath(normalized)
    if relative.is_absolute() or (relative.parts and relative.parts[0].endswith(":")):
        raise ExtractionError(f"Unsafe absolute path detected in archive: {member_name}")
    parts = [part for part in relative.parts if part != ""]
    if not parts:
        raise ExtractionError(f"Empty path detected in archive: {member_name}")
    if any(part in {".", ".."} for part in parts):
        raise ExtractionError(f"Unsafe path detected in archive: {member_name}")
    return Path(*parts)


def _restore_mtime(target_path: Path, member: zipfile.ZipInfo) -> None:
    # zipfile writes files with "now" as mtime; the member's own stamp is the
    # only filesystem-level hint of when the payload was recorded.
    try:
        stamp = datetime(*member.date_time).timestamp()
        os.utime(target_path, (stamp, stamp))
    except (OSError, ValueError, OverflowError) as exc:
        logger.debug(f"Cannot restore mtime for {target_path.name}: {exc}")


def extract_zip_safe(zip_path: Path, destination: Path) -> List[Path]:
    """Extract every member of ``zip_path`` into ``destination``.

    All members are validated before anything is written; an archive with a
    traversal, absolute or symlink member is rejected whole. Existing files
    in ``destination`` are overwritten.

    Args:
        zip_path: Archive to extract
        destination: Target directory (created if missing)

    Returns:
        Paths of the extracted regular files

    Raises:
        ExtractionError: If the archive is missing, corrupt or unsafe
    """
    if not zip_path.is_file():
        raise ExtractionError(f"ZIP archive not found: {zip_path}", archive=zip_path)
    destination.mkdir(parents=True, exist_ok=True)
    extracted: List[Path] = []
    try:
        with zipfile.ZipFile(zip_path) as archive:
            safe_members: List[tuple[zipfile.ZipInfo, Path]] = []
            for member in archive.infolist():
                member_path = _validate_member_path(member.filename)
                mode = (member.external_attr >> 16) & 0xFFFF
                if stat.S_IFMT(mode) == stat.S_IFLNK:
                    raise ExtractionError(
                        f"Unsafe link detected in archive: {member.filename}", archive=zip_path
                    )
                safe_members.append((member, member_path))

            for member, member_path in safe_members:
                target_path = destination / member_path
                if member.is_dir():
                    target_path.mkdir(parents=True, exist_ok=True)
                    continue
                target_path.parent.mkdir(parents=True, exist_ok=True)
                with archive.open(member, "r") as source, target_path.open("wb") as target:
                    shutil.copyfileobj(source, target)
                _restore_mtime(target_path, member)
                extracted.append(target_path)
    except ExtractionError:
        raise
    except (zipfile.BadZipFile, zipfile.LargeZipFile, EOFError) as e:
        raise ExtractionError(f"Corrupt archive {zip_path.name}: {e}", archive=zip_path) from e

    logger.info(
        "extracted zip archive",
        extra={"stage": "extract", "archive": str(zip_path), "files": len(extracted)},
    )
    return extracted


def iter_media_files(root: Path, extensions: Iterable[str] = MEDIA_EXTENSIONS) -> Iterator[Path]:
    """Yield files under ``root`` whose extension is recognised (case-insensitive)."""

    allowed = {ext.lower() for ext in extensions}
    for path in sorted(root.rglob("*")):
        if path.is_file() and path.suffix.lower() in allowed:
            yield path
