"""Best-effort original-timestamp hints for payload files.

The pipeline asks a :class:`TimestampSource` for the creation/digitised times
embedded in a media file. Sources may return any number of candidates or fail;
failures are swallowed and count as "no opinion". The earliest candidate that
passes the sanity filter wins, and the filesystem's own times are used only
when the source yields nothing usable.

The default source shells out to ``ffprobe`` (from FFmpeg) and reads the
``creation_time`` tags of the container and of every stream.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, List, Optional, Protocol

logger = logging.getLogger(__name__)

# Rejects zeroed container dates (1904/1970 epochs) and similar garbage.
EARLIEST_PLAUSIBLE = datetime(1970, 1, 1, tzinfo=timezone.utc) + timedelta(days=366)

_TAG_KEYS = ("creation_time", "date", "com.apple.quicktime.creationdate")


class TimestampSource(Protocol):
    """Anything that can suggest embedded timestamps for a file."""

    def candidates(self, path: Path) -> Iterable[datetime]:
        ...


def _parse_tag(value: str) -> Optional[datetime]:
    text = value.strip()
    if not text:
        return None
    try:
        if "T" in text:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        else:
            parsed = datetime.strptime(text[:19], "%Y-%m-%d %H:%M:%S")
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class FFprobeTimestampSource:
    """Read container and stream ``creation_time`` tags via ``ffprobe``."""

    def __init__(self, ffprobe_path: str = "ffprobe", timeout_s: float = 10.0):
        self.ffprobe_path = ffprobe_path
        self.timeout_s = timeout_s

    @property
    def available(self) -> bool:
        return shutil.which(self.ffprobe_path) is not None

    def candidates(self, path: Path) -> List[datetime]:
        cmd = [
            self.ffprobe_path,
            "-v",
            "quiet",
            "-print_format",
            "json",
            "-show_format",
            "-show_streams",
            str(path),
        ]
        process = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout_s)
        if process.returncode != 0:
            return []

        data = json.loads(process.stdout or "{}")
        tag_sets = [data.get("format", {}).get("tags", {})]
        tag_sets.extend(stream.get("tags", {}) for stream in data.get("streams", []))

        found: List[datetime] = []
        for tags in tag_sets:
            for key in _TAG_KEYS:
                value = tags.get(key)
                if isinstance(value, str):
                    parsed = _parse_tag(value)
                    if parsed is not None:
                        found.append(parsed)
        return found


def filesystem_candidates(path: Path) -> List[datetime]:
    """Creation (where the platform records it) and modification times."""

    try:
        info = os.stat(path)
    except OSError:
        return []
    stamps = [info.st_mtime]
    birth = getattr(info, "st_birthtime", None)
    if birth:
        stamps.append(birth)
    return [datetime.fromtimestamp(stamp, tz=timezone.utc) for stamp in stamps]


def earliest_plausible(candidates: Iterable[datetime]) -> Optional[datetime]:
    """Earliest candidate later than :data:`EARLIEST_PLAUSIBLE`, or None."""

    valid = []
    for candidate in candidates:
        if candidate.tzinfo is None:
            candidate = candidate.replace(tzinfo=timezone.utc)
        if candidate > EARLIEST_PLAUSIBLE:
            valid.append(candidate)
    return min(valid) if valid else None


def original_timestamp(path: Path, source: Optional[TimestampSource] = None) -> Optional[datetime]:
    """Best original-timestamp hint for ``path``; never raises.

    Args:
        path: Payload file (before it is moved)
        source: Embedded-metadata reader; ``None`` skips straight to the
            filesystem fallback
    """
    embedded: List[datetime] = []
    if source is not None:
        try:
            embedded = list(source.candidates(path))
        except Exception as exc:  # collaborator failures are "no opinion"
            logger.debug(f"Timestamp source failed for {path.name}: {exc}")
            embedded = []

    hint = earliest_plausible(embedded)
    if hint is not None:
        return hint
    return earliest_plausible(filesystem_candidates(path))
