"""Payload store naming, relocation and the scoped scratch workspace.

Provides:
  - Collision-safe destination names: ``<basename>-<hash[:8]><ext>``
  - Relocation (move, never copy) into the flat payload store
  - :func:`scratch_workspace`, which owns the single scratch directory for
    exactly one archive and clears it on every exit path
"""

from __future__ import annotations

import logging
import re
import shutil
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator, Optional

logger = logging.getLogger(__name__)

GENERIC_BASENAME = "video"
GENERIC_EXTENSION = ".bin"
MAX_BASENAME_CHARS = 100
HASH_SUFFIX_CHARS = 8

_INVALID_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


def sanitize_basename(name: str) -> str:
    """Replace characters invalid in filenames with ``_`` and cap the length."""

    cleaned = _INVALID_CHARS.sub("_", name)
    return cleaned[:MAX_BASENAME_CHARS]


def build_storage_name(original_name: Optional[str], content_hash: str, extension: str) -> str:
    """Return the payload store filename for a piece of content.

    Example:
        build_storage_name("clip.MP4", "3fa9c2d1e8...", ".MP4") -> "clip-3fa9c2d1.mp4"

    Args:
        original_name: Basename observed inside the archive (may be blank)
        content_hash: Lowercase hex content hash
        extension: Original extension including the dot (may be blank)
    """
    base = ""
    if original_name and original_name.strip():
        base = sanitize_basename(Path(original_name.strip()).stem)
    if not base.strip():
        base = GENERIC_BASENAME

    ext = extension.strip().lower() if extension and extension.strip() else GENERIC_EXTENSION
    return f"{base}-{content_hash[:HASH_SUFFIX_CHARS]}{ext}"


def relocate(source: Path, destination: Path) -> Path:
    """Move ``source`` to ``destination`` (rename when on the same filesystem)."""

    destination.parent.mkdir(parents=True, exist_ok=True)
    shutil.move(str(source), str(destination))
    logger.debug(f"Relocated {source} -> {destination}")
    return destination


def reset_directory(path: Path) -> None:
    """Delete ``path`` recursively (if present) and recreate it empty."""

    if path.exists():
        shutil.rmtree(path)
    path.mkdir(parents=True, exist_ok=True)


def clear_directory_best_effort(path: Path) -> None:
    """Like :func:`reset_directory` but never raises."""

    try:
        reset_directory(path)
    except OSError as exc:
        logger.warning(f"Scratch cleanup failed for {path}: {exc}")


def paths_overlap(a: Path, b: Path) -> bool:
    """True when ``a`` and ``b`` are the same path or one contains the other."""

    a = a.resolve(strict=False)
    b = b.resolve(strict=False)
    return a == b or a in b.parents or b in a.parents


@contextmanager
def scratch_workspace(path: Path, protected: Iterable[Path] = ()) -> Iterator[Path]:
    """Own the scratch directory for the duration of one archive.

    The directory is cleared and recreated on entry; whatever happens inside
    (success, failure or cancellation) it is cleared again on exit. Its
    contents are never trusted across iterations.

    Args:
        path: Scratch directory
        protected: Paths that must survive; the workspace is refused when
            ``path`` equals, contains or lies inside any of them

    Raises:
        ValueError: If ``path`` overlaps a protected path
        OSError: If the directory cannot be prepared on entry
    """
    for other in protected:
        if paths_overlap(path, other):
            raise ValueError(f"Refusing to use {path} as scratch: it overlaps {other}")
    reset_directory(path)
    try:
        yield path
    finally:
        clear_directory_best_effort(path)
