"""Single-worker guard for the pipeline.

Two pipeline workers sharing a scratch directory would corrupt each other's
extraction, so the worker takes an exclusive :mod:`filelock` lock under the
working area before doing anything else and holds it until it exits. A second
worker fails fast instead of queueing behind the first.
"""

from __future__ import annotations

import contextlib
import logging
from pathlib import Path
from typing import Iterator

from filelock import FileLock, Timeout

from ArchiveLedger.errors import PipelineBusyError

__all__ = ["PIPELINE_LOCK_NAME", "pipeline_lock"]

logger = logging.getLogger(__name__)
logging.getLogger("filelock").setLevel(logging.INFO)

PIPELINE_LOCK_NAME = "pipeline.lock"


@contextlib.contextmanager
def pipeline_lock(lock_dir: Path, *, timeout: float = 0.0) -> Iterator[Path]:
    """Hold the pipeline lock for the duration of the ``with`` block.

    Args:
        lock_dir: Directory for the lock file (created if missing)
        timeout: Seconds to wait for a busy lock; 0 fails immediately

    Yields:
        Path to the lock file

    Raises:
        PipelineBusyError: If another worker holds the lock
    """
    lock_dir.mkdir(parents=True, exist_ok=True)
    lock_file = lock_dir / PIPELINE_LOCK_NAME
    lock = FileLock(str(lock_file), timeout=timeout, thread_local=False)
    try:
        lock.acquire()
    except Timeout as e:
        raise PipelineBusyError(
            f"Another pipeline worker holds {lock_file}; only one may run at a time"
        ) from e

    logger.debug(f"lock-acquired lock_file={lock_file}")
    try:
        yield lock_file
    finally:
        lock.release()
        logger.debug(f"lock-release lock_file={lock_file}")
