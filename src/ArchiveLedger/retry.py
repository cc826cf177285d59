"""Bounded retry for deleting a processed source archive.

Deleting an archive that another process still has open (a virus scanner,
a file indexer, the acquisition agent finishing a write) fails transiently.
The pipeline retries with exponential backoff and gives up after a fixed
number of attempts; giving up is reported as ``False`` and never raises.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from pathlib import Path
from typing import Callable, Optional

import tenacity
from tenacity import RetryCallState, retry_if_exception_type, retry_if_result

from ArchiveLedger.errors import TransientIOError

logger = logging.getLogger(__name__)

DEFAULT_DELETE_ATTEMPTS = 3
DEFAULT_DELETE_BACKOFF_S = 2.0


def _log_before_sleep(retry_state: RetryCallState) -> None:
    next_action = retry_state.next_action
    wait_s = next_action.sleep if next_action is not None else 0.0
    outcome = retry_state.outcome
    cause = "still present"
    if outcome is not None and outcome.failed:
        cause = str(outcome.exception())
    logger.warning(
        f"delete retry attempt={retry_state.attempt_number} wait_s={wait_s:.1f} cause={cause}",
        extra={"stage": "cleanup"},
    )


def _give_up(retry_state: RetryCallState) -> bool:
    logger.warning(
        f"Giving up deleting archive after {retry_state.attempt_number} attempt(s)",
        extra={"stage": "cleanup"},
    )
    return False


def build_delete_retrying(
    attempts: int = DEFAULT_DELETE_ATTEMPTS,
    backoff_s: float = DEFAULT_DELETE_BACKOFF_S,
    sleep: Callable[[float], object] = time.sleep,
    cancel_event: Optional[threading.Event] = None,
) -> tenacity.Retrying:
    """Build the Tenacity controller used by :func:`delete_with_retry`.

    Waits grow as ``backoff_s * 2 ** (attempt - 1)``: 2s then 4s by default.

    Args:
        attempts: Total attempts including the first
        backoff_s: Wait before the second attempt
        sleep: Sleep function (an ``Event.wait`` makes the wait interruptible)
        cancel_event: When set, no further attempt is made
    """
    stop = tenacity.stop_after_attempt(max(1, attempts))
    if cancel_event is not None:
        stop = stop | tenacity.stop_when_event_set(cancel_event)
    return tenacity.Retrying(
        retry=retry_if_exception_type(TransientIOError) | retry_if_result(lambda deleted: not deleted),
        stop=stop,
        wait=tenacity.wait_exponential(multiplier=backoff_s, min=backoff_s),
        sleep=sleep,
        before_sleep=_log_before_sleep,
        retry_error_callback=_give_up,
    )


def delete_with_retry(
    path: Path,
    *,
    attempts: int = DEFAULT_DELETE_ATTEMPTS,
    backoff_s: float = DEFAULT_DELETE_BACKOFF_S,
    sleep: Callable[[float], object] = time.sleep,
    remove: Callable[[Path], None] = os.remove,
    cancel_event: Optional[threading.Event] = None,
) -> bool:
    """Delete ``path``, retrying transient failures.

    A file that is already gone counts as deleted.

    Args:
        path: File to delete
        attempts: Total attempts including the first
        backoff_s: Initial backoff in seconds
        sleep: Sleep function between attempts
        remove: Deletion primitive (injectable for tests)
        cancel_event: Abandons the remaining attempts once set

    Returns:
        True once the file is confirmed absent, False if every attempt failed
        or the attempts were abandoned
    """

    def attempt() -> bool:
        try:
            if path.exists():
                remove(path)
        except OSError as e:
            raise TransientIOError(f"Cannot delete {path.name}: {e}") from e
        return not path.exists()

    retrying = build_delete_retrying(
        attempts=attempts, backoff_s=backoff_s, sleep=sleep, cancel_event=cancel_event
    )
    deleted = retrying(attempt)
    if deleted:
        logger.info(f"Deleted {path.name}", extra={"stage": "cleanup", "archive": path.name})
    return bool(deleted)
