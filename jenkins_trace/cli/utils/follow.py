"""Follow a build log to completion with retry and backoff.

ProgressiveLogReader never retries; this is the caller-side policy the CLI
uses on top of it.
"""

import logging
import time
from typing import Callable, Optional

from jenkins_trace.progressive_log import (
    FetchError,
    LogChunk,
    ProgressiveLogReader,
    StreamCursor,
)


logger = logging.getLogger(__name__)


def backoff_delay(attempt: int, retry_delay: float, max_delay: float) -> float:
    """Exponential backoff delay before retry number ``attempt`` (0-based)."""
    return min(retry_delay * (2 ** attempt), max_delay)


def follow_log(
    reader: ProgressiveLogReader,
    on_chunk: Callable[[LogChunk], None],
    cursor: Optional[StreamCursor] = None,
    poll_interval: float = 2.0,
    max_retries: int = 5,
    retry_delay: float = 1.0,
    max_delay: float = 30.0,
    timeout: Optional[float] = None,
    on_retry: Optional[Callable[[FetchError, int, float], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> StreamCursor:
    """Poll until the log is complete, handing each chunk to ``on_chunk``.

    Retryable errors (TransientError, MalformedResponseError) are retried at
    the same cursor with exponential backoff. The attempt counter resets after
    every successful poll. Fatal errors, and a retryable error that outlasts
    ``max_retries`` consecutive attempts, propagate to the caller.

    Args:
        reader: Reader bound to the build
        on_chunk: Called with every chunk, in order, before the next poll
        cursor: Where to start (default: offset 0)
        poll_interval: Seconds to wait between polls while the build is running
        max_retries: Consecutive retries allowed per poll
        retry_delay: Initial backoff delay in seconds
        max_delay: Backoff ceiling in seconds
        timeout: Per-request timeout override
        on_retry: Called with (error, attempt, delay) before each backoff sleep
        sleep: Sleep function (injectable for tests)

    Returns:
        The terminal cursor
    """
    cursor = cursor or StreamCursor.start()
    attempt = 0

    while True:
        try:
            chunk = reader.fetch_next(cursor, timeout=timeout)
        except FetchError as e:
            if not e.retryable or attempt >= max_retries:
                raise
            delay = backoff_delay(attempt, retry_delay, max_delay)
            attempt += 1
            logger.warning("%s; retry %d/%d in %.1fs", e, attempt, max_retries, delay)
            if on_retry:
                on_retry(e, attempt, delay)
            sleep(delay)
            continue

        attempt = 0
        on_chunk(chunk)
        cursor = chunk.cursor
        if cursor.done:
            return cursor
        if poll_interval > 0:
            sleep(poll_interval)
