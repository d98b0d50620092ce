"""jenkins-trace - follow Jenkins build console logs through the progressive log endpoints."""

from jenkins_trace.progressive_log import (
    BuildRef,
    FetchError,
    InvalidTargetError,
    JenkinsTraceError,
    LogChunk,
    LogDecoder,
    MalformedResponseError,
    NotFoundError,
    OutputMode,
    ProgressiveLogReader,
    StreamCursor,
    TransientError,
    UnauthorizedError,
    iter_chunks,
    read_full_log,
)

__version__ = "0.1.0"

__all__ = [
    "BuildRef",
    "FetchError",
    "InvalidTargetError",
    "JenkinsTraceError",
    "LogChunk",
    "LogDecoder",
    "MalformedResponseError",
    "NotFoundError",
    "OutputMode",
    "ProgressiveLogReader",
    "StreamCursor",
    "TransientError",
    "UnauthorizedError",
    "iter_chunks",
    "read_full_log",
    "__version__",
]
