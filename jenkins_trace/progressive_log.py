"""
Jenkins progressive log reader.

Polls a build's ``logText/progressiveText`` (or ``progressiveHtml``) endpoint
one offset window at a time:

- BuildRef / OutputMode identify the log stream
- StreamCursor carries the offset and completion state between polls
- ProgressiveLogReader.fetch_next performs exactly one poll
- iter_chunks drives a session to completion

The reader never retries; the error taxonomy tells the caller which failures
are safe to retry at the same cursor.
"""

import codecs
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional, Tuple
from urllib.parse import quote, urlsplit

import requests
import urllib3


logger = logging.getLogger(__name__)

MORE_DATA_HEADER = "X-More-Data"
TEXT_SIZE_HEADER = "X-Text-Size"
ANNOTATOR_HEADER = "X-ConsoleAnnotator"

# Jenkins writes console logs as UTF-8.
LOG_ENCODING = "utf-8"

CRUMB_ISSUER_PATH = "/crumbIssuer/api/json"

RETRYABLE_STATUS_CODES = {408, 429}

# Basic auth username & optional token/password.
Auth = Tuple[str, Optional[str]]


class JenkinsTraceError(Exception):
    """Base exception for jenkins-trace."""
    pass


class InvalidTargetError(JenkinsTraceError):
    """Build reference is malformed (bad host, empty job, non-positive build)."""
    pass


class FetchError(JenkinsTraceError):
    """A poll against the progressive log endpoint failed."""

    retryable = False

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class UnauthorizedError(FetchError):
    """Server rejected the credentials (401/403)."""
    pass


class NotFoundError(FetchError):
    """Job or build does not exist (404)."""
    pass


class TransientError(FetchError):
    """Network failure, timeout or server-side error. Safe to retry."""

    retryable = True


class MalformedResponseError(FetchError):
    """Offset metadata missing or unusable. Safe to retry at the same cursor."""

    retryable = True


class OutputMode(Enum):
    """Console output flavour served by the progressive endpoint."""
    TEXT = "progressiveText"
    HTML = "progressiveHtml"


def _job_path(job: str) -> str:
    """Map ``folder/name`` to ``job/folder/job/name`` with each segment quoted."""
    segments = [s for s in job.split("/") if s]
    return "/".join(f"job/{quote(s, safe='')}" for s in segments)


@dataclass(frozen=True)
class BuildRef:
    """Identifies one build's console log stream."""
    host: str
    job: str
    build: int
    mode: OutputMode = OutputMode.TEXT

    def __post_init__(self) -> None:
        if not isinstance(self.host, str) or not self.host.strip():
            raise InvalidTargetError("Jenkins host cannot be empty")
        parts = urlsplit(self.host.strip())
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise InvalidTargetError(
                f"Jenkins host must be an http(s) base URL, got: {self.host!r}"
            )
        if not isinstance(self.job, str) or not self.job.strip("/ "):
            raise InvalidTargetError("Job name cannot be empty")
        if isinstance(self.build, bool) or not isinstance(self.build, int) or self.build < 1:
            raise InvalidTargetError(f"Build number must be a positive integer, got: {self.build!r}")
        if not isinstance(self.mode, OutputMode):
            raise InvalidTargetError(f"Unknown output mode: {self.mode!r}")
        object.__setattr__(self, "host", self.host.strip().rstrip("/"))
        object.__setattr__(self, "job", self.job.strip())

    @property
    def log_url(self) -> str:
        return f"{self.host}/{_job_path(self.job)}/{self.build}/logText/{self.mode.value}"

    @property
    def crumb_url(self) -> str:
        return f"{self.host}{CRUMB_ISSUER_PATH}"

    def __str__(self) -> str:
        return f"{self.job} #{self.build}"


@dataclass(frozen=True)
class StreamCursor:
    """Position within a session's log stream.

    ``annotator`` is the opaque console-annotator state returned by the HTML
    endpoint; it must be sent back on the next poll.
    """
    offset: int = 0
    done: bool = False
    annotator: Optional[str] = None

    def __post_init__(self) -> None:
        if self.offset < 0:
            raise ValueError(f"Cursor offset cannot be negative: {self.offset}")

    @classmethod
    def start(cls) -> "StreamCursor":
        return cls()

    def to_dict(self) -> Dict[str, object]:
        return {"offset": self.offset, "done": self.done, "annotator": self.annotator}

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> "StreamCursor":
        annotator = data.get("annotator")
        return cls(
            offset=int(data.get("offset", 0)),
            done=bool(data.get("done", False)),
            annotator=str(annotator) if annotator else None,
        )


@dataclass(frozen=True)
class LogChunk:
    """Result of one poll: the raw bytes written since the previous offset.

    ``X-Text-Size`` counts bytes, so a chunk may end inside a multi-byte
    character. Join ``content`` across chunks, or feed it through a
    ``LogDecoder``, before decoding; ``text`` is only safe for a single chunk
    that is known to be complete.
    """
    content: bytes
    offset: int
    done: bool
    annotator: Optional[str] = field(default=None, repr=False)

    @classmethod
    def empty_terminal(cls, cursor: StreamCursor) -> "LogChunk":
        return cls(content=b"", offset=cursor.offset, done=True, annotator=cursor.annotator)

    @property
    def text(self) -> str:
        return self.content.decode(LOG_ENCODING, errors="replace")

    @property
    def cursor(self) -> StreamCursor:
        """Cursor to pass to the next ``fetch_next`` call."""
        return StreamCursor(offset=self.offset, done=self.done, annotator=self.annotator)

    def lines(self) -> List[str]:
        return self.text.splitlines()


class LogDecoder:
    """Decode a session's chunks to text without splitting characters.

    Bytes of an incomplete trailing character are held until the next chunk
    arrives. Use one decoder per session, in poll order.
    """

    def __init__(self, encoding: str = LOG_ENCODING) -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")

    def decode(self, chunk: LogChunk) -> str:
        return self._decoder.decode(chunk.content, final=chunk.done)

    def flush(self) -> str:
        """Return whatever is still buffered, e.g. after the session failed."""
        return self._decoder.decode(b"", final=True)


def _parse_text_size(response: requests.Response, current_offset: int) -> int:
    raw = response.headers.get(TEXT_SIZE_HEADER)
    if raw is None:
        raise MalformedResponseError(
            f"Missing {TEXT_SIZE_HEADER} header", status_code=response.status_code
        )
    try:
        text_size = int(raw.strip())
    except ValueError:
        raise MalformedResponseError(
            f"Invalid {TEXT_SIZE_HEADER} value: {raw!r}", status_code=response.status_code
        )
    if text_size < current_offset:
        # Never move backwards on metadata we can't trust.
        raise MalformedResponseError(
            f"{TEXT_SIZE_HEADER} went backwards ({text_size} < {current_offset})",
            status_code=response.status_code,
        )
    return text_size


def _has_more_data(response: requests.Response) -> bool:
    # Jenkins only ever sends "true" and drops the header once the log is
    # complete; any other value is read as complete too.
    return response.headers.get(MORE_DATA_HEADER, "").strip().lower() == "true"


def _raise_for_status(response: requests.Response, what: str) -> None:
    """Translate an HTTP error status into the fetch error taxonomy."""
    status = response.status_code
    if status < 400:
        return
    reason = f"HTTP {status} {response.reason or ''}".strip()
    if status in (401, 403):
        raise UnauthorizedError(f"Not authorized to read {what}: {reason}", status_code=status)
    if status == 404:
        raise NotFoundError(f"{what} not found: {reason}", status_code=status)
    if status >= 500 or status in RETRYABLE_STATUS_CODES:
        raise TransientError(f"Server error while reading {what}: {reason}", status_code=status)
    raise FetchError(f"Unexpected response while reading {what}: {reason}", status_code=status)


class ProgressiveLogReader:
    """Reads one build's console log through the progressive endpoint.

    Each ``fetch_next`` call issues at most one log request. The reader holds
    no per-session offset; all session state lives in the StreamCursor the
    caller passes in.
    """

    DEFAULT_TIMEOUT = 30.0

    def __init__(
        self,
        build: BuildRef,
        auth: Optional[Auth] = None,
        timeout: float = DEFAULT_TIMEOUT,
        verify_ssl: bool = True,
        ca_bundle: Optional[str] = None,
        use_crumb: bool = False,
        session: Optional[requests.Session] = None,
    ):
        """
        Args:
            build: Target build log stream
            auth: Optional ``(user, token)`` pair for HTTP basic auth
            timeout: Default per-request timeout in seconds
            verify_ssl: Verify TLS certificates on https hosts
            ca_bundle: Path to a CA bundle used instead of the system store
            use_crumb: Fetch a CSRF crumb once and send it with every poll
            session: Shared requests session; one is created if omitted
        """
        if not isinstance(build, BuildRef):
            raise InvalidTargetError(f"Expected a BuildRef, got {type(build).__name__}")
        if auth is not None and not auth[0]:
            raise InvalidTargetError("Username cannot be empty when credentials are given")

        self.build = build
        self.timeout = timeout
        self.use_crumb = use_crumb
        self._auth = (auth[0], auth[1] or "") if auth else None
        self._verify = ca_bundle if (verify_ssl and ca_bundle) else verify_ssl
        self._crumb: Optional[Tuple[str, str]] = None
        self._crumb_resolved = False
        self._owns_session = session is None
        self.session = session or requests.Session()

        if not verify_ssl:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    def __enter__(self) -> "ProgressiveLogReader":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_session:
            self.session.close()

    def _get(self, url: str, what: str, timeout: Optional[float], **kwargs) -> requests.Response:
        try:
            response = self.session.get(
                url,
                auth=self._auth,
                timeout=timeout if timeout is not None else self.timeout,
                verify=self._verify,
                **kwargs,
            )
        except requests.exceptions.Timeout as e:
            raise TransientError(f"Timed out reading {what}: {e}")
        except (requests.exceptions.ConnectionError, requests.exceptions.ChunkedEncodingError) as e:
            raise TransientError(f"Connection error reading {what}: {e}")
        except requests.exceptions.RequestException as e:
            raise FetchError(f"Request for {what} failed: {e}")

        logger.debug("GET %s -> %s", response.url, response.status_code)
        _raise_for_status(response, what)
        return response

    def _crumb_header(self, timeout: Optional[float]) -> Dict[str, str]:
        """Return the CSRF crumb header, fetching the crumb on first use."""
        if not self.use_crumb:
            return {}
        if not self._crumb_resolved:
            try:
                response = self._get(self.build.crumb_url, "crumb issuer", timeout)
            except NotFoundError:
                logger.debug("Crumb issuer not available on %s; continuing without crumb", self.build.host)
                self._crumb_resolved = True
                return {}
            try:
                payload = response.json()
                self._crumb = (payload["crumbRequestField"], payload["crumb"])
            except (ValueError, KeyError, TypeError):
                raise MalformedResponseError(
                    "Crumb issuer returned an unexpected payload",
                    status_code=response.status_code,
                )
            self._crumb_resolved = True
        if self._crumb is None:
            return {}
        return {self._crumb[0]: self._crumb[1]}

    def fetch_next(self, cursor: StreamCursor, timeout: Optional[float] = None) -> LogChunk:
        """Fetch the log output written since ``cursor.offset``.

        Args:
            cursor: Cursor returned with the previous chunk (or StreamCursor.start())
            timeout: Override the reader's request timeout for this call

        Returns:
            LogChunk holding the new text and the next cursor

        Raises:
            UnauthorizedError: Credentials rejected
            NotFoundError: Job or build does not exist
            TransientError: Network failure, timeout or 5xx; retry at ``cursor``
            MalformedResponseError: Offset metadata unusable; retry at ``cursor``
            FetchError: Any other unexpected response
        """
        if cursor.done:
            return LogChunk.empty_terminal(cursor)

        headers = self._crumb_header(timeout)
        if cursor.annotator:
            headers[ANNOTATOR_HEADER] = cursor.annotator

        response = self._get(
            self.build.log_url,
            f"log of {self.build}",
            timeout,
            params={"start": cursor.offset},
            headers=headers,
        )

        text_size = _parse_text_size(response, cursor.offset)
        more_data = _has_more_data(response)
        chunk = LogChunk(
            content=response.content,
            offset=text_size,
            done=not more_data,
            annotator=response.headers.get(ANNOTATOR_HEADER) or cursor.annotator,
        )
        logger.debug(
            "%s: offset %d -> %d, more data: %s", self.build, cursor.offset, chunk.offset, more_data
        )
        return chunk


def iter_chunks(
    reader: ProgressiveLogReader,
    cursor: Optional[StreamCursor] = None,
    poll_interval: float = 0.0,
    sleep: Callable[[float], None] = time.sleep,
) -> Iterator[LogChunk]:
    """Yield chunks in call order until the stream reports completion.

    Errors from ``fetch_next`` propagate; the last yielded chunk's cursor is
    the resume point.
    """
    cursor = cursor or StreamCursor.start()
    while True:
        chunk = reader.fetch_next(cursor)
        yield chunk
        if chunk.done:
            return
        cursor = chunk.cursor
        if poll_interval > 0:
            sleep(poll_interval)


def read_full_log(reader: ProgressiveLogReader, poll_interval: float = 0.0) -> str:
    """Read a whole log from offset 0 and return it as one string."""
    content = b"".join(chunk.content for chunk in iter_chunks(reader, poll_interval=poll_interval))
    return content.decode(LOG_ENCODING, errors="replace")
