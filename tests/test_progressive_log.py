"""Tests for the progressive log reader."""

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from jenkins_trace.progressive_log import (
    BuildRef,
    FetchError,
    InvalidTargetError,
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


HOST = "https://ci.example.com"


class DummyResponse:
    def __init__(self, status_code: int = 200, text="", headers=None, payload=None) -> None:  # noqa: ANN001
        # Like requests: ``content`` is the raw body, ``text`` its standalone decoding.
        self.content = text if isinstance(text, bytes) else text.encode("utf-8")
        self.status_code = status_code
        self.text = self.content.decode("utf-8", errors="replace")
        self.headers = CaseInsensitiveDict(headers or {})
        self.reason = "OK" if status_code < 400 else "Error"
        self.url = "https://ci.example.com/dummy"
        self._payload = payload

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


def log_response(text, size: int, more: bool = False, **extra) -> DummyResponse:
    headers = {"X-Text-Size": str(size)}
    if more:
        headers["X-More-Data"] = "true"
    headers.update(extra)
    return DummyResponse(200, text=text, headers=headers)


class DummySession:
    """Replays queued responses (or raises queued exceptions) in order."""

    def __init__(self, *responses) -> None:
        self.responses = list(responses)
        self.calls = []
        self.closed = False

    def get(self, url, auth=None, timeout=None, verify=None, params=None, headers=None):  # noqa: ANN001
        self.calls.append(
            {
                "url": url,
                "auth": auth,
                "timeout": timeout,
                "verify": verify,
                "params": params,
                "headers": headers,
            }
        )
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def close(self) -> None:
        self.closed = True


def make_reader(session: DummySession, **kwargs) -> ProgressiveLogReader:
    build = kwargs.pop("build", BuildRef(HOST, "demo", 42))
    return ProgressiveLogReader(build, session=session, **kwargs)


# ===========================================================================
# BuildRef
# ===========================================================================


class TestBuildRef:
    def test_text_log_url(self) -> None:
        build = BuildRef(HOST, "demo", 42)
        assert build.log_url == "https://ci.example.com/job/demo/42/logText/progressiveText"

    def test_html_log_url(self) -> None:
        build = BuildRef(HOST, "demo", 42, OutputMode.HTML)
        assert build.log_url == "https://ci.example.com/job/demo/42/logText/progressiveHtml"

    def test_trailing_slash_and_folder_jobs(self) -> None:
        build = BuildRef("http://jenkins.local:8080/ci/", "team/my job", 7)
        assert build.log_url == "http://jenkins.local:8080/ci/job/team/job/my%20job/7/logText/progressiveText"
        assert build.crumb_url == "http://jenkins.local:8080/ci/crumbIssuer/api/json"

    @pytest.mark.parametrize("host", ["", "ci.example.com", "ftp://ci.example.com", "https://"])
    def test_invalid_host(self, host: str) -> None:
        with pytest.raises(InvalidTargetError):
            BuildRef(host, "demo", 1)

    @pytest.mark.parametrize("job", ["", "   ", "/"])
    def test_empty_job(self, job: str) -> None:
        with pytest.raises(InvalidTargetError):
            BuildRef(HOST, job, 1)

    @pytest.mark.parametrize("build", [0, -3, True, "42"])
    def test_invalid_build(self, build) -> None:  # noqa: ANN001
        with pytest.raises(InvalidTargetError):
            BuildRef(HOST, "demo", build)

    def test_immutable(self) -> None:
        build = BuildRef(HOST, "demo", 42)
        with pytest.raises(Exception):
            build.build = 43  # type: ignore[misc]


class TestStreamCursor:
    def test_start(self) -> None:
        cursor = StreamCursor.start()
        assert cursor.offset == 0
        assert cursor.done is False

    def test_negative_offset_rejected(self) -> None:
        with pytest.raises(ValueError):
            StreamCursor(offset=-1)

    def test_dict_round_trip(self) -> None:
        cursor = StreamCursor(offset=120, done=True, annotator="abc")
        assert StreamCursor.from_dict(cursor.to_dict()) == cursor


# ===========================================================================
# fetch_next
# ===========================================================================


class TestFetchNext:
    def test_end_to_end_two_polls(self) -> None:
        session = DummySession(
            log_response("Building...\n", 12, more=True),
            log_response("Finished: SUCCESS\n", 30),
        )
        reader = make_reader(session)

        first = reader.fetch_next(StreamCursor.start())
        assert first.done is False
        assert first.offset == 12

        second = reader.fetch_next(first.cursor)
        assert second.done is True
        assert second.offset == 30

        assert first.text + second.text == "Building...\nFinished: SUCCESS\n"
        assert len(session.calls) == 2
        assert session.calls[0]["params"] == {"start": 0}
        assert session.calls[1]["params"] == {"start": 12}
        assert session.calls[0]["url"] == "https://ci.example.com/job/demo/42/logText/progressiveText"

    def test_done_cursor_makes_no_request(self) -> None:
        session = DummySession()
        reader = make_reader(session)

        cursor = StreamCursor(offset=30, done=True)
        chunk = reader.fetch_next(cursor)
        again = reader.fetch_next(chunk.cursor)

        assert chunk == LogChunk(content=b"", offset=30, done=True)
        assert again.text == ""
        assert again.done is True
        assert session.calls == []

    def test_more_data_false_means_done(self) -> None:
        session = DummySession(log_response("x", 1, **{"X-More-Data": "false"}))
        chunk = make_reader(session).fetch_next(StreamCursor.start())
        assert chunk.done is True

    def test_basic_auth_sent(self) -> None:
        session = DummySession(log_response("", 0))
        make_reader(session, auth=("alice", "tok")).fetch_next(StreamCursor.start())
        assert session.calls[0]["auth"] == ("alice", "tok")

    def test_user_without_token_sends_empty_password(self) -> None:
        session = DummySession(log_response("", 0))
        make_reader(session, auth=("alice", None)).fetch_next(StreamCursor.start())
        assert session.calls[0]["auth"] == ("alice", "")

    def test_empty_username_rejected(self) -> None:
        with pytest.raises(InvalidTargetError):
            make_reader(DummySession(), auth=("", "tok"))

    def test_non_buildref_rejected(self) -> None:
        with pytest.raises(InvalidTargetError):
            ProgressiveLogReader("https://ci.example.com/job/demo/42", session=DummySession())  # type: ignore[arg-type]

    def test_timeout_override(self) -> None:
        session = DummySession(log_response("", 0), log_response("", 0))
        reader = make_reader(session, timeout=12.0)
        reader.fetch_next(StreamCursor.start())
        reader.fetch_next(StreamCursor.start(), timeout=3.0)
        assert session.calls[0]["timeout"] == 12.0
        assert session.calls[1]["timeout"] == 3.0

    def test_ca_bundle_used_for_verification(self) -> None:
        session = DummySession(log_response("", 0))
        make_reader(session, ca_bundle="/etc/ssl/jenkins.pem").fetch_next(StreamCursor.start())
        assert session.calls[0]["verify"] == "/etc/ssl/jenkins.pem"

    def test_html_annotator_round_trip(self) -> None:
        session = DummySession(
            log_response("<b>one</b>\n", 10, more=True, **{"X-ConsoleAnnotator": "state-1"}),
            log_response("<b>two</b>\n", 20),
        )
        reader = make_reader(session, build=BuildRef(HOST, "demo", 42, OutputMode.HTML))

        first = reader.fetch_next(StreamCursor.start())
        assert first.cursor.annotator == "state-1"
        second = reader.fetch_next(first.cursor)

        assert "X-ConsoleAnnotator" not in session.calls[0]["headers"]
        assert session.calls[1]["headers"]["X-ConsoleAnnotator"] == "state-1"
        assert second.lines() == ["<b>two</b>"]

    def test_offsets_never_decrease(self) -> None:
        session = DummySession(
            log_response("a", 1, more=True),
            log_response("", 1, more=True),
            log_response("bc", 3, more=True),
            log_response("", 3),
        )
        offsets = [chunk.offset for chunk in iter_chunks(make_reader(session))]
        assert offsets == sorted(offsets)
        assert offsets[-1] == 3


class TestFetchErrors:
    @pytest.mark.parametrize("status", [401, 403])
    def test_unauthorized(self, status: int) -> None:
        session = DummySession(DummyResponse(status))
        with pytest.raises(UnauthorizedError) as excinfo:
            make_reader(session).fetch_next(StreamCursor.start())
        assert excinfo.value.retryable is False
        assert excinfo.value.status_code == status
        assert len(session.calls) == 1

    def test_not_found(self) -> None:
        session = DummySession(DummyResponse(404))
        with pytest.raises(NotFoundError) as excinfo:
            make_reader(session).fetch_next(StreamCursor.start())
        assert excinfo.value.retryable is False

    @pytest.mark.parametrize("status", [500, 502, 503, 429, 408])
    def test_server_errors_are_transient(self, status: int) -> None:
        session = DummySession(DummyResponse(status))
        with pytest.raises(TransientError) as excinfo:
            make_reader(session).fetch_next(StreamCursor(offset=5))
        assert excinfo.value.retryable is True

    @pytest.mark.parametrize(
        "exc",
        [
            requests.exceptions.ConnectionError("reset"),
            requests.exceptions.ReadTimeout("slow"),
            requests.exceptions.ChunkedEncodingError("cut"),
        ],
    )
    def test_network_failures_are_transient(self, exc: Exception) -> None:
        session = DummySession(exc)
        with pytest.raises(TransientError):
            make_reader(session).fetch_next(StreamCursor.start())

    def test_other_client_error_is_fatal(self) -> None:
        session = DummySession(DummyResponse(400))
        with pytest.raises(FetchError) as excinfo:
            make_reader(session).fetch_next(StreamCursor.start())
        assert type(excinfo.value) is FetchError
        assert excinfo.value.retryable is False

    @pytest.mark.parametrize(
        "headers",
        [
            {"X-More-Data": "true"},
            {"X-Text-Size": "abc", "X-More-Data": "true"},
            {"X-Text-Size": "4"},
        ],
    )
    def test_malformed_metadata_keeps_cursor(self, headers) -> None:  # noqa: ANN001
        cursor = StreamCursor(offset=12)
        session = DummySession(DummyResponse(200, text="dup", headers=headers))
        with pytest.raises(MalformedResponseError) as excinfo:
            make_reader(session).fetch_next(cursor)
        assert excinfo.value.retryable is True
        assert cursor.offset == 12
        assert cursor.done is False

    def test_retry_after_malformed_does_not_duplicate(self) -> None:
        session = DummySession(
            DummyResponse(200, text="Building...\n", headers={}),
            log_response("Building...\n", 12),
        )
        reader = make_reader(session)
        cursor = StreamCursor.start()

        with pytest.raises(MalformedResponseError):
            reader.fetch_next(cursor)
        chunk = reader.fetch_next(cursor)

        assert chunk.text == "Building...\n"
        assert session.calls[1]["params"] == {"start": 0}


class TestCrumb:
    def test_crumb_fetched_once_and_sent(self) -> None:
        crumb = DummyResponse(200, payload={"crumbRequestField": "Jenkins-Crumb", "crumb": "c0ffee"})
        session = DummySession(
            crumb,
            log_response("a", 1, more=True),
            log_response("b", 2),
        )
        reader = make_reader(session, use_crumb=True)

        text = read_full_log(reader)

        assert text == "ab"
        assert session.calls[0]["url"] == "https://ci.example.com/crumbIssuer/api/json"
        assert session.calls[1]["headers"]["Jenkins-Crumb"] == "c0ffee"
        assert session.calls[2]["headers"]["Jenkins-Crumb"] == "c0ffee"
        assert len(session.calls) == 3

    def test_missing_crumb_issuer_is_ignored(self) -> None:
        session = DummySession(DummyResponse(404), log_response("a", 1))
        chunk = make_reader(session, use_crumb=True).fetch_next(StreamCursor.start())
        assert chunk.text == "a"
        assert session.calls[1]["headers"] == {}

    def test_crumb_auth_failure(self) -> None:
        session = DummySession(DummyResponse(401))
        with pytest.raises(UnauthorizedError):
            make_reader(session, use_crumb=True).fetch_next(StreamCursor.start())

    def test_bad_crumb_payload(self) -> None:
        session = DummySession(DummyResponse(200, payload=ValueError("not json")))
        with pytest.raises(MalformedResponseError):
            make_reader(session, use_crumb=True).fetch_next(StreamCursor.start())


# ===========================================================================
# Driving loop
# ===========================================================================


class TestIterChunks:
    def test_concatenation_reproduces_log(self) -> None:
        parts = ["Started by user alice\n", "+ make\n", "", "ok\n", "Finished: SUCCESS\n"]
        responses = []
        size = 0
        for i, part in enumerate(parts):
            size += len(part)
            responses.append(log_response(part, size, more=i < len(parts) - 1))
        session = DummySession(*responses)

        chunks = list(iter_chunks(make_reader(session)))

        assert "".join(c.text for c in chunks) == "".join(parts)
        assert len(chunks) == len(parts)
        assert chunks[-1].done is True
        assert [c["params"]["start"] for c in session.calls] == [0, 22, 29, 29, 32]

    def test_sleeps_between_polls_only_while_running(self) -> None:
        session = DummySession(log_response("a", 1, more=True), log_response("b", 2))
        sleeps = []

        list(iter_chunks(make_reader(session), poll_interval=2.5, sleep=sleeps.append))

        assert sleeps == [2.5]

    def test_resume_from_cursor(self) -> None:
        session = DummySession(log_response("rest", 14))
        chunks = list(iter_chunks(make_reader(session), cursor=StreamCursor(offset=10)))
        assert chunks[0].text == "rest"
        assert session.calls[0]["params"] == {"start": 10}

    def test_errors_propagate(self) -> None:
        session = DummySession(log_response("a", 1, more=True), DummyResponse(503))
        seen = []
        with pytest.raises(TransientError):
            for chunk in iter_chunks(make_reader(session)):
                seen.append(chunk)
        assert [c.offset for c in seen] == [1]


# ===========================================================================
# Decoding
# ===========================================================================


BODY = "Built café ✓\n".encode("utf-8")
# X-Text-Size counts bytes; this offset lands inside the two-byte "é".
SPLIT = len("Built caf".encode("utf-8")) + 1


def split_character_session() -> DummySession:
    return DummySession(
        log_response(BODY[:SPLIT], SPLIT, more=True),
        log_response(BODY[SPLIT:], len(BODY)),
    )


class TestDecoding:
    def test_chunk_keeps_raw_bytes(self) -> None:
        chunk = make_reader(split_character_session()).fetch_next(StreamCursor.start())
        assert chunk.content == b"Built caf\xc3"
        assert chunk.offset == SPLIT

    def test_read_full_log_keeps_split_character(self) -> None:
        assert read_full_log(make_reader(split_character_session())) == "Built café ✓\n"

    def test_decoder_holds_incomplete_character(self) -> None:
        decoder = LogDecoder()
        first, second = iter_chunks(make_reader(split_character_session()))
        assert decoder.decode(first) == "Built caf"
        assert decoder.decode(second) == "é ✓\n"

    def test_decoder_flush_replaces_dangling_bytes(self) -> None:
        decoder = LogDecoder()
        assert decoder.decode(LogChunk(b"caf\xc3", 4, False)) == "caf"
        assert decoder.flush() == "\ufffd"


def test_reader_closes_owned_session_only() -> None:
    shared = DummySession()
    with make_reader(shared):
        pass
    assert shared.closed is False
