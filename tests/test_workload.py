from __future__ import annotations

import httpx
import pytest

from m3w_loadtest.config import BEHAVIOR_WEIGHTS, ConfigurationError, ServiceConfig
from m3w_loadtest.metrics import API_DURATION, STREAM_TTFB, UPLOAD_DURATION, UPLOAD_THROUGHPUT
from m3w_loadtest.payload import MARKER, MARKER_SIZE, ContentSynthesizer
from m3w_loadtest.phases import PhaseSelector
from m3w_loadtest.workload import CapacityWorkload, ThinkTimes, UploadWorkload


class Recorder:
    """MockTransport handler that logs requests and answers from a route table."""

    def __init__(self, routes: dict[tuple[str, str], httpx.Response] | None = None) -> None:
        self.routes = routes or {}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        request.read()
        self.requests.append(request)
        response = self.routes.get((request.method, request.url.path))
        if response is None:
            return httpx.Response(200, json={})
        return httpx.Response(response.status_code, content=response.content, headers=response.headers)

    def calls(self) -> list[tuple[str, str]]:
        return [(r.method, r.url.path) for r in self.requests]


def refuse(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("connection refused", request=request)


def capacity(client, song_id: str = "song-1", weights=None) -> CapacityWorkload:
    return CapacityWorkload(client, PhaseSelector(weights or BEHAVIOR_WEIGHTS), song_id=song_id)


class TestStartup:

    def test_three_api_checks(self, make_client, worker_context, pauses) -> None:
        recorder = Recorder()
        capacity(make_client(recorder)).startup(worker_context)

        assert recorder.calls() == [
            ("GET", "/api/auth/me"),
            ("GET", "/api/libraries"),
            ("GET", "/api/playlists"),
        ]
        checks = worker_context.metrics.checks
        assert all(checks[name].passes == 1 for name in ("auth check ok", "list libraries ok", "list playlists ok"))
        assert len(worker_context.metrics.series[API_DURATION].values) == 3
        assert pauses == [1.0]

    def test_transport_errors_fail_open(self, make_client, worker_context, pauses) -> None:
        capacity(make_client(refuse)).startup(worker_context)

        checks = worker_context.metrics.checks
        assert sum(tally.fails for tally in checks.values()) == 3
        assert worker_context.metrics.error_rate() == 1.0
        assert pauses == [1.0]


class TestListening:

    def test_stream_then_progress(self, make_client, worker_context, pauses) -> None:
        recorder = Recorder({("GET", "/api/songs/song-1/stream"): httpx.Response(206, content=b"\x00" * 4096)})
        capacity(make_client(recorder)).listening(worker_context)

        assert recorder.calls() == [("GET", "/api/songs/song-1/stream"), ("PUT", "/api/progress")]
        assert recorder.requests[0].headers["Range"] == "bytes=0-"
        checks = worker_context.metrics.checks
        assert checks["stream ok"].passes == 1
        assert checks["progress update ok"].passes == 1
        assert len(worker_context.metrics.series[STREAM_TTFB].values) == 1
        assert pauses == [30.0]

    def test_full_body_is_not_partial(self, make_client, worker_context) -> None:
        recorder = Recorder({("GET", "/api/songs/song-1/stream"): httpx.Response(404)})
        capacity(make_client(recorder)).listening(worker_context)
        assert worker_context.metrics.checks["stream ok"].fails == 1

    def test_without_song_id(self, make_client, worker_context, pauses) -> None:
        recorder = Recorder()
        workload = capacity(make_client(recorder), song_id="")

        workload.listening(worker_context)
        workload.listening(worker_context)

        assert recorder.requests == []
        assert pauses == [30.0, 30.0]
        assert worker_context.warned == {"song-id"}
        assert not worker_context.metrics.checks

    def test_stream_refused(self, make_client, worker_context, pauses) -> None:
        capacity(make_client(refuse)).listening(worker_context)
        checks = worker_context.metrics.checks
        assert checks["stream ok"].fails == 1
        assert checks["progress update ok"].fails == 1
        assert pauses == [30.0]


class TestManaging:

    def test_create_then_delete(self, make_client, worker_context, pauses) -> None:
        recorder = Recorder({("POST", "/api/playlists"): httpx.Response(201, json={"data": {"id": "pl-7"}})})
        capacity(make_client(recorder)).managing(worker_context)

        assert recorder.calls() == [("POST", "/api/playlists"), ("DELETE", "/api/playlists/pl-7")]
        assert b"Load Test Playlist" in recorder.requests[0].content
        assert worker_context.metrics.checks["delete playlist ok"].passes == 1
        assert pauses == [2.0, 1.0]

    def test_failed_create_skips_delete(self, make_client, worker_context, pauses) -> None:
        recorder = Recorder({("POST", "/api/playlists"): httpx.Response(500)})
        capacity(make_client(recorder)).managing(worker_context)

        assert recorder.calls() == [("POST", "/api/playlists")]
        assert worker_context.metrics.checks["create playlist ok"].fails == 1
        assert "delete playlist ok" not in worker_context.metrics.checks
        assert pauses == [1.0]

    def test_created_without_id_skips_delete(self, make_client, worker_context) -> None:
        recorder = Recorder({("POST", "/api/playlists"): httpx.Response(201, json={"data": {}})})
        capacity(make_client(recorder)).managing(worker_context)
        assert recorder.calls() == [("POST", "/api/playlists")]
        assert worker_context.metrics.checks["create playlist ok"].passes == 1


class TestCapacityWorkload:

    def test_iterate_records_selected_phase(self, make_client, worker_context) -> None:
        workload = capacity(make_client(Recorder()), weights={"startup": 1.0})
        workload.iterate(worker_context, 1)
        workload.iterate(worker_context, 2)
        assert worker_context.metrics.iterations == {"startup": 2}

    def test_unknown_phase(self, make_client) -> None:
        with pytest.raises(ConfigurationError, match="dancing"):
            capacity(make_client(Recorder()), weights={"startup": 0.5, "dancing": 0.5})


class TestUploadWorkload:

    @pytest.fixture
    def synthesizer(self) -> ContentSynthesizer:
        return ContentSynthesizer(bytes(4096))

    def test_upload_and_cleanup(self, make_client, worker_context, pauses, synthesizer) -> None:
        recorder = Recorder(
            {("POST", "/api/libraries/lib-1/songs"): httpx.Response(201, json={"data": {"id": "song-9"}})}
        )
        workload = UploadWorkload(make_client(recorder), synthesizer, library_id="lib-1")

        workload.iterate(worker_context, 3)

        assert recorder.calls() == [("POST", "/api/libraries/lib-1/songs"), ("DELETE", "/api/songs/song-9")]
        body = recorder.requests[0].content
        assert b'filename="upload-test-1-3-' in body
        checks = worker_context.metrics.checks
        for name in ("upload status ok", "upload has song id", "delete song ok"):
            assert checks[name].passes == 1
        series = worker_context.metrics.series
        assert len(series[UPLOAD_DURATION].values) == 1
        assert len(series[UPLOAD_THROUGHPUT].values) == 1
        assert worker_context.metrics.iterations == {"upload": 1}
        assert len(pauses) == 1 and 1.0 <= pauses[0] <= 3.0

    def test_payload_carries_marker(self, make_client, worker_context, synthesizer) -> None:
        recorder = Recorder()
        UploadWorkload(make_client(recorder), synthesizer, library_id="lib-1").iterate(worker_context, 5)

        body = recorder.requests[0].content
        start = body.index(b"\r\n\r\n") + 4
        content = body[start : start + synthesizer.size]
        worker, iteration, _ = MARKER.unpack(content[synthesizer.offset : synthesizer.offset + MARKER_SIZE])
        assert (worker, iteration) == (1, 5)

    def test_no_cleanup(self, make_client, worker_context, synthesizer) -> None:
        recorder = Recorder(
            {("POST", "/api/libraries/lib-1/songs"): httpx.Response(200, json={"id": "song-9"})}
        )
        UploadWorkload(make_client(recorder), synthesizer, library_id="lib-1", cleanup=False).iterate(
            worker_context, 1
        )
        assert recorder.calls() == [("POST", "/api/libraries/lib-1/songs")]

    def test_failed_upload(self, make_client, worker_context, synthesizer) -> None:
        recorder = Recorder({("POST", "/api/libraries/lib-1/songs"): httpx.Response(413)})
        UploadWorkload(make_client(recorder), synthesizer, library_id="lib-1").iterate(worker_context, 1)

        assert recorder.calls() == [("POST", "/api/libraries/lib-1/songs")]
        checks = worker_context.metrics.checks
        assert checks["upload status ok"].fails == 1
        assert checks["upload has song id"].fails == 1

    def test_refused_upload(self, make_client, worker_context, synthesizer) -> None:
        UploadWorkload(make_client(refuse), synthesizer, library_id="lib-1").iterate(worker_context, 1)
        assert worker_context.metrics.checks["upload status ok"].fails == 1

    def test_failed_uploads_record_no_throughput(self, make_client, worker_context, synthesizer) -> None:
        rejected = Recorder({("POST", "/api/libraries/lib-1/songs"): httpx.Response(500)})
        UploadWorkload(make_client(refuse), synthesizer, library_id="lib-1").iterate(worker_context, 1)
        UploadWorkload(make_client(rejected), synthesizer, library_id="lib-1").iterate(worker_context, 2)

        series = worker_context.metrics.series
        assert UPLOAD_THROUGHPUT not in series
        assert len(series[UPLOAD_DURATION].values) == 2

    def test_requires_library(self, make_client, synthesizer) -> None:
        client = make_client(Recorder(), ServiceConfig(base_url="http://m3w.test"))
        with pytest.raises(ConfigurationError):
            UploadWorkload(client, synthesizer, library_id="")

    def test_scaled_think_times(self, make_client, worker_context, pauses, synthesizer) -> None:
        workload = UploadWorkload(
            make_client(Recorder()), synthesizer, library_id="lib-1", think=ThinkTimes().scaled(0.1)
        )
        workload.iterate(worker_context, 1)
        assert 0.1 <= pauses[0] <= 0.31
