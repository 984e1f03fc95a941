from __future__ import annotations

import dataclasses
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Callable, Collection, Protocol

import httpx

from .client import STREAM_CHUNK_SIZE, MediaLibraryClient, extract_id
from .config import ConfigurationError
from .metrics import STREAM_TTFB, UPLOAD_THROUGHPUT, MetricsBuffer
from .payload import MEBIBYTE, ContentSynthesizer
from .phases import PhaseSelector

LOGGER = logging.getLogger("m3w_loadtest.workload")

PHASES: tuple[str, ...] = ("startup", "listening", "managing")

OK = (200,)
CREATED = (200, 201)
DELETED = (200, 204)
PARTIAL = (200, 206)


@dataclass(frozen=True)
class ThinkTimes:
    """Pauses, in seconds, between the scripted operations of each phase."""

    startup_s: float = 1.0
    listening_s: float = 30.0
    managing_hold_s: float = 2.0
    managing_end_s: float = 1.0
    upload_min_s: float = 1.0
    upload_max_s: float = 3.0

    def scaled(self, factor: float) -> "ThinkTimes":
        return ThinkTimes(**{f.name: getattr(self, f.name) * factor for f in dataclasses.fields(self)})


@dataclass
class WorkerContext:
    """Per-worker state handed to every iteration; never shared across threads."""

    worker_id: int
    metrics: MetricsBuffer
    rng: random.Random
    pause: Callable[[float], None]
    warned: set[str] = field(default_factory=set)

    def warn_once(self, key: str, message: str, *args) -> None:
        if key in self.warned:
            return
        self.warned.add(key)
        LOGGER.warning(message, *args)


class Workload(Protocol):
    name: str

    def iterate(self, ctx: WorkerContext, iteration: int) -> None: ...


def timed_call(
    ctx: WorkerContext,
    check: str,
    category: str,
    operation: Callable[[], httpx.Response],
    accept: Collection[int],
) -> httpx.Response | None:
    """Run one request, recording its duration and a pass/fail check; never raises HTTP errors."""
    started = time.perf_counter()
    try:
        response = operation()
    except httpx.HTTPError as exc:
        ctx.metrics.record_duration(category, (time.perf_counter() - started) * 1000.0)
        ctx.metrics.record_check(check, False)
        LOGGER.debug("worker %d: %s failed: %r", ctx.worker_id, check, exc)
        return None
    ctx.metrics.record_duration(category, (time.perf_counter() - started) * 1000.0)
    ctx.metrics.record_check(check, response.status_code in accept)
    return response


class CapacityWorkload:
    """Mixed listener behaviour: each iteration runs one phase picked by weight."""

    name = "capacity"

    def __init__(
        self,
        client: MediaLibraryClient,
        selector: PhaseSelector,
        song_id: str = "",
        think: ThinkTimes | None = None,
    ) -> None:
        unknown = set(selector.phases) - set(PHASES)
        if unknown:
            raise ConfigurationError(f"unknown phase(s) in behavior weights: {', '.join(sorted(unknown))}")
        self._client = client
        self._selector = selector
        self._song_id = song_id
        self._think = think or ThinkTimes()
        self._scripts: dict[str, Callable[[WorkerContext], None]] = {
            "startup": self.startup,
            "listening": self.listening,
            "managing": self.managing,
        }

    def iterate(self, ctx: WorkerContext, iteration: int) -> None:
        phase = self._selector.select(ctx.rng.random())
        ctx.metrics.record_iteration(phase)
        self._scripts[phase](ctx)

    def startup(self, ctx: WorkerContext) -> None:
        timed_call(ctx, "auth check ok", "api", self._client.me, OK)
        timed_call(ctx, "list libraries ok", "api", self._client.list_libraries, OK)
        timed_call(ctx, "list playlists ok", "api", self._client.list_playlists, OK)
        ctx.pause(self._think.startup_s)

    def listening(self, ctx: WorkerContext) -> None:
        song_id = self._song_id
        if not song_id:
            ctx.warn_once("song-id", "TEST_SONG_ID not set; listening phase skips its requests")
            ctx.pause(self._think.listening_s)
            return

        self._stream(ctx, song_id)
        # simulated playback
        ctx.pause(self._think.listening_s)
        position = ctx.rng.randrange(0, 180)
        timed_call(
            ctx,
            "progress update ok",
            "api",
            lambda: self._client.update_progress(song_id, position),
            OK,
        )

    def managing(self, ctx: WorkerContext) -> None:
        name = f"Load Test Playlist {int(time.time() * 1000)}"
        response = timed_call(ctx, "create playlist ok", "api", lambda: self._client.create_playlist(name), CREATED)
        playlist_id = extract_id(response) if response is not None and response.status_code in CREATED else None
        if playlist_id is None:
            if response is not None and response.status_code in CREATED:
                LOGGER.debug("worker %d: playlist created without an id in the response", ctx.worker_id)
            ctx.pause(self._think.managing_end_s)
            return

        ctx.pause(self._think.managing_hold_s)
        timed_call(
            ctx,
            "delete playlist ok",
            "api",
            lambda: self._client.delete_playlist(playlist_id),
            DELETED,
        )
        ctx.pause(self._think.managing_end_s)

    def _stream(self, ctx: WorkerContext, song_id: str) -> None:
        started = time.perf_counter()
        ok = False
        try:
            with self._client.stream_song(song_id) as response:
                ctx.metrics.record_value(STREAM_TTFB, "stream", (time.perf_counter() - started) * 1000.0)
                ok = response.status_code in PARTIAL
                for _ in response.iter_bytes(STREAM_CHUNK_SIZE):
                    pass
        except httpx.HTTPError as exc:
            LOGGER.debug("worker %d: stream failed: %r", ctx.worker_id, exc)
            ok = False
        ctx.metrics.record_check("stream ok", ok)


class UploadWorkload:
    """Uploads a unique payload per iteration and optionally deletes it right away."""

    name = "upload"

    def __init__(
        self,
        client: MediaLibraryClient,
        synthesizer: ContentSynthesizer,
        library_id: str,
        think: ThinkTimes | None = None,
        cleanup: bool = True,
    ) -> None:
        if not library_id:
            raise ConfigurationError("upload workload needs TEST_LIBRARY_ID")
        self._client = client
        self._synthesizer = synthesizer
        self._library_id = library_id
        self._think = think or ThinkTimes()
        self._cleanup = cleanup

    def iterate(self, ctx: WorkerContext, iteration: int) -> None:
        ctx.metrics.record_iteration("upload")
        now_ms = int(time.time() * 1000)
        content = self._synthesizer.variant(ctx.worker_id, iteration, now_ms)
        filename = f"upload-test-{ctx.worker_id}-{iteration}-{now_ms}.mp3"

        started = time.perf_counter()
        try:
            response: httpx.Response | None = self._client.upload_song(self._library_id, filename, content)
        except httpx.HTTPError as exc:
            LOGGER.debug("worker %d: upload failed: %r", ctx.worker_id, exc)
            response = None
        duration_ms = (time.perf_counter() - started) * 1000.0
        del content

        ctx.metrics.record_duration("upload", duration_ms)

        status_ok = response is not None and response.status_code in CREATED
        if status_ok and duration_ms > 0:
            throughput = (self._synthesizer.size / MEBIBYTE) / (duration_ms / 1000.0)
            ctx.metrics.record_value(UPLOAD_THROUGHPUT, "upload", throughput)

        song_id = extract_id(response) if status_ok else None
        ctx.metrics.record_check("upload status ok", status_ok)
        ctx.metrics.record_check("upload has song id", song_id is not None)
        if not status_ok:
            status = response.status_code if response is not None else "no response"
            LOGGER.info("worker %d: upload failed: %s", ctx.worker_id, status)

        if self._cleanup and song_id is not None:
            timed_call(ctx, "delete song ok", "api", lambda: self._client.delete_song(song_id), DELETED)

        ctx.pause(ctx.rng.uniform(self._think.upload_min_s, self._think.upload_max_s))


__all__ = [
    "CapacityWorkload",
    "PHASES",
    "ThinkTimes",
    "UploadWorkload",
    "WorkerContext",
    "Workload",
    "timed_call",
]
