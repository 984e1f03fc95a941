from __future__ import annotations

import logging
import time
from typing import Any, ContextManager

import httpx

from .config import ServiceConfig

LOGGER = logging.getLogger("m3w_loadtest.client")

API_TIMEOUT_S = 30.0
UPLOAD_TIMEOUT_S = 180.0
STREAM_CHUNK_SIZE = 64 * 1024


class ServiceUnavailableError(Exception):
    """Raised when the service under test cannot be reached before a run starts."""


class MediaLibraryClient:
    """Thin wrapper over the m3w JSON API used by the workload scripts."""

    def __init__(
        self,
        config: ServiceConfig,
        transport: httpx.BaseTransport | None = None,
        timeout_s: float = API_TIMEOUT_S,
    ) -> None:
        headers = {}
        if config.token:
            headers["Authorization"] = f"Bearer {config.token}"
        self._client = httpx.Client(
            base_url=config.base_url,
            headers=headers,
            timeout=timeout_s,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "MediaLibraryClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def health(self) -> httpx.Response:
        return self._client.get("/health")

    def me(self) -> httpx.Response:
        return self._client.get("/api/auth/me")

    def list_libraries(self) -> httpx.Response:
        return self._client.get("/api/libraries")

    def get_library(self, library_id: str) -> httpx.Response:
        return self._client.get(f"/api/libraries/{library_id}")

    def list_playlists(self) -> httpx.Response:
        return self._client.get("/api/playlists")

    def create_playlist(self, name: str) -> httpx.Response:
        return self._client.post("/api/playlists", json={"name": name})

    def delete_playlist(self, playlist_id: str) -> httpx.Response:
        return self._client.delete(f"/api/playlists/{playlist_id}")

    def stream_song(self, song_id: str) -> ContextManager[httpx.Response]:
        """Open a ranged stream; the caller reads the body inside the ``with`` block."""
        return self._client.stream(
            "GET",
            f"/api/songs/{song_id}/stream",
            headers={"Range": "bytes=0-"},
        )

    def update_progress(self, song_id: str, position: int) -> httpx.Response:
        return self._client.put("/api/progress", json={"songId": song_id, "position": position})

    def upload_song(self, library_id: str, filename: str, content: bytes) -> httpx.Response:
        return self._client.post(
            f"/api/libraries/{library_id}/songs",
            files={"file": (filename, content, "audio/mpeg")},
            timeout=UPLOAD_TIMEOUT_S,
        )

    def delete_song(self, song_id: str) -> httpx.Response:
        return self._client.delete(f"/api/songs/{song_id}")


def extract_id(response: httpx.Response) -> str | None:
    """Pull the created resource id from ``{"data": {"id": ...}}`` or ``{"id": ...}``."""
    try:
        body: Any = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    data = body.get("data")
    if isinstance(data, dict) and data.get("id"):
        return str(data["id"])
    if body.get("id"):
        return str(body["id"])
    return None


def wait_for_health(
    client: MediaLibraryClient,
    timeout_s: float = 120.0,
    sleep=time.sleep,
) -> None:
    backoff = 1.0
    max_backoff = 10.0
    deadline = time.monotonic() + timeout_s
    last_error = "no response"

    while True:
        try:
            response = client.health()
            if response.status_code == 200:
                LOGGER.info("Service is healthy")
                return
            last_error = f"status {response.status_code}"
        except httpx.HTTPError as exc:
            last_error = repr(exc)

        if time.monotonic() >= deadline:
            raise ServiceUnavailableError(
                f"service did not become healthy within {timeout_s:.0f} seconds ({last_error})"
            )
        LOGGER.debug("Health check failed (%s); retrying in %.1fs", last_error, backoff)
        sleep(backoff)
        backoff = min(backoff * 1.5, max_backoff)


def verify_upload_access(client: MediaLibraryClient, library_id: str) -> None:
    if not library_id:
        raise ServiceUnavailableError("TEST_LIBRARY_ID is not set; run the seed step first")
    try:
        auth = client.me()
        if auth.status_code != 200:
            raise ServiceUnavailableError(f"auth failed: {auth.status_code}; check TEST_USER_TOKEN")
        library = client.get_library(library_id)
        if library.status_code != 200:
            raise ServiceUnavailableError(
                f"library access failed: {library.status_code}; check TEST_LIBRARY_ID"
            )
    except httpx.HTTPError as exc:
        raise ServiceUnavailableError(f"service unreachable: {exc!r}") from exc


__all__ = [
    "MediaLibraryClient",
    "ServiceUnavailableError",
    "extract_id",
    "verify_upload_access",
    "wait_for_health",
]
