"""Unique upload payloads derived from a single base buffer.

The server deduplicates uploads by content hash, so every upload needs
different bytes. Rather than keeping many large variants in memory, each call
copies the base once and stamps a 16-byte marker (worker id, iteration id and a
millisecond timestamp, big-endian) into a reserved window inside the audio
data. Uniqueness therefore depends only on the caller's identifiers.
"""

from __future__ import annotations

import hashlib
import logging
import struct
import time
from dataclasses import dataclass
from pathlib import Path

from .config import ConfigurationError

LOGGER = logging.getLogger("m3w_loadtest.payload")

MARKER = struct.Struct(">IIQ")
MARKER_SIZE = MARKER.size  # 16 bytes

ID3_TAG_SIZE = 512
FRAME_HEADER = bytes([0xFF, 0xFB, 0x90, 0x00])  # MPEG-1 layer III, 128 kbps, 44.1 kHz
FRAME_SIZE = 417
FRAME_BATCH = 10_000
# first frame's data area, right after its 4-byte header
DEFAULT_MARKER_OFFSET = ID3_TAG_SIZE + len(FRAME_HEADER)

MEBIBYTE = 1024 * 1024
FIXTURE_SIZES_MB: dict[str, int] = {
    "small-5mb": 5,
    "medium-20mb": 20,
    "large-50mb": 50,
    "xlarge-100mb": 100,
}


class InvalidInputSize(ConfigurationError):
    """Raised when a base payload cannot hold the marker window."""


def synthesize(
    base: bytes,
    worker_id: int,
    iteration_id: int,
    timestamp_ms: int,
    offset: int = DEFAULT_MARKER_OFFSET,
) -> bytes:
    """Return a copy of ``base`` with the marker window overwritten."""
    size = len(base)
    if size < MARKER_SIZE:
        raise InvalidInputSize(f"base payload of {size} bytes is smaller than the {MARKER_SIZE}-byte marker")
    if offset < 0 or offset + MARKER_SIZE > size:
        raise InvalidInputSize(
            f"marker window [{offset}, {offset + MARKER_SIZE}) does not fit a {size}-byte payload"
        )
    marker = MARKER.pack(
        worker_id & 0xFFFFFFFF,
        iteration_id & 0xFFFFFFFF,
        timestamp_ms & 0xFFFFFFFFFFFFFFFF,
    )
    view = memoryview(base)
    return b"".join((view[:offset], marker, view[offset + MARKER_SIZE :]))


class ContentSynthesizer:
    """Holds the shared base buffer and hands out per-iteration variants."""

    def __init__(self, base: bytes, offset: int | None = None) -> None:
        if not base:
            raise ConfigurationError("base payload is empty")
        if offset is None:
            # payloads too small for the default window fall back to the start
            offset = DEFAULT_MARKER_OFFSET if len(base) >= DEFAULT_MARKER_OFFSET + MARKER_SIZE else 0
        if len(base) < MARKER_SIZE or offset + MARKER_SIZE > len(base):
            raise InvalidInputSize(f"base payload of {len(base)} bytes cannot hold a marker at offset {offset}")
        self._base = bytes(base)
        self._offset = offset

    @property
    def size(self) -> int:
        return len(self._base)

    @property
    def offset(self) -> int:
        return self._offset

    def variant(self, worker_id: int, iteration_id: int, timestamp_ms: int | None = None) -> bytes:
        if timestamp_ms is None:
            timestamp_ms = int(time.time() * 1000)
        return synthesize(self._base, worker_id, iteration_id, timestamp_ms, self._offset)


@dataclass(frozen=True)
class BasePayload:
    data: bytes
    marker_offset: int = DEFAULT_MARKER_OFFSET


def generate_base_payload(size_bytes: int, seed: str, variant: int = 0) -> BasePayload:
    """Build an MP3-looking buffer: padded ID3v2.3 tag followed by filler frames."""
    if size_bytes < DEFAULT_MARKER_OFFSET + MARKER_SIZE:
        raise InvalidInputSize(
            f"payload size {size_bytes} is below the minimum of {DEFAULT_MARKER_OFFSET + MARKER_SIZE} bytes"
        )
    tag = _id3_tag(f"Test {seed}-{size_bytes // MEBIBYTE}MB-v{variant}", "M3W Load Test")
    frame_bytes = size_bytes - len(tag)
    frame_count = -(-frame_bytes // FRAME_SIZE)

    chunks = [tag]
    for batch in range(-(-frame_count // FRAME_BATCH)):
        in_batch = min(FRAME_BATCH, frame_count - batch * FRAME_BATCH)
        buffer = bytearray(in_batch * FRAME_SIZE)
        for index in range(in_batch):
            start = index * FRAME_SIZE
            digest = hashlib.md5(f"{seed}-{size_bytes}-{variant}-{batch}-{index}".encode()).digest()
            body = (digest * (FRAME_SIZE // len(digest) + 1))[: FRAME_SIZE - len(FRAME_HEADER)]
            buffer[start : start + len(FRAME_HEADER)] = FRAME_HEADER
            buffer[start + len(FRAME_HEADER) : start + FRAME_SIZE] = body
        chunks.append(bytes(buffer))

    data = b"".join(chunks)[:size_bytes]
    return BasePayload(data=data, marker_offset=DEFAULT_MARKER_OFFSET)


def _id3_tag(title: str, artist: str) -> bytes:
    frames = _id3_frame("TIT2", title) + _id3_frame("TPE1", artist)
    body_size = ID3_TAG_SIZE - 10
    if len(frames) > body_size:
        raise ConfigurationError("ID3 metadata does not fit the reserved tag size")
    padding = bytes(body_size - len(frames))
    # syncsafe size: 7 bits per byte
    size = bytes(
        [
            (body_size >> 21) & 0x7F,
            (body_size >> 14) & 0x7F,
            (body_size >> 7) & 0x7F,
            body_size & 0x7F,
        ]
    )
    return b"ID3" + bytes([0x03, 0x00, 0x00]) + size + frames + padding


def _id3_frame(frame_id: str, text: str) -> bytes:
    encoded = text.encode("utf-8")
    size = len(encoded) + 1
    return frame_id.encode("ascii") + size.to_bytes(4, "big") + bytes([0x00, 0x00, 0x00]) + encoded


def write_fixture(directory: Path, name: str, size_mb: int, seed: str, variant: int = 0) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{name}-{variant}.bin"
    started = time.perf_counter()
    payload = generate_base_payload(size_mb * MEBIBYTE, seed, variant)
    path.write_bytes(payload.data)
    LOGGER.info("Wrote %s (%d bytes) in %.1fs", path, len(payload.data), time.perf_counter() - started)
    return path


def load_base_payload(path: Path) -> bytes:
    try:
        data = path.read_bytes()
    except FileNotFoundError as exc:
        raise ConfigurationError(f"payload file not found: {path}") from exc
    if not data:
        raise ConfigurationError(f"payload file {path} is empty")
    return data


__all__ = [
    "BasePayload",
    "ContentSynthesizer",
    "DEFAULT_MARKER_OFFSET",
    "FIXTURE_SIZES_MB",
    "InvalidInputSize",
    "MARKER_SIZE",
    "generate_base_payload",
    "load_base_payload",
    "synthesize",
    "write_fixture",
]
