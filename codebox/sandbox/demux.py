"""
Demultiplexer for the Docker attach/logs stream format.

A non-TTY container multiplexes stdout and stderr onto one byte stream.
Each chunk is preceded by an 8-byte header::

    [stream type: 1 byte][reserved: 3 bytes][payload size: uint32 big-endian]

Stream type 0 is stdin echoed on stdout, 1 is stdout, 2 is stderr and 3 is
a daemon-side error message.
"""

from __future__ import annotations

import struct
from collections.abc import Iterator
from dataclasses import dataclass

HEADER_SIZE = 8
_HEADER = struct.Struct(">BxxxL")

STDIN = 0
STDOUT = 1
STDERR = 2
SYSTEMERR = 3

_STDOUT_TAGS = {STDIN, STDOUT}
_STDERR_TAGS = {STDERR, SYSTEMERR}


@dataclass(slots=True)
class Frame:
    """One parsed chunk of the multiplexed stream."""

    stream: int
    payload: bytes


@dataclass(slots=True)
class DemuxedOutput:
    """Separated, decoded and right-trimmed stream text."""

    stdout: str
    stderr: str
    complete: bool = True  # False when a truncated trailing frame was dropped


def iter_frames(raw: bytes) -> Iterator[Frame]:
    """
    Yield frames from ``raw`` until the buffer is exhausted.

    Stops without raising when the remaining bytes cannot hold a full header
    or the announced payload runs past the end of the buffer.
    """
    view = memoryview(raw)
    offset = 0
    total = len(view)
    while offset + HEADER_SIZE <= total:
        stream, size = _HEADER.unpack_from(view, offset)
        start = offset + HEADER_SIZE
        end = start + size
        if end > total:
            return
        yield Frame(stream=stream, payload=bytes(view[start:end]))
        offset = end


def demux(raw: bytes) -> DemuxedOutput:
    """Split a multiplexed stream into stdout and stderr text."""
    stdout = bytearray()
    stderr = bytearray()
    consumed = 0
    for frame in iter_frames(raw):
        consumed += HEADER_SIZE + len(frame.payload)
        if frame.stream in _STDOUT_TAGS:
            stdout += frame.payload
        elif frame.stream in _STDERR_TAGS:
            stderr += frame.payload

    return DemuxedOutput(
        stdout=_decode(stdout),
        stderr=_decode(stderr),
        complete=consumed == len(raw),
    )


def encode_frame(stream: int, payload: bytes) -> bytes:
    """Build one framed chunk. Used by tests and fake backends."""
    return _HEADER.pack(stream, len(payload)) + payload


def _decode(buffer: bytearray) -> str:
    return bytes(buffer).decode("utf-8", errors="replace").rstrip()
