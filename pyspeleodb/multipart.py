"""Builder for multipart/form-data request bodies.

The encoder is a pure transformation from an ordered list of parts to bytes.
It performs no I/O so it can be tested without a server:

    >>> encoder = MultipartBodyEncoder()
    >>> body = encoder.build([
    ...     text_part("message", "Added new passage"),
    ...     file_part("artifact", b"...", "application/octet-stream", "abc.tml"),
    ... ])
    >>> body.content_type.startswith("multipart/form-data; boundary=")
    True
"""

from __future__ import annotations

import secrets
import threading
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from typing import Optional

CRLF = b"\r\n"
DEFAULT_TEXT_CONTENT_TYPE = "text/plain"
CONTENT_TYPE_PREFIX = "multipart/form-data; boundary="

# 16 random bytes -> 32 lowercase hex characters
BOUNDARY_BYTES = 16


@dataclass(frozen=True)
class MultipartPart:
    """A single named part of a multipart body."""

    name: str
    content_type: str
    data: bytes
    filename: Optional[str] = None

    def __post_init__(self) -> None:
        _check_header_value("name", self.name)
        _check_header_value("content type", self.content_type)
        if self.filename is not None:
            _check_header_value("filename", self.filename)
        if not isinstance(self.data, (bytes, bytearray)):
            raise TypeError(f"Part {self.name!r} data must be bytes")


@dataclass(frozen=True)
class MultipartBody:
    """Encoded multipart payload and the header value that describes it."""

    content_type: str
    body: bytes
    boundary: str

    def __len__(self) -> int:
        return len(self.body)

    def iter_chunks(self, chunk_size: int = 64 * 1024) -> Iterator[bytes]:
        """Yield the body in slices of at most ``chunk_size`` bytes."""
        view = memoryview(self.body)
        for offset in range(0, len(view), chunk_size):
            yield bytes(view[offset : offset + chunk_size])


def _check_header_value(label: str, value: str) -> None:
    if not value:
        raise ValueError(f"Multipart {label} cannot be empty")
    if any(ch in value for ch in ('"', "\r", "\n")):
        raise ValueError(f"Multipart {label} contains forbidden characters: {value!r}")


def text_part(
    name: str, value: str, content_type: str = DEFAULT_TEXT_CONTENT_TYPE
) -> MultipartPart:
    """Create a UTF-8 text field."""
    return MultipartPart(
        name=name, content_type=content_type, data=value.encode("utf-8")
    )


def file_part(
    name: str,
    data: bytes,
    content_type: str,
    filename: Optional[str] = None,
) -> MultipartPart:
    """Create a binary part; a filename marks it as a file upload."""
    if not content_type:
        raise ValueError(f"Binary part {name!r} requires an explicit content type")
    return MultipartPart(
        name=name, content_type=content_type, data=bytes(data), filename=filename
    )


class MultipartBodyEncoder:
    """Encodes ordered parts into a multipart/form-data body.

    Every call to :meth:`build` uses a fresh random boundary. An encoder never
    hands out the same boundary twice.
    """

    def __init__(self) -> None:
        self._issued: set[str] = set()
        self._lock = threading.Lock()

    def new_boundary(self) -> str:
        """Generate a boundary this encoder has not used before."""
        with self._lock:
            while True:
                boundary = secrets.token_hex(BOUNDARY_BYTES)
                if boundary not in self._issued:
                    self._issued.add(boundary)
                    return boundary

    def build(self, parts: Iterable[MultipartPart]) -> MultipartBody:
        """Encode parts, in order, into a multipart body.

        Args:
            parts: Parts in the order they must appear on the wire

        Returns:
            MultipartBody with content type, bytes and boundary
        """
        boundary = self.new_boundary()
        delimiter = f"--{boundary}".encode("ascii")

        chunks: list[bytes] = []
        for part in parts:
            disposition = f'Content-Disposition: form-data; name="{part.name}"'
            if part.filename is not None:
                disposition += f'; filename="{part.filename}"'

            chunks.append(delimiter + CRLF)
            chunks.append(disposition.encode("utf-8") + CRLF)
            chunks.append(f"Content-Type: {part.content_type}".encode("utf-8"))
            chunks.append(CRLF + CRLF)
            chunks.append(bytes(part.data))
            chunks.append(CRLF)

        chunks.append(delimiter + b"--" + CRLF)

        return MultipartBody(
            content_type=CONTENT_TYPE_PREFIX + boundary,
            body=b"".join(chunks),
            boundary=boundary,
        )
