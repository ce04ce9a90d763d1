"""Attachments - Re-openable byte sources streamed into multipart bodies.

An Attachment is never read eagerly. Each time a request body is produced the
source is reopened and copied in bounded chunks, so a large file never sits
in memory as a whole.
"""

from __future__ import annotations

import logging
import mimetypes
import os
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Iterator
from urllib.parse import unquote, urlsplit

import httpx

from wsproxy.errors import AttachmentError
from wsproxy.models import DEFAULT_CHUNK_SIZE, DEFAULT_CONTENT_TYPE

logger = logging.getLogger(__name__)


class Attachment(ABC):
    """Base class for attachment sources.

    Subclasses implement ``_iter_raw`` to reopen the source and yield its
    content. ``size`` is None when the length cannot be known without
    reading the source.
    """

    def __init__(self, filename: str, content_type: str | None = None) -> None:
        self.filename = filename
        self.content_type = content_type or _guess_content_type(filename)

    @property
    def size(self) -> int | None:
        return None

    @abstractmethod
    def _iter_raw(self, chunk_size: int) -> Iterator[bytes]:
        """Reopen the source and yield its content."""

    @classmethod
    def from_path(cls, path: str | os.PathLike[str], content_type: str | None = None) -> FileAttachment:
        return FileAttachment(path, content_type=content_type)

    @classmethod
    def from_bytes(
        cls, data: bytes, filename: str, content_type: str | None = None
    ) -> BytesAttachment:
        return BytesAttachment(data, filename, content_type=content_type)

    @classmethod
    def from_url(
        cls,
        url: str,
        filename: str | None = None,
        content_type: str | None = None,
        timeout: float = 30.0,
    ) -> URLAttachment:
        return URLAttachment(url, filename=filename, content_type=content_type, timeout=timeout)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(filename={self.filename!r})"


class FileAttachment(Attachment):
    """A file on the local filesystem."""

    def __init__(self, path: str | os.PathLike[str], content_type: str | None = None) -> None:
        self.path = Path(path)
        super().__init__(self.path.name, content_type)

    @property
    def size(self) -> int | None:
        try:
            return self.path.stat().st_size
        except OSError:
            return None

    def _iter_raw(self, chunk_size: int) -> Iterator[bytes]:
        with open(self.path, "rb") as f:
            while chunk := f.read(chunk_size):
                yield chunk


class BytesAttachment(Attachment):
    """Content already held in memory by the caller."""

    def __init__(self, data: bytes, filename: str, content_type: str | None = None) -> None:
        self.data = bytes(data)
        super().__init__(filename, content_type)

    @property
    def size(self) -> int | None:
        return len(self.data)

    def _iter_raw(self, chunk_size: int) -> Iterator[bytes]:
        view = memoryview(self.data)
        for offset in range(0, len(view), chunk_size):
            yield bytes(view[offset:offset + chunk_size])


class URLAttachment(Attachment):
    """A remote resource fetched with a streaming GET each time it is read."""

    def __init__(
        self,
        url: str,
        filename: str | None = None,
        content_type: str | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.url = url
        self.timeout = timeout
        super().__init__(filename or _filename_from_url(url), content_type)

    def _iter_raw(self, chunk_size: int) -> Iterator[bytes]:
        with httpx.stream("GET", self.url, timeout=self.timeout, follow_redirects=True) as response:
            response.raise_for_status()
            yield from response.iter_bytes(chunk_size)


class AttachmentStreamer:
    """Copies attachment content in bounded chunks.

    Usage:
        streamer = AttachmentStreamer(chunk_size=8192)
        with open("copy.bin", "wb") as sink:
            written = streamer.stream(attachment, sink)
    """

    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.chunk_size = chunk_size

    def iter_chunks(self, source: Attachment) -> Iterator[bytes]:
        """Yield the source's content in chunks of at most ``chunk_size`` bytes.

        Raises:
            AttachmentError: If the source cannot be opened or read.
        """
        total = 0
        try:
            for chunk in source._iter_raw(self.chunk_size):
                # Some sources (remote streams) may return oversized chunks
                for offset in range(0, len(chunk), self.chunk_size):
                    piece = chunk[offset:offset + self.chunk_size]
                    total += len(piece)
                    yield piece
        except (OSError, httpx.HTTPError) as e:
            raise AttachmentError(f"Failed to read attachment '{source.filename}': {e}") from e

        expected = source.size
        if expected is not None and total != expected:
            raise AttachmentError(
                f"Attachment '{source.filename}' changed while streaming: "
                f"expected {expected} bytes, read {total}"
            )
        logger.debug("Streamed attachment %s (%d bytes)", source.filename, total)

    def stream(self, source: Attachment, sink: BinaryIO) -> int:
        """Write the source's content to ``sink``, returning bytes written."""
        written = 0
        for chunk in self.iter_chunks(source):
            sink.write(chunk)
            written += len(chunk)
        return written


def _guess_content_type(filename: str) -> str:
    content_type, _ = mimetypes.guess_type(filename)
    return content_type or DEFAULT_CONTENT_TYPE


def _filename_from_url(url: str) -> str:
    name = PurePosixPath(unquote(urlsplit(url).path)).name
    return name or "attachment"
