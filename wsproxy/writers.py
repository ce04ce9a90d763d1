"""Ready-made body writers for custom request content."""

from __future__ import annotations

import json
import shutil
from typing import Any, BinaryIO

from pydantic import BaseModel

from wsproxy.attachments import Attachment, AttachmentStreamer
from wsproxy.models import BodyWriter


def bytes_writer(data: bytes) -> BodyWriter:
    """Send ``data`` as the request body."""

    def write(sink: BinaryIO) -> None:
        sink.write(data)

    return write


def file_writer(source: BinaryIO, chunk_size: int = 64 * 1024) -> BodyWriter:
    """Copy an open binary file into the request body."""

    def write(sink: BinaryIO) -> None:
        shutil.copyfileobj(source, sink, chunk_size)

    return write


def attachment_writer(attachment: Attachment, streamer: AttachmentStreamer | None = None) -> BodyWriter:
    """Stream an attachment's raw bytes as the whole request body."""
    streamer = streamer or AttachmentStreamer()

    def write(sink: BinaryIO) -> None:
        streamer.stream(attachment, sink)

    return write


def json_writer(body: Any) -> BodyWriter:
    """Serialize ``body`` as JSON. Pydantic models use their own serializer."""
    if isinstance(body, BaseModel):
        data = body.model_dump_json().encode("utf-8")
    else:
        data = json.dumps(body, ensure_ascii=False).encode("utf-8")
    return bytes_writer(data)
