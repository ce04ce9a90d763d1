"""Tests for attachment sources and bounded-chunk streaming."""

import io
from pathlib import Path
from unittest.mock import patch

import httpx
import pytest

from tests.conftest import BINARY_RESOURCE_BYTES, TEXT_RESOURCE_BYTES, binary_resource_content
from wsproxy.attachments import (
    Attachment,
    AttachmentStreamer,
    BytesAttachment,
    FileAttachment,
    URLAttachment,
)
from wsproxy.errors import AttachmentError, TransportError


class TestAttachmentSources:
    def test_from_path(self, fixture_text_resource: Path) -> None:
        attachment = Attachment.from_path(fixture_text_resource)
        assert isinstance(attachment, FileAttachment)
        assert attachment.filename == "test.txt"
        assert attachment.size == TEXT_RESOURCE_BYTES
        assert attachment.content_type == "text/plain"

    def test_from_path_missing_file_has_no_size(self, tmp_path: Path) -> None:
        assert Attachment.from_path(tmp_path / "missing.bin").size is None

    def test_from_bytes(self) -> None:
        attachment = Attachment.from_bytes(b"abc", "a.bin", content_type="image/jpeg")
        assert isinstance(attachment, BytesAttachment)
        assert attachment.size == 3
        assert attachment.content_type == "image/jpeg"

    def test_from_url_filename(self) -> None:
        attachment = Attachment.from_url("http://host/files/report%20v2.pdf?x=1")
        assert isinstance(attachment, URLAttachment)
        assert attachment.filename == "report v2.pdf"
        assert attachment.size is None

    def test_from_url_without_path(self) -> None:
        assert Attachment.from_url("http://host/").filename == "attachment"

    def test_repr(self) -> None:
        assert repr(Attachment.from_bytes(b"", "x.txt")) == "BytesAttachment(filename='x.txt')"


class TestAttachmentStreamer:
    def test_rejects_non_positive_chunk_size(self) -> None:
        with pytest.raises(ValueError):
            AttachmentStreamer(chunk_size=0)

    def test_text_resource_byte_count(self, fixture_text_resource: Path) -> None:
        sink = io.BytesIO()
        written = AttachmentStreamer().stream(Attachment.from_path(fixture_text_resource), sink)
        assert written == TEXT_RESOURCE_BYTES
        assert sink.getvalue() == fixture_text_resource.read_bytes()

    def test_binary_resource_is_byte_identical(self, fixture_binary_resource: Path) -> None:
        sink = io.BytesIO()
        written = AttachmentStreamer(chunk_size=1000).stream(
            Attachment.from_path(fixture_binary_resource), sink
        )
        assert written == BINARY_RESOURCE_BYTES
        assert sink.getvalue() == binary_resource_content()

    def test_chunks_are_bounded(self, fixture_binary_resource: Path) -> None:
        chunks = list(AttachmentStreamer(chunk_size=4096).iter_chunks(
            Attachment.from_path(fixture_binary_resource)
        ))
        assert all(len(chunk) <= 4096 for chunk in chunks)
        assert len(chunks) == 3

    def test_oversized_source_chunks_are_split(self) -> None:
        class Bulk(Attachment):
            def _iter_raw(self, chunk_size: int):
                yield b"x" * 25

        chunks = list(AttachmentStreamer(chunk_size=10).iter_chunks(Bulk("bulk.bin")))
        assert [len(c) for c in chunks] == [10, 10, 5]

    def test_writes_each_chunk_immediately(self) -> None:
        """The sink sees a write per chunk rather than one write at the end."""
        writes: list[int] = []

        class Sink:
            def write(self, data: bytes) -> None:
                writes.append(len(data))

        AttachmentStreamer(chunk_size=4).stream(Attachment.from_bytes(b"0123456789", "d.bin"), Sink())
        assert writes == [4, 4, 2]

    def test_source_is_reopened_each_time(self, fixture_text_resource: Path) -> None:
        attachment = Attachment.from_path(fixture_text_resource)
        streamer = AttachmentStreamer()
        assert b"".join(streamer.iter_chunks(attachment)) == b"".join(streamer.iter_chunks(attachment))

    def test_missing_file_raises_attachment_error(self, tmp_path: Path) -> None:
        with pytest.raises(AttachmentError, match="missing.txt"):
            AttachmentStreamer().stream(Attachment.from_path(tmp_path / "missing.txt"), io.BytesIO())

    def test_attachment_error_is_transport_error(self) -> None:
        assert issubclass(AttachmentError, TransportError)

    def test_base_class_is_abstract(self) -> None:
        with pytest.raises(TypeError):
            Attachment("plain.bin")

    def test_read_failure_mid_stream(self) -> None:
        class Broken(Attachment):
            def _iter_raw(self, chunk_size: int):
                yield b"partial"
                raise OSError("disk gone")

        with pytest.raises(AttachmentError, match="disk gone"):
            AttachmentStreamer().stream(Broken("broken.bin"), io.BytesIO())

    def test_truncated_source_is_detected(self, tmp_path: Path) -> None:
        path = tmp_path / "shrinking.bin"
        path.write_bytes(b"x" * 100)
        attachment = Attachment.from_path(path)

        with patch.object(FileAttachment, "size", new=property(lambda self: 200)):
            with pytest.raises(AttachmentError, match="expected 200 bytes, read 100"):
                AttachmentStreamer().stream(attachment, io.BytesIO())


class TestURLAttachment:
    def test_streams_remote_content(self) -> None:
        payload = binary_resource_content()

        def fake_stream(method: str, url: str, **kwargs):
            transport = httpx.MockTransport(lambda request: httpx.Response(200, content=payload))
            client = httpx.Client(transport=transport)
            return client.stream(method, url)

        attachment = Attachment.from_url("http://files.example/test.bin")
        with patch("wsproxy.attachments.httpx.stream", side_effect=fake_stream):
            sink = io.BytesIO()
            written = AttachmentStreamer(chunk_size=1024).stream(attachment, sink)

        assert written == BINARY_RESOURCE_BYTES
        assert sink.getvalue() == payload

    def test_remote_error_status_raises_attachment_error(self) -> None:
        def fake_stream(method: str, url: str, **kwargs):
            transport = httpx.MockTransport(lambda request: httpx.Response(404))
            return httpx.Client(transport=transport).stream(method, url)

        attachment = Attachment.from_url("http://files.example/missing.bin")
        with patch("wsproxy.attachments.httpx.stream", side_effect=fake_stream):
            with pytest.raises(AttachmentError, match="missing.bin"):
                AttachmentStreamer().stream(attachment, io.BytesIO())

    def test_remote_connect_failure_raises_attachment_error(self) -> None:
        def fake_stream(method: str, url: str, **kwargs):
            def refuse(request: httpx.Request) -> httpx.Response:
                raise httpx.ConnectError("refused", request=request)

            return httpx.Client(transport=httpx.MockTransport(refuse)).stream(method, url)

        attachment = Attachment.from_url("http://files.example/a.bin")
        with patch("wsproxy.attachments.httpx.stream", side_effect=fake_stream):
            with pytest.raises(AttachmentError, match="refused"):
                AttachmentStreamer().stream(attachment, io.BytesIO())
