"""Argument encoding - Turns the argument mapping into a query string or body.

Three argument encodings are supported:
    QUERY        name=value pairs appended to the URL
    URL_ENCODED  the same pairs as an application/x-www-form-urlencoded body
    MULTIPART    a multipart/form-data body, the only mode that accepts attachments

List values expand into one pair (or part) per element, all sharing the
argument name. None values, and None list elements, are skipped.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Iterator
from urllib.parse import urlencode, urlsplit, urlunsplit

from wsproxy.attachments import Attachment, AttachmentStreamer, FileAttachment
from wsproxy.errors import AttachmentError, ConfigurationError
from wsproxy.marshaler import is_attachment, is_list, marshal_value
from wsproxy.models import EncodedBody, Encoding, Method

logger = logging.getLogger(__name__)

FORM_URLENCODED = "application/x-www-form-urlencoded"
MULTIPART_FORM_DATA = "multipart/form-data"
CRLF = b"\r\n"


@dataclass
class EncodedArguments:
    """Result of encoding arguments: a query suffix, a body, or neither."""

    query: str = ""
    body: EncodedBody | None = None


def _elements(value: Any) -> list[Any]:
    return list(value) if is_list(value) else [value]


def has_attachments(arguments: dict[str, Any]) -> bool:
    return any(
        is_attachment(element)
        for value in arguments.values()
        for element in _elements(value)
    )


def resolve_encoding(
    method: Method,
    encoding: Encoding | None,
    arguments: dict[str, Any],
    has_body_writer: bool = False,
) -> Encoding:
    """Pick the effective encoding for a request.

    GET and DELETE always use the query string. POST, PUT and PATCH default to
    a URL-encoded body, or multipart when attachments are present.

    Raises:
        ConfigurationError: For combinations that cannot be sent, e.g. an
            attachment outside multipart or a custom body on GET.
    """
    if has_body_writer or encoding == Encoding.CUSTOM:
        if not has_body_writer:
            raise ConfigurationError("Custom encoding requires a body writer")
        if not method.has_body:
            raise ConfigurationError(f"{method.value} requests cannot carry a custom body")
        if encoding not in (None, Encoding.CUSTOM):
            raise ConfigurationError(
                f"A body writer cannot be combined with {encoding.value} encoding"
            )
        return Encoding.CUSTOM

    attachments = has_attachments(arguments)

    if not method.has_body:
        if attachments:
            raise ConfigurationError(
                f"Attachments cannot be sent with {method.value}; use POST, PUT or PATCH "
                f"with multipart encoding"
            )
        return Encoding.QUERY

    if encoding is None:
        return Encoding.MULTIPART if attachments else Encoding.URL_ENCODED

    if attachments and encoding != Encoding.MULTIPART:
        raise ConfigurationError(
            f"Attachments require multipart encoding, not {encoding.value}"
        )
    return encoding


def iter_pairs(arguments: dict[str, Any]) -> Iterator[tuple[str, str]]:
    """Yield (name, text) pairs with lists expanded in order.

    Raises:
        ConfigurationError: If an attachment is found.
    """
    for name, value in arguments.items():
        if not name:
            continue
        for element in _elements(value):
            if is_attachment(element):
                raise ConfigurationError(
                    f"Argument '{name}' is an attachment; attachments require multipart encoding"
                )
            text = marshal_value(element)
            if text is not None:
                yield name, text


def encode_query(arguments: dict[str, Any]) -> str:
    """Form-encode arguments: UTF-8, percent-escaped, joined by '&'."""
    return urlencode(list(iter_pairs(arguments)), encoding="utf-8")


def append_query(url: str, query: str) -> str:
    """Append ``query`` to ``url``, merging with any existing query component."""
    if not query:
        return url
    parts = urlsplit(url)
    merged = f"{parts.query}&{query}" if parts.query else query
    return urlunsplit((parts.scheme, parts.netloc, parts.path, merged, parts.fragment))


def encode_form(arguments: dict[str, Any]) -> EncodedBody:
    content = encode_query(arguments).encode("ascii")
    return EncodedBody(
        content_type=FORM_URLENCODED,
        content=content,
        content_length=len(content),
    )


def _quote_param(value: str) -> str:
    """Escape a Content-Disposition parameter the way browsers do."""
    return value.replace("\r", "%0D").replace("\n", "%0A").replace('"', "%22")


def _part_header(name: str, attachment: Attachment | None = None) -> bytes:
    disposition = f'Content-Disposition: form-data; name="{_quote_param(name)}"'
    lines = []
    if attachment is None:
        lines.append(disposition)
    else:
        lines.append(f'{disposition}; filename="{_quote_param(attachment.filename)}"')
        lines.append(f"Content-Type: {attachment.content_type}")
    return ("\r\n".join(lines)).encode("utf-8") + CRLF + CRLF


def new_boundary() -> str:
    return uuid.uuid4().hex


def encode_multipart(
    arguments: dict[str, Any],
    streamer: AttachmentStreamer | None = None,
    boundary: str | None = None,
) -> EncodedBody:
    """Build a multipart/form-data body.

    Text parts are rendered up front (they are small). Attachment parts are
    streamed lazily when the body iterator is consumed, so the body must be
    consumed at most once.

    Raises:
        AttachmentError: If a file attachment does not exist.
    """
    streamer = streamer or AttachmentStreamer()
    boundary = boundary or new_boundary()
    delimiter = f"--{boundary}".encode("ascii")

    # Each entry: (header bytes, payload bytes or Attachment)
    parts: list[tuple[bytes, bytes | Attachment]] = []
    for name, value in arguments.items():
        if not name:
            continue
        for element in _elements(value):
            if is_attachment(element):
                if isinstance(element, FileAttachment) and not element.path.is_file():
                    raise AttachmentError(f"Attachment file not found: {element.path}")
                parts.append((_part_header(name, element), element))
            else:
                text = marshal_value(element)
                if text is not None:
                    parts.append((_part_header(name), text.encode("utf-8")))

    terminator = delimiter + b"--" + CRLF

    content_length: int | None = len(terminator)
    for header, payload in parts:
        framing = len(delimiter) + len(CRLF) + len(header) + len(CRLF)
        size = len(payload) if isinstance(payload, bytes) else payload.size
        if size is None or content_length is None:
            content_length = None
        else:
            content_length += framing + size

    def generate() -> Iterator[bytes]:
        for header, payload in parts:
            yield delimiter + CRLF + header
            if isinstance(payload, bytes):
                yield payload
            else:
                yield from streamer.iter_chunks(payload)
            yield CRLF
        yield terminator

    logger.debug(
        "Encoded multipart body: %d parts, length=%s", len(parts),
        content_length if content_length is not None else "chunked",
    )
    return EncodedBody(
        content_type=f"{MULTIPART_FORM_DATA}; boundary={boundary}",
        content=generate(),
        content_length=content_length,
    )


def encode_arguments(
    arguments: dict[str, Any],
    encoding: Encoding,
    streamer: AttachmentStreamer | None = None,
) -> EncodedArguments:
    """Encode arguments for an already-resolved encoding.

    CUSTOM yields neither a query nor a body; the body writer supplies content.
    """
    if encoding == Encoding.QUERY:
        return EncodedArguments(query=encode_query(arguments))
    if encoding == Encoding.URL_ENCODED:
        return EncodedArguments(body=encode_form(arguments))
    if encoding == Encoding.MULTIPART:
        return EncodedArguments(body=encode_multipart(arguments, streamer))
    return EncodedArguments()
