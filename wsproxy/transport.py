"""Transport - Executes prepared requests with httpx and wraps the response.

The executor sends exactly one request and returns a ResponseEnvelope for any
status code; deciding what a status means is the error mapper's job. httpx
exceptions are translated into the wsproxy error taxonomy here, both while
sending and while the caller reads the response stream.
"""

from __future__ import annotations

import io
import logging
import tempfile
from contextlib import contextmanager
from typing import Any, BinaryIO, Callable, Iterator

import httpx

from wsproxy.errors import (
    ConfigurationError,
    ConnectTimeoutError,
    ReadTimeoutError,
    TransportError,
    WebServiceProxyError,
)
from wsproxy.models import DEFAULT_CHUNK_SIZE, BodyWriter, PreparedRequest

logger = logging.getLogger(__name__)

# Custom bodies stay in memory up to this size, then spill to a temp file
SPOOL_MAX_SIZE = 1024 * 1024


@contextmanager
def map_transport_errors(description: str) -> Iterator[None]:
    """Translate httpx exceptions raised inside the block.

    Timeouts map to their own error kinds; they are never reported as a
    generic TransportError.
    """
    try:
        yield
    except (httpx.ConnectTimeout, httpx.PoolTimeout) as e:
        raise ConnectTimeoutError(f"{description}: connect timeout: {e}") from e
    except (httpx.ReadTimeout, httpx.WriteTimeout) as e:
        raise ReadTimeoutError(f"{description}: read timeout: {e}") from e
    except httpx.TransportError as e:
        raise TransportError(f"{description}: {type(e).__name__}: {e}") from e
    except httpx.RequestError as e:
        # e.g. DecodingError for a corrupt Content-Encoding
        raise TransportError(f"{description}: {type(e).__name__}: {e}") from e


class ResponseStream(io.RawIOBase):
    """Readable byte stream over an httpx response body.

    Wraps ``httpx.Response.iter_bytes()`` so decoders can treat the body as
    an ordinary binary file. Read failures surface as wsproxy errors.
    """

    def __init__(self, response: httpx.Response, description: str) -> None:
        super().__init__()
        self._chunks = response.iter_bytes()
        self._pending = b""
        self._description = description

    def readable(self) -> bool:
        return True

    def readinto(self, buffer: Any) -> int:
        if self.closed:
            raise ValueError("I/O operation on closed response stream")
        if not self._pending:
            with map_transport_errors(self._description):
                self._pending = next(self._chunks, b"")
        count = min(len(buffer), len(self._pending))
        buffer[:count] = self._pending[:count]
        self._pending = self._pending[count:]
        return count


class ResponseEnvelope:
    """Status, headers and a single-use body stream for one response.

    The envelope owns the underlying connection. Close it (or use it as a
    context manager) to release everything, whether or not the body was read.
    """

    def __init__(
        self,
        response: httpx.Response,
        on_close: Callable[[], None] | None = None,
    ) -> None:
        self._response = response
        self._on_close = on_close
        self._closed = False
        description = f"{response.request.method} {response.request.url}"
        self.stream: BinaryIO = io.BufferedReader(ResponseStream(response, description))

    @property
    def status_code(self) -> int:
        return self._response.status_code

    @property
    def content_type(self) -> str | None:
        return self._response.headers.get("content-type")

    @property
    def headers(self) -> httpx.Headers:
        """Case-insensitive response header mapping."""
        return self._response.headers

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300

    def read(self, limit: int = -1) -> bytes:
        """Read the body (or up to ``limit`` bytes) from the stream."""
        return self.stream.read(limit)

    def close(self) -> None:
        """Release the stream, the response and anything the executor attached.

        Safe to call multiple times.
        """
        if self._closed:
            return
        self._closed = True
        try:
            self.stream.close()
            self._response.close()
        finally:
            if self._on_close is not None:
                self._on_close()

    def __enter__(self) -> ResponseEnvelope:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"ResponseEnvelope(status_code={self.status_code}, content_type={self.content_type!r})"


def _iter_file(f: BinaryIO, chunk_size: int) -> Iterator[bytes]:
    while chunk := f.read(chunk_size):
        yield chunk


def _set_header(headers: dict[str, str], name: str, value: str) -> None:
    """Set ``name``, replacing any existing spelling of it."""
    for existing in [k for k in headers if k.lower() == name.lower()]:
        del headers[existing]
    headers[name] = value


class TransportExecutor:
    """Sends one PreparedRequest and returns its ResponseEnvelope.

    Usage:
        executor = TransportExecutor()
        with executor.execute(prepared) as envelope:
            data = envelope.read()

    When no client is supplied, a fresh httpx.Client is created for each
    request and closed together with the envelope. A supplied client is
    never closed by the executor.
    """

    def __init__(
        self,
        client: httpx.Client | None = None,
        verify_ssl: bool = True,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self._client = client
        self._verify_ssl = verify_ssl
        self._chunk_size = chunk_size

    def _spool_body(self, body_writer: BodyWriter) -> tuple[BinaryIO, int]:
        """Run the body writer against a spooled sink and rewind it."""
        spool = tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_SIZE)
        try:
            body_writer(spool)
            size = spool.tell()
            spool.seek(0)
        except WebServiceProxyError:
            spool.close()
            raise
        except Exception as e:
            spool.close()
            raise TransportError(f"Body writer failed: {e}") from e
        return spool, size

    def execute(self, prepared: PreparedRequest) -> ResponseEnvelope:
        """Send the request and return the envelope, whatever the status.

        Raises:
            ConfigurationError: If the URL is invalid.
            ConnectTimeoutError: If the connection is not established in time.
            ReadTimeoutError: If the server stalls longer than the read timeout.
            TransportError: For any other network failure.
        """
        timeout = httpx.Timeout(
            connect=prepared.connect_timeout,
            read=prepared.read_timeout,
            write=prepared.read_timeout,
            pool=prepared.connect_timeout,
        )
        description = f"{prepared.method.value} {prepared.url}"

        owns_client = self._client is None
        client = self._client if self._client is not None else httpx.Client(verify=self._verify_ssl)
        spool: BinaryIO | None = None

        try:
            headers = dict(prepared.headers)
            content: bytes | Iterator[bytes] | Any = None

            if prepared.body is not None:
                _set_header(headers, "Content-Type", prepared.body.content_type)
                content = prepared.body.content
                if not isinstance(content, bytes) and prepared.body.content_length is not None:
                    _set_header(headers, "Content-Length", str(prepared.body.content_length))
            elif prepared.body_writer is not None:
                spool, size = self._spool_body(prepared.body_writer)
                _set_header(headers, "Content-Type", prepared.content_type)
                _set_header(headers, "Content-Length", str(size))
                content = _iter_file(spool, self._chunk_size)

            try:
                request = client.build_request(
                    prepared.method.value,
                    prepared.url,
                    headers=headers,
                    content=content,
                    timeout=timeout,
                )
            except httpx.InvalidURL as e:
                raise ConfigurationError(f"Invalid URL '{prepared.url}': {e}") from e
            except UnicodeEncodeError as e:
                # Header names and values must be ASCII
                raise ConfigurationError(
                    f"Non-ASCII character {e.object[e.start:e.end]!r} in request headers; "
                    f"HTTP requires ASCII header names and values"
                ) from e

            logger.debug("Sending %s", description)
            with map_transport_errors(description):
                response = client.send(request, stream=True)
        except BaseException:
            # Release attachment handles held by a partly consumed body
            close_body = getattr(prepared.body.content if prepared.body else None, "close", None)
            if close_body is not None:
                close_body()
            if owns_client:
                client.close()
            raise
        finally:
            # The body is fully sent once send() returns
            if spool is not None:
                spool.close()

        logger.debug("Received %d for %s", response.status_code, description)
        return ResponseEnvelope(response, on_close=client.close if owns_client else None)
