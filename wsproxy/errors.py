"""Error taxonomy for wsproxy.

Every failure an invocation can produce is a WebServiceProxyError subclass,
so callers can catch the base class or a specific kind. Timeouts are always
reported as ConnectTimeoutError or ReadTimeoutError, never as a generic
TransportError.
"""

from __future__ import annotations

from typing import Any


class WebServiceProxyError(Exception):
    """Base class for wsproxy errors."""


class ConfigurationError(WebServiceProxyError):
    """Raised for invalid request configuration, before any network I/O."""


class ConnectTimeoutError(WebServiceProxyError):
    """Raised when a connection is not established within the connect timeout."""


class ReadTimeoutError(WebServiceProxyError):
    """Raised when the response stalls longer than the read timeout."""


class TransportError(WebServiceProxyError):
    """Raised for other network-level failures (DNS, reset, refused)."""


class AttachmentError(TransportError):
    """Raised when an attachment source cannot be opened or fully read."""


class DecodeError(WebServiceProxyError):
    """Raised when the response decoder fails on a successful response."""


class ServiceError(WebServiceProxyError):
    """A response was received with a non-success status code.

    Attributes:
        status_code: The HTTP status code, exactly as received.
        detail: Parsed error detail from the response body, or None.
    """

    def __init__(self, status_code: int, detail: Any = None) -> None:
        self.status_code = status_code
        self.detail = detail
        message = f"HTTP {status_code}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)

    def __reduce__(self) -> tuple[Any, ...]:
        return (type(self), (self.status_code, self.detail))
