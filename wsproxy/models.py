"""Data models for wsproxy.

Configuration and request descriptions use Pydantic v2. Objects that carry
live iterators or file handles (prepared requests, invocation results) are
plain dataclasses.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, BinaryIO, Callable, Generic, Iterable, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from wsproxy.errors import ConfigurationError, WebServiceProxyError

T = TypeVar("T")

BodyWriter = Callable[[BinaryIO], None]

DEFAULT_CONNECT_TIMEOUT = 15.0
DEFAULT_READ_TIMEOUT = 60.0
DEFAULT_CHUNK_SIZE = 64 * 1024
DEFAULT_CONTENT_TYPE = "application/octet-stream"


# =============================================================================
# Enumerations
# =============================================================================


class Method(str, Enum):
    """Supported HTTP methods."""

    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    DELETE = "DELETE"
    PATCH = "PATCH"

    @property
    def has_body(self) -> bool:
        """True for methods whose arguments travel in the request body."""
        return self not in (Method.GET, Method.DELETE)


class Encoding(str, Enum):
    """How request content is supplied."""

    QUERY = "query"  # Arguments appended to the URL
    URL_ENCODED = "url_encoded"  # application/x-www-form-urlencoded body
    MULTIPART = "multipart"  # multipart/form-data body
    CUSTOM = "custom"  # Caller-supplied body writer


class InvocationState(str, Enum):
    """Per-invocation lifecycle states."""

    CONFIGURED = "configured"
    ENCODING = "encoding"
    TRANSMITTING = "transmitting"
    DECODING = "decoding"
    ERROR_MAPPING = "error_mapping"
    DONE = "done"
    FAILED = "failed"


# =============================================================================
# Configuration
# =============================================================================


class ProxyConfig(BaseModel):
    """Settings shared by every invocation made through one proxy."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    base_url: str | None = Field(
        default=None, description="Base URL that relative request URLs resolve against"
    )
    headers: dict[str, str] = Field(
        default_factory=dict, description="Headers sent with every request"
    )
    connect_timeout: float = Field(
        default=DEFAULT_CONNECT_TIMEOUT, gt=0, description="Connect timeout in seconds"
    )
    read_timeout: float = Field(
        default=DEFAULT_READ_TIMEOUT, gt=0, description="Read timeout in seconds"
    )
    chunk_size: int = Field(
        default=DEFAULT_CHUNK_SIZE, gt=0, description="Attachment read chunk size in bytes"
    )
    verify_ssl: bool = Field(default=True, description="Verify server TLS certificates")


# =============================================================================
# Request Models
# =============================================================================


class RequestSpec(BaseModel):
    """One request to invoke: method, URL, encoding, timeouts and content.

    Content comes either from ``arguments`` (encoded according to
    ``encoding``) or from ``body_writer``, never both. Use ``with_arguments``
    and ``with_body_writer`` to switch between them on a copy.
    """

    model_config = ConfigDict(extra="forbid", frozen=True, arbitrary_types_allowed=True)

    method: Method = Field(description="HTTP method")
    url: str = Field(min_length=1, description="Absolute URL, or path relative to base_url")
    encoding: Encoding | None = Field(
        default=None, description="Requested encoding; None selects the method default"
    )
    arguments: dict[str, Any] = Field(
        default_factory=dict, description="Named arguments, in insertion order"
    )
    body_writer: BodyWriter | None = Field(
        default=None, description="Writes the request body to a binary sink"
    )
    content_type: str = Field(
        default=DEFAULT_CONTENT_TYPE, description="Content-Type sent with a custom body"
    )
    headers: dict[str, str] = Field(default_factory=dict, description="Request-specific headers")
    connect_timeout: float | None = Field(default=None, gt=0, description="Overrides config")
    read_timeout: float | None = Field(default=None, gt=0, description="Overrides config")

    def __init__(self, **data: Any) -> None:
        try:
            super().__init__(**data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid request: {e}") from e

    @field_validator("method", mode="before")
    @classmethod
    def normalize_method(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.upper()
        return v

    @model_validator(mode="after")
    def check_content_exclusivity(self) -> RequestSpec:
        if self.body_writer is not None and self.arguments:
            raise ValueError("arguments and body_writer are mutually exclusive")
        if self.encoding == Encoding.CUSTOM and self.body_writer is None:
            raise ValueError("custom encoding requires a body_writer")
        return self

    def with_arguments(self, arguments: dict[str, Any]) -> RequestSpec:
        """Return a copy that sends ``arguments`` and no custom body."""
        encoding = None if self.encoding == Encoding.CUSTOM else self.encoding
        return self.model_copy(
            update={"arguments": dict(arguments), "body_writer": None, "encoding": encoding}
        )

    def with_body_writer(
        self, body_writer: BodyWriter, content_type: str | None = None
    ) -> RequestSpec:
        """Return a copy that sends a custom body and no arguments."""
        return self.model_copy(
            update={
                "arguments": {},
                "body_writer": body_writer,
                "encoding": Encoding.CUSTOM,
                "content_type": content_type or self.content_type,
            }
        )


@dataclass
class EncodedBody:
    """A request body produced from arguments.

    ``content`` is either complete bytes or a lazy chunk iterator that must be
    consumed at most once. ``content_length`` is None when it is not known up
    front (the transport then uses chunked transfer encoding).
    """

    content_type: str
    content: bytes | Iterable[bytes]
    content_length: int | None = None


@dataclass
class PreparedRequest:
    """A fully resolved request, ready for the transport."""

    method: Method
    url: str
    headers: dict[str, str]
    connect_timeout: float
    read_timeout: float
    body: EncodedBody | None = None
    body_writer: BodyWriter | None = None
    content_type: str = DEFAULT_CONTENT_TYPE

    def __post_init__(self) -> None:
        if self.body is not None and self.body_writer is not None:
            raise ConfigurationError("A request cannot have both an encoded body and a body writer")


# =============================================================================
# Results
# =============================================================================


@dataclass
class InvocationResult(Generic[T]):
    """Tagged outcome of one invocation: a value, or exactly one error."""

    value: T | None = None
    error: WebServiceProxyError | None = None
    states: list[InvocationState] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T | None:
        """Return the value, or raise the captured error."""
        if self.error is not None:
            raise self.error
        return self.value
