"""Response decoders - The caller-supplied strategy for successful responses.

A decoder is any callable taking (stream, content_type, headers) and
returning a value. The stock decoders below cover the common cases; JSON
decoding validates into an arbitrary type with a Pydantic TypeAdapter.
"""

from __future__ import annotations

from typing import Any, BinaryIO, Mapping, Protocol, TypeVar

from pydantic import TypeAdapter

T_co = TypeVar("T_co", covariant=True)


class ResponseDecoder(Protocol[T_co]):
    """Converts a successful response body into a typed result."""

    def __call__(
        self,
        stream: BinaryIO,
        content_type: str | None,
        headers: Mapping[str, str],
    ) -> T_co: ...


def bytes_decoder(stream: BinaryIO, content_type: str | None, headers: Mapping[str, str]) -> bytes:
    return stream.read()


def charset(content_type: str | None, default: str = "utf-8") -> str:
    """Return the charset parameter of a Content-Type value, or ``default``."""
    if content_type:
        for param in content_type.split(";")[1:]:
            key, _, value = param.strip().partition("=")
            if key.lower() == "charset" and value:
                return value.strip('"')
    return default


def text_decoder(stream: BinaryIO, content_type: str | None, headers: Mapping[str, str]) -> str:
    return stream.read().decode(charset(content_type))


class JSONDecoder:
    """Decodes a JSON body and validates it as ``type_``.

    Usage:
        decoder = JSONDecoder(list[int])
        numbers = proxy.invoke(spec, decoder)

    Pydantic reads integer epoch values above 2e10 as milliseconds, so
    timestamps sent as epoch milliseconds decode back to the same instant
    when ``type_`` declares them as datetime.
    """

    def __init__(self, type_: Any = Any) -> None:
        self._adapter: TypeAdapter[Any] = TypeAdapter(type_)

    def __call__(
        self,
        stream: BinaryIO,
        content_type: str | None,
        headers: Mapping[str, str],
    ) -> Any:
        return self._adapter.validate_json(stream.read())


def json_decoder(type_: Any = Any) -> JSONDecoder:
    return JSONDecoder(type_)
