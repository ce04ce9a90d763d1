"""WebServiceProxy - Orchestrates one invocation from arguments to result.

Each invocation walks a fixed state machine:

    CONFIGURED -> ENCODING -> TRANSMITTING -> DECODING | ERROR_MAPPING -> DONE

Any failure moves straight to FAILED. Nothing is retried, and every
connection, stream and attachment handle opened along the way is released
before the call returns or raises.
"""

from __future__ import annotations

import logging
from typing import Any, Callable
from urllib.parse import urljoin, urlsplit

import httpx

from wsproxy.attachments import AttachmentStreamer
from wsproxy.decoders import ResponseDecoder
from wsproxy.encoder import append_query, encode_arguments, resolve_encoding
from wsproxy.error_mapper import DetailParser, classify, default_detail_parser
from wsproxy.errors import (
    ConfigurationError,
    DecodeError,
    ServiceError,
    WebServiceProxyError,
)
from wsproxy.models import (
    Encoding,
    InvocationResult,
    InvocationState,
    PreparedRequest,
    ProxyConfig,
    RequestSpec,
)
from wsproxy.transport import ResponseEnvelope, TransportExecutor

logger = logging.getLogger(__name__)


def _merge_headers(common: dict[str, str], specific: dict[str, str]) -> dict[str, str]:
    """Merge header dicts case-insensitively; ``specific`` wins."""
    merged = dict(common)
    for key, value in specific.items():
        for existing in [k for k in merged if k.lower() == key.lower()]:
            del merged[existing]
        merged[key] = value
    return merged


class WebServiceProxy:
    """Invokes web service operations described by RequestSpec objects.

    Usage:
        proxy = WebServiceProxy(ProxyConfig(base_url="http://localhost:8080/"))
        spec = RequestSpec(method="GET", url="test/fibonacci", arguments={"count": 8})
        numbers = proxy.invoke(spec, json_decoder(list[int]))

    The proxy holds only immutable configuration, so one instance may be
    shared by threads that each run their own invocations.
    """

    def __init__(
        self,
        config: ProxyConfig | None = None,
        client: httpx.Client | None = None,
        detail_parser: DetailParser = default_detail_parser,
    ) -> None:
        """Initialize the proxy.

        Args:
            config: Shared settings (base URL, headers, default timeouts).
            client: Optional httpx client to send requests through. The proxy
                    never closes a client it did not create.
            detail_parser: Extracts error detail from non-success bodies.
        """
        self._config = config or ProxyConfig()
        self._streamer = AttachmentStreamer(self._config.chunk_size)
        self._executor = TransportExecutor(
            client,
            verify_ssl=self._config.verify_ssl,
            chunk_size=self._config.chunk_size,
        )
        self._detail_parser = detail_parser

    @property
    def config(self) -> ProxyConfig:
        return self._config

    def resolve_url(self, url: str) -> str:
        """Resolve ``url`` against the configured base URL.

        Raises:
            ConfigurationError: If ``url`` is relative and no base URL is set.
        """
        if urlsplit(url).scheme:
            return url
        if not self._config.base_url:
            raise ConfigurationError(f"Relative URL '{url}' requires a base_url")
        return urljoin(self._config.base_url, url)

    def prepare(self, spec: RequestSpec) -> PreparedRequest:
        """Encode a RequestSpec into a PreparedRequest without sending it.

        Raises:
            ConfigurationError: For invalid encoding/argument combinations.
            AttachmentError: If a file attachment is missing.
        """
        encoding = resolve_encoding(
            spec.method,
            spec.encoding,
            spec.arguments,
            has_body_writer=spec.body_writer is not None,
        )
        encoded = encode_arguments(spec.arguments, encoding, self._streamer)

        prepared = PreparedRequest(
            method=spec.method,
            url=append_query(self.resolve_url(spec.url), encoded.query),
            headers=_merge_headers(self._config.headers, spec.headers),
            connect_timeout=spec.connect_timeout or self._config.connect_timeout,
            read_timeout=spec.read_timeout or self._config.read_timeout,
            body=encoded.body,
            body_writer=spec.body_writer if encoding == Encoding.CUSTOM else None,
            content_type=spec.content_type,
        )
        logger.debug(
            "Prepared %s %s (encoding=%s)", prepared.method.value, prepared.url, encoding.value
        )
        return prepared

    def invoke(
        self,
        spec: RequestSpec,
        decoder: ResponseDecoder[Any] | None = None,
    ) -> Any:
        """Run one invocation and return the decoded result.

        Without a decoder the response body is discarded and None returned.

        Raises:
            ConfigurationError, ConnectTimeoutError, ReadTimeoutError,
            TransportError, ServiceError or DecodeError; exactly one per call.
        """
        return self._run(spec, decoder, [])

    def try_invoke(
        self,
        spec: RequestSpec,
        decoder: ResponseDecoder[Any] | None = None,
    ) -> InvocationResult[Any]:
        """Run one invocation and return a tagged result instead of raising."""
        states: list[InvocationState] = []
        try:
            value = self._run(spec, decoder, states)
        except WebServiceProxyError as e:
            return InvocationResult(error=e, states=states)
        return InvocationResult(value=value, states=states)

    def _run(
        self,
        spec: RequestSpec,
        decoder: ResponseDecoder[Any] | None,
        states: list[InvocationState],
    ) -> Any:
        def enter(state: InvocationState) -> None:
            states.append(state)
            logger.debug("%s %s: %s", spec.method.value, spec.url, state.value)

        enter(InvocationState.CONFIGURED)
        try:
            enter(InvocationState.ENCODING)
            prepared = self.prepare(spec)

            enter(InvocationState.TRANSMITTING)
            envelope = self._executor.execute(prepared)

            with envelope:
                if not envelope.is_success:
                    enter(InvocationState.ERROR_MAPPING)
                    outcome = classify(envelope, self._detail_parser)
                    if isinstance(outcome, ServiceError):
                        raise outcome

                enter(InvocationState.DECODING)
                result = self._decode(envelope, decoder)

            enter(InvocationState.DONE)
            return result
        except WebServiceProxyError as e:
            enter(InvocationState.FAILED)
            logger.warning("%s %s failed: %s", spec.method.value, spec.url, e)
            raise

    @staticmethod
    def _decode(
        envelope: ResponseEnvelope,
        decoder: Callable[..., Any] | None,
    ) -> Any:
        if decoder is None:
            return None
        try:
            return decoder(envelope.stream, envelope.content_type, envelope.headers)
        except WebServiceProxyError:
            # e.g. a read timeout while the decoder was reading the stream
            raise
        except Exception as e:
            raise DecodeError(f"Failed to decode response: {e}") from e
