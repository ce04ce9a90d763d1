"""Error mapping - Classifies responses by status code.

A 2xx response passes through untouched. Anything else is turned into a
ServiceError value carrying the exact status code and, when the body can be
parsed, an error detail. The envelope is always consumed and closed before a
ServiceError is returned.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable

from wsproxy.decoders import charset
from wsproxy.errors import ServiceError
from wsproxy.transport import ResponseEnvelope

logger = logging.getLogger(__name__)

# Error bodies larger than this are truncated before parsing
MAX_DETAIL_BYTES = 64 * 1024

# JSON object fields checked, in order, for an error message
_DETAIL_FIELDS = ("message", "error", "detail")

DetailParser = Callable[[bytes, "str | None"], Any]


def default_detail_parser(body: bytes, content_type: str | None) -> Any:
    """Extract a readable detail from an error body.

    text/* bodies become their decoded text. JSON objects yield the first
    string found in "message", "error" or "detail". Anything else gives None.
    """
    if not body or not content_type:
        return None

    media_type = content_type.split(";")[0].strip().lower()

    if media_type.startswith("text/"):
        text = body.decode(charset(content_type), errors="replace").strip()
        return text or None

    if media_type == "application/json" or media_type.endswith("+json"):
        try:
            data = json.loads(body)
        except ValueError:
            return None
        if isinstance(data, dict):
            for name in _DETAIL_FIELDS:
                value = data.get(name)
                if isinstance(value, str) and value:
                    return value
    return None


def classify(
    envelope: ResponseEnvelope,
    detail_parser: DetailParser = default_detail_parser,
) -> ResponseEnvelope | ServiceError:
    """Return the envelope for 2xx responses, otherwise a ServiceError.

    Errors raised while reading the body (e.g. a read timeout) propagate
    after the envelope is closed. A failing ``detail_parser`` only drops the
    detail.
    """
    if envelope.is_success:
        return envelope

    status_code = envelope.status_code
    try:
        body = envelope.read(MAX_DETAIL_BYTES)
    finally:
        envelope.close()

    try:
        detail = detail_parser(body, envelope.content_type)
    except Exception:
        logger.debug("Could not parse error detail for HTTP %d", status_code, exc_info=True)
        detail = None

    logger.warning("Service returned HTTP %d", status_code)
    return ServiceError(status_code, detail)
