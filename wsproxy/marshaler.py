"""Value marshaling - Converts single argument values to wire text.

Percent-encoding and multipart framing are the encoder's job; this module
only turns one value into its canonical text form.
"""

from __future__ import annotations

import math
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from wsproxy.attachments import Attachment
from wsproxy.errors import ConfigurationError

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MILLISECOND = timedelta(milliseconds=1)


def is_attachment(value: Any) -> bool:
    return isinstance(value, Attachment)


def is_list(value: Any) -> bool:
    """True for values the encoder expands into repeated entries."""
    return isinstance(value, (list, tuple))


def epoch_millis(value: datetime) -> int:
    """Milliseconds since the Unix epoch for an aware datetime.

    Uses integer timedelta division, so no float rounding is involved.
    """
    return (value - _EPOCH) // _ONE_MILLISECOND


def decimal_text(value: Decimal) -> str:
    """Plain decimal notation: ``Decimal("1E+16")`` becomes ``"10000000000000000"``."""
    if not value.is_finite():
        return str(value)
    return format(value, "f")


def marshal_value(value: Any) -> str | None:
    """Return the wire text for one argument value, or None to skip it.

    Raises:
        ConfigurationError: If given an attachment or a list (lists are
            expanded by the encoder, so a list here is a nested list).
    """
    if value is None:
        return None

    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Enum):
        return marshal_value(value.value)
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            return repr(value)
        # Shortest round-tripping digits, written without an exponent
        return decimal_text(Decimal(repr(value)))
    if isinstance(value, Decimal):
        return decimal_text(value)
    if isinstance(value, str):
        return value

    # datetime before date: datetime is a date subclass
    if isinstance(value, datetime):
        if value.tzinfo is not None and value.utcoffset() is not None:
            return str(epoch_millis(value))
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, time):
        return value.isoformat()

    if isinstance(value, UUID):
        return str(value)
    if is_attachment(value):
        raise ConfigurationError(
            f"Attachment '{value.filename}' cannot be marshaled to text; "
            f"attachments require multipart encoding"
        )
    if is_list(value):
        raise ConfigurationError("Nested lists are not supported; lists are expanded by the encoder")

    return str(value)
