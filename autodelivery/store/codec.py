"""Typed-value codec for the document store's REST wire format.

Wire values are single-key tagged unions (``{"stringValue": "x"}``,
``{"integerValue": "42"}``, ...). Native values are plain Python: str, int,
float, bool, None, list, dict, plus ``Timestamp`` for timestampValue.

Canonical forms:
- integers travel as decimal strings
- empty lists / maps travel without members (``{"arrayValue": {}}``)
- unsupported kinds (bytes, references, geo points) decode to None
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)


class Timestamp(str):
    """RFC 3339 timestamp text, kept verbatim so round-trips are lossless."""

    @classmethod
    def from_datetime(cls, value: datetime) -> Timestamp:
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        return cls(value.isoformat(timespec="microseconds").replace("+00:00", "Z"))

    @classmethod
    def now(cls) -> Timestamp:
        return cls.from_datetime(datetime.now(timezone.utc))

    def to_datetime(self) -> datetime:
        text = str(self)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        # Python only parses microseconds; the store may send nanoseconds
        head, sep, tail = text.partition(".")
        if sep:
            digits = ""
            rest = ""
            for i, ch in enumerate(tail):
                if not ch.isdigit():
                    rest = tail[i:]
                    break
                digits += ch
            text = f"{head}.{digits[:6].ljust(6, '0')}{rest}"
        return datetime.fromisoformat(text)


def encode_value(value: Any) -> dict[str, Any]:
    """Convert a native value to its tagged wire representation."""
    if value is None:
        return {"nullValue": None}
    if isinstance(value, Timestamp):
        return {"timestampValue": str(value)}
    if isinstance(value, datetime):
        return {"timestampValue": str(Timestamp.from_datetime(value))}
    if isinstance(value, str):
        return {"stringValue": value}
    # bool is an int subclass; test it first
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, int):
        return {"integerValue": str(value)}
    if isinstance(value, float):
        return {"doubleValue": value}
    if isinstance(value, (list, tuple)):
        if not value:
            return {"arrayValue": {}}
        return {"arrayValue": {"values": [encode_value(v) for v in value]}}
    if isinstance(value, dict):
        if not value:
            return {"mapValue": {}}
        return {"mapValue": {"fields": encode_fields(value)}}
    return {"stringValue": str(value)}


def decode_value(wire: dict[str, Any] | None) -> Any:
    """Convert a tagged wire value to its native representation."""
    if not wire:
        return None
    if "stringValue" in wire:
        return wire["stringValue"]
    if "integerValue" in wire:
        return int(wire["integerValue"])
    if "doubleValue" in wire:
        return float(wire["doubleValue"])
    if "booleanValue" in wire:
        return bool(wire["booleanValue"])
    if "nullValue" in wire:
        return None
    if "timestampValue" in wire:
        return Timestamp(wire["timestampValue"])
    if "arrayValue" in wire:
        return [decode_value(v) for v in (wire["arrayValue"] or {}).get("values", [])]
    if "mapValue" in wire:
        return decode_fields((wire["mapValue"] or {}).get("fields", {}))
    logger.debug("Unsupported wire value kind dropped: %s", list(wire))
    return None


def encode_fields(values: dict[str, Any]) -> dict[str, dict[str, Any]]:
    """Encode a native mapping as a document ``fields`` object."""
    return {key: encode_value(v) for key, v in values.items()}


def decode_fields(fields: dict[str, Any] | None) -> dict[str, Any]:
    """Decode a document ``fields`` object into a native dict."""
    return {key: decode_value(v) for key, v in (fields or {}).items()}
