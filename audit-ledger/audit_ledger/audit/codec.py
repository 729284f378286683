"""
Audit Value Codec
=================
Serialization boundary for ``old_value`` / ``new_value``.

Encode-on-write: any JSON-representable value (object, list or scalar) is
stored as JSON text; ``None`` is stored as SQL NULL. Values that are not JSON
types (datetimes, decimals, UUIDs) are stored as their string form.

Decode-on-read: stored text is parsed back as JSON. Rows written before the
codec existed may hold bare strings; those are returned unchanged by
``decode_value`` and rejected by ``decode_value_strict``.
"""

import json
from typing import Any, Optional


def encode_value(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str, ensure_ascii=False)


def decode_value(raw: Optional[str]) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return raw


def decode_value_strict(raw: Optional[str]) -> Any:
    """Like decode_value, but malformed stored text raises ValueError."""
    if raw is None:
        return None
    return json.loads(raw)


def normalize_value(value: Any) -> Any:
    """The value exactly as a reader will get it back from storage."""
    return decode_value_strict(encode_value(value))
