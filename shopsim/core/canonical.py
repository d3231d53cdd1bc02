from __future__ import annotations

import json
from decimal import Decimal
from enum import Enum
from hashlib import sha256
from typing import Any


class CanonicalError(ValueError):
    pass


def to_canonical_obj(value: Any) -> Any:
    """Reduce ``value`` to JSON-safe primitives with money kept as fixed-point strings."""
    if isinstance(value, dict):
        return {str(k): to_canonical_obj(v) for k, v in sorted(value.items(), key=lambda kv: str(kv[0]))}
    if isinstance(value, (list, tuple)):
        return [to_canonical_obj(v) for v in value]
    if isinstance(value, Enum):
        return to_canonical_obj(value.value)
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, float):
        raise CanonicalError("float values are not allowed in canonical JSON; use Decimal")
    if value is None or isinstance(value, (str, int, bool)):
        return value
    if hasattr(value, "model_dump"):
        return to_canonical_obj(value.model_dump())
    raise CanonicalError(f"unsupported canonical type: {type(value)!r}")


def canonical_json(value: Any) -> bytes:
    canonical = to_canonical_obj(value)
    return json.dumps(
        canonical,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=True,
    ).encode("utf-8")


def sha256_hex(value: Any) -> str:
    return sha256(canonical_json(value)).hexdigest()
