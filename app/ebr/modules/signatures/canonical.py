"""
Deterministic serialization of authorization payloads.

The same payload must hash identically no matter how its mappings were built,
so keys are sorted at every depth. Sequence order is significant and kept.
"""
from __future__ import annotations

import hashlib
import json
import math
from collections.abc import Mapping
from typing import Any

from app.ebr.errors import ValidationError


def _normalize(value: Any) -> Any:
    if isinstance(value, Mapping):
        out = {}
        for k in sorted(value.keys(), key=lambda k: str(k)):
            if not isinstance(k, str):
                raise ValidationError(f"Canonical payload keys must be strings (got {type(k).__name__}).")
            out[k] = _normalize(value[k])
        return out
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    if isinstance(value, float) and not math.isfinite(value):
        raise ValidationError("Canonical payload cannot contain NaN or Infinity.")
    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    raise ValidationError(f"Canonical payload value of type {type(value).__name__} is not JSON-compatible.")


def canonicalize(payload: Any) -> bytes:
    normalized = _normalize(payload)
    text = json.dumps(normalized, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False)
    return text.encode("utf-8")


def payload_hash(payload: Any) -> str:
    return hashlib.sha256(canonicalize(payload)).hexdigest()
