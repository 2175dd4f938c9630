from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from flask import request


def new_id() -> str:
    return str(uuid.uuid4())


def get_client_ip() -> str:
    """
    Real client IP for audit rows. Honours proxy headers; the first
    X-Forwarded-For entry is the original client.
    """
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()
    return request.remote_addr or "unknown"


def get_user_agent() -> str | None:
    ua = request.headers.get("User-Agent")
    return ua or None


def is_json_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (dict, list, tuple)):
        return len(value) == 0
    return False


def iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def json_body() -> dict:
    """Request JSON body as a dict (empty dict for missing/invalid bodies)."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}
