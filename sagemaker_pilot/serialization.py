"""sagemaker_pilot.serialization — Timestamps, identifiers, JSON body helpers."""

from __future__ import annotations

import datetime as dt
import json
import random
import secrets
import string
import time
from typing import Any

__all__ = [
    "_decode_body",
    "_encode_body",
    "_inference_id",
    "_now_z",
    "_payload_size",
    "_resource_id",
    "_unix_ms",
]

_BASE36 = string.digits + string.ascii_lowercase


def _now_z() -> str:
    """Current UTC timestamp in ISO 8601 format with Z suffix."""
    return dt.datetime.now(dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _unix_ms() -> int:
    return int(time.time() * 1000)


def _inference_id() -> str:
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"inf-{_unix_ms()}-{suffix}"


def _resource_id() -> str:
    """Timestamp plus a four-digit random suffix; collisions are possible but rare."""
    return f"{_unix_ms()}-{random.randint(1000, 9999)}"


def _encode_body(payload: Any) -> bytes:
    return json.dumps(payload, default=str).encode("utf-8")


def _decode_body(body: Any) -> Any:
    """Decode an ``invoke_endpoint`` body (StreamingBody, bytes or str) as JSON."""
    raw = body.read() if hasattr(body, "read") else body
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    return json.loads(raw)


def _payload_size(payload: Any) -> int:
    return len(_encode_body(payload))
