from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import Any, Mapping

BEARER_PREFIX = "Bearer "

AUTH_HEADER_ERROR = "Missing or invalid Authorization header."
MISSING_MODEL_ERROR = "Missing 'model' in request body"
INVALID_JSON_ERROR = "Invalid or empty JSON body"


@dataclass(frozen=True)
class RequestRejected(Exception):
    status_code: int
    detail: str


def require_bearer(headers: Mapping[str, str]) -> str:
    """Return the caller's Authorization value untouched.

    Only the shape is checked (case-sensitive "Bearer " prefix); the token is
    opaque here and the upstream decides whether it is valid.
    """

    value = headers.get("authorization")
    if not value or not value.startswith(BEARER_PREFIX):
        raise RequestRejected(401, AUTH_HEADER_ERROR)
    return value


def _reject_constant(name: str) -> Any:
    # NaN and Infinity are Python extensions, not JSON.
    raise ValueError(f"Invalid JSON value: {name}")


def _finite_float(literal: str) -> float:
    value = float(literal)
    if math.isinf(value):
        raise ValueError(f"Number out of range: {literal}")
    return value


def parse_chat_body(raw: bytes) -> dict[str, Any]:
    """Parse the buffered request body and require a `model` key.

    Presence is all that is checked; `"model": null` passes. Any JSON value
    that is not an object cannot carry the key and is rejected the same way.
    """

    if not raw.strip():
        raise RequestRejected(400, INVALID_JSON_ERROR)
    try:
        body = json.loads(raw, parse_constant=_reject_constant, parse_float=_finite_float)
    except ValueError as e:  # decode errors, bad UTF-8, NaN/Infinity, overflow
        raise RequestRejected(400, str(e) or INVALID_JSON_ERROR) from e

    if not isinstance(body, dict) or "model" not in body:
        raise RequestRejected(400, MISSING_MODEL_ERROR)
    return body
