from __future__ import annotations

import os
import time
from typing import Any

from .constants import (
    B_RESP_DATA,
    B_RESP_OK,
    B_RESP_REASON,
    B_RESP_TEXT,
    K_BODY,
    K_ID,
    K_REPLY,
    K_T,
    K_TS,
    K_V,
    RGC_VERSION,
    T_RESPONSE,
)


def now_ms() -> int:
    return int(time.time() * 1000)


def msg_id() -> bytes:
    return os.urandom(8)


def make_envelope(
    msg_type: int,
    *,
    body=None,
    reply_to: bytes | None = None,
    mid: bytes | None = None,
    ts: int | None = None,
) -> dict:
    env: dict[int, object] = {
        K_V: RGC_VERSION,
        K_T: int(msg_type),
        K_ID: mid or msg_id(),
        K_TS: ts or now_ms(),
    }
    if reply_to is not None:
        env[K_REPLY] = bytes(reply_to)
    if body is not None:
        env[K_BODY] = body
    return env


def make_response(
    reply_to: bytes | None,
    *,
    ok: bool,
    reason: str | None = None,
    text: str | None = None,
    data: Any = None,
) -> dict:
    """Build a RESPONSE envelope correlated to the request id `reply_to`."""
    body: dict[int, Any] = {B_RESP_OK: bool(ok)}
    if reason is not None:
        body[B_RESP_REASON] = reason
    if text is not None:
        body[B_RESP_TEXT] = text
    if data is not None:
        body[B_RESP_DATA] = data
    return make_envelope(T_RESPONSE, body=body, reply_to=reply_to)


def validate_envelope(env: dict) -> None:
    if not isinstance(env, dict):
        raise TypeError("envelope must be a CBOR map (dict)")

    for k in env.keys():
        if not isinstance(k, int):
            raise TypeError("envelope keys must be integers")
        if k < 0:
            raise ValueError("envelope keys must be unsigned integers")

    for k in (K_V, K_T, K_ID, K_TS):
        if k not in env:
            raise ValueError(f"missing envelope key {k}")

    v = env[K_V]
    if not isinstance(v, int):
        raise TypeError("protocol version must be an integer")
    if v != RGC_VERSION:
        raise ValueError(f"unsupported version {v}")

    t = env[K_T]
    if not isinstance(t, int):
        raise TypeError("message type must be an integer")

    mid = env[K_ID]
    if not isinstance(mid, (bytes, bytearray)):
        raise TypeError("message id must be bytes")
    if not mid:
        raise ValueError("message id must not be empty")

    ts = env[K_TS]
    if not isinstance(ts, int):
        raise TypeError("timestamp must be an integer")
    if ts < 0:
        raise ValueError("timestamp must be unsigned")

    if K_REPLY in env and not isinstance(env[K_REPLY], (bytes, bytearray)):
        raise TypeError("reply id must be bytes")
