from __future__ import annotations

import os
import time

from .constants import K_BODY, K_ID, K_ROOM, K_T, K_TS, K_V, PROTOCOL_VERSION


def now_ms() -> int:
    return int(time.time() * 1000)


def msg_id() -> str:
    return os.urandom(8).hex()


def make_envelope(
    msg_type: str,
    *,
    room: str | None = None,
    body=None,
    mid: str | None = None,
    ts: int | None = None,
) -> dict:
    env: dict[str, object] = {
        K_V: PROTOCOL_VERSION,
        K_T: str(msg_type),
        K_ID: mid or msg_id(),
        K_TS: ts or now_ms(),
    }
    if room is not None:
        env[K_ROOM] = room
    if body is not None:
        env[K_BODY] = body
    return env


def validate_envelope(env: dict) -> None:
    """Check the shape of an inbound client envelope.

    Only ``t`` is required; browsers commonly omit the version, id and
    timestamp. Unknown keys are allowed for forward compatibility.
    """
    if not isinstance(env, dict):
        raise TypeError("envelope must be a map")

    for k in env.keys():
        if not isinstance(k, str):
            raise TypeError("envelope keys must be strings")

    if K_T not in env:
        raise ValueError(f"missing envelope key {K_T!r}")

    t = env[K_T]
    if not isinstance(t, str):
        raise TypeError("message type must be a string")
    if not t:
        raise ValueError("message type must not be empty")

    if K_V in env:
        v = env[K_V]
        if not isinstance(v, int) or isinstance(v, bool):
            raise TypeError("protocol version must be an integer")
        if v != PROTOCOL_VERSION:
            raise ValueError(f"unsupported version {v}")

    if K_ID in env:
        mid = env[K_ID]
        if isinstance(mid, bool) or not isinstance(mid, (str, int)):
            raise TypeError("message id must be a string or integer")

    if K_TS in env:
        ts = env[K_TS]
        if isinstance(ts, bool) or not isinstance(ts, int):
            raise TypeError("timestamp must be an integer")
        if ts < 0:
            raise ValueError("timestamp must be unsigned")

    if K_ROOM in env:
        room = env[K_ROOM]
        if not isinstance(room, str):
            raise TypeError("room name must be a string")
        if room == "":
            raise ValueError("room name must not be empty")

    if K_BODY in env:
        body = env[K_BODY]
        if body is not None and not isinstance(body, (dict, str)):
            raise TypeError("body must be a map or a string")
