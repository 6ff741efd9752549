from __future__ import annotations

import json

import cbor2


def encode(obj) -> bytes:
    return cbor2.dumps(obj)


def decode(b: bytes):
    return cbor2.loads(b)


def encode_text(obj) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


def decode_text(s: str):
    return json.loads(s)
