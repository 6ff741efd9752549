from __future__ import annotations

import os
import re

from .constants import USERNAME_MAX_CHARS, USERNAME_MIN_CHARS

_USERNAME_RE = re.compile(
    r"^[A-Za-z0-9_]{%d,%d}$" % (USERNAME_MIN_CHARS, USERNAME_MAX_CHARS)
)
_ROOM_RE = re.compile(r"^[a-z0-9_-]+$")


def expand_path(p: str) -> str:
    return os.path.expanduser(os.path.expandvars(p))


def normalize_username(value) -> str | None:
    if not isinstance(value, str):
        return None
    s = value.strip()
    if not _USERNAME_RE.match(s):
        return None
    return s


def username_key(username: str) -> str:
    """Key used for uniqueness checks; usernames are case-insensitive."""
    return username.strip().lower()


def normalize_room(value, *, max_len: int) -> str:
    if not isinstance(value, str):
        raise ValueError("room name must be a string")
    r = value.strip().lower()
    if r.startswith("#"):
        r = r[1:]
    if not r:
        raise ValueError("room name must not be empty")
    if len(r) > int(max_len):
        raise ValueError("room name too long")
    if not _ROOM_RE.match(r):
        raise ValueError("room name may only contain a-z, 0-9, '_' and '-'")
    return r


def normalize_text(value, *, max_chars: int) -> str:
    if not isinstance(value, str):
        raise ValueError("message text must be a string")
    s = value.strip()
    if not s:
        raise ValueError("message must not be empty")
    if len(s) > int(max_chars):
        raise ValueError(f"message too long ({len(s)} > {max_chars} characters)")
    if "\x00" in s:
        raise ValueError("message must not contain NUL characters")
    return s
