"""Registration and password hashing.

Passwords are hashed with bcrypt; verification uses ``bcrypt.checkpw``,
which compares in constant time.
"""

from __future__ import annotations

import asyncio
import logging

import bcrypt

from .constants import PASSWORD_MAX_CHARS, PASSWORD_MIN_CHARS, ROLE_USER
from .errors import DuplicateUserError, ValidationError
from .models import User
from .store import DocumentStore, call_store
from .util import normalize_username


def hash_password(password: str, *, rounds: int = 12) -> str:
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    if not hashed_password.startswith(("$2a$", "$2b$", "$2y$")):
        logging.getLogger("corujao.accounts").warning(
            "Refusing to verify against a non-bcrypt password hash"
        )
        return False
    return bcrypt.checkpw(plain_password.encode("utf-8"), hashed_password.encode("utf-8"))


def validate_password(password) -> str:
    if not isinstance(password, str):
        raise ValidationError("password is required", code="invalid_password")
    if len(password) < PASSWORD_MIN_CHARS:
        raise ValidationError(
            f"password must have at least {PASSWORD_MIN_CHARS} characters",
            code="invalid_password",
        )
    if len(password.encode("utf-8")) > PASSWORD_MAX_CHARS:
        raise ValidationError(
            f"password must have at most {PASSWORD_MAX_CHARS} bytes",
            code="invalid_password",
        )
    return password


class AccountService:
    def __init__(self, store: DocumentStore, *, timeout_s: float, bcrypt_rounds: int = 12) -> None:
        self.store = store
        self.timeout_s = float(timeout_s)
        self.bcrypt_rounds = int(bcrypt_rounds)
        self.log = logging.getLogger("corujao.accounts")

    async def register(self, username, password) -> User:
        name = normalize_username(username)
        if name is None:
            raise ValidationError(
                "username must be 3-20 characters of letters, digits or '_'",
                code="invalid_username",
            )
        validate_password(password)

        existing = await call_store(self.store.find_user_by_name, name, timeout_s=self.timeout_s)
        if existing is not None:
            raise DuplicateUserError(f"username {name!r} is already taken")

        hashed = await asyncio.to_thread(hash_password, password, rounds=self.bcrypt_rounds)
        user = await call_store(
            self.store.create_user, name, hashed, ROLE_USER, timeout_s=self.timeout_s
        )
        self.log.info("Registered user username=%s id=%s", user.username, user.id)
        return user
