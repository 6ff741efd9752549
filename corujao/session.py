from __future__ import annotations

import asyncio
import logging
import secrets
import threading
import time
from collections.abc import Callable, Iterable
from typing import Any

from .accounts import verify_password
from .constants import ROLE_ADMIN
from .errors import AuthError, PersistenceError
from .models import Session, User, UserIdentity
from .store import DocumentStore, call_store
from .util import normalize_username, username_key

_BAD_CREDENTIALS = "invalid username or password"


class SessionBinder:
    """
    Binds authenticated identities to session tokens.

    The same token is resolved by the HTTP boundary and by the WebSocket
    handshake; there is no other authentication gate. A user may hold several
    tokens at once (one per device).

    Token bookkeeping is in memory and guarded by a lock; credential lookups
    go through the document store with a bounded timeout.
    """

    def __init__(
        self,
        store: DocumentStore,
        *,
        ttl_s: float = 14 * 24 * 3600,
        rolling: bool = True,
        timeout_s: float = 5.0,
        admin_users: Iterable[str] = (),
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.ttl_s = float(ttl_s)
        self.rolling = bool(rolling)
        self.timeout_s = float(timeout_s)
        self.admin_users = frozenset(username_key(u) for u in admin_users if str(u).strip())
        self._clock = clock
        self._lock = threading.Lock()
        self._sessions: dict[str, Session] = {}
        self.log = logging.getLogger("corujao.session")

    async def authenticate(self, username, password) -> Session:
        """Verify credentials and mint a new session token.

        Raises AuthError on unknown user or bad password (same reason for
        both) and PersistenceError when the store is unreachable or slow.
        """
        name = normalize_username(username)
        if name is None or not isinstance(password, str) or not password:
            raise AuthError(_BAD_CREDENTIALS, code="bad_credentials")

        user = await call_store(self.store.find_user_by_name, name, timeout_s=self.timeout_s)
        if user is None:
            self.log.info("Login failed username=%s reason=unknown_user", name)
            raise AuthError(_BAD_CREDENTIALS, code="bad_credentials")

        ok = await asyncio.to_thread(verify_password, password, user.password_hash)
        if not ok:
            self.log.info("Login failed username=%s reason=bad_password", name)
            raise AuthError(_BAD_CREDENTIALS, code="bad_credentials")

        now = self._clock()
        try:
            await call_store(self.store.update_last_seen, user.id, now, timeout_s=self.timeout_s)
        except PersistenceError as e:
            self.log.warning("last_seen not updated at login username=%s err=%s", user.username, e)

        role = self.role_for(user)
        session = Session(
            token=secrets.token_urlsafe(32),
            user_id=user.id,
            username=user.username,
            role=role,
            created_at=now,
            expires_at=now + self.ttl_s,
        )
        with self._lock:
            self._sessions[session.token] = session

        self.log.info("Login username=%s role=%s", user.username, role)
        return session

    def role_for(self, user: User) -> str:
        """Effective role: ``admin_users`` from config wins over the stored role."""
        if username_key(user.username) in self.admin_users:
            return ROLE_ADMIN
        return user.role

    async def refresh(self, token) -> UserIdentity:
        """Resolve ``token`` and re-read the user's role from the store.

        A role change made after login applies from the next refresh. Raises
        AuthError when the token is bad or the user no longer exists, and
        PersistenceError when the store cannot be reached.
        """
        identity = self.resolve(token)
        user = await call_store(self.store.get_user, identity.user_id, timeout_s=self.timeout_s)
        if user is None:
            self.destroy(token)
            raise AuthError("invalid session", code="session_invalid")

        role = self.role_for(user)
        if role == identity.role:
            return identity
        with self._lock:
            session = self._sessions.get(token)
            if session is not None:
                session.role = role
        self.log.info("Role changed username=%s role=%s", identity.username, role)
        return UserIdentity(user_id=identity.user_id, username=identity.username, role=role)

    def resolve(self, token) -> UserIdentity:
        """Resolve a token to the identity it was issued for.

        Raises AuthError (``session_invalid`` or ``session_expired``).
        Rolling sessions are renewed on every successful resolve.
        """
        if not isinstance(token, str) or not token:
            raise AuthError("missing session token", code="session_invalid")
        now = self._clock()
        with self._lock:
            session = self._sessions.get(token)
            if session is None:
                raise AuthError("invalid session", code="session_invalid")
            if session.expires_at <= now:
                self._sessions.pop(token, None)
                raise AuthError("session expired", code="session_expired")
            if self.rolling:
                session.expires_at = now + self.ttl_s
            return session.identity()

    def destroy(self, token) -> None:
        if not isinstance(token, str):
            return
        with self._lock:
            session = self._sessions.pop(token, None)
        if session is not None:
            self.log.info("Logout username=%s", session.username)

    def destroy_user(self, username: str) -> int:
        """Drop every session held by ``username``. Returns how many."""
        key = username.strip().lower()
        with self._lock:
            tokens = [t for t, s in self._sessions.items() if s.username.lower() == key]
            for t in tokens:
                self._sessions.pop(t, None)
        return len(tokens)

    def prune_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [t for t, s in self._sessions.items() if s.expires_at <= now]
            for t in expired:
                self._sessions.pop(t, None)
        return len(expired)

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            users = {s.user_id for s in self._sessions.values()}
            return {"sessions": len(self._sessions), "users": len(users)}
