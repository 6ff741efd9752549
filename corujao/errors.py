"""Error taxonomy shared by the WebSocket and HTTP boundaries."""

from __future__ import annotations


class ChatError(Exception):
    """Base class; ``code`` is the machine-readable reason sent to clients."""

    code = "error"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code

    @property
    def message(self) -> str:
        return str(self.args[0]) if self.args else self.code


class AuthError(ChatError):
    """Invalid or expired session, unknown user, bad password, banned user."""

    code = "auth_error"


class ValidationError(ChatError):
    """Oversized message, invalid room name, malformed command arguments."""

    code = "validation_error"


class RateLimitError(ChatError):
    code = "rate_limited"

    def __init__(self, message: str, *, retry_after_ms: int, code: str | None = None) -> None:
        super().__init__(message, code=code)
        self.retry_after_ms = int(retry_after_ms)


class PersistenceError(ChatError):
    """The document store is unreachable, too slow, or marked unhealthy."""

    code = "persistence_error"
    retryable = True


class ProtocolError(ChatError):
    """Malformed or oversized frame; fatal for that connection only."""

    code = "protocol_error"


class DuplicateUserError(ChatError):
    code = "username_taken"
