from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from typing import Any


@dataclass(frozen=True)
class ChatRuntimeConfig:
    config_path: str | None = None
    host: str = "127.0.0.1"
    port: int = 4040
    server_name: str = "Corujão"
    greeting: str | None = None
    cors_origins: tuple[str, ...] = ("*",)
    trust_forwarded_for: bool = False
    mongo_uri: str | None = None
    mongo_database: str = "corujao"
    store_timeout_s: float = 5.0
    store_failure_threshold: int = 5
    store_recovery_s: float = 30.0
    message_log_queue_size: int = 1000
    default_room: str = "geral"
    allowed_rooms: tuple[str, ...] = ()
    max_room_name_len: int = 32
    max_message_chars: int = 500
    max_frame_bytes: int = 16 * 1024
    history_limit: int = 50
    http_history_limit: int = 200
    session_ttl_s: float = 14 * 24 * 3600
    session_rolling: bool = True
    session_cookie_secure: bool = False
    bcrypt_rounds: int = 12
    single_connection_per_user: bool = False
    banned_users: tuple[str, ...] = ()
    admin_users: tuple[str, ...] = ()
    connect_rate_limit: int = 5
    connect_rate_window_s: float = 60.0
    message_rate_limit: int = 30
    message_rate_window_s: float = 60.0
    auth_rate_limit: int = 10
    auth_rate_window_s: float = 60.0
    auth_timeout_s: float = 10.0
    outbound_queue_size: int = 256
    ping_interval_s: float = 25.0
    ping_timeout_s: float = 60.0
    maintenance_interval_s: float = 300.0
    log_level: str = "INFO"
    log_uvicorn_level: str = "WARNING"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    log_datefmt: str | None = None


_TUPLE_KEYS = ("cors_origins", "allowed_rooms", "banned_users", "admin_users")
_OPTIONAL_STR_KEYS = ("greeting", "mongo_uri", "log_file", "log_datefmt")


def load_toml(path: str) -> dict:
    import tomllib

    with open(path, "rb") as f:
        return tomllib.load(f)


def apply_config_data(cfg: ChatRuntimeConfig, data: dict[str, Any]) -> ChatRuntimeConfig:
    """Overlay values from a parsed config file onto ``cfg``.

    Accepts a flat mapping or the ``[chat]`` / ``[logging]`` tables written by
    ``corujao`` on first run. Unknown keys are ignored.
    """
    if not isinstance(data, dict):
        return cfg

    chat = data.get("chat")
    if isinstance(chat, dict):
        data = {**data, **chat}

    log_table = data.get("logging")
    if isinstance(log_table, dict):
        mapped: dict[str, object] = {}
        if "level" in log_table:
            mapped["log_level"] = log_table.get("level")
        if "uvicorn_level" in log_table:
            mapped["log_uvicorn_level"] = log_table.get("uvicorn_level")
        if "console" in log_table:
            mapped["log_console"] = log_table.get("console")
        if "file" in log_table:
            mapped["log_file"] = log_table.get("file")
        if "format" in log_table:
            mapped["log_format"] = log_table.get("format")
        if "datefmt" in log_table:
            mapped["log_datefmt"] = log_table.get("datefmt")
        data = {**data, **mapped}

    allowed = set(asdict(cfg).keys())
    # Where the file lives is decided by the caller, not by the file.
    allowed.discard("config_path")
    updates = {k: v for k, v in data.items() if k in allowed}

    for list_key in _TUPLE_KEYS:
        if list_key in updates and isinstance(updates[list_key], list):
            updates[list_key] = tuple(str(x) for x in updates[list_key])

    for key in _OPTIONAL_STR_KEYS:
        if key in updates and updates[key] == "":
            updates[key] = None

    return replace(cfg, **updates) if updates else cfg
