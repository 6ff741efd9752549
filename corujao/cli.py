from __future__ import annotations

import argparse
import os
import sys
from dataclasses import replace
from pathlib import Path

from .config import ChatRuntimeConfig, apply_config_data, load_toml
from .constants import ROLES
from .logging_config import configure_logging
from .paths import default_config_path, default_log_path, ensure_private_dir


def _write_default_config(config_path: str) -> None:
    cfg_dir = os.path.dirname(config_path)
    if cfg_dir:
        ensure_private_dir(Path(cfg_dir))

    d = ChatRuntimeConfig()
    log_path = str(default_log_path())

    content = f"""# corujao configuration (TOML)
#
# This file was created on first run.
# Edit it, then start corujao again.

[chat]

# HTTP/WebSocket listen address.
host = {d.host!r}
port = {d.port}

# Shown in the welcome message and in announcements.
server_name = {d.server_name!r}

# Optional notice sent to every connection right after the welcome.
greeting = ""

# Allowed browser origins (CORS). "*" allows any origin.
cors_origins = ["*"]

# Use the first X-Forwarded-For address as the client address.
# Only enable this behind a reverse proxy you control.
trust_forwarded_for = false

# Document store.
# Leave mongo_uri empty to keep users and messages in memory (lost on restart).
mongo_uri = ""
mongo_database = {d.mongo_database!r}

# Every store call is bounded by this timeout.
# After store_failure_threshold consecutive write failures the message log
# stops accepting writes for store_recovery_s seconds.
store_timeout_s = {d.store_timeout_s}
store_failure_threshold = {d.store_failure_threshold}
store_recovery_s = {d.store_recovery_s}
message_log_queue_size = {d.message_log_queue_size}

# Rooms.
# default_room always exists and is where every connection starts.
# allowed_rooms: if non-empty, only these rooms (plus the default) may be joined.
default_room = {d.default_room!r}
allowed_rooms = []
max_room_name_len = {d.max_room_name_len}

# Messages.
# Longer messages are rejected, not truncated.
max_message_chars = {d.max_message_chars}
max_frame_bytes = {d.max_frame_bytes}

# History replayed on every room join, and the cap for GET /messages.
history_limit = {d.history_limit}
http_history_limit = {d.http_history_limit}

# Sessions.
session_ttl_s = {d.session_ttl_s}
session_rolling = true
session_cookie_secure = false
bcrypt_rounds = {d.bcrypt_rounds}
single_connection_per_user = false

# Moderation.
# banned_users is updated by the /ban and /unban admin commands.
banned_users = []

# Usernames that get the admin role at login, whatever the store says.
# This is the way to grant admin when mongo_uri is empty.
admin_users = []

# Rate limits (admissions per window, per key). 0 disables a gate.
# connect and auth are keyed by client address, message by user.
connect_rate_limit = {d.connect_rate_limit}
connect_rate_window_s = {d.connect_rate_window_s}
message_rate_limit = {d.message_rate_limit}
message_rate_window_s = {d.message_rate_window_s}
auth_rate_limit = {d.auth_rate_limit}
auth_rate_window_s = {d.auth_rate_window_s}

# Connections.
# A client must authenticate within auth_timeout_s.
# outbound_queue_size: queued frames per client before it is dropped as too slow.
auth_timeout_s = {d.auth_timeout_s}
outbound_queue_size = {d.outbound_queue_size}

# Server-initiated liveness checks (0 disables).
ping_interval_s = {d.ping_interval_s}
ping_timeout_s = {d.ping_timeout_s}

# How often empty rooms, expired sessions and stale rate windows are pruned.
maintenance_interval_s = {d.maintenance_interval_s}

[logging]

# Log level for corujao itself.
level = "INFO"

# Log level for the uvicorn server loggers.
uvicorn_level = "WARNING"

# Log to stderr (systemd/journald friendly).
console = true

# Optional file path for logs (leave empty to disable), e.g.
# file = {log_path!r}
file = ""

# Log format and optional date format.
format = "%(asctime)s %(levelname)s %(name)s: %(message)s"
datefmt = ""
"""

    with open(config_path, "w", encoding="utf-8") as f:
        f.write(content)
    try:
        os.chmod(config_path, 0o600)
    except OSError:
        pass


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="corujao", description="Run the Corujão chat server")

    p.add_argument(
        "--config",
        default=str(default_config_path()),
        help="Path to a TOML config file (created on first run)",
    )
    p.add_argument("--host", default=None, help="Listen address (default: 127.0.0.1)")
    p.add_argument("--port", type=int, default=None, help="Listen port (default: 4040)")
    p.add_argument(
        "--mongo-uri",
        default=None,
        help="MongoDB connection URI (empty keeps data in memory)",
    )
    p.add_argument("--server-name", default=None, help="Server name shown to clients")
    p.add_argument("--greeting", default=None, help="Notice sent after the welcome message")

    p.add_argument(
        "--set-role",
        default=None,
        metavar="USER=ROLE",
        help=f"Set a user's role ({', '.join(ROLES)}) in the store and exit",
    )

    p.add_argument(
        "--log-level",
        default=None,
        help="Logging level override (DEBUG, INFO, WARNING, ERROR). Default comes from config.",
    )
    p.add_argument(
        "--log-file",
        default=None,
        help="Log file path override (empty disables file logging). Default comes from config.",
    )

    return p


def _set_role(cfg: ChatRuntimeConfig, assignment: str) -> int:
    from .store import open_store

    username, sep, role = assignment.partition("=")
    username = username.strip()
    role = role.strip().lower()
    if not sep or not username or role not in ROLES:
        print(f"--set-role expects USER=ROLE with ROLE one of: {', '.join(ROLES)}", file=sys.stderr)
        return 2
    if not cfg.mongo_uri:
        print(
            "--set-role needs mongo_uri; the in-memory store does not outlive this process. "
            "List admins under admin_users in the config file instead.",
            file=sys.stderr,
        )
        return 2

    store = open_store(cfg)
    try:
        ok = store.set_user_role(username, role)
    finally:
        store.close()

    if not ok:
        print(f"No such user: {username}", file=sys.stderr)
        return 1
    print(f"{username} is now {role}")
    return 0


def main(argv: list[str] | None = None) -> None:
    args = _build_arg_parser().parse_args(sys.argv[1:] if argv is None else argv)

    config_path = str(args.config)

    if not os.path.exists(config_path):
        _write_default_config(config_path)
        print(
            "Created default corujao configuration. Edit it before starting:\n"
            f"- Config: {config_path}\n"
            "\nThen re-run corujao.",
            file=sys.stderr,
        )
        raise SystemExit(0)

    cfg = ChatRuntimeConfig(config_path=config_path)
    cfg = apply_config_data(cfg, load_toml(config_path))

    if args.host is not None:
        cfg = replace(cfg, host=str(args.host))
    if args.port is not None:
        cfg = replace(cfg, port=int(args.port))
    if args.mongo_uri is not None:
        cfg = replace(cfg, mongo_uri=str(args.mongo_uri) or None)
    if args.server_name is not None:
        cfg = replace(cfg, server_name=str(args.server_name))
    if args.greeting is not None:
        cfg = replace(cfg, greeting=str(args.greeting) or None)

    if args.log_level is not None:
        cfg = replace(cfg, log_level=str(args.log_level))
    if args.log_file is not None:
        cfg = replace(cfg, log_file=str(args.log_file) if str(args.log_file) else None)

    configure_logging(cfg, override_level=args.log_level, override_file=args.log_file)

    if args.set_role is not None:
        raise SystemExit(_set_role(cfg, args.set_role))

    import uvicorn

    from .api import create_app
    from .service import ChatService

    app = create_app(ChatService(cfg))
    try:
        uvicorn.run(app, host=cfg.host, port=cfg.port, log_config=None)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
