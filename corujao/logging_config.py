from __future__ import annotations

import logging
import os
from pathlib import Path

from .config import ChatRuntimeConfig

DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# uvicorn runs with log_config=None, so its loggers propagate to root.
_SERVER_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")
_DRIVER_LOGGERS = ("pymongo",)


def parse_level(value: object, default: int) -> int:
    """Accept a level name ("debug", "WARN"), a number, or a numeric string."""
    if value is None or value == "":
        return default
    if isinstance(value, int):
        return value
    name = str(value).strip().upper()
    if name == "WARN":
        name = "WARNING"
    level = logging.getLevelNamesMapping().get(name)
    if level is not None:
        return level
    try:
        return int(name)
    except ValueError:
        return default


def _optional(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _file_handler(path_text: str) -> logging.Handler:
    path = Path(os.path.expanduser(path_text))
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    try:
        os.chmod(path, 0o600)
    except OSError:
        pass
    return handler


def configure_logging(
    cfg: ChatRuntimeConfig,
    *,
    override_level: str | None = None,
    override_file: str | None = None,
) -> list[logging.Handler]:
    """Install corujao's handlers on the root logger and return them.

    Calling it again replaces whatever handlers the root logger had. An
    ``override_file`` of ``""`` disables file logging even if the config
    names a file.
    """
    handlers: list[logging.Handler] = []
    if cfg.log_console:
        handlers.append(logging.StreamHandler())

    log_file = _optional(cfg.log_file) if override_file is None else _optional(override_file)
    if log_file:
        handlers.append(_file_handler(log_file))

    formatter = logging.Formatter(
        fmt=_optional(cfg.log_format) or DEFAULT_FORMAT,
        datefmt=_optional(cfg.log_datefmt),
    )
    for handler in handlers:
        handler.setFormatter(formatter)

    root = logging.getLogger()
    for old in list(root.handlers):
        root.removeHandler(old)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(parse_level(override_level or cfg.log_level, logging.INFO))

    server_level = parse_level(cfg.log_uvicorn_level, logging.WARNING)
    for name in _SERVER_LOGGERS:
        logging.getLogger(name).setLevel(server_level)
    # The Mongo driver is chatty at INFO; never let it go below WARNING.
    for name in _DRIVER_LOGGERS:
        logging.getLogger(name).setLevel(max(server_level, logging.WARNING))

    logging.captureWarnings(True)
    return handlers
