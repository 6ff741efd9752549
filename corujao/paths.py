from __future__ import annotations

import os
from pathlib import Path

HOME_ENV = "CORUJAO_HOME"


def corujao_home() -> Path:
    """Where config and logs live: ``$CORUJAO_HOME`` or ``~/.corujao``."""
    override = os.environ.get(HOME_ENV, "").strip()
    if override:
        return Path(os.path.expanduser(override))
    return Path.home() / ".corujao"


def default_config_path() -> Path:
    return corujao_home() / "corujao.toml"


def default_log_path() -> Path:
    return corujao_home() / "corujao.log"


def ensure_private_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    try:
        os.chmod(path, 0o700)
    except OSError:
        # Some filesystems ignore permission bits.
        pass
    return path
