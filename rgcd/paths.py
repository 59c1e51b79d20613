from __future__ import annotations

import os
from pathlib import Path


def default_rgcd_dir() -> Path:
    override = os.environ.get("RGCD_HOME")
    if override:
        return Path(override)
    return Path.home() / ".rgcd"


def default_config_path() -> Path:
    return default_rgcd_dir() / "rgcd.toml"


def default_identity_path() -> Path:
    return default_rgcd_dir() / "hub_identity"


def default_database_path() -> Path:
    return default_rgcd_dir() / "chat.db"


def default_uploads_dir() -> Path:
    return default_rgcd_dir() / "uploads"


def default_plugins_dir() -> Path:
    return default_rgcd_dir() / "plugins"


def sqlite_url(path: str | Path) -> str:
    return f"sqlite:///{Path(path)}"


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    try:
        # Best-effort tightening; may fail on some filesystems.
        os.chmod(path, 0o700)
    except OSError:
        pass
