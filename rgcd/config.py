from __future__ import annotations

import os
from dataclasses import asdict, dataclass, replace

ENV_JWT_SECRET = "RGCD_JWT_SECRET"
ENV_INITIAL_ADMIN_PASSWORD = "RGCD_INITIAL_ADMIN_PASSWORD"


@dataclass(frozen=True)
class HubRuntimeConfig:
    config_path: str | None = None
    configdir: str | None = None
    identity_path: str | None = None
    dest_name: str = "rgc.hub"
    announce_on_start: bool = True
    announce_period_s: float = 0.0
    hub_name: str = "rgc"

    database_url: str | None = None
    uploads_dir: str | None = None
    plugins_dir: str | None = None
    disabled_plugins: tuple[str, ...] = ()
    enabled_plugins: tuple[str, ...] = ()

    jwt_secret: str | None = None
    jwt_algorithm: str = "HS256"
    token_ttl_s: float = 3600.0
    bcrypt_rounds: int = 12
    initial_admin_username: str = "admin"
    initial_admin_password: str | None = None

    history_limit: int = 50
    image_retention_s: float = 7 * 24 * 3600
    sweep_interval_s: float = 24 * 3600.0
    leaderboard_timezone: str = "UTC"
    leaderboard_size: int = 10

    username_max_chars: int = 32
    max_message_chars: int = 2000
    max_mentions: int = 32
    rate_limit_msgs_per_minute: int = 240
    ping_interval_s: float = 0.0
    ping_timeout_s: float = 0.0
    max_upload_bytes: int = 5 * 1024 * 1024
    max_resource_bytes: int = 256 * 1024  # outbound frames too large for a packet
    max_pending_uploads: int = 8
    upload_ttl_s: float = 30.0

    log_level: str = "INFO"
    log_rns_level: str = "WARNING"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
    log_datefmt: str | None = None


_LOGGING_KEYS = {
    "level": "log_level",
    "rns_level": "log_rns_level",
    "console": "log_console",
    "file": "log_file",
    "format": "log_format",
    "datefmt": "log_datefmt",
}

_OPTIONAL_STR_KEYS = (
    "configdir",
    "database_url",
    "uploads_dir",
    "plugins_dir",
    "jwt_secret",
    "initial_admin_password",
    "log_file",
    "log_datefmt",
)


def load_toml(path: str) -> dict:
    import tomllib

    with open(path, "rb") as f:
        data = tomllib.load(f)
    return data if isinstance(data, dict) else {}


def apply_config_data(base: HubRuntimeConfig, data: dict) -> HubRuntimeConfig:
    """Overlay a parsed TOML document on `base`.

    [hub] and [chat] keys map straight onto config fields, [plugins] carries
    the admin-maintained ``disabled`` list, [logging] uses short key names.
    Unknown keys are ignored.
    """
    merged: dict[str, object] = dict(data) if isinstance(data, dict) else {}

    for table in ("hub", "chat"):
        t = merged.get(table)
        if isinstance(t, dict):
            merged = {**merged, **t}

    plugins = merged.get("plugins")
    if isinstance(plugins, dict):
        if "dir" in plugins:
            merged["plugins_dir"] = plugins.get("dir")
        if "disabled" in plugins:
            merged["disabled_plugins"] = plugins.get("disabled")
        if "enabled" in plugins:
            merged["enabled_plugins"] = plugins.get("enabled")

    log_table = merged.get("logging")
    if isinstance(log_table, dict):
        for short, field in _LOGGING_KEYS.items():
            if short in log_table:
                merged[field] = log_table.get(short)

    allowed = set(asdict(base).keys())
    # This identifies where to persist to; do not let the file override it.
    allowed.discard("config_path")
    updates = {k: v for k, v in merged.items() if k in allowed}

    for list_key in ("disabled_plugins", "enabled_plugins"):
        if list_key in updates:
            raw = updates[list_key]
            if isinstance(raw, (list, tuple)):
                updates[list_key] = tuple(str(x) for x in raw if str(x).strip())
            else:
                updates[list_key] = ()

    if "announce" in merged and "announce_on_start" not in updates:
        updates["announce_on_start"] = bool(merged["announce"])

    for key in _OPTIONAL_STR_KEYS:
        if key in updates and updates[key] == "":
            updates[key] = None

    return replace(base, **updates) if updates else base


def apply_env_overrides(
    cfg: HubRuntimeConfig, environ: dict[str, str] | None = None
) -> HubRuntimeConfig:
    """Secrets may come from the environment instead of the config file."""
    env = os.environ if environ is None else environ
    updates: dict[str, object] = {}

    secret = env.get(ENV_JWT_SECRET)
    if secret:
        updates["jwt_secret"] = secret

    admin_pw = env.get(ENV_INITIAL_ADMIN_PASSWORD)
    if admin_pw:
        updates["initial_admin_password"] = admin_pw

    return replace(cfg, **updates) if updates else cfg
