from __future__ import annotations

import argparse
import os
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable

import RNS

from .config import HubRuntimeConfig, apply_config_data, apply_env_overrides, load_toml
from .logging_config import configure_logging
from .paths import (
    default_config_path,
    default_database_path,
    default_identity_path,
    default_plugins_dir,
    default_uploads_dir,
    ensure_private_dir,
    sqlite_url,
)
from .service import HubService


def _write_default_config(
    config_path: str,
    identity_path: str,
    *,
    database_url: str,
    uploads_dir: str,
    plugins_dir: str,
) -> None:
    cfg_dir = os.path.dirname(config_path)
    if cfg_dir:
        ensure_private_dir(Path(cfg_dir))

    content = f"""# rgcd configuration (TOML)
#
# This file was created on first run.
# Edit it, then start rgcd again.

[hub]

# Optional: Reticulum configuration directory.
# If left unset, Reticulum will choose its default (usually ~/.reticulum).
configdir = ""

# Where rgcd stores its persistent identity (Reticulum Identity file).
identity_path = {identity_path!r}

# Destination name to host the hub on.
dest_name = "rgc.hub"

# announce_on_start: send a single announce right after startup.
# announce_period_s: if >0, periodically re-announce.
announce_on_start = true
announce_period_s = 0.0

hub_name = "rgc"

# Hub-initiated liveness checks (0 disables).
ping_interval_s = 0.0
ping_timeout_s = 0.0

[chat]

# SQLAlchemy database URL for users, messages, invitation codes and mutes.
database_url = {database_url!r}

# Uploaded images are stored here and deleted after image_retention_s.
uploads_dir = {uploads_dir!r}
image_retention_s = {7 * 24 * 3600}
sweep_interval_s = {24 * 3600}

# Session tokens.
# Leave jwt_secret empty to read it from RGCD_JWT_SECRET. If neither is set,
# a random secret is generated on every start and tokens do not survive
# restarts.
jwt_secret = ""
token_ttl_s = 3600
bcrypt_rounds = 12

# The initial admin is created on first start if it does not exist.
# Leave the password empty to read it from RGCD_INITIAL_ADMIN_PASSWORD, or to
# have one generated and written to the log.
initial_admin_username = "admin"
initial_admin_password = ""

# Messages pushed to a client after login.
history_limit = 50

# Leaderboard windows (day, week starting Sunday, month) use this timezone.
leaderboard_timezone = "UTC"
leaderboard_size = 10

# Limits.
username_max_chars = 32
max_message_chars = 2000
max_mentions = 32
rate_limit_msgs_per_minute = 240
max_upload_bytes = {5 * 1024 * 1024}

[plugins]

# Every *.py file in this directory is scanned for Plugin subclasses.
dir = {plugins_dir!r}

# Maintained by the toggle_plugin admin command.
disabled = []
enabled = []

[logging]

# Log level for rgcd itself.
level = "INFO"

# Log level for Reticulum/RNS Python logging (if used by your install).
rns_level = "WARNING"

# Log to stderr (systemd/journald friendly).
console = true

# Optional file path for logs (leave empty to disable).
file = ""

# Log format and optional date format.
format = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
datefmt = ""
"""

    with open(config_path, "w", encoding="utf-8") as f:
        f.write(content)
    try:
        os.chmod(config_path, 0o600)
    except OSError:
        pass


def _ensure_first_run_files(config_path: str, identity_path: str) -> bool:
    created_any = False

    if not os.path.exists(config_path):
        _write_default_config(
            config_path,
            identity_path,
            database_url=sqlite_url(default_database_path()),
            uploads_dir=str(default_uploads_dir()),
            plugins_dir=str(default_plugins_dir()),
        )
        ensure_private_dir(default_uploads_dir())
        ensure_private_dir(default_plugins_dir())
        created_any = True

    if not os.path.exists(identity_path):
        storage_dir = os.path.dirname(identity_path)
        if storage_dir:
            ensure_private_dir(Path(storage_dir))
        ident = RNS.Identity()
        ident.to_file(identity_path)
        try:
            os.chmod(identity_path, 0o600)
        except OSError:
            pass
        created_any = True

    return created_any


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="rgcd", description="Run an RGC group chat hub")

    p.add_argument(
        "--config",
        default=str(default_config_path()),
        help="Path to a TOML config file (created on first run)",
    )
    p.add_argument("--configdir", default=None, help="Reticulum config directory")
    p.add_argument(
        "--identity",
        default=str(default_identity_path()),
        help="Path to hub identity file (created on first run)",
    )

    p.add_argument("--database", default=None, help="SQLAlchemy database URL")
    p.add_argument("--uploads-dir", default=None, help="Directory for uploaded images")
    p.add_argument("--plugins-dir", default=None, help="Directory scanned for plugins")

    p.add_argument(
        "--dest-name", default=None, help="Destination app name (default: rgc.hub)"
    )
    p.add_argument(
        "--no-announce",
        action="store_true",
        help="Disable announce on start (does not affect periodic announce)",
    )
    p.add_argument(
        "--announce-period",
        type=float,
        default=None,
        help="Periodic announce interval seconds (0 disables)",
    )
    p.add_argument("--hub-name", default=None, help="Hub name carried in announces")

    p.add_argument(
        "--rate-limit-msgs-per-minute",
        type=int,
        default=None,
        help="Per-link message rate limit",
    )
    p.add_argument(
        "--ping-interval",
        type=float,
        default=None,
        help="Hub-initiated PING interval seconds (0 disables)",
    )
    p.add_argument(
        "--ping-timeout",
        type=float,
        default=None,
        help="Close link if PONG not received within this many seconds (0 disables)",
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


# (flag attribute, config field, converter)
_FLAG_FIELDS: tuple[tuple[str, str, Callable[[Any], Any]], ...] = (
    ("configdir", "configdir", str),
    ("database", "database_url", str),
    ("uploads_dir", "uploads_dir", str),
    ("plugins_dir", "plugins_dir", str),
    ("dest_name", "dest_name", str),
    ("announce_period", "announce_period_s", float),
    ("hub_name", "hub_name", str),
    ("rate_limit_msgs_per_minute", "rate_limit_msgs_per_minute", int),
    ("ping_interval", "ping_interval_s", float),
    ("ping_timeout", "ping_timeout_s", float),
    ("log_level", "log_level", str),
    ("log_file", "log_file", lambda v: str(v) or None),
)


def build_config(args: argparse.Namespace) -> HubRuntimeConfig:
    """Defaults, then the config file, then command line flags, then environment."""
    cfg = HubRuntimeConfig(
        config_path=str(args.config),
        configdir=args.configdir,
        identity_path=str(args.identity),
    )

    if os.path.exists(cfg.config_path):
        cfg = apply_config_data(cfg, load_toml(cfg.config_path))

    flags = {
        field: convert(getattr(args, attr))
        for attr, field, convert in _FLAG_FIELDS
        if getattr(args, attr) is not None
    }
    if args.no_announce:
        flags["announce_on_start"] = False
    if flags:
        cfg = replace(cfg, **flags)

    return apply_env_overrides(cfg)


def main(argv: list[str] | None = None) -> None:
    args = _build_arg_parser().parse_args(sys.argv[1:] if argv is None else argv)

    config_path = str(args.config)
    identity_path = str(args.identity)

    if _ensure_first_run_files(config_path, identity_path):
        print(
            "Created default rgcd files. Edit the configuration before starting:\n"
            f"- Config:   {config_path}\n"
            f"- Identity: {identity_path}\n"
            "\nThen re-run rgcd.",
            file=sys.stderr,
        )
        raise SystemExit(0)

    cfg = build_config(args)
    configure_logging(cfg, override_level=args.log_level, override_file=args.log_file)

    svc = HubService(cfg)
    svc.start()
    svc.run_forever()


if __name__ == "__main__":
    main()
