from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from .config import HubRuntimeConfig

DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# Loggers that are too chatty at the hub's own level.
_QUIET_LIBRARIES = ("sqlalchemy.engine", "sqlalchemy.pool")


def _parse_level(value: Any, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, int):
        return value
    text = str(value).strip().upper()
    if not text:
        return default
    if text == "WARN":
        text = "WARNING"

    level = logging.getLevelName(text)
    if isinstance(level, int):
        return level

    try:
        return int(text)
    except ValueError:
        return default


def _blank_to_none(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value)
    return s if s.strip() else None


def _file_handler(path: str) -> logging.Handler:
    p = Path(os.path.expanduser(path))
    p.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(p, encoding="utf-8")
    try:
        os.chmod(p, 0o600)
    except OSError:
        pass
    return handler


def configure_logging(
    cfg: HubRuntimeConfig,
    *,
    override_level: str | None = None,
    override_file: str | None = None,
) -> None:
    """Configure Python logging for rgcd.

    Replaces any handlers already installed on the root logger, so calling it
    twice does not duplicate output.
    """

    level = _parse_level(override_level or cfg.log_level, logging.INFO)
    rns_level = _parse_level(cfg.log_rns_level, logging.WARNING)

    handlers: list[logging.Handler] = []
    if bool(cfg.log_console):
        handlers.append(logging.StreamHandler())

    log_file = _blank_to_none(override_file) if override_file is not None else None
    if log_file is None:
        log_file = _blank_to_none(cfg.log_file)
    if log_file:
        handlers.append(_file_handler(log_file))

    formatter = logging.Formatter(
        fmt=_blank_to_none(cfg.log_format) or DEFAULT_FORMAT,
        datefmt=_blank_to_none(cfg.log_datefmt),
    )

    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    for h in handlers:
        h.setFormatter(formatter)
        root.addHandler(h)
    root.setLevel(level)

    logging.getLogger("RNS").setLevel(rns_level)
    for name in _QUIET_LIBRARIES:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    logging.captureWarnings(True)
