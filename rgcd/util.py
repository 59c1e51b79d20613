from __future__ import annotations

import calendar
import os
from datetime import datetime

import pytz

from .constants import USERNAME_MAX_CHARS


def expand_path(p: str) -> str:
    return os.path.expanduser(os.path.expandvars(p))


def utcnow() -> datetime:
    """Naive UTC wall time, the form stored in the database."""
    return datetime.now(pytz.utc).replace(tzinfo=None)


def to_ms(dt: datetime) -> int:
    return calendar.timegm(dt.utctimetuple()) * 1000 + dt.microsecond // 1000


def normalize_username(value, max_chars: int = USERNAME_MAX_CHARS) -> str | None:
    if not isinstance(value, str):
        return None

    s = value.strip()
    if not s:
        return None

    if max_chars > 0 and len(s) > int(max_chars):
        return None

    # Usernames show up in logs and push frames; keep them single-line.
    if any(ch.isspace() and ch != " " for ch in s) or "\x00" in s:
        return None

    try:
        s.encode("utf-8", "strict")
    except UnicodeError:
        return None

    return s
