"""Counters for the hub and the text behind the ``stats`` command."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .service import HubService


# Report line label -> (display name, counter key) pairs.
_SECTIONS: tuple[tuple[str, tuple[tuple[str, str], ...]], ...] = (
    (
        "io",
        (
            ("pkts_in", "pkts_in"),
            ("pkts_bad", "pkts_bad"),
            ("bytes_in", "bytes_in"),
            ("bytes_out", "bytes_out"),
        ),
    ),
    (
        "auth",
        (
            ("logins", "logins"),
            ("reconnects", "reconnects"),
            ("registrations", "registrations"),
        ),
    ),
    (
        "chat",
        (
            ("broadcast", "msgs_broadcast"),
            ("intercepted", "msgs_intercepted"),
            ("muted_rejections", "muted_rejections"),
            ("plugin_errors", "plugin_errors"),
            ("commands", "commands"),
            ("errors_sent", "errors_sent"),
            ("rate_limited", "rate_limited"),
        ),
    ),
    ("liveness", (("pings_out", "pings_out"), ("pongs_in", "pongs_in"), ("announces", "announces"))),
    (
        "resources",
        (
            ("sent", "resources_sent"),
            ("received", "resources_received"),
            ("rejected", "resources_rejected"),
            ("bytes_sent", "resource_bytes_sent"),
            ("bytes_received", "resource_bytes_received"),
        ),
    ),
)


class StatsManager:
    """Monotonic counters guarded by the hub state lock."""

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self._started: float | None = None
        self._counters: dict[str, int] = {
            key: 0 for _label, fields in _SECTIONS for _name, key in fields
        }
        self._counters["broadcasts"] = 0

    def set_start_time(self) -> None:
        self._started = time.monotonic()

    def uptime_s(self) -> float:
        return 0.0 if self._started is None else time.monotonic() - self._started

    def inc(self, key: str, delta: int = 1) -> None:
        with self.hub._state_lock:
            self._counters[key] = self._counters.get(key, 0) + int(delta)

    def get(self, key: str) -> int:
        with self.hub._state_lock:
            return self._counters.get(key, 0)

    def format_stats(self) -> str:
        from . import __version__

        cfg = self.hub.config
        with self.hub._state_lock:
            presence = self.hub.presence.get_stats()
            plugins = [p["name"] for p in self.hub.plugins.list_plugins()]
            counters = dict(self._counters)

        lines = [
            f"rgcd {__version__} stats",
            f"uptime_s={self.uptime_s():.1f}",
            f"connections={presence['total']} online_users={presence['authenticated']}",
            "plugins=" + (", ".join(plugins) if plugins else "(none)"),
            f"limits: rate_limit_msgs_per_minute={cfg.rate_limit_msgs_per_minute} "
            f"max_message_chars={cfg.max_message_chars} "
            f"max_upload_bytes={cfg.max_upload_bytes}",
        ]
        for label, fields in _SECTIONS:
            pairs = " ".join(f"{name}={counters.get(key, 0)}" for name, key in fields)
            lines.append(f"{label}: {pairs}")
        return "\n".join(lines)
