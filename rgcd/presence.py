from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import RNS

from .errors import AlreadyOnlineError, StateError

if TYPE_CHECKING:
    from .service import HubService


@dataclass
class _RateState:
    """Token bucket state for rate limiting."""

    tokens: float
    last_refill: float


class PresenceRegistry:
    """
    Tracks which identity, if any, each open link is logged in as.

    This class is responsible for:
    - Per-link connection state (anonymous until admitted)
    - The username index that enforces one live session per username
    - Rate limiting with a token bucket per link

    Every mutator takes the hub state lock itself, so check-then-insert in
    admit() is atomic even when called from several threads. The lock is
    re-entrant; callers that already hold it may call in freely.
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("rgcd.presence")
        self.connections: dict[RNS.Link, dict[str, Any]] = {}
        self._rate: dict[RNS.Link, _RateState] = {}
        self._index_by_username: dict[str, RNS.Link] = {}

    def open(self, link: RNS.Link) -> None:
        """Register a newly established link as an anonymous connection."""
        with self.hub._state_lock:
            self.connections[link] = {
                "username": None,
                "is_admin": False,
                "awaiting_pong": None,
                "opened_at": time.monotonic(),
            }
            self._rate[link] = _RateState(
                tokens=float(self.hub.config.rate_limit_msgs_per_minute),
                last_refill=time.monotonic(),
            )

        self.log.info("Connection opened link_id=%s", self.hub._fmt_link_id(link))

    def admit(self, link: RNS.Link, username: str, is_admin: bool) -> None:
        """
        Bind `username` to `link`.

        Raises AlreadyOnlineError if any other link holds the username.
        """
        with self.hub._state_lock:
            holder = self._index_by_username.get(username)
            if holder is not None and holder is not link:
                raise AlreadyOnlineError(username)

            conn = self.connections.get(link)
            if conn is None:
                # Link closed before the login finished; nothing to bind.
                raise StateError("connection is closed")

            previous = conn.get("username")
            if previous and previous != username:
                self._index_by_username.pop(previous, None)

            conn["username"] = username
            conn["is_admin"] = bool(is_admin)
            self._index_by_username[username] = link

        self.log.info(
            "Admitted user=%s admin=%s link_id=%s",
            username,
            bool(is_admin),
            self.hub._fmt_link_id(link),
        )

    def evict(self, link: RNS.Link) -> str | None:
        """Drop the session bound to `link`. Returns the freed username."""
        with self.hub._state_lock:
            conn = self.connections.get(link)
            if conn is None:
                return None
            username = conn.get("username")
            if not username:
                return None
            conn["username"] = None
            conn["is_admin"] = False
            if self._index_by_username.get(username) is link:
                self._index_by_username.pop(username, None)
            return username

    def close(self, link: RNS.Link) -> str | None:
        """Evict and forget the link entirely. Returns the freed username."""
        with self.hub._state_lock:
            username = self.evict(link)
            self.connections.pop(link, None)
            self._rate.pop(link, None)
            return username

    def get(self, link: RNS.Link) -> dict[str, Any] | None:
        """Get connection state for a link."""
        return self.connections.get(link)

    def username_for(self, link: RNS.Link) -> str | None:
        conn = self.connections.get(link)
        return conn.get("username") if conn else None

    def link_for(self, username: str) -> RNS.Link | None:
        return self._index_by_username.get(username)

    def is_online(self, username: str) -> bool:
        with self.hub._state_lock:
            return username in self._index_by_username

    def list_online(self) -> list[str]:
        with self.hub._state_lock:
            return sorted(self._index_by_username.keys())

    def links(self) -> list[RNS.Link]:
        with self.hub._state_lock:
            return list(self.connections.keys())

    def update_admin(self, username: str, is_admin: bool) -> None:
        """Keep a live session's role in step with a stored role change."""
        with self.hub._state_lock:
            link = self._index_by_username.get(username)
            conn = self.connections.get(link) if link is not None else None
            if conn is not None:
                conn["is_admin"] = bool(is_admin)

    def refill_and_take(self, link: RNS.Link, cost: float = 1.0) -> bool:
        """
        Token bucket rate limiting.

        Refills tokens based on elapsed time and attempts to take `cost` tokens.
        Returns True if tokens were available and taken, False if rate limited.
        """
        with self.hub._state_lock:
            state = self._rate.get(link)
            if state is None:
                return True

            now = time.monotonic()
            per_min = float(max(1, int(self.hub.config.rate_limit_msgs_per_minute)))
            rate_per_s = per_min / 60.0
            elapsed = max(0.0, now - state.last_refill)
            state.tokens = min(per_min, state.tokens + elapsed * rate_per_s)
            state.last_refill = now

            if state.tokens < cost:
                return False

            state.tokens -= cost
            return True

    def clear_all(self) -> list[RNS.Link]:
        """Clear all connections and return their links for teardown."""
        with self.hub._state_lock:
            links = list(self.connections.keys())
            self.connections.clear()
            self._rate.clear()
            self._index_by_username.clear()
            return links

    def get_stats(self) -> dict[str, Any]:
        with self.hub._state_lock:
            return {
                "total": len(self.connections),
                "authenticated": len(self._index_by_username),
            }
