from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import RNS

from .codec import encode
from .constants import T_HISTORY, T_ONLINE, T_USER_JOINED, T_USER_LEFT
from .envelope import make_envelope
from .errors import AlreadyAuthenticatedError, BadCredentialsError, StateError, StorageError
from .util import normalize_username

if TYPE_CHECKING:
    from .service import HubService


class ConnectionLifecycle:
    """
    Login, reconnect and disconnect for one link.

    A link starts anonymous, becomes authenticated through login() or
    reconnect_login(), and is closed by disconnect(). Each admit or evict is
    followed by a broadcast of the full online list.
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("rgcd.lifecycle")

    def _require_anonymous(self, link: RNS.Link) -> None:
        conn = self.hub.presence.get(link)
        if conn is None:
            raise StateError("connection is closed")
        if conn.get("username"):
            raise AlreadyAuthenticatedError()

    def _push_history(self, link: RNS.Link) -> None:
        try:
            history = self.hub.store.recent_messages(int(self.hub.config.history_limit))
        except StorageError as e:
            self.log.error("Failed to load history: %s", e.detail)
            history = []
        items = [m.to_wire() for m in history]
        payload = encode(make_envelope(T_HISTORY, body=items))
        limit = int(self.hub.config.max_resource_bytes)
        dropped = 0
        while len(payload) > limit and items:
            # Oldest first; shed enough of them to cover the overshoot.
            excess = len(payload) - limit
            while excess > 0 and items:
                excess -= len(encode(items.pop(0)))
                dropped += 1
            payload = encode(make_envelope(T_HISTORY, body=items))
        if dropped:
            self.log.info(
                "History trimmed to fit link_id=%s dropped=%s kept=%s",
                self.hub._fmt_link_id(link),
                dropped,
                len(items),
            )
        self.hub.message_helper.queue_payload(link, payload)

    def broadcast_online(self) -> None:
        self.hub.message_helper.broadcast(
            make_envelope(T_ONLINE, body=self.hub.presence.list_online())
        )

    def login(
        self, link: RNS.Link, username: Any, password: Any, *, reply_to: bytes | None = None
    ) -> dict[str, Any]:
        """
        Authenticate with username and password.

        Unknown user and wrong password raise the same BadCredentialsError.
        """
        name = normalize_username(username, self.hub.config.username_max_chars)
        if name is None or not isinstance(password, str) or not password:
            raise BadCredentialsError()

        self._require_anonymous(link)

        # bcrypt is slow; check it before taking the state lock.
        user = self.hub.store.find_user(name)
        if user is None or not self.hub.store.verify_password(password, user.password_hash):
            self.log.info("Failed login user=%s link_id=%s", name, self.hub._fmt_link_id(link))
            raise BadCredentialsError()

        with self.hub._state_lock:
            self._require_anonymous(link)
            self.hub.presence.admit(link, user.username, user.is_admin)
            token = self.hub.credentials.issue(user.username, user.is_admin)
            result = {"username": user.username, "is_admin": user.is_admin, "token": token}

            self.hub.message_helper.respond(link, reply_to, data=result)
            self._push_history(link)
            self.hub.message_helper.broadcast(make_envelope(T_USER_JOINED, body=user.username))
            self.broadcast_online()

        self.hub.stats_manager.inc("logins")
        return result

    def reconnect_login(
        self, link: RNS.Link, token: Any, *, reply_to: bytes | None = None
    ) -> dict[str, Any]:
        """
        Authenticate with a previously issued token.

        Same online guard as login(). No "joined" broadcast is sent; only the
        online list goes out.
        """
        credential = self.hub.credentials.verify(token)

        with self.hub._state_lock:
            self._require_anonymous(link)
            self.hub.presence.admit(link, credential.username, credential.is_admin)
            result = {"username": credential.username, "is_admin": credential.is_admin}

            self.hub.message_helper.respond(link, reply_to, data=result)
            self._push_history(link)
            self.broadcast_online()

        self.hub.stats_manager.inc("reconnects")
        return result

    def disconnect(self, link: RNS.Link) -> str | None:
        """Tear down all state for a closed link. Returns the freed username."""
        with self.hub._state_lock:
            self.hub.message_helper.on_link_closed(link)
            self.hub.resource_manager.on_link_closed(link)
            username = self.hub.presence.close(link)
            if username:
                self.hub.message_helper.broadcast(make_envelope(T_USER_LEFT, body=username))
                self.broadcast_online()

        if username:
            self.log.info(
                "User left user=%s link_id=%s", username, self.hub._fmt_link_id(link)
            )
        return username
