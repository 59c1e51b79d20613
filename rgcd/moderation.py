from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .constants import B_STATUS_USER, B_STATUS_VALUE, T_ADMIN_STATUS, T_MUTED_STATUS
from .envelope import make_envelope
from .errors import AuthorizationError, ForbiddenError, NotFoundError

if TYPE_CHECKING:
    from .credentials import Credential
    from .service import HubService


class ModerationGate:
    """
    Mute and admin-role rules.

    Role changes and mute changes are broadcast to every connection. The
    configured initial admin can never lose the admin flag.
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("rgcd.moderation")

    @property
    def root_admin(self) -> str:
        return self.hub.config.initial_admin_username

    def is_muted(self, username: str) -> bool:
        return self.hub.store.is_muted(username)

    def require_admin(self, credential: Credential) -> None:
        """
        Reject non-admins.

        The stored flag is authoritative; the flag embedded in the token only
        reflects the role at login time.
        """
        user = self.hub.store.find_user(credential.username)
        if user is None or not user.is_admin:
            if credential.is_admin:
                self.log.info(
                    "Stale admin token refused user=%s", credential.username
                )
            raise AuthorizationError()

    def set_muted(self, username: str, muted: bool) -> None:
        with self.hub._state_lock:
            if not self.hub.store.set_muted(username, muted):
                raise NotFoundError(f"user '{username}' not found")
            self.hub.message_helper.broadcast(
                make_envelope(
                    T_MUTED_STATUS,
                    body={B_STATUS_USER: username, B_STATUS_VALUE: bool(muted)},
                )
            )
        self.log.info("User %s %s", username, "muted" if muted else "unmuted")

    def set_admin(self, username: str, is_admin: bool) -> None:
        if username == self.root_admin:
            if not is_admin:
                raise ForbiddenError("the initial admin cannot be demoted")
            # Already an admin by construction.
            return

        with self.hub._state_lock:
            if not self.hub.store.set_admin_flag(username, is_admin):
                raise NotFoundError(f"user '{username}' not found")
            self.hub.presence.update_admin(username, is_admin)
            self.hub.message_helper.broadcast(
                make_envelope(
                    T_ADMIN_STATUS,
                    body={B_STATUS_USER: username, B_STATUS_VALUE: bool(is_admin)},
                )
            )
        self.log.info("Admin flag for %s set to %s", username, bool(is_admin))
