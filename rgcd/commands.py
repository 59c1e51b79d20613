"""Request/response commands: registration, account and admin operations."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import RNS

from .constants import LEADERBOARD_WINDOWS
from .errors import BadCredentialsError, NotFoundError, UsernameTakenError, ValidationError
from .util import normalize_username

if TYPE_CHECKING:
    from .credentials import Credential
    from .service import HubService

_WINDOW_ALIASES = {"daily": "day", "weekly": "week", "monthly": "month"}

ADMIN_COMMANDS = frozenset(
    {
        "list_users",
        "set_mute",
        "set_admin",
        "add_invitation_code",
        "list_invitation_codes",
        "list_plugins",
        "toggle_plugin",
        "stats",
    }
)


def _arg_str(args: dict, key: str, *, required: bool = True) -> str | None:
    v = args.get(key)
    if v is None and not required:
        return None
    if not isinstance(v, str) or not v.strip():
        raise ValidationError("required", field=key)
    return v


def _arg_bool(args: dict, key: str) -> bool:
    v = args.get(key)
    if not isinstance(v, bool):
        raise ValidationError("must be true or false", field=key)
    return v


def _arg_int(args: dict, key: str, *, minimum: int = 1) -> int:
    v = args.get(key)
    if isinstance(v, bool) or not isinstance(v, int) or v < minimum:
        raise ValidationError(f"must be an integer >= {minimum}", field=key)
    return v


class CommandHandler:
    """Handles COMMAND frames for the chat hub."""

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("rgcd.commands")

    def _username_arg(self, args: dict, key: str = "username") -> str:
        name = normalize_username(args.get(key), self.hub.config.username_max_chars)
        if name is None:
            raise ValidationError("invalid username", field=key)
        return name

    def handle(self, link: RNS.Link, name: Any, token: Any, args: Any) -> Any:
        """
        Run one command and return its result data.

        Raises ChatError subclasses; the router reports them to the caller.
        """
        if not isinstance(name, str) or not name:
            raise ValidationError("missing command name", field="name")
        if args is None:
            args = {}
        if not isinstance(args, dict):
            raise ValidationError("arguments must be a map", field="args")

        cmd = name.strip().lower()
        self.hub.stats_manager.inc("commands")

        if cmd == "register":
            return self._register(args)

        credential = self.hub.credentials.verify(token)

        if cmd in ADMIN_COMMANDS:
            self.hub.moderation.require_admin(credential)

        if cmd == "change_password":
            return self._change_password(credential, args)

        if cmd == "leaderboard":
            window = args.get("window", "day")
            if isinstance(window, str):
                window = _WINDOW_ALIASES.get(window, window)
            if window not in LEADERBOARD_WINDOWS:
                raise ValidationError("must be day, week or month", field="window")
            entries = self.hub.store.leaderboard(
                window,
                tz_name=self.hub.config.leaderboard_timezone,
                limit=int(self.hub.config.leaderboard_size),
            )
            return [e.public() for e in entries]

        if cmd == "list_users":
            online = set(self.hub.presence.list_online())
            return [
                {
                    **u.public(),
                    "is_muted": self.hub.store.is_muted(u.username),
                    "is_online": u.username in online,
                }
                for u in self.hub.store.list_users()
            ]

        if cmd == "set_mute":
            target = self._username_arg(args)
            self.hub.moderation.set_muted(target, _arg_bool(args, "muted"))
            return None

        if cmd == "set_admin":
            target = self._username_arg(args)
            self.hub.moderation.set_admin(target, _arg_bool(args, "is_admin"))
            return None

        if cmd == "add_invitation_code":
            code = _arg_str(args, "code").strip()
            max_uses = _arg_int(args, "max_uses") if "max_uses" in args else 1
            created = self.hub.store.create_invitation_code(
                code, max_uses, created_by=credential.username
            )
            self.log.info("Invitation code added by %s max_uses=%s", credential.username, max_uses)
            return created.public()

        if cmd == "list_invitation_codes":
            return [c.public() for c in self.hub.store.list_invitation_codes()]

        if cmd == "list_plugins":
            return self.hub.plugins.list_plugins()

        if cmd == "toggle_plugin":
            plugin = _arg_str(args, "name")
            self.hub.plugins.toggle(plugin, _arg_bool(args, "enabled"))
            return self.hub.plugins.list_plugins()

        if cmd == "stats":
            return self.hub.stats_manager.format_stats()

        raise NotFoundError(f"unknown command '{cmd}'")

    def _register(self, args: dict) -> dict[str, Any]:
        username = self._username_arg(args)
        password = _arg_str(args, "password")
        code = _arg_str(args, "code").strip()

        # Skip the bcrypt cost for names that are obviously taken.
        if self.hub.store.find_user(username) is not None:
            raise UsernameTakenError(username)

        password_hash = self.hub.store.hash_password(password)
        user = self.hub.store.register_user(username, password_hash, code)
        self.hub.stats_manager.inc("registrations")
        self.log.info("Registered user=%s", user.username)
        return {"username": user.username}

    def _change_password(self, credential: Credential, args: dict) -> None:
        old = _arg_str(args, "old_password")
        new = _arg_str(args, "new_password")

        user = self.hub.store.find_user(credential.username)
        if user is None or not self.hub.store.verify_password(old, user.password_hash):
            raise BadCredentialsError("current password is incorrect")

        if not self.hub.store.update_password(user.username, self.hub.store.hash_password(new)):
            raise NotFoundError(f"user '{user.username}' not found")
        self.log.info("Password changed user=%s", user.username)
        return None
