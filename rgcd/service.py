from __future__ import annotations

import logging
import os
import secrets
import signal
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Callable

import RNS

from .blobs import BlobStore
from .codec import encode
from .commands import CommandHandler
from .config import HubRuntimeConfig
from .constants import T_PING
from .credentials import CredentialIssuer
from .envelope import make_envelope
from .errors import StorageError, UsernameTakenError
from .lifecycle import ConnectionLifecycle
from .messages import MessageHelper
from .moderation import ModerationGate
from .paths import (
    default_database_path,
    default_uploads_dir,
    ensure_private_dir,
    sqlite_url,
)
from .pipeline import MessagePipeline
from .plugins import PluginManager
from .presence import PresenceRegistry
from .resources import ResourceManager
from .retention import RetentionSweeper
from .router import MessageRouter
from .stats import StatsManager
from .store import ChatStore
from .util import expand_path


class HubService:
    def __init__(
        self,
        config: HubRuntimeConfig,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config
        self.log = logging.getLogger("rgcd.hub")

        # Registry, outboxes and counters are touched from Reticulum callbacks,
        # plugin threads and background loops. Guard them with a single
        # re-entrant lock.
        self._state_lock = threading.RLock()
        self._config_write_lock = threading.Lock()
        self._shutdown = threading.Event()

        self.stats_manager = StatsManager(self)

        self.store = ChatStore(
            self._database_url(),
            bcrypt_rounds=config.bcrypt_rounds,
            clock=clock,
        )
        self.blobs = BlobStore(self._uploads_dir())
        self.credentials = CredentialIssuer(
            self._jwt_secret(),
            algorithm=config.jwt_algorithm,
            ttl_s=config.token_ttl_s,
        )
        self.retention = RetentionSweeper(self.store, self.blobs, config.image_retention_s)

        self.presence = PresenceRegistry(self)
        self.message_helper = MessageHelper(self)
        self.resource_manager = ResourceManager(self)
        self.moderation = ModerationGate(self)
        self.plugins = PluginManager(self)
        self.pipeline = MessagePipeline(self)
        self.lifecycle = ConnectionLifecycle(self)
        self.command_handler = CommandHandler(self)
        self.router = MessageRouter(self)

        self.identity: RNS.Identity | None = None
        self.destination: RNS.Destination | None = None

        self._threads: list[threading.Thread] = []

    def _database_url(self) -> str:
        if self.config.database_url:
            return str(self.config.database_url)
        p = default_database_path()
        ensure_private_dir(p.parent)
        return sqlite_url(p)

    def _uploads_dir(self) -> Path:
        if self.config.uploads_dir:
            return Path(expand_path(str(self.config.uploads_dir)))
        return default_uploads_dir()

    def _jwt_secret(self) -> str:
        if self.config.jwt_secret:
            return str(self.config.jwt_secret)
        self.log.warning(
            "No jwt_secret configured; using a random per-process secret. "
            "Tokens will not survive a restart."
        )
        return secrets.token_hex(32)

    def _fmt_link_id(self, link: RNS.Link) -> str:
        for attr in ("link_id", "hash"):
            value = getattr(link, attr, None)
            if isinstance(value, (bytes, bytearray)):
                return bytes(value).hex()
        return "-"

    def config_path_for_writes(self) -> str | None:
        p = self.config.config_path
        if not p:
            return None
        return expand_path(str(p))

    def bootstrap_admin(self) -> None:
        """Make sure the initial admin account exists and holds the admin flag."""
        username = self.config.initial_admin_username
        try:
            user = self.store.find_user(username)
            if user is not None:
                if not user.is_admin:
                    self.store.set_admin_flag(username, True)
                    self.log.warning("Restored admin flag for initial admin %s", username)
                return

            password = self.config.initial_admin_password
            generated = not password
            if generated:
                password = secrets.token_urlsafe(12)
            self.store.create_user(username, self.store.hash_password(password), True)
        except (StorageError, UsernameTakenError) as e:
            self.log.error("Failed to create initial admin %s: %s", username, e)
            return

        if generated:
            self.log.warning(
                "Created initial admin %s with generated password %s; change it after login",
                username,
                password,
            )
        else:
            self.log.info("Created initial admin %s", username)

    def start(self) -> None:
        self.log.info("Starting Reticulum")
        self.stats_manager.set_start_time()
        RNS.Reticulum(configdir=self.config.configdir, require_shared_instance=False)

        if not self.config.identity_path:
            raise RuntimeError("identity_path is not set")
        self.identity = self._load_identity(self.config.identity_path)

        self.bootstrap_admin()
        self.plugins.load_all()
        self.retention.run_safely()

        app_name, *aspects = self._dest_parts()
        self.destination = RNS.Destination(
            self.identity,
            RNS.Destination.IN,
            RNS.Destination.SINGLE,
            app_name,
            *aspects,
        )
        self.destination.set_link_established_callback(self._on_link)
        self.log.info(
            "Hub %r listening dest_name=%s dest_hash=%s",
            self.config.hub_name,
            self.config.dest_name,
            self.destination.hash.hex(),
        )
        self.log.info(
            "Policy history_limit=%s token_ttl_s=%s image_retention_s=%s rate_limit_msgs_per_minute=%s",
            self.config.history_limit,
            self.config.token_ttl_s,
            self.config.image_retention_s,
            self.config.rate_limit_msgs_per_minute,
        )

        if self.config.announce_on_start:
            self._announce_once()

        self._every("rgcd-announce", self.config.announce_period_s, self._announce_once)
        self._every("rgcd-ping", self.config.ping_interval_s, self._ping_round)
        self._every("rgcd-retention", self.config.sweep_interval_s, self.retention.run_safely)
        self._every("rgcd-upload-expiry", 30.0, self.resource_manager.expire_stale_uploads)

    def _dest_parts(self) -> list[str]:
        parts = [p for p in str(self.config.dest_name).split(".") if p]
        if not parts:
            raise ValueError("dest_name must not be empty")
        return parts

    def _every(self, name: str, period_s: float | None, action: Callable[[], None]) -> None:
        """Run ``action`` on a daemon thread every ``period_s`` until shutdown."""
        if not period_s or period_s <= 0:
            return

        def loop() -> None:
            while not self._shutdown.wait(float(period_s)):
                try:
                    action()
                except Exception:
                    self.log.exception("%s iteration failed", name)

        t = threading.Thread(target=loop, name=name, daemon=True)
        self._threads.append(t)
        t.start()

    def _announce_once(self) -> None:
        if self.destination is None:
            return
        try:
            self.destination.announce(
                app_data=encode({"proto": "rgc", "v": 1, "hub": self.config.hub_name})
            )
            self.stats_manager.inc("announces")
        except Exception:
            self.log.exception("Announce failed")

    def run_forever(self) -> None:
        if self.destination is None:
            self.start()

        signal.signal(signal.SIGINT, lambda *_: self.stop())
        signal.signal(signal.SIGTERM, lambda *_: self.stop())

        while not self._shutdown.wait(0.25):
            pass

    def stop(self) -> None:
        self._shutdown.set()

        links = self.presence.clear_all()
        self.message_helper.clear_all()
        self.resource_manager.clear_all()
        for link in links:
            self._teardown(link)

        self.plugins.unload_all()
        self.store.close()

    def _teardown(self, link: RNS.Link) -> None:
        try:
            link.teardown()
        except Exception as e:
            self.log.debug("Teardown failed link_id=%s: %s", self._fmt_link_id(link), e)

    def _load_identity(self, path: str) -> RNS.Identity:
        p = expand_path(path)
        if not os.path.exists(p):
            raise RuntimeError(f"Identity not found at {p}")
        ident = RNS.Identity.from_file(p)
        if ident is None:
            raise RuntimeError(f"Could not read identity from {p}")
        return ident

    # Reticulum callbacks

    def _on_link(self, link: RNS.Link) -> None:
        with self._state_lock:
            self.presence.open(link)
            self.message_helper.on_link_established(link)
            self.resource_manager.on_link_established(link)

        link.set_packet_callback(lambda data, _packet: self._on_packet(link, data))
        link.set_link_closed_callback(self._on_close)
        self.resource_manager.configure_link_callbacks(link)

        self.log.info("Link opened link_id=%s", self._fmt_link_id(link))

    def _on_packet(self, link: RNS.Link, data: bytes) -> None:
        self.router.route_packet(link, data)
        self.message_helper.flush()

    def _on_close(self, link: RNS.Link) -> None:
        username = self.lifecycle.disconnect(link)
        self.log.info("Link closed user=%r link_id=%s", username, self._fmt_link_id(link))
        self.message_helper.flush()

    def _ping_round(self) -> None:
        """Ping logged-in links; drop those that left the last ping unanswered too long."""
        timeout = float(self.config.ping_timeout_s)
        now = time.monotonic()
        stale: list[RNS.Link] = []

        with self._state_lock:
            for link, conn in list(self.presence.connections.items()):
                if not conn.get("username"):
                    continue
                sent_at = conn.get("awaiting_pong")
                if sent_at is None:
                    conn["awaiting_pong"] = now
                    self.message_helper.queue_env(link, make_envelope(T_PING, body=now))
                    self.stats_manager.inc("pings_out")
                elif timeout > 0 and now - float(sent_at) > timeout:
                    stale.append(link)

        for link in stale:
            self.log.info("Ping timeout link_id=%s", self._fmt_link_id(link))
            self._teardown(link)

        self.message_helper.flush()
