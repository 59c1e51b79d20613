"""Message interceptor plugins.

Plugins are ordinary Python files dropped into the plugins directory. Each
file may define one or more subclasses of :class:`Plugin`. Plugins run with
full trust inside the hub process.

Toggling any plugin unloads and reloads the whole set, so state a plugin
keeps in memory (and every bus subscription) is lost on toggle.
"""

from __future__ import annotations

import importlib.util
import inspect
import logging
import os
import sys
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .constants import T_CHAT
from .envelope import make_envelope
from .errors import NotFoundError, PluginError
from .records import Message, QuotedMessage, Submission
from .util import expand_path

if TYPE_CHECKING:
    from .service import HubService


class Plugin:
    """Base class for interceptor plugins."""

    name: str = ""
    description: str = ""
    version: str = "1.0.0"
    enabled: bool = True

    def on_load(self, api: PluginApi) -> None:
        pass

    def on_message(self, message: Submission, api: PluginApi) -> bool:
        """Return True to claim the message; it is then neither stored nor broadcast."""
        return False

    def on_unload(self, api: PluginApi) -> None:
        pass


class PluginEventBus:
    """Publish/subscribe registry shared by the currently loaded plugin set."""

    def __init__(self) -> None:
        self.log = logging.getLogger("rgcd.plugins.bus")
        self._handlers: dict[str, list[Callable[..., Any]]] = {}

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def off(self, event: str, handler: Callable[..., Any] | None = None) -> None:
        if handler is None:
            self._handlers.pop(event, None)
            return
        handlers = self._handlers.get(event)
        if handlers and handler in handlers:
            handlers.remove(handler)
            if not handlers:
                self._handlers.pop(event, None)

    def emit(self, event: str, *args: Any, **kwargs: Any) -> int:
        """Call every handler for `event`. Returns how many ran without error."""
        ok = 0
        for handler in list(self._handlers.get(event, ())):
            try:
                handler(*args, **kwargs)
                ok += 1
            except Exception:
                self.log.exception("Plugin event handler failed event=%s", event)
        return ok

    def clear(self) -> None:
        self._handlers.clear()


class PluginApi:
    """Capabilities handed to plugins."""

    def __init__(self, hub: HubService, bus: PluginEventBus) -> None:
        self._hub = hub
        self._bus = bus

    def send_message(
        self,
        text: str | None,
        username: str = "System",
        *,
        image_ref: str | None = None,
        quoted: QuotedMessage | None = None,
        mentions: list[str] | tuple[str, ...] = (),
    ) -> None:
        """Broadcast a chat message. It is not stored in history."""
        msg = Message(
            id=None,
            username=username,
            text=text,
            image_ref=image_ref,
            created_at=self._hub.store.now(),
            quoted=quoted,
            mentions=tuple(mentions),
        )
        self._hub.message_helper.broadcast(make_envelope(T_CHAT, body=msg.to_wire()))

    def get_online_users(self) -> list[str]:
        return self._hub.presence.list_online()

    def get_admin_users(self) -> list[str]:
        return self._hub.store.list_admin_usernames()

    def mute_user(self, username: str) -> bool:
        try:
            self._hub.moderation.set_muted(username, True)
        except NotFoundError:
            return False
        return True

    def unmute_user(self, username: str) -> bool:
        try:
            self._hub.moderation.set_muted(username, False)
        except NotFoundError:
            return False
        return True

    def is_user_muted(self, username: str) -> bool:
        return self._hub.moderation.is_muted(username)

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        self._bus.on(event, handler)

    def off(self, event: str, handler: Callable[..., Any] | None = None) -> None:
        self._bus.off(event, handler)

    def emit(self, event: str, *args: Any, **kwargs: Any) -> int:
        return self._bus.emit(event, *args, **kwargs)


def _plugin_name(plugin: Plugin) -> str:
    return str(plugin.name or type(plugin).__name__)


class PluginManager:
    """
    Loads plugins and runs them as an ordered interceptor chain.

    Order is file name order within the plugins directory, followed by
    classes registered in code via register().
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("rgcd.plugins")
        self._registered: list[type[Plugin]] = []
        self._disabled: set[str] = set(hub.config.disabled_plugins)
        self._force_enabled: set[str] = set(hub.config.enabled_plugins)

        self.bus = PluginEventBus()
        self.api = PluginApi(hub, self.bus)
        self._known: dict[str, Plugin] = {}
        self._active: list[Plugin] = []

    def register(self, plugin_cls: type[Plugin]) -> None:
        """Add a plugin class that does not live in the plugins directory."""
        self._registered.append(plugin_cls)

    def _plugins_dir(self) -> Path | None:
        d = self.hub.config.plugins_dir
        if not d:
            return None
        return Path(expand_path(str(d)))

    def _discover(self) -> list[type[Plugin]]:
        found: list[type[Plugin]] = []
        pdir = self._plugins_dir()
        if pdir is None or not pdir.is_dir():
            return found

        for path in sorted(pdir.glob("*.py")):
            if path.name.startswith("_"):
                continue
            module_name = f"rgcd_plugin.{path.stem}"
            try:
                spec = importlib.util.spec_from_file_location(module_name, path)
                if spec is None or spec.loader is None:
                    self.log.warning("Cannot load plugin file %s", path)
                    continue
                module = importlib.util.module_from_spec(spec)
                sys.modules[module_name] = module
                spec.loader.exec_module(module)
            except Exception:
                sys.modules.pop(module_name, None)
                self.log.exception("Failed to import plugin file %s", path)
                continue

            for _, obj in inspect.getmembers(module, inspect.isclass):
                if (
                    issubclass(obj, Plugin)
                    and obj is not Plugin
                    and obj.__module__ == module.__name__
                ):
                    found.append(obj)
        return found

    def _is_enabled(self, plugin: Plugin) -> bool:
        name = _plugin_name(plugin)
        if name in self._force_enabled:
            return True
        return bool(plugin.enabled) and name not in self._disabled

    def load_all(self) -> None:
        with self.hub._state_lock:
            self.bus = PluginEventBus()
            self.api = PluginApi(self.hub, self.bus)
            self._known = {}
            self._active = []

            for cls in self._discover() + list(self._registered):
                try:
                    plugin = cls()
                except Exception:
                    self.log.exception("Failed to construct plugin %s", cls.__name__)
                    continue

                name = _plugin_name(plugin)
                if name in self._known:
                    self.log.warning("Duplicate plugin name %s ignored", name)
                    continue
                self._known[name] = plugin

                if not self._is_enabled(plugin):
                    self.log.info("Plugin %s is disabled", name)
                    continue

                try:
                    plugin.on_load(self.api)
                except Exception:
                    self.log.exception("Plugin %s failed to load", name)
                    continue
                self._active.append(plugin)
                self.log.info("Loaded plugin %s %s", name, plugin.version)

    def unload_all(self) -> None:
        with self.hub._state_lock:
            for plugin in self._active:
                try:
                    plugin.on_unload(self.api)
                except Exception:
                    self.log.exception("Plugin %s failed to unload", _plugin_name(plugin))
            self._active = []
            self._known = {}
            self.bus.clear()

    def reload(self) -> None:
        self.unload_all()
        self.load_all()

    def intercept(self, message: Submission) -> str | None:
        """Offer a message to each active plugin in order.

        Returns the name of the plugin that claimed it, or None. A plugin
        that raises is logged and treated as declining.
        """
        for plugin in list(self._active):
            name = _plugin_name(plugin)
            try:
                handled = plugin.on_message(message, self.api)
            except Exception as e:
                err = PluginError(name, str(e))
                self.log.exception("%s: %s", err.message, err.detail)
                self.hub.stats_manager.inc("plugin_errors")
                continue
            if handled is True:
                return name
        return None

    def list_plugins(self) -> list[dict[str, Any]]:
        """Enabled plugins only; disabled ones are hidden."""
        return [
            {
                "name": _plugin_name(p),
                "description": p.description,
                "version": p.version,
                "enabled": True,
            }
            for p in self._active
        ]

    def known_names(self) -> list[str]:
        return list(self._known.keys())

    def toggle(self, name: str, enabled: bool) -> None:
        """Enable or disable a plugin by name and reload the whole set."""
        with self.hub._state_lock:
            if name not in self._known:
                raise NotFoundError(f"plugin '{name}' not found")

            if enabled:
                self._disabled.discard(name)
                self._force_enabled.add(name)
            else:
                self._disabled.add(name)
                self._force_enabled.discard(name)

            self.reload()

        self._persist_overrides()
        self.log.info("Plugin %s %s", name, "enabled" if enabled else "disabled")

    def _persist_overrides(self) -> None:
        cfg_path = self.hub.config_path_for_writes()
        if not cfg_path or not os.path.exists(cfg_path):
            self.log.info("Plugin override not persisted; no config file")
            return

        from tomlkit import dumps, parse, table

        try:
            with self.hub._config_write_lock:
                with open(cfg_path, encoding="utf-8") as f:
                    doc = parse(f.read())

                plugins = doc.get("plugins")
                if plugins is None:
                    plugins = table()
                    doc["plugins"] = plugins

                plugins["disabled"] = sorted(self._disabled)
                plugins["enabled"] = sorted(self._force_enabled)

                with open(cfg_path, "w", encoding="utf-8") as f:
                    f.write(dumps(doc))
        except (OSError, ValueError) as e:
            self.log.warning("Failed to persist plugin overrides to %s: %s", cfg_path, e)
