from __future__ import annotations

import os
from typing import Any

import pytest

from rgcd.codec import encode
from rgcd.config import HubRuntimeConfig
from rgcd.constants import (
    B_CMD_ARGS,
    B_CMD_NAME,
    B_CMD_TOKEN,
    B_LOGIN_PASS,
    B_LOGIN_TOKEN,
    B_LOGIN_USER,
    B_MSG_IMAGE,
    B_MSG_MENTIONS,
    B_MSG_QUOTE,
    B_MSG_TEXT,
    B_MSG_TOKEN,
    B_RESP_DATA,
    B_RESP_OK,
    K_BODY,
    K_ID,
    K_REPLY,
    K_T,
    T_CHAT,
    T_COMMAND,
    T_LOGIN,
    T_RECONNECT,
    T_RESPONSE,
)
from rgcd.envelope import make_envelope
from rgcd.paths import sqlite_url
from rgcd.service import HubService


class FakeLink:
    """Stands in for RNS.Link; frames stay in the hub outbox for inspection."""

    MDU = 10**6

    def __init__(self) -> None:
        self.link_id = os.urandom(16)
        self.torn_down = False
        self.callbacks: dict[str, Any] = {}

    def teardown(self) -> None:
        self.torn_down = True

    def set_packet_callback(self, cb) -> None:
        self.callbacks["packet"] = cb

    def set_link_closed_callback(self, cb) -> None:
        self.callbacks["closed"] = cb

    def set_resource_strategy(self, strategy) -> None:
        self.callbacks["strategy"] = strategy

    def set_resource_callback(self, cb) -> None:
        self.callbacks["resource"] = cb

    def set_resource_concluded_callback(self, cb) -> None:
        self.callbacks["resource_concluded"] = cb


class Client:
    """Drives one fake link through the hub router."""

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.link = FakeLink()
        self.token: str | None = None
        hub._on_link(self.link)

    def send(self, msg_type: int, body: Any = None) -> bytes:
        env = make_envelope(msg_type, body=body)
        self.hub.router.route_packet(self.link, encode(env))
        return env[K_ID]

    def request(self, msg_type: int, body: Any = None) -> dict:
        mid = self.send(msg_type, body)
        for env in self.hub.message_helper.pending(self.link):
            if env[K_T] == T_RESPONSE and env.get(K_REPLY) == mid:
                return env[K_BODY]
        raise AssertionError(f"no response to message type {msg_type}")

    def login(self, username: str, password: str) -> dict:
        resp = self.request(T_LOGIN, {B_LOGIN_USER: username, B_LOGIN_PASS: password})
        if resp[B_RESP_OK]:
            self.token = resp[B_RESP_DATA]["token"]
        return resp

    def reconnect(self, token: str) -> dict:
        resp = self.request(T_RECONNECT, {B_LOGIN_TOKEN: token})
        if resp[B_RESP_OK]:
            self.token = token
        return resp

    def command(self, name: str, args: dict | None = None, *, token: Any = None) -> dict:
        body: dict[int, Any] = {B_CMD_NAME: name, B_CMD_TOKEN: token or self.token}
        if args is not None:
            body[B_CMD_ARGS] = args
        return self.request(T_COMMAND, body)

    def chat(
        self,
        text: str | None = None,
        *,
        image: str | None = None,
        quote: dict | None = None,
        mentions: list[str] | None = None,
        token: Any = None,
    ) -> dict:
        body: dict[int, Any] = {B_MSG_TOKEN: token or self.token}
        if text is not None:
            body[B_MSG_TEXT] = text
        if image is not None:
            body[B_MSG_IMAGE] = image
        if quote is not None:
            body[B_MSG_QUOTE] = quote
        if mentions is not None:
            body[B_MSG_MENTIONS] = mentions
        return self.request(T_CHAT, body)

    def frames(self, msg_type: int | None = None) -> list[dict]:
        envs = self.hub.message_helper.pending(self.link)
        if msg_type is None:
            return envs
        return [e for e in envs if e[K_T] == msg_type]

    def clear(self) -> None:
        self.hub.message_helper.take_pending(self.link)

    def close(self) -> None:
        self.hub.lifecycle.disconnect(self.link)


@pytest.fixture
def config(tmp_path) -> HubRuntimeConfig:
    return HubRuntimeConfig(
        database_url=sqlite_url(tmp_path / "chat.db"),
        uploads_dir=str(tmp_path / "uploads"),
        plugins_dir=str(tmp_path / "plugins"),
        jwt_secret="test-secret",
        bcrypt_rounds=4,
        initial_admin_password="adminpass",
        rate_limit_msgs_per_minute=10000,
    )


@pytest.fixture
def hub(config):
    h = HubService(config)
    h.bootstrap_admin()
    h.plugins.load_all()
    yield h
    h.plugins.unload_all()
    h.store.close()


@pytest.fixture
def connect(hub):
    def _connect() -> Client:
        return Client(hub)

    return _connect


@pytest.fixture
def admin(connect) -> Client:
    c = connect()
    assert c.login("admin", "adminpass")[B_RESP_OK]
    c.clear()
    return c


@pytest.fixture
def make_user(hub):
    """Create a regular account directly in the store."""

    def _make(username: str, password: str = "secret", *, is_admin: bool = False):
        return hub.store.create_user(username, hub.store.hash_password(password), is_admin)

    return _make


@pytest.fixture
def client_for():
    """Build a Client against an explicitly constructed hub."""
    return Client
