from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import RNS

from .codec import decode
from .constants import (
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
    K_BODY,
    K_ID,
    K_T,
    T_CHAT,
    T_COMMAND,
    T_LOGIN,
    T_PING,
    T_PONG,
    T_RECONNECT,
    T_RESOURCE_ENVELOPE,
)
from .envelope import make_envelope, validate_envelope
from .errors import ChatError, ValidationError

if TYPE_CHECKING:
    from .service import HubService


def _body_map(env: dict) -> dict:
    body = env.get(K_BODY)
    if not isinstance(body, dict):
        raise ValidationError("body must be a map")
    return body


class MessageRouter:
    """
    Handles frame routing and dispatching for the chat hub.

    This class is responsible for:
    - Rate limiting per link
    - Decoding and validating incoming packets
    - Dispatching by type to the lifecycle controller, message pipeline,
      command handler and resource manager
    - Turning ChatError rejections into RESPONSE frames
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("rgcd.router")

    def route_packet(self, link: RNS.Link, data: bytes) -> None:
        """
        Main entry point for routing an incoming packet.

        Replies are queued on the link's outbox; the caller flushes.
        """
        conn = self.hub.presence.get(link)
        if conn is None:
            return

        self.hub.stats_manager.inc("pkts_in")
        self.hub.stats_manager.inc("bytes_in", len(data))

        if not self.hub.presence.refill_and_take(link, 1.0):
            self.hub.stats_manager.inc("rate_limited")
            if self.log.isEnabledFor(logging.DEBUG):
                self.log.debug("Rate limited link_id=%s", self.hub._fmt_link_id(link))
            self.hub.message_helper.emit_error(link, "rate limited")
            return

        try:
            env = decode(data)
            validate_envelope(env)
        except Exception as e:
            self.hub.stats_manager.inc("pkts_bad")
            self.log.debug(
                "Bad packet link_id=%s bytes=%s err=%s",
                self.hub._fmt_link_id(link),
                len(data),
                e,
            )
            self.hub.message_helper.emit_error(link, f"bad message: {e}")
            return

        t = env.get(K_T)
        mid = env.get(K_ID)

        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "RX user=%s link_id=%s t=%s bytes=%s",
                conn.get("username"),
                self.hub._fmt_link_id(link),
                t,
                len(data),
            )

        try:
            self._dispatch(link, conn, t, env)
        except ChatError as e:
            self.hub.message_helper.respond_error(link, mid, e)
        except Exception:
            self.log.exception(
                "Unhandled error t=%s link_id=%s", t, self.hub._fmt_link_id(link)
            )
            self.hub.message_helper.respond_error(link, mid, ChatError())

    def _dispatch(self, link: RNS.Link, conn: dict[str, Any], t: int, env: dict) -> None:
        mid = env.get(K_ID)

        if t == T_PONG:
            self._handle_pong(conn)
        elif t == T_PING:
            self._handle_ping(link, env)
        elif t == T_LOGIN:
            body = _body_map(env)
            self.hub.lifecycle.login(
                link, body.get(B_LOGIN_USER), body.get(B_LOGIN_PASS), reply_to=mid
            )
        elif t == T_RECONNECT:
            body = _body_map(env)
            self.hub.lifecycle.reconnect_login(link, body.get(B_LOGIN_TOKEN), reply_to=mid)
        elif t == T_CHAT:
            self._handle_chat(link, env)
        elif t == T_COMMAND:
            body = _body_map(env)
            data = self.hub.command_handler.handle(
                link, body.get(B_CMD_NAME), body.get(B_CMD_TOKEN), body.get(B_CMD_ARGS)
            )
            self.hub.message_helper.respond(link, mid, data=data)
        elif t == T_RESOURCE_ENVELOPE:
            self.hub.resource_manager.handle_envelope(link, env)
        else:
            raise ValidationError(f"unsupported message type {t}")

    def _handle_pong(self, conn: dict[str, Any]) -> None:
        self.hub.stats_manager.inc("pongs_in")
        conn["awaiting_pong"] = None

    def _handle_ping(self, link: RNS.Link, env: dict) -> None:
        self.hub.message_helper.queue_env(
            link, make_envelope(T_PONG, body=env.get(K_BODY), reply_to=env.get(K_ID))
        )

    def _handle_chat(self, link: RNS.Link, env: dict) -> None:
        body = _body_map(env)
        result = self.hub.pipeline.submit(
            body.get(B_MSG_TOKEN),
            text=body.get(B_MSG_TEXT),
            image_ref=body.get(B_MSG_IMAGE),
            quoted=body.get(B_MSG_QUOTE),
            mentions=body.get(B_MSG_MENTIONS),
        )
        data: dict[str, Any] = {}
        if result.message is not None:
            data["id"] = result.message.id
        if result.handled_by is not None:
            data["handled_by"] = result.handled_by
        self.hub.message_helper.respond(link, env.get(K_ID), data=data)
