"""Per-link outboxes, broadcast fan-out and response helpers for the hub."""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import TYPE_CHECKING, Any

import RNS

from .codec import decode, encode
from .constants import RES_KIND_ENVELOPE, T_ERROR
from .envelope import make_envelope, make_response
from .errors import ChatError, StorageError

if TYPE_CHECKING:
    from .service import HubService


class MessageHelper:
    """
    Queues outbound frames and drains them to Reticulum.

    Handles:
    - One FIFO outbox per link, appended to under the state lock so every
      link sees broadcasts in the order they were made
    - Broadcast to every open link
    - RESPONSE and ERROR construction
    - Frames too large for a packet, sent as a Resource; later frames for
      that link wait until the Resource concludes
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("rgcd.messages")
        self._outboxes: dict[RNS.Link, deque[bytes]] = {}
        self._busy: set[RNS.Link] = set()
        self._flush_lock = threading.RLock()

    def on_link_established(self, link: RNS.Link) -> None:
        with self.hub._state_lock:
            self._outboxes[link] = deque()

    def on_link_closed(self, link: RNS.Link) -> None:
        with self.hub._state_lock:
            self._outboxes.pop(link, None)
            self._busy.discard(link)

    def clear_all(self) -> None:
        with self.hub._state_lock:
            self._outboxes.clear()
            self._busy.clear()

    def packet_would_fit(self, link: RNS.Link, payload: bytes) -> bool:
        """Check if payload fits within link MDU without creating/packing packets."""
        try:
            if hasattr(link, "MDU") and link.MDU is not None:
                return len(payload) <= link.MDU
            pkt = RNS.Packet(link, payload)
            pkt.pack()
            return True
        except Exception:
            return False

    # Queueing

    def queue_payload(self, link: RNS.Link, payload: bytes) -> None:
        """Append a raw payload to a link's outbox. Closed links drop it."""
        with self.hub._state_lock:
            box = self._outboxes.get(link)
            if box is None:
                return
            box.append(payload)
        self.hub.stats_manager.inc("bytes_out", len(payload))

    def queue_env(self, link: RNS.Link, env: dict) -> None:
        """Encode and queue an envelope."""
        self.queue_payload(link, encode(env))

    def broadcast(self, env: dict) -> int:
        """Queue one envelope to every open link. Returns the recipient count."""
        payload = encode(env)
        with self.hub._state_lock:
            boxes = list(self._outboxes.values())
            for box in boxes:
                box.append(payload)
        self.hub.stats_manager.inc("bytes_out", len(payload) * len(boxes))
        self.hub.stats_manager.inc("broadcasts")
        return len(boxes)

    def respond(
        self,
        link: RNS.Link,
        reply_to: bytes | None,
        *,
        data: Any = None,
        text: str | None = None,
    ) -> None:
        """Queue a successful RESPONSE."""
        self.queue_env(link, make_response(reply_to, ok=True, text=text, data=data))

    def respond_error(self, link: RNS.Link, reply_to: bytes | None, err: ChatError) -> None:
        """Queue a failed RESPONSE carrying the error's stable reason."""
        self.hub.stats_manager.inc("errors_sent")
        if isinstance(err, StorageError):
            self.log.error(
                "Storage failure link_id=%s: %s", self.hub._fmt_link_id(link), err.detail
            )
        self.queue_env(
            link,
            make_response(reply_to, ok=False, reason=err.reason, text=err.message),
        )

    def emit_error(self, link: RNS.Link, text: str) -> None:
        """Queue a bare ERROR for frames that cannot be answered normally."""
        self.hub.stats_manager.inc("errors_sent")
        self.queue_env(link, make_envelope(T_ERROR, body=text))

    def pending(self, link: RNS.Link) -> list[dict]:
        """Decoded copy of a link's undelivered frames."""
        with self.hub._state_lock:
            box = self._outboxes.get(link)
            return [decode(p) for p in box] if box else []

    def take_pending(self, link: RNS.Link) -> list[dict]:
        """Like pending() but also empties the outbox."""
        with self.hub._state_lock:
            box = self._outboxes.get(link)
            if not box:
                return []
            out = [decode(p) for p in box]
            box.clear()
            return out

    # Draining

    def flush(self) -> None:
        """Send everything queued, outside the state lock.

        A frame too large for the link MDU goes out as a Resource; the link
        stays busy and keeps its remaining frames until the transfer ends.
        """
        with self._flush_lock:
            while True:
                batch: list[tuple[RNS.Link, bytes]] = []
                with self.hub._state_lock:
                    for link, box in self._outboxes.items():
                        while box and link not in self._busy:
                            payload = box.popleft()
                            if not self.packet_would_fit(link, payload):
                                self._busy.add(link)
                            batch.append((link, payload))

                if not batch:
                    return

                if self.log.isEnabledFor(logging.DEBUG):
                    self.log.debug("Flushing %d frame(s)", len(batch))

                for link, payload in batch:
                    self._transmit(link, payload)

    def _transmit(self, link: RNS.Link, payload: bytes) -> None:
        if not self.packet_would_fit(link, payload):
            started = self.hub.resource_manager.send_via_resource(
                link,
                kind=RES_KIND_ENVELOPE,
                payload=payload,
                on_concluded=lambda _resource: self._resource_finished(link),
            )
            if not started:
                self.log.warning(
                    "Dropping oversized frame link_id=%s bytes=%s",
                    self.hub._fmt_link_id(link),
                    len(payload),
                )
                with self.hub._state_lock:
                    self._busy.discard(link)
            return

        try:
            RNS.Packet(link, payload).send()
        except OSError as e:
            self.log.warning(
                "Send failed link_id=%s bytes=%s err=%s",
                self.hub._fmt_link_id(link),
                len(payload),
                e,
            )
        except Exception:
            self.log.debug(
                "Send failed link_id=%s bytes=%s",
                self.hub._fmt_link_id(link),
                len(payload),
                exc_info=True,
            )

    def _resource_finished(self, link: RNS.Link) -> None:
        with self.hub._state_lock:
            self._busy.discard(link)
        self.flush()
