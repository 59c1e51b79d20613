"""Image uploads and oversized outbound frames over RNS.Resource."""

from __future__ import annotations

import hashlib
import logging
import os
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

import RNS

from .codec import encode
from .constants import (
    B_RES_ENCODING,
    B_RES_ID,
    B_RES_KIND,
    B_RES_NAME,
    B_RES_SHA256,
    B_RES_SIZE,
    K_BODY,
    K_ID,
    RES_KIND_IMAGE,
    T_RESOURCE_ENVELOPE,
)
from .envelope import make_envelope
from .errors import NotAuthenticatedError, RateLimitedError, ValidationError

if TYPE_CHECKING:
    from .service import HubService


@dataclass
class _PendingUpload:
    """An image the client announced and has not finished sending."""

    rid: bytes
    size: int
    sha256: bytes | None
    name: str | None
    request_id: bytes | None
    deadline: float

    def accepts(self, size: int, digest: bytes | None) -> bool:
        if self.size != size:
            return False
        return not (self.sha256 and digest and self.sha256 != digest)


def _resource_size(resource: RNS.Resource) -> int:
    return resource.total_size if hasattr(resource, "total_size") else resource.size


def _resource_bytes(resource: RNS.Resource) -> bytes:
    data = resource.data
    if hasattr(data, "read"):
        data = data.read()
    return bytes(data)


def _parse_announcement(body: object, max_bytes: int) -> tuple[bytes, int, bytes | None, str | None]:
    if not isinstance(body, dict):
        raise ValidationError("invalid resource envelope body")

    rid = body.get(B_RES_ID)
    kind = body.get(B_RES_KIND)
    size = body.get(B_RES_SIZE)
    digest = body.get(B_RES_SHA256)
    name = body.get(B_RES_NAME)

    if not isinstance(rid, (bytes, bytearray)) or not rid:
        raise ValidationError("resource id must be bytes", field="id")
    if kind != RES_KIND_IMAGE:
        raise ValidationError(f"unsupported resource kind {kind!r}", field="kind")
    if not isinstance(size, int) or size <= 0:
        raise ValidationError("size must be a positive integer", field="size")
    if size > max_bytes:
        raise ValidationError(f"upload too large ({size} > {max_bytes})", field="size")
    if digest is not None and (not isinstance(digest, (bytes, bytearray)) or len(digest) != 32):
        raise ValidationError("sha256 must be 32 bytes", field="sha256")
    if name is not None and not isinstance(name, str):
        raise ValidationError("name must be a string", field="name")

    return bytes(rid), size, bytes(digest) if digest is not None else None, name


class ResourceManager:
    """
    Inbound: a client announces an image with a RESOURCE_ENVELOPE, then sends
    the bytes as a Resource. The finished upload goes to the blob store and
    the client gets a RESPONSE carrying the blob reference.

    Outbound: a frame larger than one packet is announced the same way with
    kind "envelope" and sent as a Resource.
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("rgcd.resources")

        self._uploads: dict[RNS.Link, dict[bytes, _PendingUpload]] = {}
        # Advertised transfer -> rid of the upload it was matched to.
        self._claims: dict[RNS.Resource, bytes] = {}
        self._on_sent: dict[RNS.Resource, Callable[[RNS.Resource], None]] = {}

    def on_link_established(self, link: RNS.Link) -> None:
        with self.hub._state_lock:
            self._uploads[link] = {}

    def on_link_closed(self, link: RNS.Link) -> None:
        with self.hub._state_lock:
            self._uploads.pop(link, None)
            for resource in [r for r in self._claims if r.link is link]:
                del self._claims[resource]

    def clear_all(self) -> None:
        with self.hub._state_lock:
            self._uploads.clear()
            self._claims.clear()
            self._on_sent.clear()

    def configure_link_callbacks(self, link: RNS.Link) -> None:
        try:
            link.set_resource_strategy(RNS.Link.ACCEPT_APP)
            link.set_resource_callback(self._on_advertised)
            link.set_resource_concluded_callback(self._on_concluded)
        except Exception as e:
            self.log.warning(
                "Could not install resource callbacks link_id=%s: %s",
                self.hub._fmt_link_id(link),
                e,
            )

    # Pending uploads

    def _drop_stale(self, link: RNS.Link, now: float) -> None:
        uploads = self._uploads.get(link)
        if not uploads:
            return
        for rid in [rid for rid, up in uploads.items() if up.deadline <= now]:
            del uploads[rid]
            self.log.debug(
                "Upload timed out link_id=%s rid=%s", self.hub._fmt_link_id(link), rid.hex()
            )

    def expire_stale_uploads(self) -> None:
        now = time.time()
        with self.hub._state_lock:
            for link in list(self._uploads):
                self._drop_stale(link, now)

    def handle_envelope(self, link: RNS.Link, env: dict) -> None:
        """
        Register an announced upload.

        Raises ValidationError, NotAuthenticatedError or RateLimitedError;
        the router answers the envelope with the matching RESPONSE.
        """
        if not self.hub.presence.username_for(link):
            raise NotAuthenticatedError()

        rid, size, digest, name = _parse_announcement(
            env.get(K_BODY), int(self.hub.config.max_upload_bytes)
        )
        now = time.time()
        with self.hub._state_lock:
            self._drop_stale(link, now)
            uploads = self._uploads.setdefault(link, {})
            if len(uploads) >= self.hub.config.max_pending_uploads:
                raise RateLimitedError("too many pending uploads")
            uploads[rid] = _PendingUpload(
                rid=rid,
                size=size,
                sha256=digest,
                name=name,
                request_id=env.get(K_ID),
                deadline=now + self.hub.config.upload_ttl_s,
            )

        self.log.debug(
            "Expecting upload link_id=%s rid=%s size=%s",
            self.hub._fmt_link_id(link),
            rid.hex(),
            size,
        )

    def _find_upload(
        self, link: RNS.Link, size: int, digest: bytes | None, rid: bytes | None = None
    ) -> _PendingUpload | None:
        with self.hub._state_lock:
            self._drop_stale(link, time.time())
            uploads = self._uploads.get(link) or {}
            if rid is not None and rid in uploads:
                return uploads[rid]
            return next((up for up in uploads.values() if up.accepts(size, digest)), None)

    # Transfer callbacks

    def _reject(self, link: RNS.Link, why: str, size: int) -> bool:
        self.log.info(
            "Refusing resource (%s) link_id=%s size=%s", why, self.hub._fmt_link_id(link), size
        )
        self.hub.stats_manager.inc("resources_rejected")
        return False

    def _on_advertised(self, resource: RNS.Resource) -> bool:
        link = resource.link
        size = _resource_size(resource)

        if size > self.hub.config.max_upload_bytes:
            return self._reject(link, "too large", size)
        if not self.hub.presence.username_for(link):
            return self._reject(link, "not logged in", size)

        upload = self._find_upload(link, size, None)
        if upload is None:
            return self._reject(link, "not announced", size)

        with self.hub._state_lock:
            self._claims[resource] = upload.rid
        self.log.info(
            "Receiving upload link_id=%s rid=%s size=%s",
            self.hub._fmt_link_id(link),
            upload.rid.hex(),
            size,
        )
        return True

    def _on_concluded(self, resource: RNS.Resource) -> None:
        with self.hub._state_lock:
            sent_cb = self._on_sent.pop(resource, None)
            rid = self._claims.pop(resource, None)

        if sent_cb is not None:
            if resource.status != RNS.Resource.COMPLETE:
                self.log.warning(
                    "Outbound transfer failed link_id=%s status=%s",
                    self.hub._fmt_link_id(resource.link),
                    resource.status,
                )
            try:
                sent_cb(resource)
            except Exception:
                self.log.exception("Outbound transfer callback failed")
            return

        link = resource.link
        if resource.status != RNS.Resource.COMPLETE:
            self.log.warning(
                "Upload failed link_id=%s status=%s", self.hub._fmt_link_id(link), resource.status
            )
            return

        try:
            payload = _resource_bytes(resource)
        except Exception as e:
            self.log.error(
                "Could not read upload link_id=%s: %s", self.hub._fmt_link_id(link), e
            )
            return

        self.receive_payload(link, payload, rid=rid)
        self.hub.message_helper.flush()

    def receive_payload(
        self, link: RNS.Link, payload: bytes, *, rid: bytes | None = None
    ) -> str | None:
        """Store a finished upload and answer its announcement. Returns the blob ref."""
        digest = hashlib.sha256(payload).digest()
        upload = self._find_upload(link, len(payload), digest, rid)
        if upload is None:
            self.log.warning(
                "Unannounced upload link_id=%s size=%s",
                self.hub._fmt_link_id(link),
                len(payload),
            )
            return None

        # A corrupt transfer leaves the upload pending so the client can resend.
        if upload.sha256 and upload.sha256 != digest:
            self.log.error(
                "Upload digest mismatch link_id=%s rid=%s", self.hub._fmt_link_id(link), upload.rid.hex()
            )
            return None

        with self.hub._state_lock:
            self._uploads.get(link, {}).pop(upload.rid, None)
        self.hub.stats_manager.inc("resources_received")
        self.hub.stats_manager.inc("resource_bytes_received", len(payload))

        try:
            ref = self.hub.blobs.save(payload, upload.name)
        except OSError as e:
            self.log.error("Could not store upload link_id=%s: %s", self.hub._fmt_link_id(link), e)
            self.hub.message_helper.emit_error(link, "upload failed")
            return None

        self.hub.message_helper.respond(link, upload.request_id, data={"ref": ref})
        return ref

    def send_via_resource(
        self,
        link: RNS.Link,
        *,
        kind: str,
        payload: bytes,
        on_concluded: Callable[[RNS.Resource], None] | None = None,
        encoding: str | None = None,
    ) -> bool:
        """Announce and start an outbound transfer. False if it could not start."""
        size = len(payload)
        if size > self.hub.config.max_resource_bytes:
            self.log.error(
                "Frame exceeds max_resource_bytes: %s > %s", size, self.hub.config.max_resource_bytes
            )
            return False

        body = {
            B_RES_ID: os.urandom(8),
            B_RES_KIND: kind,
            B_RES_SIZE: size,
            B_RES_SHA256: hashlib.sha256(payload).digest(),
        }
        if encoding:
            body[B_RES_ENCODING] = encoding

        try:
            announcement = encode(make_envelope(T_RESOURCE_ENVELOPE, body=body))
            RNS.Packet(link, announcement).send()
            self.hub.stats_manager.inc("bytes_out", len(announcement))
            # Registered under the lock so the conclusion cannot race ahead.
            with self.hub._state_lock:
                resource = RNS.Resource(
                    payload, link, advertise=True, auto_compress=False, callback=self._on_concluded
                )
                if on_concluded is not None:
                    self._on_sent[resource] = on_concluded
        except Exception as e:
            self.log.error(
                "Could not start outbound transfer link_id=%s: %s", self.hub._fmt_link_id(link), e
            )
            return False

        self.hub.stats_manager.inc("resources_sent")
        self.hub.stats_manager.inc("resource_bytes_sent", size)
        self.log.debug(
            "Sending %s transfer link_id=%s size=%s", kind, self.hub._fmt_link_id(link), size
        )
        return True
