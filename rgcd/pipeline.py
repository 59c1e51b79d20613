from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .constants import B_QUOTE_TEXT, B_QUOTE_USER, T_CHAT
from .envelope import make_envelope
from .errors import MutedError, NotOnlineError, StorageError, ValidationError
from .records import Message, QuotedMessage, Submission
from .util import normalize_username

if TYPE_CHECKING:
    from .service import HubService


@dataclass(frozen=True)
class SubmitResult:
    message: Message | None = None
    handled_by: str | None = None


class MessagePipeline:
    """
    Accepts chat messages from logged-in users.

    Order of checks: token, live session, mute flag, input shape. A message
    that passes is offered to plugins; if none claims it, a speech record is
    written (best effort), the message is stored and then broadcast.
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("rgcd.pipeline")

    def _clean_text(self, text: Any) -> str | None:
        if text is None:
            return None
        if not isinstance(text, str):
            raise ValidationError("text must be a string", field="text")
        if not text.strip():
            return None
        if len(text) > int(self.hub.config.max_message_chars):
            raise ValidationError(
                f"text longer than {self.hub.config.max_message_chars} characters",
                field="text",
            )
        return text

    def _clean_image(self, image_ref: Any) -> str | None:
        if image_ref is None or image_ref == "":
            return None
        if not isinstance(image_ref, str) or not self.hub.blobs.exists(image_ref):
            raise ValidationError("unknown image reference", field="image")
        return image_ref

    def _clean_quote(self, quoted: Any) -> QuotedMessage | None:
        if quoted is None or isinstance(quoted, QuotedMessage):
            return quoted
        if not isinstance(quoted, dict):
            raise ValidationError("quote must be a map", field="quote")
        user = quoted.get(B_QUOTE_USER)
        text = quoted.get(B_QUOTE_TEXT)
        if not isinstance(user, str) or not isinstance(text, str):
            raise ValidationError("quote needs author and text", field="quote")
        return QuotedMessage(username=user, text=text)

    def _clean_mentions(self, mentions: Any) -> tuple[str, ...]:
        if not mentions:
            return ()
        if not isinstance(mentions, (list, tuple)):
            raise ValidationError("mentions must be a list", field="mentions")
        if len(mentions) > int(self.hub.config.max_mentions):
            raise ValidationError("too many mentions", field="mentions")
        out: list[str] = []
        for m in mentions:
            name = normalize_username(m, self.hub.config.username_max_chars)
            if name is None:
                raise ValidationError(f"invalid mention {m!r}", field="mentions")
            if name not in out:
                out.append(name)
        return tuple(out)

    def submit(
        self,
        token,
        *,
        text=None,
        image_ref=None,
        quoted=None,
        mentions=None,
    ) -> SubmitResult:
        """
        Run one message through the pipeline.

        Raises InvalidCredentialError, NotOnlineError, MutedError,
        ValidationError or StorageError; a rejected message is never stored
        nor broadcast.
        """
        credential = self.hub.credentials.verify(token)
        username = credential.username

        with self.hub._state_lock:
            if not self.hub.presence.is_online(username):
                raise NotOnlineError()

            if self.hub.moderation.is_muted(username):
                self.hub.stats_manager.inc("muted_rejections")
                raise MutedError()

            clean_text = self._clean_text(text)
            clean_image = self._clean_image(image_ref)
            if clean_text is None and clean_image is None:
                raise ValidationError("message needs text or an image")
            clean_quote = self._clean_quote(quoted)
            clean_mentions = self._clean_mentions(mentions)

            submission = Submission(
                username=username,
                is_admin=credential.is_admin,
                text=clean_text,
                image_ref=clean_image,
                quoted=clean_quote,
                mentions=clean_mentions,
            )

            handled_by = self.hub.plugins.intercept(submission)
            if handled_by is not None:
                self.log.debug("Message from %s handled by plugin %s", username, handled_by)
                self.hub.stats_manager.inc("msgs_intercepted")
                return SubmitResult(handled_by=handled_by)

            try:
                self.hub.store.record_speech(username)
            except StorageError as e:
                self.log.warning("Failed to record speech for %s: %s", username, e.detail)

            msg = self.hub.store.insert_message(
                username,
                text=clean_text,
                image_ref=clean_image,
                quoted=clean_quote,
                mentions=clean_mentions,
            )
            self.hub.message_helper.broadcast(make_envelope(T_CHAT, body=msg.to_wire()))
            self.hub.stats_manager.inc("msgs_broadcast")

        return SubmitResult(message=msg)
