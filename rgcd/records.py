"""Plain value types handed out by the store and carried on the wire."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .constants import (
    B_MSG_ID,
    B_MSG_IMAGE,
    B_MSG_MENTIONS,
    B_MSG_QUOTE,
    B_MSG_TEXT,
    B_MSG_TS,
    B_MSG_USER,
    B_QUOTE_TEXT,
    B_QUOTE_USER,
)
from .util import to_ms


@dataclass(frozen=True)
class User:
    username: str
    password_hash: str
    is_admin: bool

    def public(self) -> dict[str, Any]:
        return {"username": self.username, "is_admin": self.is_admin}


@dataclass(frozen=True)
class InvitationCode:
    code: str
    max_uses: int
    current_uses: int

    @property
    def valid(self) -> bool:
        return self.current_uses < self.max_uses

    def public(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "max_uses": self.max_uses,
            "current_uses": self.current_uses,
        }


@dataclass(frozen=True)
class QuotedMessage:
    """Author and text of a quoted message, copied when the quote is made."""

    username: str
    text: str

    def to_wire(self) -> dict[int, Any]:
        return {B_QUOTE_USER: self.username, B_QUOTE_TEXT: self.text}


@dataclass(frozen=True)
class Message:
    id: int | None
    username: str
    text: str | None
    image_ref: str | None
    created_at: datetime
    quoted: QuotedMessage | None = None
    mentions: tuple[str, ...] = field(default_factory=tuple)

    def to_wire(self) -> dict[int, Any]:
        body: dict[int, Any] = {
            B_MSG_USER: self.username,
            B_MSG_TS: to_ms(self.created_at),
        }
        if self.id is not None:
            body[B_MSG_ID] = self.id
        if self.text is not None:
            body[B_MSG_TEXT] = self.text
        if self.image_ref is not None:
            body[B_MSG_IMAGE] = self.image_ref
        if self.quoted is not None:
            body[B_MSG_QUOTE] = self.quoted.to_wire()
        if self.mentions:
            body[B_MSG_MENTIONS] = list(self.mentions)
        return body


@dataclass(frozen=True)
class Submission:
    """A validated chat message offered to plugins before it is stored."""

    username: str
    is_admin: bool
    text: str | None
    image_ref: str | None = None
    quoted: QuotedMessage | None = None
    mentions: tuple[str, ...] = ()


@dataclass(frozen=True)
class LeaderboardEntry:
    username: str
    count: int

    def public(self) -> dict[str, Any]:
        return {"username": self.username, "count": self.count}
