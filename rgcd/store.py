"""Persistent chat store.

This module owns every durable record (identities, messages, invitation
codes, mute flags and speech records) on top of SQLAlchemy, plus the bcrypt
password helpers used to produce and check stored hashes.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Iterator

import bcrypt
import pytz
from sqlalchemy import create_engine, exists, func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, aliased, sessionmaker

from .constants import WINDOW_DAY, WINDOW_MONTH, WINDOW_WEEK
from .errors import (
    InvalidInvitationCodeError,
    InvitationCodeExistsError,
    StorageError,
    UsernameTakenError,
    ValidationError,
)
from .models import (
    Base,
    InvitationCodeModel,
    MessageModel,
    MutedUserModel,
    SpeechRecordModel,
    UserModel,
)
from .records import InvitationCode, LeaderboardEntry, Message, QuotedMessage, User
from .util import utcnow

logger = logging.getLogger("rgcd.store")

# bcrypt ignores everything past 72 bytes.
_BCRYPT_MAX_BYTES = 72


def _password_bytes(password: str) -> bytes:
    data = password.encode("utf-8")
    if len(data) > _BCRYPT_MAX_BYTES:
        data = data[:_BCRYPT_MAX_BYTES]
    return data


def window_start(window: str, now: datetime, tz_name: str = "UTC") -> datetime:
    """Start of the leaderboard window containing `now`, as naive UTC.

    Day, week and month boundaries are taken in `tz_name`; weeks start on
    Sunday.

    Args:
        window: One of "day", "week" or "month".
        now: Naive UTC reference time.
        tz_name: Olson time zone name.

    Returns:
        Naive UTC datetime of the window start.

    Raises:
        ValidationError: If the window name is unknown.
    """
    tz = pytz.timezone(tz_name)
    local = pytz.utc.localize(now).astimezone(tz)
    day = datetime(local.year, local.month, local.day)

    if window == WINDOW_DAY:
        start = day
    elif window == WINDOW_WEEK:
        start = day - timedelta(days=(local.weekday() + 1) % 7)
    elif window == WINDOW_MONTH:
        start = datetime(local.year, local.month, 1)
    else:
        raise ValidationError(f"unknown window {window!r}", field="window")

    return tz.localize(start).astimezone(pytz.utc).replace(tzinfo=None)


def _to_user(row: UserModel) -> User:
    return User(
        username=row.username,
        password_hash=row.password_hash,
        is_admin=bool(row.is_admin),
    )


def _to_code(row: InvitationCodeModel) -> InvitationCode:
    return InvitationCode(
        code=row.code,
        max_uses=int(row.max_uses),
        current_uses=int(row.current_uses),
    )


def _to_message(row: MessageModel) -> Message:
    quoted = None
    if row.quoted_username is not None:
        quoted = QuotedMessage(username=row.quoted_username, text=row.quoted_text or "")
    return Message(
        id=row.id,
        username=row.username,
        text=row.text,
        image_ref=row.image_ref,
        created_at=row.created_at,
        quoted=quoted,
        mentions=tuple(row.mentions or ()),
    )


class ChatStore:
    """Manages chat data persistence using SQLAlchemy."""

    def __init__(
        self,
        database_url: str,
        *,
        bcrypt_rounds: int = 12,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the store and create missing tables.

        Args:
            database_url: SQLAlchemy URL, e.g. ``sqlite:////var/lib/rgcd/chat.db``.
            bcrypt_rounds: Cost factor for new password hashes.
            clock: Naive-UTC time source; tests inject a fake one.
        """
        connect_args: dict[str, object] = {}
        if database_url.startswith("sqlite"):
            # Connections are shared across RNS callback and sweeper threads.
            connect_args = {"check_same_thread": False, "timeout": 30}

        self.engine = create_engine(database_url, connect_args=connect_args)
        self._sessions = sessionmaker(
            bind=self.engine, autoflush=False, expire_on_commit=False
        )
        self.bcrypt_rounds = int(bcrypt_rounds)
        self._clock = clock or utcnow

        # Serializes message inserts so ids and timestamps advance together.
        self._insert_lock = threading.Lock()
        self._last_message_ts: datetime | None = None

        try:
            Base.metadata.create_all(bind=self.engine)
        except SQLAlchemyError as e:
            raise StorageError(f"failed to initialize database: {e}") from e

        with self._session() as db:
            self._last_message_ts = db.query(func.max(MessageModel.created_at)).scalar()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self._sessions()
        try:
            yield db
            db.commit()
        except IntegrityError:
            db.rollback()
            raise
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Database error: %s", e)
            raise StorageError(str(e)) from e
        except BaseException:
            db.rollback()
            raise
        finally:
            db.close()

    def close(self) -> None:
        self.engine.dispose()

    def now(self) -> datetime:
        return self._clock()

    # Passwords

    def hash_password(self, password: str) -> str:
        salt = bcrypt.gensalt(rounds=self.bcrypt_rounds)
        return bcrypt.hashpw(_password_bytes(password), salt).decode("utf-8")

    def verify_password(self, password: str, password_hash: str) -> bool:
        try:
            return bcrypt.checkpw(_password_bytes(password), password_hash.encode("utf-8"))
        except ValueError as e:
            logger.error("Password verification error: %s", e)
            return False

    # Users

    def create_user(self, username: str, password_hash: str, is_admin: bool = False) -> User:
        """Create an identity.

        Raises:
            UsernameTakenError: If the username already exists.
        """
        try:
            with self._session() as db:
                row = UserModel(
                    username=username,
                    password_hash=password_hash,
                    is_admin=bool(is_admin),
                    created_at=self._clock(),
                )
                db.add(row)
                db.flush()
                return _to_user(row)
        except IntegrityError as e:
            raise UsernameTakenError(username) from e

    def register_user(self, username: str, password_hash: str, code: str) -> User:
        """Consume one use of `code` and create the user in one transaction.

        The conditional increment is a single UPDATE, so at most ``max_uses``
        registrations can ever succeed against a code. If the user insert
        fails the consumption is rolled back with it.

        Raises:
            InvalidInvitationCodeError: Unknown or exhausted code.
            UsernameTakenError: The username already exists.
        """
        try:
            with self._session() as db:
                consumed = self._consume_code(db, code)
                if not consumed:
                    raise InvalidInvitationCodeError(code)
                row = UserModel(
                    username=username,
                    password_hash=password_hash,
                    is_admin=False,
                    created_at=self._clock(),
                )
                db.add(row)
                db.flush()
                return _to_user(row)
        except IntegrityError as e:
            raise UsernameTakenError(username) from e

    def find_user(self, username: str) -> User | None:
        with self._session() as db:
            row = db.query(UserModel).filter(UserModel.username == username).first()
            return _to_user(row) if row is not None else None

    def update_password(self, username: str, password_hash: str) -> bool:
        with self._session() as db:
            n = (
                db.query(UserModel)
                .filter(UserModel.username == username)
                .update({UserModel.password_hash: password_hash}, synchronize_session=False)
            )
            return n > 0

    def set_admin_flag(self, username: str, is_admin: bool) -> bool:
        with self._session() as db:
            n = (
                db.query(UserModel)
                .filter(UserModel.username == username)
                .update({UserModel.is_admin: bool(is_admin)}, synchronize_session=False)
            )
            return n > 0

    def list_users(self) -> list[User]:
        with self._session() as db:
            rows = db.query(UserModel).order_by(UserModel.username).all()
            return [_to_user(r) for r in rows]

    def list_admin_usernames(self) -> list[str]:
        with self._session() as db:
            rows = (
                db.query(UserModel.username)
                .filter(UserModel.is_admin.is_(True))
                .order_by(UserModel.username)
                .all()
            )
            return [r[0] for r in rows]

    # Messages

    def insert_message(
        self,
        username: str,
        *,
        text: str | None = None,
        image_ref: str | None = None,
        quoted: QuotedMessage | None = None,
        mentions: tuple[str, ...] | list[str] = (),
    ) -> Message:
        with self._insert_lock:
            ts = self._clock()
            if self._last_message_ts is not None and ts < self._last_message_ts:
                ts = self._last_message_ts

            with self._session() as db:
                row = MessageModel(
                    username=username,
                    text=text,
                    image_ref=image_ref,
                    quoted_username=quoted.username if quoted else None,
                    quoted_text=quoted.text if quoted else None,
                    mentions=list(mentions) if mentions else None,
                    created_at=ts,
                )
                db.add(row)
                db.flush()
                msg = _to_message(row)

            self._last_message_ts = ts
            return msg

    def recent_messages(self, limit: int) -> list[Message]:
        """Most recent `limit` messages, oldest first."""
        if limit <= 0:
            return []
        with self._session() as db:
            rows = (
                db.query(MessageModel)
                .order_by(MessageModel.id.desc())
                .limit(int(limit))
                .all()
            )
            return [_to_message(r) for r in reversed(rows)]

    def count_messages(self) -> int:
        with self._session() as db:
            return int(db.query(func.count(MessageModel.id)).scalar() or 0)

    # Speech records and leaderboard

    def record_speech(self, username: str) -> None:
        with self._session() as db:
            db.add(SpeechRecordModel(username=username, created_at=self._clock()))

    def leaderboard(
        self, window: str, *, tz_name: str = "UTC", limit: int = 10
    ) -> list[LeaderboardEntry]:
        start = window_start(window, self._clock(), tz_name)
        count = func.count(SpeechRecordModel.id)
        with self._session() as db:
            rows = (
                db.query(SpeechRecordModel.username, count)
                .filter(SpeechRecordModel.created_at >= start)
                .group_by(SpeechRecordModel.username)
                .order_by(count.desc(), SpeechRecordModel.username)
                .limit(int(limit))
                .all()
            )
            return [LeaderboardEntry(username=u, count=int(n)) for u, n in rows]

    # Invitation codes

    def create_invitation_code(
        self, code: str, max_uses: int, *, created_by: str | None = None
    ) -> InvitationCode:
        try:
            with self._session() as db:
                row = InvitationCodeModel(
                    code=code,
                    max_uses=int(max_uses),
                    current_uses=0,
                    created_by=created_by,
                    created_at=self._clock(),
                )
                db.add(row)
                db.flush()
                return _to_code(row)
        except IntegrityError as e:
            raise InvitationCodeExistsError(code) from e

    def find_invitation_code(self, code: str) -> InvitationCode | None:
        with self._session() as db:
            row = db.get(InvitationCodeModel, code)
            return _to_code(row) if row is not None else None

    def _consume_code(self, db: Session, code: str) -> bool:
        stmt = (
            update(InvitationCodeModel)
            .where(InvitationCodeModel.code == code)
            .where(InvitationCodeModel.current_uses < InvitationCodeModel.max_uses)
            .values(current_uses=InvitationCodeModel.current_uses + 1)
            .execution_options(synchronize_session=False)
        )
        return db.execute(stmt).rowcount == 1

    def try_consume_invitation_code(self, code: str) -> bool:
        with self._session() as db:
            return self._consume_code(db, code)

    def list_invitation_codes(self) -> list[InvitationCode]:
        with self._session() as db:
            rows = db.query(InvitationCodeModel).order_by(InvitationCodeModel.created_at).all()
            return [_to_code(r) for r in rows]

    # Mute flags

    def set_muted(self, username: str, muted: bool) -> bool:
        """Set or clear the mute flag. Returns False if the user does not exist."""
        with self._session() as db:
            found = db.query(UserModel.id).filter(UserModel.username == username).first()
            if found is None:
                return False
            row = db.get(MutedUserModel, username)
            if muted and row is None:
                db.add(MutedUserModel(username=username, muted_at=self._clock()))
            elif not muted and row is not None:
                db.delete(row)
            return True

    def is_muted(self, username: str) -> bool:
        with self._session() as db:
            return db.get(MutedUserModel, username) is not None

    # Retention

    def old_image_refs(self, cutoff: datetime) -> list[str]:
        """Refs on messages older than cutoff that no newer message shares."""
        kept = aliased(MessageModel)
        with self._session() as db:
            still_used = exists().where(
                kept.image_ref == MessageModel.image_ref, kept.created_at >= cutoff
            )
            rows = (
                db.query(MessageModel.image_ref)
                .filter(MessageModel.image_ref.isnot(None))
                .filter(MessageModel.created_at < cutoff)
                .filter(~still_used)
                .distinct()
                .all()
            )
            return [r[0] for r in rows]

    def purge_old_image_messages(self, cutoff: datetime) -> int:
        with self._session() as db:
            return (
                db.query(MessageModel)
                .filter(MessageModel.image_ref.isnot(None))
                .filter(MessageModel.created_at < cutoff)
                .delete(synchronize_session=False)
            )
