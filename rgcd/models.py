"""Database models.

This module defines the chat tables using SQLAlchemy.
"""

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class UserModel(Base):
    """Registered identity."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String, unique=True, index=True, nullable=False)
    password_hash = Column(String, nullable=False)
    is_admin = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False)


class MessageModel(Base):
    """Chat message. Rows are never updated, only purged by retention."""

    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String, nullable=False, index=True)
    text = Column(Text, nullable=True)
    image_ref = Column(String, nullable=True)
    # Snapshot of the quoted message, copied at send time.
    quoted_username = Column(String, nullable=True)
    quoted_text = Column(Text, nullable=True)
    mentions = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, index=True)


class InvitationCodeModel(Base):
    """Invitation code database model."""

    __tablename__ = "invitation_codes"

    code = Column(String, primary_key=True, index=True)
    max_uses = Column(Integer, nullable=False, default=1)
    current_uses = Column(Integer, nullable=False, default=0)
    created_by = Column(String, nullable=True)  # username
    created_at = Column(DateTime, nullable=False)


class MutedUserModel(Base):
    """Presence of a row means the user is muted."""

    __tablename__ = "muted_users"

    username = Column(String, primary_key=True)
    muted_at = Column(DateTime, nullable=False)


class SpeechRecordModel(Base):
    __tablename__ = "speech_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String, nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, index=True)
