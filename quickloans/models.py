"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)

from quickloans.storage import Base

EMPLOYMENT_STATUSES = ("employed", "self-employed", "unemployed", "retired")
LOAN_STATUSES = ("pending", "approved", "rejected")
LOAN_TERMS = (12, 24, 36, 48, 60)
CONVERSATION_ACTIVE = "active"


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _in(column: str, values) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


class Profile(Base):
    """
    One profile per user.

    Table: profiles
    Unique: user_id (upserts use it as the conflict key)
    """
    __tablename__ = "profiles"
    __table_args__ = (
        CheckConstraint("length(full_name) >= 2", name="full_name_length"),
        CheckConstraint("length(phone) >= 10", name="phone_length"),
        CheckConstraint("length(address) >= 5", name="address_length"),
        CheckConstraint(_in("employment_status", EMPLOYMENT_STATUSES), name="valid_employment_status"),
        CheckConstraint("monthly_income >= 0", name="positive_income"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(64), nullable=False, unique=True, index=True)
    full_name = Column(Text, nullable=False)
    address = Column(Text, nullable=False)
    phone = Column(Text, nullable=False)
    date_of_birth = Column(Date, nullable=False)
    employment_status = Column(String(32), nullable=False)
    monthly_income = Column(Numeric(14, 2, asdecimal=False), nullable=False)
    is_admin = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


class LoanApplication(Base):
    """
    Loan request submitted by a user. Only the status changes after creation.

    Table: loan_applications
    """
    __tablename__ = "loan_applications"
    __table_args__ = (
        CheckConstraint(_in("status", LOAN_STATUSES), name="valid_loan_status"),
        CheckConstraint("amount > 0", name="positive_amount"),
        CheckConstraint("term_months > 0", name="positive_term"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(64), nullable=False, index=True)
    amount = Column(Numeric(14, 2, asdecimal=False), nullable=False)
    purpose = Column(Text, nullable=False)
    term_months = Column(Integer, nullable=False)
    monthly_income = Column(Numeric(14, 2, asdecimal=False), nullable=False)
    employment_status = Column(String(32), nullable=False)
    status = Column(String(16), nullable=False, default="pending", index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


class Conversation(Base):
    """
    Support conversation of one end user.

    Table: chat_conversations
    At most one active conversation per user (partial unique index).
    """
    __tablename__ = "chat_conversations"
    __table_args__ = (
        Index(
            "uq_active_conversation_per_user",
            "user_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(64), nullable=False, index=True)
    status = Column(String(16), nullable=False, default=CONVERSATION_ACTIVE)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class ChatMessage(Base):
    """
    Message within a conversation. Immutable except read_at, which is set once.

    Table: chat_messages
    Integer primary key keeps insertion order for timestamp ties.
    """
    __tablename__ = "chat_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(
        String(36), ForeignKey("chat_conversations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id = Column(String(64), nullable=False)
    message = Column(Text, nullable=False, default="")
    is_support = Column(Boolean, nullable=False, default=False)
    attachment_url = Column(Text, nullable=True)
    attachment_type = Column(String(128), nullable=True)
    read_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)


class TypingStatus(Base):
    """
    Typing flag of one participant in one conversation.

    Table: chat_typing_status
    Unique: (conversation_id, user_id)
    """
    __tablename__ = "chat_typing_status"
    __table_args__ = (
        UniqueConstraint("conversation_id", "user_id", name="uq_typing_participant"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    conversation_id = Column(
        String(36), ForeignKey("chat_conversations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id = Column(String(64), nullable=False)
    is_typing = Column(Boolean, nullable=False, default=False)
    last_updated = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
