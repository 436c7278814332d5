"""
Store operations for profiles, loan applications and chat.

Every function takes an open session and, where rows are access controlled,
the acting identity. Failures of the underlying store are rolled back and
raised as StoreError; policy refusals raise PermissionDenied before any
write happens.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from quickloans import policies
from quickloans.errors import (
    EmptyMessage,
    InvalidStatusTransition,
    NotFound,
    PermissionDenied,
    ProfileIncomplete,
    StoreError,
    translate_store_error,
)
from quickloans.metrics import record_chat_message, record_loan_status_change, record_store_error
from quickloans.models import (
    CONVERSATION_ACTIVE,
    ChatMessage,
    Conversation,
    LoanApplication,
    Profile,
    TypingStatus,
)
from quickloans.policies import Identity
from quickloans.realtime import INSERT, UPDATE
from quickloans.storage import record_change

logger = logging.getLogger(__name__)

PROFILE_FIELDS = ("full_name", "address", "phone", "date_of_birth", "employment_status", "monthly_income")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _fail(db: Session, operation: str, exc: SQLAlchemyError) -> StoreError:
    db.rollback()
    error = translate_store_error(operation, exc)
    record_store_error(operation)
    logger.error(f"Store operation {operation} failed: {error.message}")
    return error


@contextmanager
def _store_call(db: Session, operation: str) -> Iterator[None]:
    """Roll back and translate store failures raised inside the block."""
    try:
        yield
    except SQLAlchemyError as e:
        raise _fail(db, operation, e) from e


def _upsert(db: Session, model, values: Dict[str, Any], conflict_cols: Iterable[str],
            update_cols: Iterable[str]) -> None:
    """INSERT ... ON CONFLICT (conflict_cols) DO UPDATE SET update_cols."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(model)
    elif dialect == "sqlite":
        stmt = sqlite.insert(model)
    else:
        raise StoreError("upsert", f"Upsert is not supported on {dialect}")

    stmt = stmt.values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=list(conflict_cols),
        set_={col: stmt.excluded[col] for col in update_cols},
    )
    db.execute(stmt)


# =============================================================================
# Profile Store
# =============================================================================

def has_name(profile: Optional[Profile]) -> bool:
    return profile is not None and bool((profile.full_name or "").strip())


def is_complete_for_loans(profile: Optional[Profile]) -> bool:
    return has_name(profile) and bool(profile.phone) and bool(profile.address)


def find_profile(db: Session, user_id: str) -> Optional[Profile]:
    with _store_call(db, "get_profile"):
        return db.scalars(select(Profile).where(Profile.user_id == user_id)).first()


def resolve_identity(db: Session, user_id: str) -> Tuple[Identity, Optional[Profile]]:
    """Build the caller's identity from their profile's admin flag."""
    profile = find_profile(db, user_id)
    identity = Identity(user_id=user_id, is_admin=bool(profile and profile.is_admin))
    return identity, profile


def get_profile(db: Session, actor: Identity, user_id: str) -> Optional[Profile]:
    policies.require(policies.can_read_profile(actor, user_id), "You can only view your own profile")
    return find_profile(db, user_id)


def upsert_profile(db: Session, actor: Identity, user_id: str, data: Dict[str, Any]) -> Profile:
    """
    Insert or update the profile of user_id, keyed on user_id.

    Args:
        db: Database session
        actor: Identity performing the write
        user_id: Owner of the profile
        data: Validated profile fields

    Returns:
        The stored profile
    """
    policies.require(policies.can_write_profile(actor, user_id), "You can only update your own profile")

    fields = {key: data[key] for key in PROFILE_FIELDS if key in data}
    values = dict(fields, user_id=user_id, updated_at=_utcnow())

    logger.info(f"Upserting profile for user {user_id}")
    with _store_call(db, "upsert_profile"):
        _upsert(db, Profile, values, ["user_id"], list(fields) + ["updated_at"])
        db.commit()

    profile = find_profile(db, user_id)
    if profile is None:
        raise StoreError("upsert_profile", "Profile was not stored")
    return profile


def list_profiles(db: Session, actor: Identity) -> List[Profile]:
    policies.require(policies.can_list_all(actor), "Only administrators can list users")
    with _store_call(db, "list_profiles"):
        return list(db.scalars(select(Profile).order_by(Profile.created_at.desc())).all())


# =============================================================================
# Loan Application Store
# =============================================================================

def create_application(db: Session, actor: Identity, data: Dict[str, Any]) -> LoanApplication:
    """Create a loan application owned by actor. Status is always pending."""
    policies.require(policies.can_create_application(actor, actor.user_id))

    profile = find_profile(db, actor.user_id)
    if not is_complete_for_loans(profile):
        raise ProfileIncomplete("Please complete your profile information before applying for a loan")

    application = LoanApplication(
        user_id=actor.user_id,
        amount=data["amount"],
        purpose=data["purpose"],
        term_months=data["term_months"],
        monthly_income=data["monthly_income"],
        employment_status=data["employment_status"],
        status="pending",
    )

    logger.info(f"Creating loan application for user {actor.user_id}: amount={data['amount']}")
    with _store_call(db, "create_application"):
        db.add(application)
        db.commit()
        db.refresh(application)
    return application


def list_applications(db: Session, actor: Identity,
                      owner_id: Optional[str] = None) -> List[Tuple[LoanApplication, Optional[Profile]]]:
    """
    List loan applications with the applicant's profile, newest first.

    Owners see their own applications; admins see all, optionally narrowed
    to one owner.
    """
    if owner_id is not None:
        policies.require(policies.can_read_application(actor, owner_id), "You can only view your own applications")
    elif not actor.is_admin:
        owner_id = actor.user_id

    stmt = (
        select(LoanApplication, Profile)
        .outerjoin(Profile, Profile.user_id == LoanApplication.user_id)
        .order_by(LoanApplication.created_at.desc())
    )
    if owner_id is not None:
        stmt = stmt.where(LoanApplication.user_id == owner_id)

    with _store_call(db, "list_applications"):
        rows = db.execute(stmt).all()
    return [(row[0], row[1]) for row in rows]


def update_application_status(db: Session, actor: Identity, application_id: str, status: str) -> LoanApplication:
    """Approve or reject a pending application. Admin only."""
    policies.require(
        policies.can_update_application_status(actor),
        "Only administrators can change application status",
    )
    if status not in ("approved", "rejected"):
        raise InvalidStatusTransition(f"Cannot set application status to {status}")

    with _store_call(db, "update_application_status"):
        application = db.get(LoanApplication, application_id)
        if application is None:
            raise NotFound("Application not found")
        if application.status != "pending":
            raise InvalidStatusTransition(f"Application is already {application.status}")

        application.status = status
        db.commit()
        db.refresh(application)

    record_loan_status_change(status)
    logger.info(f"Application {application_id} marked {status} by {actor.user_id}")
    return application


# =============================================================================
# Conversation Store
# =============================================================================

def find_active_conversation(db: Session, user_id: str) -> Optional[Conversation]:
    with _store_call(db, "find_conversation"):
        return db.scalars(
            select(Conversation).where(
                Conversation.user_id == user_id,
                Conversation.status == CONVERSATION_ACTIVE,
            )
        ).first()


def get_or_create_conversation(db: Session, actor: Identity) -> Tuple[Conversation, bool]:
    """
    Look up the actor's active conversation, creating it if none exists.

    Returns:
        Tuple of (conversation, created)
    """
    existing = find_active_conversation(db, actor.user_id)
    if existing is not None:
        return existing, False

    policies.require(policies.can_create_conversation(actor, actor.user_id))
    conversation = Conversation(user_id=actor.user_id, status=CONVERSATION_ACTIVE)
    db.add(conversation)
    try:
        db.commit()
    except IntegrityError:
        # Another session created it first
        db.rollback()
        existing = find_active_conversation(db, actor.user_id)
        if existing is not None:
            logger.info(f"Reusing conversation created concurrently for user {actor.user_id}")
            return existing, False
        raise StoreError("create_conversation", "Could not create conversation")
    except SQLAlchemyError as e:
        raise _fail(db, "create_conversation", e) from e

    db.refresh(conversation)
    logger.info(f"Created conversation {conversation.id} for user {actor.user_id}")
    return conversation, True


def get_conversation(db: Session, actor: Identity, conversation_id: str) -> Conversation:
    with _store_call(db, "get_conversation"):
        conversation = db.get(Conversation, conversation_id)
    if conversation is None:
        raise NotFound("Conversation not found")
    policies.require(
        policies.can_access_conversation(actor, conversation.user_id),
        "You do not have access to this conversation",
    )
    return conversation


def list_active_conversations(db: Session, actor: Identity) -> List[Conversation]:
    policies.require(policies.can_list_all(actor), "Only support staff can list conversations")
    with _store_call(db, "list_conversations"):
        return list(db.scalars(
            select(Conversation)
            .where(Conversation.status == CONVERSATION_ACTIVE)
            .order_by(Conversation.updated_at.desc())
        ).all())


# =============================================================================
# Message Store
# =============================================================================

def list_messages(db: Session, actor: Identity, conversation_id: str) -> List[ChatMessage]:
    """Messages of a conversation by creation time, ties in insertion order."""
    get_conversation(db, actor, conversation_id)
    with _store_call(db, "list_messages"):
        return list(db.scalars(
            select(ChatMessage)
            .where(ChatMessage.conversation_id == conversation_id)
            .order_by(ChatMessage.created_at.asc(), ChatMessage.id.asc())
        ).all())


def create_message(
    db: Session,
    actor: Identity,
    conversation_id: str,
    body: str,
    is_support: bool,
    attachment_url: Optional[str] = None,
    attachment_type: Optional[str] = None,
) -> ChatMessage:
    """
    Append a message to a conversation and touch the conversation timestamp.

    Args:
        db: Database session
        actor: Sender
        conversation_id: Target conversation
        body: Message text, may be empty when an attachment is present
        is_support: Whether the sender acts as support staff
        attachment_url: Public URL of an uploaded attachment
        attachment_type: Content type of the attachment
    """
    if not body.strip() and not attachment_url:
        raise EmptyMessage()
    if is_support and not actor.is_admin:
        raise PermissionDenied("Only support staff can send support messages")

    conversation = get_conversation(db, actor, conversation_id)
    policies.require(policies.can_send_message(actor, conversation.user_id, actor.user_id))

    message = ChatMessage(
        conversation_id=conversation_id,
        user_id=actor.user_id,
        message=body,
        is_support=is_support,
        attachment_url=attachment_url or None,
        attachment_type=attachment_type or None,
    )

    with _store_call(db, "create_message"):
        db.add(message)
        conversation.updated_at = _utcnow()
        db.flush()
        record_change(db, ChatMessage.__tablename__, INSERT, message)
        db.commit()
        db.refresh(message)

    record_chat_message(is_support)
    logger.info(f"Message {message.id} stored in conversation {conversation_id}")
    return message


def mark_message_read(db: Session, actor: Identity, message_id: int) -> ChatMessage:
    """
    Set read_at on a message if it is still unset.

    Only applies to messages the actor did not send; repeated calls leave
    the first read timestamp in place.
    """
    with _store_call(db, "mark_message_read"):
        message = db.get(ChatMessage, message_id)
    if message is None:
        raise NotFound("Message not found")
    get_conversation(db, actor, message.conversation_id)

    if message.user_id == actor.user_id:
        return message

    with _store_call(db, "mark_message_read"):
        result = db.execute(
            update(ChatMessage)
            .where(ChatMessage.id == message_id, ChatMessage.read_at.is_(None))
            .values(read_at=_utcnow())
        )
        db.refresh(message)
        if result.rowcount:
            record_change(db, ChatMessage.__tablename__, UPDATE, message)
        db.commit()
        db.refresh(message)

    return message


# =============================================================================
# Typing-Status Store
# =============================================================================

def upsert_typing_status(db: Session, actor: Identity, conversation_id: str, is_typing: bool) -> TypingStatus:
    """Upsert the actor's typing flag, keyed on (conversation, participant)."""
    get_conversation(db, actor, conversation_id)

    key = (TypingStatus.conversation_id == conversation_id, TypingStatus.user_id == actor.user_id)
    values = {
        "conversation_id": conversation_id,
        "user_id": actor.user_id,
        "is_typing": is_typing,
        "last_updated": _utcnow(),
    }

    with _store_call(db, "upsert_typing_status"):
        existed = db.execute(select(TypingStatus.id).where(*key)).first() is not None
        _upsert(db, TypingStatus, values, ["conversation_id", "user_id"], ["is_typing", "last_updated"])
        row = db.scalars(
            select(TypingStatus).where(*key).execution_options(populate_existing=True)
        ).one()
        record_change(db, TypingStatus.__tablename__, UPDATE if existed else INSERT, row)
        db.commit()
        db.refresh(row)

    logger.debug(f"Typing status for {actor.user_id} in {conversation_id}: {is_typing}")
    return row


def list_typing_statuses(db: Session, actor: Identity, conversation_id: str) -> List[TypingStatus]:
    get_conversation(db, actor, conversation_id)
    with _store_call(db, "list_typing_statuses"):
        return list(db.scalars(
            select(TypingStatus).where(TypingStatus.conversation_id == conversation_id)
        ).all())


def sweep_stale_typing(db: Session, stale_after: timedelta, now: Optional[datetime] = None) -> int:
    """
    Force typing flags not refreshed within stale_after to false.

    Returns:
        Number of flags cleared
    """
    cutoff = (now or _utcnow()) - stale_after
    with _store_call(db, "sweep_stale_typing"):
        rows = list(db.scalars(
            select(TypingStatus).where(TypingStatus.is_typing.is_(True), TypingStatus.last_updated < cutoff)
        ).all())
        for row in rows:
            row.is_typing = False
        db.flush()
        for row in rows:
            record_change(db, TypingStatus.__tablename__, UPDATE, row)
        db.commit()

    if rows:
        logger.info(f"Cleared {len(rows)} stale typing flags")
    return len(rows)
