"""
Row-level access rules.

Each predicate answers whether an identity may read or write a row. Stores
call ``require()`` before touching data, so a refusal never reaches the
database.
"""

from dataclasses import dataclass

from quickloans.errors import PermissionDenied


@dataclass(frozen=True)
class Identity:
    """The authenticated caller."""
    user_id: str
    is_admin: bool = False


def require(allowed: bool, message: str = "Permission denied") -> None:
    if not allowed:
        raise PermissionDenied(message)


# Profiles: owner read/write, admin override
def can_read_profile(identity: Identity, owner_id: str) -> bool:
    return identity.is_admin or identity.user_id == owner_id


def can_write_profile(identity: Identity, owner_id: str) -> bool:
    return identity.is_admin or identity.user_id == owner_id


# Loan applications: owner create/read, admin read-all and status update
def can_create_application(identity: Identity, owner_id: str) -> bool:
    return identity.user_id == owner_id


def can_read_application(identity: Identity, owner_id: str) -> bool:
    return identity.is_admin or identity.user_id == owner_id


def can_update_application_status(identity: Identity) -> bool:
    return identity.is_admin


# Conversations and their messages: owner or admin
def can_access_conversation(identity: Identity, owner_id: str) -> bool:
    return identity.is_admin or identity.user_id == owner_id


def can_create_conversation(identity: Identity, owner_id: str) -> bool:
    return identity.user_id == owner_id


def can_send_message(identity: Identity, conversation_owner_id: str, sender_id: str) -> bool:
    return sender_id == identity.user_id and can_access_conversation(identity, conversation_owner_id)


def can_list_all(identity: Identity) -> bool:
    return identity.is_admin
