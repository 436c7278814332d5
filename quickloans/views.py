"""
Top-level screen selection.

The caller's view is picked once, right after identity resolution, as one
of two variants. Code that renders a view matches on the variant instead of
re-checking the admin flag.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Union

from sqlalchemy.orm import Session

from quickloans import repository
from quickloans.models import Conversation, LoanApplication, Profile
from quickloans.policies import Identity

ApplicationRow = Tuple[LoanApplication, Optional[Profile]]


@dataclass(frozen=True)
class EndUserView:
    identity: Identity
    profile: Optional[Profile]
    applications: List[ApplicationRow] = field(default_factory=list)

    @property
    def profile_complete(self) -> bool:
        return repository.is_complete_for_loans(self.profile)


@dataclass(frozen=True)
class AdminView:
    identity: Identity
    profile: Profile
    applications: List[ApplicationRow] = field(default_factory=list)
    users: List[Profile] = field(default_factory=list)
    conversations: List[Conversation] = field(default_factory=list)


DashboardView = Union[EndUserView, AdminView]


def resolve_view(db: Session, identity: Identity, profile: Optional[Profile]) -> DashboardView:
    """Load the data of whichever view the identity gets."""
    if identity.is_admin and profile is not None:
        return AdminView(
            identity=identity,
            profile=profile,
            applications=repository.list_applications(db, identity),
            users=repository.list_profiles(db, identity),
            conversations=repository.list_active_conversations(db, identity),
        )
    return EndUserView(
        identity=identity,
        profile=profile,
        applications=repository.list_applications(db, identity),
    )
