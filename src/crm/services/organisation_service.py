"""Organisation service — onboarding and organisation-scoped team data.

The caller's organisation is always read from their User row, not from
the token: a token issued before onboarding has no organisation_id, and
a stale claim must never widen what a caller can see.
"""

from dataclasses import dataclass
from typing import Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from crm.auth.dependencies import Identity
from crm.db.models import Invitation, Organisation, TeamMember, User
from crm.errors import (
    NoOrganisation,
    TeamMemberNotFound,
    Unauthenticated,
    Unauthorized,
    ValidationError,
)
from crm.schemas.auth import OrganisationCreate, TeamMemberCreate, validate_input
from crm.services.session_service import issue_session_token, load_user

logger = structlog.get_logger()


@dataclass
class OrganisationResult:
    organisation: Organisation
    token: str


async def require_member(db: AsyncSession, identity: Optional[Identity]) -> User:
    """Load the caller and insist they belong to an organisation."""
    if identity is None:
        raise Unauthenticated()
    user = await load_user(db, identity.user_id)
    if user is None:
        raise Unauthenticated()
    if user.organisation_id is None:
        raise NoOrganisation()
    return user


class OrganisationService:
    """Business logic for organisations and their team members."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ─── Organisations ──────────────────────────────────

    async def create_organisation(
        self, identity: Optional[Identity], organisation_name: str
    ) -> OrganisationResult:
        """Create an organisation and make the caller its first user.

        Returns a fresh session token because the caller's current one
        carries no organisation_id.
        """
        if identity is None:
            raise Unauthenticated()
        body = validate_input(OrganisationCreate, organisation_name=organisation_name)

        user = await load_user(self.db, identity.user_id)
        if user is None:
            raise Unauthenticated()
        if user.organisation_id is not None:
            raise ValidationError("User already belongs to an organisation")

        org = Organisation(organisation_name=body.organisation_name)
        self.db.add(org)
        try:
            await self.db.flush()
            result = await self.db.execute(
                update(User)
                .where(User.id == user.id, User.organisation_id.is_(None))
                .values(organisation_id=org.id)
            )
            if result.rowcount != 1:
                raise ValidationError("User already belongs to an organisation")
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        user = await load_user(self.db, user.id)
        logger.info("organisation.created", organisation_id=org.id, user_id=user.id)
        return OrganisationResult(organisation=org, token=issue_session_token(user))

    async def get_organisation(self, identity: Optional[Identity]) -> Optional[Organisation]:
        if identity is None:
            raise Unauthenticated()
        user = await load_user(self.db, identity.user_id)
        if user is None:
            raise Unauthenticated()
        return user.organisation

    # ─── Team members ───────────────────────────────────

    async def create_team_member(
        self, identity: Optional[Identity], name: str, email: str
    ) -> TeamMember:
        """Add a team member without sending an invitation."""
        user = await require_member(self.db, identity)
        body = validate_input(TeamMemberCreate, name=name, email=email)

        member = TeamMember(
            organisation_id=user.organisation_id,
            team_member_name=body.name,
            team_member_email_id=body.email,
            user_id=None,
        )
        self.db.add(member)
        await self.db.commit()
        logger.info(
            "team_member.created",
            team_member_id=member.id,
            organisation_id=member.organisation_id,
        )
        return member

    async def list_team_members(self, identity: Optional[Identity]) -> list[TeamMember]:
        user = await require_member(self.db, identity)
        result = await self.db.execute(
            select(TeamMember)
            .where(TeamMember.organisation_id == user.organisation_id)
            .order_by(TeamMember.team_member_name)
        )
        return list(result.scalars().all())

    async def get_team_member(
        self, identity: Optional[Identity], team_member_id: int
    ) -> TeamMember:
        user = await require_member(self.db, identity)
        member = await self.db.get(TeamMember, team_member_id, populate_existing=True)
        if member is None:
            raise TeamMemberNotFound()
        if member.organisation_id != user.organisation_id:
            raise Unauthorized()
        return member

    # ─── Invitations ────────────────────────────────────

    async def list_invitations(self, identity: Optional[Identity]) -> list[Invitation]:
        user = await require_member(self.db, identity)
        result = await self.db.execute(
            select(Invitation)
            .where(Invitation.organisation_id == user.organisation_id)
            .order_by(Invitation.id.desc())
        )
        return list(result.scalars().all())
