"""GraphQL object types.

Plain strawberry types built from ORM rows with ``from_model``. Nothing
here lazy-loads: converters only touch columns and relationships the
services have already loaded. Invitation tokens are never exposed.
"""

from datetime import datetime
from typing import Optional

import strawberry

from crm.db import models


@strawberry.type
class Organisation:
    id: strawberry.ID
    organisation_name: str

    @classmethod
    def from_model(cls, org: models.Organisation) -> "Organisation":
        return cls(id=strawberry.ID(str(org.id)), organisation_name=org.organisation_name)


@strawberry.type
class TeamMember:
    id: strawberry.ID
    organisation_id: strawberry.ID
    team_member_name: str
    team_member_email_id: str
    user_id: Optional[strawberry.ID]

    @strawberry.field
    def joined(self) -> bool:
        return self.user_id is not None

    @classmethod
    def from_model(cls, member: models.TeamMember) -> "TeamMember":
        return cls(
            id=strawberry.ID(str(member.id)),
            organisation_id=strawberry.ID(str(member.organisation_id)),
            team_member_name=member.team_member_name,
            team_member_email_id=member.team_member_email_id,
            user_id=strawberry.ID(str(member.user_id)) if member.user_id else None,
        )


@strawberry.type
class User:
    id: strawberry.ID
    email: str
    role: str
    organisation_id: Optional[strawberry.ID]
    organisation: Optional[Organisation]
    team_member: Optional[TeamMember]

    @classmethod
    def from_model(cls, user: models.User) -> "User":
        """Requires organisation and team_member to be loaded."""
        return cls(
            id=strawberry.ID(str(user.id)),
            email=user.email,
            role=user.role,
            organisation_id=(
                strawberry.ID(str(user.organisation_id)) if user.organisation_id else None
            ),
            organisation=(
                Organisation.from_model(user.organisation) if user.organisation else None
            ),
            team_member=(
                TeamMember.from_model(user.team_member) if user.team_member else None
            ),
        )


@strawberry.type
class Invitation:
    id: strawberry.ID
    email: str
    team_member_id: strawberry.ID
    organisation_id: strawberry.ID
    role: str
    status: str
    expires_at: datetime
    accepted_at: Optional[datetime]

    @classmethod
    def from_model(cls, invitation: models.Invitation) -> "Invitation":
        return cls(
            id=strawberry.ID(str(invitation.id)),
            email=invitation.email,
            team_member_id=strawberry.ID(str(invitation.team_member_id)),
            organisation_id=strawberry.ID(str(invitation.organisation_id)),
            role=invitation.role,
            status=invitation.status,
            expires_at=invitation.expires_at,
            accepted_at=invitation.accepted_at,
        )


@strawberry.type
class AuthResult:
    token: str
    user: User
    setup_required: Optional[bool] = None
    next_step: Optional[str] = None

    @classmethod
    def from_result(cls, result) -> "AuthResult":
        return cls(
            token=result.token,
            user=User.from_model(result.user),
            setup_required=result.setup_required,
            next_step=result.next_step,
        )


@strawberry.type
class TokenInfo:
    name: str
    email: str
    organization_name: str
    role: str


@strawberry.type
class HealthStatus:
    status: str
    timestamp: str
    env: str


@strawberry.type
class OrganisationPayload:
    organisation: Organisation
    token: str


@strawberry.type
class InvitePayload:
    team_member: TeamMember
    invitation: Invitation
    email_sent: bool
    warning: Optional[str] = None

    @classmethod
    def from_result(cls, result) -> "InvitePayload":
        return cls(
            team_member=TeamMember.from_model(result.team_member),
            invitation=Invitation.from_model(result.invitation),
            email_sent=result.email_sent,
            warning=result.warning,
        )


# ─── Inputs ─────────────────────────────────────────────


@strawberry.input
class RegisterInput:
    email: str
    password: str
    role: Optional[str] = None


@strawberry.input
class LoginInput:
    email: str
    password: str


@strawberry.input
class JoinOrganisationInput:
    token: str
    password: str


@strawberry.input
class CreateOrganisationInput:
    organisation_name: str


@strawberry.input
class CreateTeamMemberInput:
    team_member_name: str
    team_member_email_id: str


@strawberry.input
class InviteTeamMemberInput:
    name: str
    email: str
    role: Optional[str] = None


@strawberry.input
class ResendInvitationInput:
    team_member_id: strawberry.ID
    role: Optional[str] = None
