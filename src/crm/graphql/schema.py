"""GraphQL schema — queries and mutations.

Resolvers stay thin: pull the identity, session and mailer from the
typed Context, call a service, convert the result. Business failures
are CRMError subclasses whose ``extensions`` carry a stable code.
Anything else is logged and replaced by a generic INTERNAL_ERROR so
stack details never reach a client.

Fields without ``permission_classes`` are exactly the public ones the
auth middleware lets through anonymously.
"""

from typing import Optional

import strawberry
import structlog
from graphql import GraphQLError
from strawberry.extensions import MaskErrors
from strawberry.types import Info

from crm.api.health import health_payload
from crm.errors import CRMError, InternalError, ValidationError
from crm.graphql.context import Context
from crm.graphql.permissions import IsAuthenticated
from crm.graphql.types import (
    AuthResult,
    CreateOrganisationInput,
    CreateTeamMemberInput,
    HealthStatus,
    Invitation,
    InvitePayload,
    InviteTeamMemberInput,
    JoinOrganisationInput,
    LoginInput,
    Organisation,
    OrganisationPayload,
    RegisterInput,
    ResendInvitationInput,
    TeamMember,
    TokenInfo,
    User,
)
from crm.services.invitation_service import InvitationService
from crm.services.organisation_service import OrganisationService
from crm.services.session_service import SessionService

logger = structlog.get_logger()

AUTHENTICATED = [IsAuthenticated]


def _int_id(value: strawberry.ID, field: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {field}")


@strawberry.type
class Query:
    @strawberry.field
    def health(self) -> HealthStatus:
        return HealthStatus(**health_payload())

    @strawberry.field(permission_classes=AUTHENTICATED)
    async def me(self, info: Info[Context, None]) -> User:
        ctx = info.context
        user = await SessionService(ctx.db).me(ctx.identity)
        return User.from_model(user)

    @strawberry.field(permission_classes=AUTHENTICATED)
    async def organisation(self, info: Info[Context, None]) -> Optional[Organisation]:
        ctx = info.context
        org = await OrganisationService(ctx.db).get_organisation(ctx.identity)
        return Organisation.from_model(org) if org else None

    @strawberry.field(permission_classes=AUTHENTICATED)
    async def team_members(self, info: Info[Context, None]) -> list[TeamMember]:
        ctx = info.context
        members = await OrganisationService(ctx.db).list_team_members(ctx.identity)
        return [TeamMember.from_model(m) for m in members]

    @strawberry.field(permission_classes=AUTHENTICATED)
    async def team_member(self, info: Info[Context, None], id: strawberry.ID) -> TeamMember:
        ctx = info.context
        member = await OrganisationService(ctx.db).get_team_member(
            ctx.identity, _int_id(id, "id")
        )
        return TeamMember.from_model(member)

    @strawberry.field(permission_classes=AUTHENTICATED)
    async def invitations(self, info: Info[Context, None]) -> list[Invitation]:
        ctx = info.context
        rows = await OrganisationService(ctx.db).list_invitations(ctx.identity)
        return [Invitation.from_model(i) for i in rows]

    @strawberry.field
    async def verify_invitation_token(self, info: Info[Context, None], token: str) -> TokenInfo:
        ctx = info.context
        result = await InvitationService(ctx.db).verify_invitation_token(token)
        return TokenInfo(
            name=result.name,
            email=result.email,
            organization_name=result.organization_name,
            role=result.role,
        )


@strawberry.type
class Mutation:
    # ─── Session ────────────────────────────────────────

    @strawberry.mutation
    async def register(self, info: Info[Context, None], input: RegisterInput) -> AuthResult:
        result = await SessionService(info.context.db).register(
            email=input.email, password=input.password, role=input.role
        )
        return AuthResult.from_result(result)

    @strawberry.mutation
    async def login(self, info: Info[Context, None], input: LoginInput) -> AuthResult:
        result = await SessionService(info.context.db).login(
            email=input.email, password=input.password
        )
        return AuthResult.from_result(result)

    @strawberry.mutation(permission_classes=AUTHENTICATED)
    async def logout(self, info: Info[Context, None]) -> bool:
        ctx = info.context
        return await SessionService(ctx.db).logout(ctx.identity)

    # ─── Organisation ───────────────────────────────────

    @strawberry.mutation(permission_classes=AUTHENTICATED)
    async def create_organisation(
        self, info: Info[Context, None], input: CreateOrganisationInput
    ) -> OrganisationPayload:
        ctx = info.context
        result = await OrganisationService(ctx.db).create_organisation(
            ctx.identity, input.organisation_name
        )
        return OrganisationPayload(
            organisation=Organisation.from_model(result.organisation),
            token=result.token,
        )

    @strawberry.mutation(permission_classes=AUTHENTICATED)
    async def create_team_member(
        self, info: Info[Context, None], input: CreateTeamMemberInput
    ) -> TeamMember:
        ctx = info.context
        member = await OrganisationService(ctx.db).create_team_member(
            ctx.identity, name=input.team_member_name, email=input.team_member_email_id
        )
        return TeamMember.from_model(member)

    # ─── Invitations ────────────────────────────────────

    @strawberry.mutation(permission_classes=AUTHENTICATED)
    async def invite_team_member(
        self, info: Info[Context, None], input: InviteTeamMemberInput
    ) -> InvitePayload:
        ctx = info.context
        result = await InvitationService(ctx.db, ctx.mailer).invite_team_member(
            ctx.identity, name=input.name, email=input.email, role=input.role
        )
        return InvitePayload.from_result(result)

    @strawberry.mutation(permission_classes=AUTHENTICATED)
    async def resend_invitation(
        self, info: Info[Context, None], input: ResendInvitationInput
    ) -> InvitePayload:
        ctx = info.context
        result = await InvitationService(ctx.db, ctx.mailer).resend_invitation(
            ctx.identity, _int_id(input.team_member_id, "teamMemberId"), role=input.role
        )
        return InvitePayload.from_result(result)

    @strawberry.mutation
    async def join_organisation(
        self, info: Info[Context, None], input: JoinOrganisationInput
    ) -> AuthResult:
        result = await InvitationService(info.context.db).join_organisation(
            token=input.token, password=input.password
        )
        return AuthResult.from_result(result)


# ─── Error masking ──────────────────────────────────────


def _is_unexpected(error: GraphQLError) -> bool:
    original = error.original_error
    return original is not None and not isinstance(original, (CRMError, GraphQLError))


class MaskInternalErrors(MaskErrors):
    """Replace unexpected resolver exceptions with INTERNAL_ERROR."""

    def __init__(self):
        super().__init__(
            should_mask_error=_is_unexpected,
            error_message=InternalError.default_message,
        )

    def anonymise_error(self, error: GraphQLError) -> GraphQLError:
        logger.error(
            "graphql.unhandled_error",
            path=error.path,
            error=repr(error.original_error),
        )
        return GraphQLError(
            self.error_message,
            nodes=error.nodes,
            source=error.source,
            positions=error.positions,
            path=error.path,
            extensions={"code": InternalError.code},
        )


schema = strawberry.Schema(
    query=Query,
    mutation=Mutation,
    extensions=[MaskInternalErrors],
)
