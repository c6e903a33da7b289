"""Invitation service — invite, verify and join.

State machine per Invitation row:

    pending ──join──▶ accepted        (one-way, stamps accepted_at)
    pending ──resend─▶ expired        (superseded by a fresh pending row)
    pending + expires_at <= now       (treated as not found, never updated)

join_organisation is the only multi-step mutation. It runs in one
transaction and claims the invitation with a conditional UPDATE before
touching anything else, so two concurrent joins serialize on the
invitation row: in PostgreSQL the second UPDATE waits for the first
transaction, re-reads status='accepted', matches zero rows, and aborts.
The TeamMember link is guarded the same way (user_id IS NULL).
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional
from urllib.parse import quote

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

from crm.auth.dependencies import Identity
from crm.auth.jwt import INVITATION, TokenError, create_invitation_token, verify_token
from crm.auth.password import PasswordForm, stored_password
from crm.config import settings
from crm.db.models import (
    INVITATION_ACCEPTED,
    INVITATION_EXPIRED,
    INVITATION_PENDING,
    Invitation,
    Organisation,
    TeamMember,
    User,
    utcnow,
)
from crm.errors import (
    AlreadyAccepted,
    AlreadyTeamMember,
    EmailBelongsToDifferentOrganisation,
    InvalidToken,
    InvitationNotFoundOrExpired,
    TeamMemberNotFound,
    Unauthorized,
)
from crm.schemas.auth import JoinRequest, TeamMemberCreate, validate_input
from crm.services.email import EmailDeliveryError, EmailService
from crm.services.organisation_service import require_member
from crm.services.session_service import (
    DEFAULT_ROLE,
    AuthResult,
    find_user_by_email,
    issue_session_token,
    load_user,
)

logger = structlog.get_logger()


@dataclass
class InviteResult:
    team_member: TeamMember
    invitation: Invitation
    email_sent: bool
    warning: Optional[str] = None


@dataclass
class TokenInfo:
    name: str
    email: str
    organization_name: str
    role: str


@dataclass
class InvitationClaims:
    team_member_id: int
    organisation_id: int
    email: str
    role: str


def parse_invitation_token(token: str) -> InvitationClaims:
    """Verify an invitation token; the type claim is checked first."""
    try:
        claims = verify_token(token, expected_type=INVITATION)
        return InvitationClaims(
            team_member_id=int(claims["team_member_id"]),
            organisation_id=int(claims["organisation_id"]),
            email=str(claims["email"]),
            role=str(claims["role"]),
        )
    except TokenError as e:
        logger.info("invitation.token_rejected", reason=type(e).__name__)
        raise InvalidToken()
    except (KeyError, TypeError, ValueError):
        logger.info("invitation.token_rejected", reason="bad_claims")
        raise InvalidToken()


def accept_url(token: str) -> str:
    return f"{settings.frontend_url.rstrip('/')}/join?token={quote(token)}"


def _pending_clause(team_member_id: int, token: str):
    """Claimable invitation rows for this exact token.

    Matching on the token means a resend retires every earlier link.
    """
    return (
        Invitation.team_member_id == team_member_id,
        Invitation.token == token,
        Invitation.status == INVITATION_PENDING,
        Invitation.expires_at > utcnow(),
    )


class InvitationService:
    """Business logic for the team invitation lifecycle."""

    def __init__(self, db: AsyncSession, mailer: Optional[EmailService] = None):
        self.db = db
        self.mailer = mailer

    # ─── Invite ─────────────────────────────────────────

    async def invite_team_member(
        self,
        identity: Optional[Identity],
        name: str,
        email: str,
        role: Optional[str] = None,
    ) -> InviteResult:
        """Create a TeamMember plus a pending Invitation, then email it.

        The rows are committed before the email goes out; a delivery
        failure is reported in the result and never undoes them.
        """
        inviter = await require_member(self.db, identity)
        body = validate_input(TeamMemberCreate, name=name, email=email, role=role)
        await self._ensure_not_linked_elsewhere(body.email, inviter.organisation_id)

        member = TeamMember(
            organisation_id=inviter.organisation_id,
            team_member_name=body.name,
            team_member_email_id=body.email,
            user_id=None,
        )
        self.db.add(member)
        try:
            await self.db.flush()
            invitation = self._new_invitation(inviter, member, body.role or DEFAULT_ROLE)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "invitation.created",
            invitation_id=invitation.id,
            team_member_id=member.id,
            organisation_id=member.organisation_id,
        )
        email_sent, warning = await self._send(inviter, member, invitation)
        return InviteResult(
            team_member=member,
            invitation=invitation,
            email_sent=email_sent,
            warning=warning,
        )

    async def resend_invitation(
        self, identity: Optional[Identity], team_member_id: int, role: Optional[str] = None
    ) -> InviteResult:
        """Supersede any pending invitation with a fresh one and re-send."""
        inviter = await require_member(self.db, identity)
        member = await self.db.get(TeamMember, team_member_id, populate_existing=True)
        if member is None:
            raise TeamMemberNotFound()
        if member.organisation_id != inviter.organisation_id:
            raise Unauthorized()
        if member.user_id is not None:
            raise AlreadyAccepted()
        await self._ensure_not_linked_elsewhere(
            member.team_member_email_id, member.organisation_id, member.id
        )
        if role is None:
            role = await self._latest_role(member.id)

        try:
            await self.db.execute(
                update(Invitation)
                .where(
                    Invitation.team_member_id == member.id,
                    Invitation.status == INVITATION_PENDING,
                )
                .values(status=INVITATION_EXPIRED)
            )
            invitation = self._new_invitation(inviter, member, role)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "invitation.resent",
            invitation_id=invitation.id,
            team_member_id=member.id,
        )
        email_sent, warning = await self._send(inviter, member, invitation)
        return InviteResult(
            team_member=member,
            invitation=invitation,
            email_sent=email_sent,
            warning=warning,
        )

    def _new_invitation(self, inviter: User, member: TeamMember, role: str) -> Invitation:
        ttl = timedelta(days=settings.invitation_token_expire_days)
        token = create_invitation_token(
            team_member_id=member.id,
            organisation_id=member.organisation_id,
            email=member.team_member_email_id,
            role=role,
            ttl=ttl,
        )
        invitation = Invitation(
            email=member.team_member_email_id,
            token=token,
            team_member_id=member.id,
            organisation_id=member.organisation_id,
            invited_by=inviter.id,
            role=role,
            status=INVITATION_PENDING,
            expires_at=utcnow() + ttl,
            accepted_at=None,
        )
        self.db.add(invitation)
        return invitation

    async def _latest_role(self, team_member_id: int) -> str:
        """Role of the newest invitation for this slot, so a resend keeps it."""
        result = await self.db.execute(
            select(Invitation.role)
            .where(Invitation.team_member_id == team_member_id)
            .order_by(Invitation.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none() or DEFAULT_ROLE

    async def _ensure_not_linked_elsewhere(
        self, email: str, organisation_id: int, team_member_id: Optional[int] = None
    ) -> None:
        """An account in this organisation fills at most one TeamMember slot."""
        user = await find_user_by_email(self.db, email.lower())
        if (
            user is not None
            and user.organisation_id == organisation_id
            and user.team_member is not None
            and user.team_member.id != team_member_id
        ):
            raise AlreadyTeamMember()

    async def _send(
        self, inviter: User, member: TeamMember, invitation: Invitation
    ) -> tuple[bool, Optional[str]]:
        if self.mailer is None:
            return False, "Email service not configured; invitation was not sent"
        try:
            await self.mailer.send_invitation(
                to_email=member.team_member_email_id,
                to_name=member.team_member_name,
                organisation_name=inviter.organisation.organisation_name,
                inviter_email=inviter.email,
                accept_url=accept_url(invitation.token),
            )
        except EmailDeliveryError as e:
            logger.warning(
                "invitation.email_failed",
                invitation_id=invitation.id,
                error=str(e),
            )
            return False, "Invitation created but the email could not be sent"
        return True, None

    # ─── Verify ─────────────────────────────────────────

    async def verify_invitation_token(self, token: str) -> TokenInfo:
        """Describe a still-claimable invitation. Read-only."""
        claims = parse_invitation_token(token)

        member = await self._load_member(claims.team_member_id)
        if member is None:
            raise TeamMemberNotFound()
        if member.user_id is not None:
            raise AlreadyAccepted()
        await self._ensure_not_linked_elsewhere(claims.email, member.organisation_id, member.id)

        result = await self.db.execute(
            select(Invitation.id).where(*_pending_clause(member.id, token)).limit(1)
        )
        if result.scalar_one_or_none() is None:
            raise InvitationNotFoundOrExpired()

        organisation = await self.db.get(Organisation, member.organisation_id)
        return TokenInfo(
            name=member.team_member_name,
            email=member.team_member_email_id,
            organization_name=organisation.organisation_name if organisation else "",
            role=claims.role,
        )

    # ─── Join ───────────────────────────────────────────

    async def join_organisation(self, token: str, password: str) -> AuthResult:
        """Claim an invitation, creating or linking the account.

        Replaying a token whose TeamMember is already linked to the
        account that owns the invitation email succeeds without writes
        and returns a new session token.
        """
        body = validate_input(JoinRequest, token=token, password=password)
        claims = parse_invitation_token(body.token)
        try:
            user = await self._join(claims, body.token, body.password)
            await self.db.commit()
        except IntegrityError:
            # Unique email / unique team_members.user_id: a concurrent join won
            await self.db.rollback()
            logger.info("invitation.join_conflict", team_member_id=claims.team_member_id)
            raise AlreadyAccepted()
        except Exception:
            await self.db.rollback()
            raise

        user = await load_user(self.db, user.id)
        return AuthResult(user=user, token=issue_session_token(user))

    async def _join(self, claims: InvitationClaims, token: str, password: str) -> User:
        member = await self._load_member(claims.team_member_id)
        if member is None or member.organisation_id != claims.organisation_id:
            raise TeamMemberNotFound()

        user = await find_user_by_email(self.db, claims.email.lower())

        if user is not None:
            if user.organisation_id != claims.organisation_id:
                raise EmailBelongsToDifferentOrganisation()
            if member.user_id == user.id:
                logger.info(
                    "invitation.join_replayed",
                    team_member_id=member.id,
                    user_id=user.id,
                )
                return user
            if member.user_id is not None:
                raise AlreadyAccepted()
            if user.team_member is not None:
                raise AlreadyTeamMember()
            await self._claim_invitation(member, token)
            await self._link(member, user)
            logger.info(
                "invitation.accepted",
                team_member_id=member.id,
                user_id=user.id,
                new_user=False,
            )
            return user

        if member.user_id is not None:
            raise AlreadyAccepted()
        await self._claim_invitation(member, token)

        password_hash = await run_in_threadpool(
            stored_password, password, PasswordForm.PLAINTEXT
        )
        user = User(
            email=claims.email.lower(),
            password_hash=password_hash,
            role=claims.role,
            organisation_id=claims.organisation_id,
        )
        self.db.add(user)
        await self.db.flush()
        await self._link(member, user)
        logger.info(
            "invitation.accepted",
            team_member_id=member.id,
            user_id=user.id,
            new_user=True,
        )
        return user

    async def _claim_invitation(self, member: TeamMember, token: str) -> None:
        """pending → accepted, or abort the transaction."""
        result = await self.db.execute(
            update(Invitation)
            .where(*_pending_clause(member.id, token))
            .values(status=INVITATION_ACCEPTED, accepted_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount >= 1:
            return

        # Nothing claimable. Tell "someone beat us to it" apart from "expired".
        linked = await self.db.execute(
            select(TeamMember.user_id).where(TeamMember.id == member.id)
        )
        if linked.scalar_one_or_none() is not None:
            raise AlreadyAccepted()
        raise InvitationNotFoundOrExpired()

    async def _link(self, member: TeamMember, user: User) -> None:
        result = await self.db.execute(
            update(TeamMember)
            .where(TeamMember.id == member.id, TeamMember.user_id.is_(None))
            .values(user_id=user.id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise AlreadyAccepted()

    async def _load_member(self, team_member_id: int) -> Optional[TeamMember]:
        return await self.db.get(TeamMember, team_member_id, populate_existing=True)
