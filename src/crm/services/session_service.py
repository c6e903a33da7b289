"""Session service — register, login, logout, current user.

Tokens are issued here and nowhere else. Login failures use one error
for "no such user" and "wrong password" so the API can't be used to
discover which emails have accounts.
"""

from dataclasses import dataclass
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from starlette.concurrency import run_in_threadpool

from crm.auth.dependencies import Identity
from crm.auth.jwt import create_session_token
from crm.auth.password import (
    PasswordForm,
    burn_password_check,
    stored_password,
    verify_password,
)
from crm.auth.revocation import revoke_token
from crm.db.models import User
from crm.errors import EmailAlreadyExists, InvalidCredentials, Unauthenticated
from crm.schemas.auth import LoginRequest, RegisterRequest, validate_input

logger = structlog.get_logger()

DEFAULT_ROLE = "user"
NEXT_STEP_CREATE_ORGANISATION = "create-organization"


@dataclass
class AuthResult:
    user: User
    token: str
    setup_required: Optional[bool] = None
    next_step: Optional[str] = None


def issue_session_token(user: User) -> str:
    """Session token for a user whose team_member relationship is loaded."""
    return create_session_token(
        user_id=user.id,
        email=user.email,
        role=user.role,
        organisation_id=user.organisation_id,
        team_member_id=user.team_member.id if user.team_member else None,
    )


async def load_user(db: AsyncSession, user_id: int) -> Optional[User]:
    """Fetch a user with organisation and team member eagerly loaded."""
    result = await db.execute(
        select(User)
        .where(User.id == user_id)
        .options(selectinload(User.organisation), selectinload(User.team_member))
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def find_user_by_email(db: AsyncSession, email: str) -> Optional[User]:
    result = await db.execute(
        select(User)
        .where(User.email == email)
        .options(selectinload(User.organisation), selectinload(User.team_member))
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


class SessionService:
    """Business logic for account sessions."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def register(
        self, email: str, password: str, role: Optional[str] = None
    ) -> AuthResult:
        body = validate_input(RegisterRequest, email=email, password=password, role=role)

        if await find_user_by_email(self.db, body.email):
            raise EmailAlreadyExists()

        password_hash = await run_in_threadpool(
            stored_password, body.password, PasswordForm.PLAINTEXT
        )
        user = User(
            email=body.email,
            password_hash=password_hash,
            role=body.role or DEFAULT_ROLE,
        )
        self.db.add(user)
        try:
            await self.db.commit()
        except IntegrityError:
            # Lost a race with a concurrent registration of the same email
            await self.db.rollback()
            raise EmailAlreadyExists()

        user = await load_user(self.db, user.id)
        logger.info("auth.registered", user_id=user.id)
        return AuthResult(
            user=user,
            token=issue_session_token(user),
            setup_required=True,
            next_step=NEXT_STEP_CREATE_ORGANISATION,
        )

    async def login(self, email: str, password: str) -> AuthResult:
        body = validate_input(LoginRequest, email=email, password=password)

        user = await find_user_by_email(self.db, body.email)
        if user is None:
            await run_in_threadpool(burn_password_check, body.password)
            raise InvalidCredentials()

        if not await run_in_threadpool(verify_password, body.password, user.password_hash):
            raise InvalidCredentials()

        result = AuthResult(user=user, token=issue_session_token(user))
        if user.organisation_id is None:
            result.setup_required = True
            result.next_step = NEXT_STEP_CREATE_ORGANISATION
        logger.info("auth.logged_in", user_id=user.id)
        return result

    async def logout(self, identity: Identity) -> bool:
        """Acknowledge logout and revoke the token where Redis allows it."""
        if identity.token_id and identity.expires_at:
            revoked = await revoke_token(identity.token_id, identity.expires_at)
            logger.info("auth.logged_out", user_id=identity.user_id, revoked=revoked)
        return True

    async def me(self, identity: Optional[Identity]) -> User:
        if identity is None:
            raise Unauthenticated()
        user = await load_user(self.db, identity.user_id)
        if user is None:
            # Token outlived its account
            raise Unauthenticated()
        return user
