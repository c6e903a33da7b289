"""JWT token creation and verification.

Two kinds of token share the signing secret but never each other's role:
- Session token: 7 days, proves who is calling (``type="session"``)
- Invitation token: proves the right to claim one pending TeamMember slot
  (``type="invitation"``)

``verify_token`` checks the ``type`` claim before any other claim is
trusted, so a session token can't be replayed as an invitation and
vice versa.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from crm.config import settings

SESSION = "session"
INVITATION = "invitation"


class TokenError(Exception):
    """Raised when token verification fails."""


class InvalidSignature(TokenError):
    pass


class TokenExpired(TokenError):
    pass


class WrongTokenType(TokenError):
    pass


class MalformedToken(TokenError):
    pass


def _encode(payload: dict, expires: timedelta) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        **payload,
        "jti": uuid.uuid4().hex,
        "iat": now,
        "exp": now + expires,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def create_session_token(
    user_id: int,
    email: str,
    role: str,
    organisation_id: Optional[int] = None,
    team_member_id: Optional[int] = None,
    expires_days: Optional[int] = None,
) -> str:
    """Create a session token for a user."""
    payload = {
        "sub": str(user_id),
        "id": user_id,
        "email": email,
        "role": role,
        "type": SESSION,
    }
    if organisation_id is not None:
        payload["organisation_id"] = organisation_id
    if team_member_id is not None:
        payload["team_member_id"] = team_member_id
    return _encode(
        payload,
        timedelta(days=expires_days or settings.session_token_expire_days),
    )


def create_invitation_token(
    team_member_id: int,
    organisation_id: int,
    email: str,
    role: str,
    ttl: Optional[timedelta] = None,
) -> str:
    """Create an invitation token for a team member slot."""
    payload = {
        "type": INVITATION,
        "team_member_id": team_member_id,
        "organisation_id": organisation_id,
        "email": email,
        "role": role,
    }
    return _encode(
        payload,
        ttl or timedelta(days=settings.invitation_token_expire_days),
    )


def verify_token(token: str, expected_type: Optional[str] = None) -> dict:
    """Verify and decode a token.

    Only the configured HMAC algorithm is accepted, so "none" and
    asymmetric-key substitution fail as bad signatures.
    Returns the payload dict on success. Raises a TokenError subclass.
    """
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            options={"require": ["exp", "type"]},
        )
    except jwt.ExpiredSignatureError:
        raise TokenExpired("Token has expired")
    except jwt.InvalidSignatureError:
        raise InvalidSignature("Token signature is invalid")
    except jwt.InvalidAlgorithmError:
        raise InvalidSignature("Token algorithm is not allowed")
    except jwt.InvalidTokenError as e:
        raise MalformedToken(f"Invalid token: {e}")

    if expected_type is not None and payload.get("type") != expected_type:
        raise WrongTokenType(f"Expected a {expected_type} token")
    return payload
