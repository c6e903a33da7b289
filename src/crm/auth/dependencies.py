"""Identity resolution from Bearer credentials.

The auth middleware calls ``authenticate_bearer`` on the raw
Authorization header and stores the resulting Identity on the request.
Resolvers never see the header or the raw claims, only the Identity.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from starlette.requests import Request

from crm.auth.jwt import SESSION, TokenError, verify_token
from crm.auth.revocation import is_revoked


class AuthenticationFailed(Exception):
    """Raised when a Bearer credential can't be turned into an Identity.

    The message is generic on purpose; the underlying TokenError kind is
    kept for logging only.
    """

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.reason = reason


@dataclass(frozen=True)
class Identity:
    """The authenticated principal for one request."""

    user_id: int
    email: str
    role: str
    organisation_id: Optional[int] = None
    team_member_id: Optional[int] = None
    token_id: Optional[str] = None
    expires_at: Optional[datetime] = None

    @classmethod
    def from_claims(cls, claims: dict) -> "Identity":
        expires_at = None
        if "exp" in claims:
            expires_at = datetime.fromtimestamp(claims["exp"], tz=timezone.utc)
        return cls(
            user_id=int(claims["id"]),
            email=claims["email"],
            role=claims["role"],
            organisation_id=claims.get("organisation_id"),
            team_member_id=claims.get("team_member_id"),
            token_id=claims.get("jti"),
            expires_at=expires_at,
        )


def parse_bearer(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an Authorization header.

    Returns None when the header is absent. Raises AuthenticationFailed
    when it is present but not of the form "Bearer <token>".
    """
    if authorization is None:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme != "Bearer" or not token.strip():
        raise AuthenticationFailed("Authentication required", reason="malformed_header")
    return token.strip()


async def authenticate_bearer(token: str) -> Identity:
    """Verify a session token and build the Identity it asserts."""
    try:
        claims = verify_token(token, expected_type=SESSION)
        identity = Identity.from_claims(claims)
    except TokenError as e:
        raise AuthenticationFailed("Invalid or expired token", reason=type(e).__name__)
    except (KeyError, TypeError, ValueError):
        raise AuthenticationFailed("Invalid or expired token", reason="bad_claims")

    if await is_revoked(identity.token_id):
        raise AuthenticationFailed("Invalid or expired token", reason="revoked")
    return identity


def get_identity_optional(request: Request) -> Optional[Identity]:
    """Identity attached by the auth middleware, if any."""
    return getattr(request.state, "identity", None)
