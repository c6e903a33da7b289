"""Business errors surfaced to API clients.

Each error carries a stable ``code``. graphql-core copies the
``extensions`` attribute of an exception raised inside a resolver onto
the GraphQL error, so clients can branch on ``extensions.code``.
"""


class CRMError(Exception):
    """Base class for errors that are safe to show to the caller."""

    code = "INTERNAL_ERROR"
    default_message = "Internal server error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    @property
    def extensions(self) -> dict:
        return {"code": self.code}


class Unauthenticated(CRMError):
    code = "UNAUTHENTICATED"
    default_message = "Authentication required"


class Unauthorized(CRMError):
    code = "UNAUTHORIZED"
    default_message = "Not allowed to access this resource"


class InvalidCredentials(CRMError):
    code = "INVALID_CREDENTIALS"
    default_message = "Invalid email or password"


class EmailAlreadyExists(CRMError):
    code = "EMAIL_ALREADY_EXISTS"
    default_message = "Email already exists"


class InvalidToken(CRMError):
    code = "INVALID_TOKEN"
    default_message = "Invalid or expired token"


class TeamMemberNotFound(CRMError):
    code = "TEAM_MEMBER_NOT_FOUND"
    default_message = "Team member not found"


class InvitationNotFoundOrExpired(CRMError):
    code = "INVITATION_NOT_FOUND_OR_EXPIRED"
    default_message = "Invitation not found or has expired"


class AlreadyAccepted(CRMError):
    code = "ALREADY_ACCEPTED"
    default_message = "This invitation has already been accepted"


class AlreadyTeamMember(CRMError):
    code = "ALREADY_TEAM_MEMBER"
    default_message = "This account is already linked to another team member"


class EmailBelongsToDifferentOrganisation(CRMError):
    code = "EMAIL_BELONGS_TO_DIFFERENT_ORGANISATION"
    default_message = "Email already registered with a different organisation"


class NoOrganisation(CRMError):
    code = "NO_ORGANISATION"
    default_message = "User does not belong to an organisation"


class ValidationError(CRMError):
    code = "VALIDATION_ERROR"
    default_message = "Invalid input"


class InternalError(CRMError):
    pass
