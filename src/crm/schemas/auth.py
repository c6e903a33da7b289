"""Pydantic schemas for auth and onboarding inputs.

GraphQL input types carry the raw values; services validate them with
these models before touching the database. Emails are normalised to
lowercase so uniqueness holds regardless of how they were typed.
"""

from typing import Optional

from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from crm.errors import ValidationError

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class _EmailModel(BaseModel):
    email: str = Field(..., max_length=255, pattern=EMAIL_PATTERN)

    @field_validator("email", mode="before")
    @classmethod
    def normalise_email(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v


class RegisterRequest(_EmailModel):
    password: str = Field(..., min_length=1, max_length=128)
    role: Optional[str] = Field(None, min_length=1, max_length=50)


class LoginRequest(_EmailModel):
    password: str


class JoinRequest(BaseModel):
    token: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1, max_length=128)


class OrganisationCreate(BaseModel):
    organisation_name: str = Field(..., min_length=1, max_length=255)

    @field_validator("organisation_name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Organisation name can't be blank")
        return v


class TeamMemberCreate(_EmailModel):
    name: str = Field(..., min_length=1, max_length=255)
    role: Optional[str] = Field(None, min_length=1, max_length=50)


def validate_input(model: type[BaseModel], **values) -> BaseModel:
    """Build ``model`` from raw values, raising the API ValidationError."""
    try:
        return model(**values)
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(p) for p in first["loc"])
        raise ValidationError(f"Invalid {field}: {first['msg']}")
