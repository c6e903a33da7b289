"""SQLAlchemy ORM models — single source of truth for the database schema.

Declarative mapping in SQLAlchemy 2.0 style (Mapped[] + mapped_column).
Only the tables the auth and invitation flow touch live here.

Key constraints:
- users.email is unique (one account per email)
- team_members.user_id is unique (a user links to at most one TeamMember)
- invitations.token is unique
Column types are portable so the same models run on PostgreSQL and SQLite.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


INVITATION_PENDING = "pending"
INVITATION_ACCEPTED = "accepted"
INVITATION_EXPIRED = "expired"


class Organisation(Base):
    """Multi-tenant root. Users, team members and invitations hang off it."""

    __tablename__ = "organisations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organisation_name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=utcnow
    )

    # Relationships
    users: Mapped[list["User"]] = relationship(back_populates="organisation")
    team_members: Mapped[list["TeamMember"]] = relationship(
        back_populates="organisation"
    )


class User(Base):
    """A login account.

    organisation_id stays NULL between registration and onboarding
    (create-organization), or until an invitation is accepted.
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(50), nullable=False, default="user")
    organisation_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("organisations.id"), nullable=True, index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=utcnow
    )

    # Relationships
    organisation: Mapped[Optional["Organisation"]] = relationship(
        back_populates="users"
    )
    team_member: Mapped[Optional["TeamMember"]] = relationship(
        back_populates="user", uselist=False
    )


class TeamMember(Base):
    """A named person in an organisation, with or without an account.

    Starts with user_id NULL. Accepting an invitation sets it once; the
    unique constraint keeps one User from owning two slots.
    """

    __tablename__ = "team_members"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organisation_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("organisations.id"), nullable=False, index=True
    )
    team_member_name: Mapped[str] = mapped_column(String(255), nullable=False)
    team_member_email_id: Mapped[str] = mapped_column(String(255), nullable=False)
    user_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("users.id"), unique=True, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=utcnow
    )

    # Relationships
    organisation: Mapped["Organisation"] = relationship(back_populates="team_members")
    user: Mapped[Optional["User"]] = relationship(back_populates="team_member")


class Invitation(Base):
    """One outstanding invite for a TeamMember.

    status: pending → accepted (one-way). A resend marks older pending
    rows expired. A pending row past expires_at counts as not found, so
    every lookup filters on both status and expires_at.
    """

    __tablename__ = "invitations"
    __table_args__ = (
        Index("idx_invitations_team_member_status", "team_member_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    token: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    team_member_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("team_members.id"), nullable=False
    )
    organisation_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("organisations.id"), nullable=False, index=True
    )
    invited_by: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id"), nullable=False
    )
    role: Mapped[str] = mapped_column(String(50), nullable=False, default="user")
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=INVITATION_PENDING
    )  # pending, accepted, expired
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    accepted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    # Relationships
    team_member: Mapped["TeamMember"] = relationship()
