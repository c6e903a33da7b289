"""CRM admin CLI.

Usage:
    crm init-db                                      # Create tables (dev / tests)
    crm create-user --email a@x.com --password pw    # Add an account directly
    crm create-user --email a@x.com --password '$2b$12$...' --hashed
    crm health                                       # Ping a running server
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
from typing import Optional

import click
import httpx

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

DEFAULT_API_URL = "http://localhost:3001"


def _api_url() -> str:
    return os.environ.get("CRM_API_URL", DEFAULT_API_URL).rstrip("/")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(coro):
    """Run an async coroutine from a synchronous click handler."""
    return asyncio.run(coro)


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(package_name="crm-backend", prog_name="crm")
def main():
    """CRM backend administration."""


# ---------------------------------------------------------------------------
# crm init-db
# ---------------------------------------------------------------------------


@main.command("init-db")
def init_db():
    """Create all tables from the ORM models (use alembic in production)."""
    _run(_init_db_impl())
    click.secho("Tables created.", fg="green")


async def _init_db_impl():
    from crm.db.engine import engine
    from crm.db.models import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await engine.dispose()


# ---------------------------------------------------------------------------
# crm create-user
# ---------------------------------------------------------------------------


@main.command("create-user")
@click.option("--email", required=True, help="Account email")
@click.option("--password", required=True, help="Plaintext password, or a bcrypt hash with --hashed")
@click.option("--role", default="user", show_default=True)
@click.option("--organisation-id", type=int, default=None, help="Existing organisation to join")
@click.option("--hashed", is_flag=True, help="--password is already a bcrypt hash")
def create_user(
    email: str,
    password: str,
    role: str,
    organisation_id: Optional[int],
    hashed: bool,
):
    """Insert a user without going through the API."""
    from crm.auth.password import PasswordForm

    form = PasswordForm.HASHED if hashed else PasswordForm.PLAINTEXT
    try:
        user_id = _run(_create_user_impl(email, password, role, organisation_id, form))
    except (ValueError, click.ClickException) as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(1)
    click.secho(f"Created user #{user_id} ({email.strip().lower()})", fg="green")


async def _create_user_impl(email, password, role, organisation_id, form) -> int:
    from sqlalchemy import select

    from crm.auth.password import stored_password
    from crm.db.engine import async_session_factory, engine
    from crm.db.models import Organisation, User

    email = email.strip().lower()
    try:
        async with async_session_factory() as db:
            existing = await db.execute(select(User.id).where(User.email == email))
            if existing.scalar_one_or_none() is not None:
                raise click.ClickException(f"{email} already exists")
            if organisation_id is not None and await db.get(Organisation, organisation_id) is None:
                raise click.ClickException(f"Organisation {organisation_id} not found")

            user = User(
                email=email,
                password_hash=stored_password(password, form),
                role=role,
                organisation_id=organisation_id,
            )
            db.add(user)
            await db.commit()
            return user.id
    finally:
        await engine.dispose()


# ---------------------------------------------------------------------------
# crm health
# ---------------------------------------------------------------------------


@main.command()
@click.option("--url", default=None, help=f"Server base URL (default: $CRM_API_URL or {DEFAULT_API_URL})")
def health(url: Optional[str]):
    """Check that a running server answers /health."""
    base = (url or _api_url()).rstrip("/")
    try:
        r = httpx.get(f"{base}/health", timeout=5.0)
        r.raise_for_status()
    except httpx.HTTPError as e:
        click.secho(f"Unhealthy: {e}", fg="red", err=True)
        sys.exit(1)
    click.echo(json.dumps(r.json(), indent=2))
