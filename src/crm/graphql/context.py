"""Typed request context handed to every resolver.

Built once per request by the GraphQL router. Resolvers read the
caller from ``info.context.identity`` (set by the auth middleware, None
for anonymous calls to public fields) and get their database session
and mailer from the same object.
"""

from typing import Optional

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from strawberry.fastapi import BaseContext

from crm.auth.dependencies import Identity, get_identity_optional
from crm.db.engine import get_db
from crm.services.email import EmailService, get_email_service


class Context(BaseContext):
    def __init__(
        self,
        db: AsyncSession,
        mailer: EmailService,
        identity: Optional[Identity] = None,
    ):
        super().__init__()
        self.db = db
        self.mailer = mailer
        self.identity = identity


async def get_context(
    request: Request,
    db: AsyncSession = Depends(get_db),
    mailer: EmailService = Depends(get_email_service),
) -> Context:
    return Context(db=db, mailer=mailer, identity=get_identity_optional(request))
