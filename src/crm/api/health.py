"""Health check endpoint.

Liveness only: it answers without touching the database or Redis so a
probe never fails because a dependency is slow. The GraphQL ``health``
field returns the same payload.
"""

from datetime import datetime, timezone

from fastapi import APIRouter

from crm.config import settings

router = APIRouter()


def health_payload() -> dict:
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "env": settings.environment,
    }


@router.get("/health")
async def health_check():
    """Report that the server is up."""
    return health_payload()
