"""Session token revocation — Redis denylist keyed by token id.

Tokens are stateless, so logout can only be enforced by remembering the
``jti`` of a logged-out token until it would have expired anyway.
Keys look like "crm:revoked:{jti}" with TTL = remaining token lifetime.

When Redis is unavailable (e.g. in tests) revocation is skipped and
logout degrades to a client-side acknowledgement.
"""

from datetime import datetime, timezone

import structlog

from crm.redis_pool import get_redis

logger = structlog.get_logger()


def _key(token_id: str) -> str:
    return f"crm:revoked:{token_id}"


async def revoke_token(token_id: str, expires_at: datetime) -> bool:
    """Add a token id to the denylist. Returns False if Redis is down."""
    ttl = int((expires_at - datetime.now(timezone.utc)).total_seconds())
    if ttl <= 0:
        return True
    try:
        redis = get_redis()
        await redis.set(_key(token_id), "1", ex=ttl)
    except Exception as e:
        logger.warning("auth.revocation_unavailable", error=str(e))
        return False
    return True


async def is_revoked(token_id: str | None) -> bool:
    if not token_id:
        return False
    try:
        redis = get_redis()
        return bool(await redis.exists(_key(token_id)))
    except Exception:
        return False
