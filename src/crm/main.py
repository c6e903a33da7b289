"""FastAPI application factory.

create_app() returns a configured FastAPI instance: the GraphQL router
at /graphql, a plain /health route, and the middleware stack. The
lifespan connects Redis (optional) and disposes the database engine on
shutdown.
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from crm import __version__
from crm.config import settings

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle."""
    logger.info(
        "crm.starting",
        version=__version__,
        environment=settings.environment,
        port=settings.port,
    )

    from crm.redis_pool import close_redis, init_redis

    try:
        await init_redis()
        logger.info("crm.redis_connected", url=settings.redis_url)
    except Exception as e:
        # Redis is optional: no rate limits, logout is not enforced
        logger.warning("crm.redis_unavailable", error=str(e))

    from crm.db.engine import engine

    if settings.auto_create_tables:
        from crm.db.models import Base

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("crm.tables_created")

    yield

    logger.info("crm.shutdown")
    await close_redis()
    await engine.dispose()


def create_app() -> FastAPI:
    """Build and return the FastAPI application."""
    app = FastAPI(
        title="CRM Backend",
        description="Multi-tenant CRM GraphQL API",
        version=__version__,
        lifespan=lifespan,
    )

    # ── Middleware stack ──────────────────────────────────────
    # Starlette runs middleware in reverse order of registration.
    # Request flow: RequestId → Security → CORS → RateLimit → GraphQLAuth → handler

    from crm.graphql import GRAPHQL_PATH, create_graphql_router
    from crm.middleware.auth import GraphQLAuthMiddleware
    from crm.middleware.rate_limit import RateLimitMiddleware
    from crm.middleware.request_id import RequestIdMiddleware
    from crm.middleware.security import SecurityHeadersMiddleware

    app.add_middleware(GraphQLAuthMiddleware, path=GRAPHQL_PATH)
    app.add_middleware(RateLimitMiddleware, rpm=settings.rate_limit_rpm)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestIdMiddleware)

    from crm.api.health import router as health_router

    app.include_router(health_router, tags=["health"])
    app.include_router(create_graphql_router(), tags=["graphql"])

    return app


# Default app instance (used by uvicorn: crm.main:app)
app = create_app()
