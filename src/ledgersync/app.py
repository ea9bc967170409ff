"""FastAPI application factory for ledgersync."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ledgersync.common.config import get_settings
from ledgersync.common.logging import setup_logging
from ledgersync.common.schemas import HealthResponse


def create_app() -> FastAPI:
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        from ledgersync.deps import get_db, get_expiration_sweeper, get_webhook_service
        setup_logging(settings.log_level)
        db = get_db()
        await db.init()
        await db.create_all()
        sweeper = get_expiration_sweeper()
        sweeper.start()
        yield
        # Shutdown
        await sweeper.stop()
        await get_webhook_service().close()
        await db.close()

    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", response_model=HealthResponse)
    async def health():
        from ledgersync.deps import get_db

        if await get_db().ping():
            return HealthResponse(version=settings.api_version)
        return HealthResponse(
            status="degraded", version=settings.api_version, database="unavailable",
        )

    # Mount routers
    from ledgersync.verification.router import router as verification_router
    from ledgersync.milestones.router import router as milestone_router
    from ledgersync.deadletter.router import router as dlq_router
    from ledgersync.webhooks.router import router as webhook_router

    prefix = settings.api_prefix
    app.include_router(verification_router, prefix=prefix, tags=["validations"])
    app.include_router(milestone_router, prefix=prefix, tags=["milestones"])
    app.include_router(dlq_router, prefix=prefix, tags=["dead-letter"])
    app.include_router(webhook_router, prefix=prefix, tags=["webhooks"])

    return app
