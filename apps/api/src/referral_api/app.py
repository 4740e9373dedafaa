from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from referral_api.core.settings import settings
from referral_api.db.session import async_session
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing
from .workers import RewardJobWorker


APP_VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    reward_worker = RewardJobWorker(
        async_session,
        interval_seconds=settings.reward_poll_interval_seconds,
    )
    app.state.reward_job_worker = reward_worker

    worker_enabled = settings.reward_worker_enabled
    if worker_enabled:
        reward_worker.start()
        logger.info(
            "Reward job worker enabled",
            interval_seconds=reward_worker.interval_seconds,
            batch_size=settings.reward_batch_size,
        )
    else:
        logger.info(
            "Reward job worker disabled",
            reason="reward_worker_enabled is false",
        )

    try:
        yield
    finally:
        if worker_enabled and reward_worker.is_running:
            await reward_worker.stop()


def create_app() -> FastAPI:
    """Application factory for the referral rewards FastAPI service."""
    configure_logging(
        service_name="referral-rewards-api",
        environment=settings.environment,
        version=APP_VERSION,
    )

    app = FastAPI(
        title="Referral Rewards API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    configure_tracing(
        app,
        service_name="referral-rewards-api",
        service_version=APP_VERSION,
        environment=settings.environment,
    )

    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
        }

    return app
