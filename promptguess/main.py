"""PromptGuess FastAPI application."""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from promptguess.config import get_settings
from promptguess.database import close_db, init_db
from promptguess.exceptions import (
    PromptGuessError,
    promptguess_error_handler,
    request_validation_error_handler,
)
from promptguess.logging_config import configure_from_settings, get_logger
from promptguess.redis import close_redis, get_redis, init_redis

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Init DB + Redis (+ optional expiry sweep) on startup, clean up on shutdown."""
    settings = get_settings()
    configure_from_settings(settings)

    logger.info("starting_database_init")
    await init_db()

    try:
        await init_redis(settings)
        logger.info("redis_connected", url=settings.redis_url)
    except Exception as e:
        # Rate limiting degrades to pass-through without Redis
        logger.warning("redis_unavailable", url=settings.redis_url, error=str(e))

    stop_event = asyncio.Event()
    sweep_task = None
    if settings.expiry_sweep_enabled:
        from promptguess.services.expiry_sweep import expiry_sweep_loop

        sweep_task = asyncio.create_task(expiry_sweep_loop(stop_event, settings))

    logger.info("application_started", service=settings.service_name)
    yield

    logger.info("shutting_down")
    stop_event.set()
    if sweep_task is not None:
        await sweep_task
    await close_redis()
    await close_db()
    logger.info("shutdown_complete")


settings = get_settings()

app = FastAPI(
    title="PromptGuess",
    description="Guess the prompt behind AI-generated images: daily rounds, duels and group challenges",
    version=settings.service_version,
    lifespan=lifespan,
)

app.add_exception_handler(PromptGuessError, promptguess_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_error_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

from promptguess.middleware.rate_limit import RateLimitMiddleware  # noqa: E402
from promptguess.middleware.request_context import RequestContextMiddleware  # noqa: E402

app.add_middleware(
    RateLimitMiddleware,
    redis_getter=get_redis,
    limit=settings.rate_limit_guesses,
    window=settings.rate_limit_window_seconds,
)
app.add_middleware(RequestContextMiddleware)

# --- Routers ---
from promptguess.routes.admin import router as admin_router  # noqa: E402
from promptguess.routes.challenges import router as challenges_router  # noqa: E402
from promptguess.routes.group_challenges import router as group_challenges_router  # noqa: E402
from promptguess.routes.monitoring import router as monitoring_router  # noqa: E402
from promptguess.routes.rounds import router as rounds_router  # noqa: E402

app.include_router(rounds_router)
app.include_router(challenges_router)
app.include_router(group_challenges_router)
app.include_router(admin_router)
app.include_router(monitoring_router)


@app.get("/health")
async def health_check():
    """Liveness check."""
    return {"status": "ok", "service": settings.service_name}
