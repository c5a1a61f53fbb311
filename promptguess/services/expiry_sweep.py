"""Periodic housekeeping that expires overdue challenges in bulk.

Optional: every read path applies expiry lazily, so the sweep only keeps
list queries cheap and the tables tidy. Runs as an asyncio task during the
application lifespan when ``expiry_sweep_enabled`` is set.
"""

import asyncio
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from promptguess.config import Settings, get_settings
from promptguess.database import get_db_session
from promptguess.logging_config import get_logger
from promptguess.services.challenge_service import ChallengeService
from promptguess.services.expiry import Clock
from promptguess.services.group_challenge_service import GroupChallengeService

logger = get_logger(__name__)


@dataclass(frozen=True)
class SweepResult:
    challenges_expired: int
    group_challenges_expired: int


async def run_expiry_sweep(
    session: AsyncSession,
    clock: Clock | None = None,
    settings: Settings | None = None,
) -> SweepResult:
    """Single sweep over both challenge tables."""
    challenges = await ChallengeService(session, clock=clock, settings=settings).expire_overdue()
    groups = await GroupChallengeService(session, clock=clock, settings=settings).expire_overdue()
    if challenges or groups:
        logger.info(
            "expiry_sweep_complete",
            challenges_expired=challenges,
            group_challenges_expired=groups,
        )
    return SweepResult(challenges_expired=challenges, group_challenges_expired=groups)


async def expiry_sweep_loop(stop_event: asyncio.Event, settings: Settings | None = None) -> None:
    """Run sweeps until stop_event is set."""
    settings = settings or get_settings()
    interval = settings.expiry_sweep_interval_seconds
    logger.info("expiry_sweep_started", interval_seconds=interval)

    while not stop_event.is_set():
        try:
            async with get_db_session() as session:
                await run_expiry_sweep(session, settings=settings)
        except Exception:
            logger.exception("expiry_sweep_error")

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
            break
        except asyncio.TimeoutError:
            pass

    logger.info("expiry_sweep_stopped")
