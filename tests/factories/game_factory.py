"""Factories for rounds, challenges and group challenges in a ready-to-play state."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

from promptguess.models import User
from promptguess.services.challenge_service import ChallengeService
from promptguess.services.group_challenge_service import GroupChallengeService
from promptguess.services.round_service import RoundService
from promptguess.services.scoring import ScoreResult

ADMIN_HEADERS = {"X-Admin-Key": "test-admin-key"}


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs: Any) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


class StubScorer:
    """Scoring gateway double with a fixed (or per-guess) score."""

    def __init__(
        self,
        score: int = 80,
        scores: dict[str, int] | None = None,
        delay: float = 0.0,
        error: Exception | None = None,
    ):
        self.score_value = score
        self.scores = scores or {}
        self.delay = delay
        self.error = error
        self.calls: list[tuple[str, str]] = []

    async def score(self, prompt: str, guess: str) -> ScoreResult:
        self.calls.append((prompt, guess))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        value = self.scores.get(guess, self.score_value)
        return ScoreResult(score=value, breakdown={"matchedWords": guess.split()})


def auth_headers(user: User) -> dict[str, str]:
    from promptguess.auth import create_access_token

    return {"Authorization": f"Bearer {create_access_token(str(user.id))}"}


async def create_active_challenge(session, challenger, challenged, clock, settings, prompt="a cat on a red sofa"):
    service = ChallengeService(session, scorer=StubScorer(), clock=clock, settings=settings)
    challenge = await service.create(challenger, challenged.id, prompt)
    return await service.mark_image_ready(challenge.id, "https://img.example/c.png")


async def create_active_group(session, creator, participants, clock, settings, prompt="a cat"):
    service = GroupChallengeService(session, scorer=StubScorer(), clock=clock, settings=settings)
    state = await service.create(creator, [p.id for p in participants], prompt)
    return await service.mark_image_ready(state.group.id, "https://img.example/g.png")


async def create_active_round(session, clock, settings, prompt="a lighthouse at dusk"):
    service = RoundService(session, scorer=StubScorer(), clock=clock, settings=settings)
    return await service.rotate_round("https://img.example/r.png", prompt)
