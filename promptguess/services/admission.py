"""Guess admission gate.

At most one guess is accepted per (instance, user). The gate claims a row in
the ``guesses`` ledger whose unique constraint makes the claim an atomic
compare-and-set: exactly one concurrent INSERT wins, the others see an
IntegrityError and wait for the winner to either settle (then they are
rejected with the winner's result) or release (then they try again).

A claim is only turned into an accepted guess by :meth:`GuessAdmissionGate.settle`,
which runs in the same transaction as the state transition. If scoring fails
the claim is released, so the user can retry. A claim whose owner died
mid-flight is taken over once its lease runs out.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import timedelta
from uuid import UUID, uuid4

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from promptguess.exceptions import UpstreamError
from promptguess.logging_config import get_logger
from promptguess.models import Guess
from promptguess.services.expiry import Clock, SystemClock, ensure_utc
from promptguess.services.scoring import ScoreResult, ScoringGateway

logger = get_logger(__name__)


@dataclass(frozen=True)
class InstanceKey:
    instance_type: str  # "round" | "challenge" | "group"
    instance_id: UUID
    user_id: UUID


@dataclass(frozen=True)
class Claim:
    key: InstanceKey
    guess_id: UUID
    token: UUID


class AdmissionRejected(Exception):
    """The (instance, user) pair already has a guess.

    ``existing`` is the scored ledger row when the earlier guess has been
    accepted, or None while it is still being scored by another request.
    """

    def __init__(self, key: InstanceKey, existing: Guess | None):
        self.key = key
        self.existing = existing
        super().__init__(
            "guess already accepted" if existing is not None else "guess in progress"
        )


class GuessAdmissionGate:
    """Check-and-set on the guess ledger, scoped to one database session."""

    def __init__(
        self,
        session: AsyncSession,
        clock: Clock | None = None,
        wait_seconds: float = 15.0,
        poll_interval: float = 0.05,
        lease_seconds: float = 60.0,
    ):
        self.session = session
        self.clock = clock or SystemClock()
        self.wait_seconds = wait_seconds
        self.poll_interval = poll_interval
        self.lease = timedelta(seconds=lease_seconds)

    async def get(self, key: InstanceKey) -> Guess | None:
        result = await self.session.execute(
            select(Guess)
            .where(
                Guess.instance_type == key.instance_type,
                Guess.instance_id == key.instance_id,
                Guess.user_id == key.user_id,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_scored(self, key: InstanceKey) -> Guess | None:
        guess = await self.get(key)
        if guess is not None and guess.status == "scored":
            return guess
        return None

    async def admit(self, key: InstanceKey, guess_text: str) -> Claim:
        """Claim the (instance, user) slot or raise AdmissionRejected.

        Commits the claim so concurrent requests observe it.
        """
        deadline = time.monotonic() + self.wait_seconds
        while True:
            token = uuid4()
            guess = Guess(
                id=uuid4(),
                instance_type=key.instance_type,
                instance_id=key.instance_id,
                user_id=key.user_id,
                guess_text=guess_text,
                status="claimed",
                claim_token=token,
                claimed_at=self.clock.now(),
            )
            self.session.add(guess)
            try:
                await self.session.commit()
                logger.info(
                    "guess_claimed",
                    instance_type=key.instance_type,
                    instance_id=str(key.instance_id),
                    user_id=str(key.user_id),
                )
                return Claim(key=key, guess_id=guess.id, token=token)
            except IntegrityError:
                await self.session.rollback()

            existing = await self.get(key)
            if existing is None:
                # Released between our INSERT and SELECT
                continue
            if existing.status == "scored":
                raise AdmissionRejected(key, existing)

            claim = await self._take_over_stale(existing, guess_text)
            if claim is not None:
                return claim

            if time.monotonic() >= deadline:
                logger.warning(
                    "guess_admission_busy",
                    instance_type=key.instance_type,
                    instance_id=str(key.instance_id),
                    user_id=str(key.user_id),
                )
                raise AdmissionRejected(key, None)
            await asyncio.sleep(self.poll_interval)

    async def _take_over_stale(self, existing: Guess, guess_text: str) -> Claim | None:
        now = self.clock.now()
        if ensure_utc(existing.claimed_at) + self.lease > now:
            return None
        token = uuid4()
        result = await self.session.execute(
            update(Guess)
            .where(
                Guess.id == existing.id,
                Guess.claim_token == existing.claim_token,
                Guess.status == "claimed",
            )
            .values(claim_token=token, claimed_at=now, guess_text=guess_text)
        )
        await self.session.commit()
        if result.rowcount != 1:
            return None
        logger.warning("stale_guess_claim_taken_over", guess_id=str(existing.id))
        key = InstanceKey(existing.instance_type, existing.instance_id, existing.user_id)
        return Claim(key=key, guess_id=existing.id, token=token)

    async def settle(self, claim: Claim, result: ScoreResult) -> None:
        """Mark the claim scored. Does not commit.

        Raises AdmissionRejected if the claim was taken over meanwhile.
        """
        outcome = await self.session.execute(
            update(Guess)
            .where(
                Guess.id == claim.guess_id,
                Guess.claim_token == claim.token,
                Guess.status == "claimed",
            )
            .values(
                status="scored",
                score=result.score,
                breakdown=result.breakdown,
                scored_at=self.clock.now(),
            )
        )
        if outcome.rowcount != 1:
            await self.session.rollback()
            raise AdmissionRejected(claim.key, await self.get_scored(claim.key))

    async def release(self, claim: Claim) -> None:
        """Drop an unsettled claim so the user may guess again."""
        await self.session.execute(
            delete(Guess).where(
                Guess.id == claim.guess_id,
                Guess.claim_token == claim.token,
                Guess.status == "claimed",
            )
        )
        await self.session.commit()
        logger.info("guess_claim_released", guess_id=str(claim.guess_id))

    async def run(
        self,
        key: InstanceKey,
        guess_text: str,
        prompt: str,
        scorer: ScoringGateway,
        apply: Callable[[ScoreResult], Awaitable[None]],
        timeout: float,
    ) -> ScoreResult:
        """Admit, score, then apply the state transition in one transaction.

        ``apply`` re-validates the instance and writes the score; if it raises,
        nothing it wrote is kept and the claim is released.
        """
        claim = await self.admit(key, guess_text)

        try:
            result = await asyncio.wait_for(scorer.score(prompt, guess_text), timeout=timeout)
        except asyncio.TimeoutError as e:
            logger.warning("scoring_timed_out", instance_id=str(key.instance_id), timeout=timeout)
            await self.release(claim)
            raise UpstreamError("Scoring service timed out, please retry") from e
        except Exception:
            await self.release(claim)
            raise

        try:
            await self.settle(claim, result)
            await apply(result)
            await self.session.commit()
        except AdmissionRejected:
            raise
        except Exception:
            await self.session.rollback()
            await self.release(claim)
            raise

        logger.info(
            "guess_scored",
            instance_type=key.instance_type,
            instance_id=str(key.instance_id),
            user_id=str(key.user_id),
            score=result.score,
        )
        return result
