"""Daily round lifecycle and per-round guessing.

Rounds are created and rotated by an external scheduler through the admin
API; at most one round is ``active`` at a time (enforced by a partial
unique index). Every user gets a single guess per round.
"""

from datetime import timedelta
from uuid import UUID, uuid4

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from promptguess.config import Settings, get_settings
from promptguess.exceptions import (
    AlreadyGuessedError,
    ConflictError,
    InvalidStateError,
    NotFoundError,
)
from promptguess.logging_config import get_logger
from promptguess.models import Guess, Round, User
from promptguess.schemas import (
    GuessResultResponse,
    LeaderboardEntryResponse,
    LeaderboardResponse,
    RoundHistoryItem,
    RoundResponse,
    ShareResponse,
    UserRef,
)
from promptguess.services.admission import AdmissionRejected, GuessAdmissionGate, InstanceKey
from promptguess.services.common import clean_text, page_limit, stats_response
from promptguess.services.expiry import Clock, SystemClock
from promptguess.services.ranking import ScoreStats, competition_ranks, rank_of, summarize
from promptguess.services.scoring import ScoreResult, ScoringGateway, get_scoring_gateway
from promptguess.services.state_machine import StateTransitionError, validate_transition

logger = get_logger(__name__)


class RoundService:
    """Service layer for the shared daily round."""

    def __init__(
        self,
        session: AsyncSession,
        scorer: ScoringGateway | None = None,
        clock: Clock | None = None,
        settings: Settings | None = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.scorer = scorer or get_scoring_gateway(self.settings)
        self.clock = clock or SystemClock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def get_round(self, round_id: UUID) -> Round:
        result = await self.session.execute(
            select(Round).where(Round.id == round_id).execution_options(populate_existing=True)
        )
        round_ = result.scalar_one_or_none()
        if round_ is None:
            raise NotFoundError("round", round_id)
        return round_

    async def get_active_round(self) -> Round | None:
        result = await self.session.execute(select(Round).where(Round.status == "active"))
        return result.scalar_one_or_none()

    async def create_round(self, image_url: str, prompt: str) -> Round:
        round_ = Round(
            id=uuid4(),
            image_url=image_url,
            prompt=prompt.strip(),
            status="pending",
            created_at=self.clock.now(),
        )
        self.session.add(round_)
        await self.session.commit()
        logger.info("round_created", round_id=str(round_.id))
        return round_

    async def _move(self, round_: Round, target: str, **values) -> None:
        """Conditional status update inside the current transaction."""
        try:
            validate_transition("round", round_.status, target)
        except StateTransitionError as e:
            raise InvalidStateError(str(e), current_status=round_.status) from e
        result = await self.session.execute(
            update(Round)
            .where(Round.id == round_.id, Round.status == round_.status)
            .values(status=target, **values)
        )
        if result.rowcount != 1:
            raise InvalidStateError(
                f"Round changed state meanwhile, cannot move to {target}",
                current_status=round_.status,
            )

    async def activate_round(self, round_id: UUID) -> Round:
        round_ = await self.get_round(round_id)
        try:
            await self._move(round_, "active", started_at=self.clock.now())
            await self.session.commit()
        except IntegrityError as e:
            await self.session.rollback()
            raise ConflictError("Another round is already active", "round_already_active") from e
        except InvalidStateError:
            await self.session.rollback()
            raise
        logger.info("round_activated", round_id=str(round_id))
        return await self.get_round(round_id)

    async def complete_round(self, round_id: UUID) -> Round:
        round_ = await self.get_round(round_id)
        try:
            await self._move(round_, "completed", ended_at=self.clock.now())
        except InvalidStateError:
            await self.session.rollback()
            raise
        await self.session.commit()
        logger.info("round_completed", round_id=str(round_id))
        return await self.get_round(round_id)

    async def rotate_round(self, image_url: str, prompt: str) -> Round:
        """Replace the active round with a new one in a single transaction.

        The new round is inserted first, so a failure leaves the old round
        active and untouched.
        """
        now = self.clock.now()
        new_round = Round(
            id=uuid4(),
            image_url=image_url,
            prompt=prompt.strip(),
            status="pending",
            created_at=now,
        )
        self.session.add(new_round)
        await self.session.flush()

        current = await self.get_active_round()
        try:
            if current is not None:
                await self._move(current, "completed", ended_at=now)
            await self._move(new_round, "active", started_at=now)
            await self.session.commit()
        except IntegrityError as e:
            await self.session.rollback()
            raise ConflictError("Round rotation raced with another rotation", "rotation_conflict") from e
        except InvalidStateError:
            await self.session.rollback()
            raise

        logger.info(
            "round_rotated",
            new_round_id=str(new_round.id),
            previous_round_id=str(current.id) if current else None,
        )
        return await self.get_round(new_round.id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _scored_guesses(self, round_id: UUID) -> list[tuple[Guess, str]]:
        result = await self.session.execute(
            select(Guess, User.username)
            .join(User, User.id == Guess.user_id)
            .where(
                Guess.instance_type == "round",
                Guess.instance_id == round_id,
                Guess.status == "scored",
            )
            .order_by(Guess.scored_at)
        )
        return [(row[0], row[1]) for row in result.all()]

    async def _guess_count(self, round_id: UUID) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(Guess)
            .where(
                Guess.instance_type == "round",
                Guess.instance_id == round_id,
                Guess.status == "scored",
            )
        )
        return result.scalar() or 0

    async def to_response(self, round_: Round, viewer: User | None = None) -> RoundResponse:
        fields = dict(
            id=round_.id,
            image_url=round_.image_url,
            status=round_.status,
            started_at=round_.started_at,
            ends_at=(
                round_.started_at + timedelta(hours=self.settings.round_duration_hours)
                if round_.started_at is not None and round_.status == "active"
                else None
            ),
            ended_at=round_.ended_at,
            guess_count=await self._guess_count(round_.id),
        )
        if round_.status == "completed":
            fields["prompt"] = round_.prompt
        if viewer is not None:
            gate = GuessAdmissionGate(self.session, clock=self.clock)
            mine = await gate.get_scored(InstanceKey("round", round_.id, viewer.id))
            fields.update(
                has_guessed=mine is not None,
                user_score=mine.score if mine is not None else None,
            )
        return RoundResponse(**fields)

    async def stats(self, round_id: UUID) -> ScoreStats | None:
        return summarize(g.score for g, _ in await self._scored_guesses(round_id))

    async def leaderboard(self, round_id: UUID, limit: int = 50) -> LeaderboardResponse:
        """Top entries by competition rank; guess text stays hidden until the round ends."""
        round_ = await self.get_round(round_id)
        guesses = await self._scored_guesses(round_id)
        reveal = round_.status == "completed"

        entries = []
        for entry in competition_ranks((g.user_id, g.score, (g, name)) for g, name in guesses)[:limit]:
            guess, username = entry.payload
            fields = dict(
                rank=entry.rank,
                user=UserRef(id=guess.user_id, username=username),
                score=entry.score,
            )
            if reveal:
                fields["guess"] = guess.guess_text
            entries.append(LeaderboardEntryResponse(**fields))

        return LeaderboardResponse(
            round_id=round_id,
            status=round_.status,
            total_guesses=len(guesses),
            entries=entries,
            stats=stats_response(summarize(g.score for g, _ in guesses)),
        )

    async def share(self, round_id: UUID, user_id: UUID) -> ShareResponse:
        """Public score card for one user's guess on a round."""
        round_ = await self.get_round(round_id)
        guesses = await self._scored_guesses(round_id)
        for guess, username in guesses:
            if guess.user_id == user_id:
                return ShareResponse(
                    round_id=round_id,
                    user=UserRef(id=user_id, username=username),
                    score=guess.score,
                    rank=rank_of(guess.score, [g.score for g, _ in guesses]),
                    total_guesses=len(guesses),
                    image_url=round_.image_url,
                )
        raise NotFoundError("guess", user_id)

    async def list_completed(
        self, page: int = 1, limit: int | None = None
    ) -> tuple[list[RoundHistoryItem], bool]:
        limit = page_limit(limit, self.settings)
        page = max(1, page)
        counts = (
            select(
                Guess.instance_id.label("round_id"),
                func.count(Guess.id).label("total_guesses"),
                func.max(Guess.score).label("top_score"),
            )
            .where(Guess.instance_type == "round", Guess.status == "scored")
            .group_by(Guess.instance_id)
            .subquery()
        )
        result = await self.session.execute(
            select(Round, counts.c.total_guesses, counts.c.top_score)
            .outerjoin(counts, counts.c.round_id == Round.id)
            .where(Round.status == "completed")
            .order_by(Round.ended_at.desc())
            .offset((page - 1) * limit)
            .limit(limit + 1)
        )
        rows = result.all()
        items = [
            RoundHistoryItem(
                id=r.id,
                image_url=r.image_url,
                prompt=r.prompt,
                started_at=r.started_at,
                ended_at=r.ended_at,
                total_guesses=total or 0,
                top_score=top,
            )
            for r, total, top in rows[:limit]
        ]
        return items, len(rows) > limit

    # ------------------------------------------------------------------
    # Guessing
    # ------------------------------------------------------------------

    def _result(self, round_: Round, guess: Guess | ScoreResult, text: str, scores: list[int]) -> GuessResultResponse:
        fields = dict(
            instance_id=round_.id,
            score=guess.score,
            breakdown=guess.breakdown,
            rank=rank_of(guess.score, scores),
            total_guesses=len(scores),
            status=round_.status,
            guess=text,
        )
        if round_.status == "completed":
            fields["prompt"] = round_.prompt
        return GuessResultResponse(**fields)

    async def _already_guessed(self, round_: Round, prior: Guess) -> AlreadyGuessedError:
        scores = [g.score for g, _ in await self._scored_guesses(round_.id)]
        return AlreadyGuessedError(
            prior_result=self._result(round_, prior, prior.guess_text, scores).model_dump(
                mode="json", exclude_unset=True
            ),
            current_state=(await self.to_response(round_)).model_dump(
                mode="json", exclude_unset=True
            ),
        )

    async def submit_guess(self, round_id: UUID, user: User, guess_text: str) -> GuessResultResponse:
        """One scored guess per user per round, ranked against everyone so far."""
        text = clean_text(guess_text, "guess", self.settings.max_guess_length)
        round_ = await self.get_round(round_id)
        gate = GuessAdmissionGate(
            self.session,
            clock=self.clock,
            wait_seconds=self.settings.admission_wait_seconds,
            poll_interval=self.settings.admission_poll_interval_seconds,
            lease_seconds=self.settings.admission_lease_seconds,
        )
        key = InstanceKey("round", round_id, user.id)

        prior = await gate.get_scored(key)
        if prior is not None:
            raise await self._already_guessed(round_, prior)
        if round_.status != "active":
            raise InvalidStateError(
                f"Round is {round_.status}, guesses are closed", current_status=round_.status
            )

        async def apply(result: ScoreResult) -> None:
            # Shared lock: concurrent guessers proceed, rotation waits
            locked = (
                await self.session.execute(
                    select(Round)
                    .where(Round.id == round_id)
                    .with_for_update(read=True)
                    .execution_options(populate_existing=True)
                )
            ).scalar_one()
            if locked.status != "active":
                raise InvalidStateError(
                    f"Round is {locked.status}, guesses are closed", current_status=locked.status
                )

        try:
            result = await gate.run(
                key,
                text,
                round_.prompt,
                self.scorer,
                apply,
                timeout=self.settings.scoring_timeout_seconds,
            )
        except AdmissionRejected as e:
            # The losing INSERT rolled the session back and expired round_
            round_ = await self.get_round(round_id)
            if e.existing is None:
                raise ConflictError(
                    "A guess for this round is already being scored",
                    "guess_in_progress",
                    current_state=(await self.to_response(round_)).model_dump(
                        mode="json", exclude_unset=True
                    ),
                ) from e
            raise await self._already_guessed(round_, e.existing) from e

        round_ = await self.get_round(round_id)
        scores = [g.score for g, _ in await self._scored_guesses(round_id)]
        return self._result(round_, result, text, scores)
