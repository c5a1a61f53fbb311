"""1:1 challenge lifecycle: create, image readiness, guess, decline, lists."""

from uuid import UUID, uuid4

from sqlalchemy import and_, exists, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from promptguess.config import Settings, get_settings
from promptguess.exceptions import (
    AlreadyGuessedError,
    ConflictError,
    InvalidStateError,
    NotFoundError,
    ValidationFailedError,
)
from promptguess.logging_config import get_logger
from promptguess.models import Challenge, Guess, User
from promptguess.schemas import ChallengeResponse, GuessResultResponse
from promptguess.services.admission import AdmissionRejected, GuessAdmissionGate, InstanceKey
from promptguess.services.common import (
    clean_text,
    get_active_user,
    load_user_refs,
    page_limit,
    unknown_user,
)
from promptguess.services.expiry import Clock, ExpiryPolicy, SystemClock
from promptguess.services.ranking import rank_of
from promptguess.services.scoring import ScoreResult, ScoringGateway, get_scoring_gateway
from promptguess.services.state_machine import (
    CHALLENGE_EXPIRABLE,
    StateTransitionError,
    challenge_status_after_guess,
    validate_transition,
)

logger = get_logger(__name__)


def can_see_prompt(challenge: Challenge, viewer_id: UUID) -> bool:
    """The challenged player only sees the prompt once they have guessed."""
    if viewer_id == challenge.challenger_id:
        return True
    if challenge.status in ("guessed", "completed"):
        return True
    return viewer_id == challenge.challenged_id and challenge.challenged_score is not None


class ChallengeService:
    """Service layer for 1:1 challenges."""

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
        self.expiry = ExpiryPolicy.days(self.settings.challenge_expiry_days)

    def _gate(self) -> GuessAdmissionGate:
        return GuessAdmissionGate(
            self.session,
            clock=self.clock,
            wait_seconds=self.settings.admission_wait_seconds,
            poll_interval=self.settings.admission_poll_interval_seconds,
            lease_seconds=self.settings.admission_lease_seconds,
        )

    # ------------------------------------------------------------------
    # Loading and lazy expiry
    # ------------------------------------------------------------------

    async def _load(self, challenge_id: UUID, viewer_id: UUID | None = None) -> Challenge:
        result = await self.session.execute(
            select(Challenge)
            .where(Challenge.id == challenge_id)
            .execution_options(populate_existing=True)
        )
        challenge = result.scalar_one_or_none()
        if challenge is None:
            raise NotFoundError("challenge", challenge_id)
        if viewer_id is not None and viewer_id not in (
            challenge.challenger_id,
            challenge.challenged_id,
        ):
            raise NotFoundError("challenge", challenge_id)
        return await self._apply_expiry(challenge)

    @staticmethod
    def _unplayed():
        """Pending or active with no guess admitted, not even one still being scored."""
        return and_(
            Challenge.status.in_(CHALLENGE_EXPIRABLE),
            ~exists().where(
                Guess.instance_type == "challenge",
                Guess.instance_id == Challenge.id,
            ),
        )

    async def _apply_expiry(self, challenge: Challenge) -> Challenge:
        now = self.clock.now()
        if challenge.status not in CHALLENGE_EXPIRABLE or challenge.challenger_score is not None:
            return challenge
        if not self.expiry.is_expired(challenge.created_at, now):
            return challenge

        challenge_id, was = challenge.id, challenge.status
        result = await self.session.execute(
            update(Challenge)
            .where(Challenge.id == challenge_id, self._unplayed())
            .values(status="expired", updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        if result.rowcount:
            logger.info("challenge_expired", challenge_id=str(challenge_id), was=was)
        await self.session.refresh(challenge)
        return challenge

    async def expire_overdue(self) -> int:
        """Expire every overdue, unplayed challenge in one statement."""
        now = self.clock.now()
        result = await self.session.execute(
            update(Challenge)
            .where(self._unplayed(), Challenge.created_at < self.expiry.cutoff(now))
            .values(status="expired", updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        if result.rowcount:
            logger.info("challenges_expired", count=result.rowcount)
        return result.rowcount or 0

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    async def to_response(self, challenge: Challenge, viewer_id: UUID) -> ChallengeResponse:
        return (await self.to_responses([challenge], viewer_id))[0]

    async def to_responses(
        self, challenges: list[Challenge], viewer_id: UUID
    ) -> list[ChallengeResponse]:
        refs = await load_user_refs(
            self.session,
            [c.challenger_id for c in challenges] + [c.challenged_id for c in challenges],
        )
        responses = []
        for c in challenges:
            fields = dict(
                id=c.id,
                challenger=refs.get(c.challenger_id) or unknown_user(c.challenger_id),
                challenged=refs.get(c.challenged_id) or unknown_user(c.challenged_id),
                image_url=c.image_url,
                status=c.status,
                challenger_score=c.challenger_score,
                challenged_score=c.challenged_score,
                created_at=c.created_at,
                updated_at=c.updated_at,
            )
            if can_see_prompt(c, viewer_id):
                fields.update(
                    prompt=c.prompt,
                    challenger_guess=c.challenger_guess,
                    challenged_guess=c.challenged_guess,
                )
            responses.append(ChallengeResponse(**fields))
        return responses

    @staticmethod
    def _result(challenge: Challenge, guess: Guess | ScoreResult, text: str) -> GuessResultResponse:
        scores = [challenge.challenger_score, challenge.challenged_score]
        scored = [s for s in scores if s is not None]
        return GuessResultResponse(
            instance_id=challenge.id,
            score=guess.score,
            breakdown=guess.breakdown,
            rank=rank_of(guess.score, scored),
            total_guesses=len(scored),
            status=challenge.status,
            guess=text,
            prompt=challenge.prompt,
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def create(self, challenger: User, challenged_id: UUID, prompt: str) -> Challenge:
        """Create a challenge in ``pending``; it activates once its image is ready."""
        prompt = clean_text(prompt, "prompt", self.settings.max_prompt_length)
        if challenged_id == challenger.id:
            raise ValidationFailedError("Cannot challenge yourself", field="challenged_id")
        await get_active_user(self.session, challenged_id)

        now = self.clock.now()
        challenge = Challenge(
            id=uuid4(),
            challenger_id=challenger.id,
            challenged_id=challenged_id,
            prompt=prompt,
            status="pending",
            created_at=now,
            updated_at=now,
        )
        self.session.add(challenge)
        await self.session.commit()
        logger.info(
            "challenge_created",
            challenge_id=str(challenge.id),
            challenger_id=str(challenger.id),
            challenged_id=str(challenged_id),
        )
        return challenge

    async def _transition(self, challenge: Challenge, target: str, **values) -> Challenge:
        try:
            validate_transition("challenge", challenge.status, target)
        except StateTransitionError as e:
            raise InvalidStateError(str(e), current_status=challenge.status) from e

        result = await self.session.execute(
            update(Challenge)
            .where(Challenge.id == challenge.id, Challenge.status == challenge.status)
            .values(status=target, updated_at=self.clock.now(), **values)
        )
        await self.session.commit()
        if result.rowcount != 1:
            # Lost a race; report against the state that won
            current = await self._load(challenge.id)
            raise InvalidStateError(
                f"Challenge is {current.status}, cannot move to {target}",
                current_status=current.status,
            )
        logger.info(
            "challenge_transitioned",
            challenge_id=str(challenge.id),
            from_status=challenge.status,
            to_status=target,
        )
        return await self._load(challenge.id)

    async def mark_image_ready(self, challenge_id: UUID, image_url: str) -> Challenge:
        challenge = await self._load(challenge_id)
        return await self._transition(challenge, "active", image_url=image_url)

    async def mark_image_failed(self, challenge_id: UUID) -> Challenge:
        challenge = await self._load(challenge_id)
        if challenge.status != "pending":
            raise InvalidStateError(
                f"Challenge is {challenge.status}, not pending", current_status=challenge.status
            )
        return await self._transition(challenge, "expired")

    async def get_detail(self, challenge_id: UUID, viewer: User) -> ChallengeResponse:
        challenge = await self._load(challenge_id, viewer.id)
        return await self.to_response(challenge, viewer.id)

    async def submit_guess(self, challenge_id: UUID, user: User, guess_text: str) -> GuessResultResponse:
        """Admit, score and record one guess for ``user`` on a 1:1 challenge.

        The challenged player may guess while the challenge is ``active``; the
        challenger may add a guess of their own while it is ``active`` or
        ``guessed``.
        """
        text = clean_text(guess_text, "guess", self.settings.max_guess_length)
        # Plain ids from here on: a lost admission race rolls the session back
        # and expires every loaded row, user included
        user_id = user.id
        challenge = await self._load(challenge_id, user_id)
        is_challenger = user_id == challenge.challenger_id
        prompt = challenge.prompt
        gate = self._gate()
        key = InstanceKey("challenge", challenge_id, user_id)

        prior = await gate.get_scored(key)
        if prior is not None:
            raise await self._already_guessed(challenge, user_id, prior)

        allowed = ("active", "guessed") if is_challenger else ("active",)
        if challenge.status not in allowed:
            raise InvalidStateError(
                f"Cannot guess on a {challenge.status} challenge",
                current_status=challenge.status,
            )

        async def apply(result: ScoreResult) -> None:
            locked = (
                await self.session.execute(
                    select(Challenge)
                    .where(Challenge.id == challenge_id)
                    .with_for_update()
                    .execution_options(populate_existing=True)
                )
            ).scalar_one()
            if locked.status not in allowed:
                raise InvalidStateError(
                    f"Cannot guess on a {locked.status} challenge",
                    current_status=locked.status,
                )
            if is_challenger:
                locked.challenger_score = result.score
                locked.challenger_guess = text
            else:
                locked.challenged_score = result.score
                locked.challenged_guess = text
            locked.status = challenge_status_after_guess(
                locked.status,
                challenger_scored=locked.challenger_score is not None,
                challenged_scored=locked.challenged_score is not None,
            )
            locked.updated_at = self.clock.now()
            await self.session.flush()

        try:
            result = await gate.run(
                key,
                text,
                prompt,
                self.scorer,
                apply,
                timeout=self.settings.scoring_timeout_seconds,
            )
        except AdmissionRejected as e:
            current = await self._load(challenge_id)
            if e.existing is None:
                raise ConflictError(
                    "A guess for this challenge is already being scored",
                    "guess_in_progress",
                    current_state=(await self.to_response(current, user_id)).model_dump(
                        mode="json", exclude_unset=True
                    ),
                ) from e
            raise await self._already_guessed(current, user_id, e.existing) from e

        challenge = await self._load(challenge_id)
        logger.info(
            "challenge_guess_recorded",
            challenge_id=str(challenge_id),
            user_id=str(user_id),
            status=challenge.status,
        )
        return self._result(challenge, result, text)

    async def _already_guessed(
        self, challenge: Challenge, user_id: UUID, prior: Guess
    ) -> AlreadyGuessedError:
        result = self._result(challenge, prior, prior.guess_text)
        state = await self.to_response(challenge, user_id)
        return AlreadyGuessedError(
            prior_result=result.model_dump(mode="json"),
            current_state=state.model_dump(mode="json", exclude_unset=True),
        )

    async def decline(self, challenge_id: UUID, user: User) -> ChallengeResponse:
        challenge = await self._load(challenge_id, user.id)
        if user.id != challenge.challenged_id:
            raise NotFoundError("challenge", challenge_id)
        if challenge.status != "active":
            raise InvalidStateError(
                f"Cannot decline a {challenge.status} challenge",
                current_status=challenge.status,
            )
        challenge = await self._transition(challenge, "declined")
        return await self.to_response(challenge, user.id)

    # ------------------------------------------------------------------
    # Lists
    # ------------------------------------------------------------------

    async def list_incoming(self, user: User) -> list[ChallengeResponse]:
        """Active challenges waiting on ``user``'s guess."""
        await self.expire_overdue()
        result = await self.session.execute(
            select(Challenge)
            .where(Challenge.challenged_id == user.id, Challenge.status == "active")
            .order_by(Challenge.created_at.desc())
            .execution_options(populate_existing=True)
        )
        return await self.to_responses(list(result.scalars().all()), user.id)

    async def list_sent(self, user: User, limit: int = 50) -> list[ChallengeResponse]:
        await self.expire_overdue()
        result = await self.session.execute(
            select(Challenge)
            .where(Challenge.challenger_id == user.id)
            .order_by(Challenge.created_at.desc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return await self.to_responses(list(result.scalars().all()), user.id)

    async def history(
        self, user: User, friend_id: UUID, page: int = 1, limit: int | None = None
    ) -> tuple[list[ChallengeResponse], bool]:
        """Challenges between two players in either direction, newest first."""
        limit = page_limit(limit, self.settings)
        page = max(1, page)
        await self.expire_overdue()
        between = or_(
            and_(Challenge.challenger_id == user.id, Challenge.challenged_id == friend_id),
            and_(Challenge.challenger_id == friend_id, Challenge.challenged_id == user.id),
        )
        total = (
            await self.session.execute(select(func.count()).select_from(Challenge).where(between))
        ).scalar() or 0
        result = await self.session.execute(
            select(Challenge)
            .where(between)
            .order_by(Challenge.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        items = await self.to_responses(list(result.scalars().all()), user.id)
        return items, page * limit < total
