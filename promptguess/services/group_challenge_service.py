"""N-party group challenges.

A group challenge never stores its top-level status. It is reduced from
the image readiness, the expiry marker and the participants' sub-states on
every read (see ``compute_group_status``). The creator is not a
participant, never guesses and always sees everything.
"""

from uuid import UUID, uuid4

from sqlalchemy import exists, or_, select, update
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
from promptguess.models import Guess, GroupChallenge, GroupChallengeParticipant, User
from promptguess.schemas import (
    GroupChallengeResponse,
    GuessResultResponse,
    ParticipantResponse,
    UserRef,
)
from promptguess.services.admission import AdmissionRejected, GuessAdmissionGate, InstanceKey
from promptguess.services.common import clean_text, load_user_refs, stats_response, unknown_user
from promptguess.services.expiry import Clock, ExpiryPolicy, SystemClock
from promptguess.services.ranking import competition_ranks, rank_of, summarize
from promptguess.services.scoring import ScoreResult, ScoringGateway, get_scoring_gateway
from promptguess.services.state_machine import (
    GROUP_TERMINAL,
    StateTransitionError,
    compute_group_status,
    validate_transition,
)

logger = get_logger(__name__)

OPEN_PARTICIPANT_STATUSES = ("pending", "joined")


class GroupState:
    """A group challenge together with its participants, as read in one go."""

    def __init__(self, group: GroupChallenge, participants: list[GroupChallengeParticipant]):
        self.group = group
        self.participants = participants

    @property
    def status(self) -> str:
        return compute_group_status(
            image_ready=self.group.activated_at is not None,
            expired=self.group.expired_at is not None,
            participant_statuses=[p.status for p in self.participants],
        )

    def participant(self, user_id: UUID) -> GroupChallengeParticipant | None:
        for p in self.participants:
            if p.user_id == user_id:
                return p
        return None

    def is_member(self, user_id: UUID) -> bool:
        return user_id == self.group.creator_id or self.participant(user_id) is not None

    def can_see_results(self, viewer_id: UUID) -> bool:
        if viewer_id == self.group.creator_id or self.status == "completed":
            return True
        me = self.participant(viewer_id)
        return me is not None and me.status == "guessed"


class GroupChallengeService:
    """Service layer for group challenges."""

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
        self.expiry = ExpiryPolicy.days(self.settings.group_expiry_days)

    # ------------------------------------------------------------------
    # Loading and lazy expiry
    # ------------------------------------------------------------------

    async def _participants(self, group_id: UUID) -> list[GroupChallengeParticipant]:
        result = await self.session.execute(
            select(GroupChallengeParticipant)
            .where(GroupChallengeParticipant.group_challenge_id == group_id)
            .order_by(GroupChallengeParticipant.position)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def _load(self, group_id: UUID, viewer_id: UUID | None = None) -> GroupState:
        result = await self.session.execute(
            select(GroupChallenge)
            .where(GroupChallenge.id == group_id)
            .execution_options(populate_existing=True)
        )
        group = result.scalar_one_or_none()
        if group is None:
            raise NotFoundError("group challenge", group_id)
        state = GroupState(group, await self._participants(group_id))
        if viewer_id is not None and not state.is_member(viewer_id):
            raise NotFoundError("group challenge", group_id)
        return await self._apply_expiry(state)

    def _still_open(self):
        return exists().where(
            GroupChallengeParticipant.group_challenge_id == GroupChallenge.id,
            GroupChallengeParticipant.status.in_(OPEN_PARTICIPANT_STATUSES),
        )

    async def _apply_expiry(self, state: GroupState) -> GroupState:
        now = self.clock.now()
        if state.status in GROUP_TERMINAL:
            return state
        if not self.expiry.is_expired(state.group.created_at, now):
            return state

        result = await self.session.execute(
            update(GroupChallenge)
            .where(
                GroupChallenge.id == state.group.id,
                GroupChallenge.expired_at.is_(None),
                self._still_open(),
            )
            .values(expired_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        if result.rowcount:
            logger.info("group_challenge_expired", group_challenge_id=str(state.group.id))
        return await self._load(state.group.id)

    async def expire_overdue(self) -> int:
        """Expire every overdue, still-open group challenge."""
        now = self.clock.now()
        result = await self.session.execute(
            update(GroupChallenge)
            .where(
                GroupChallenge.expired_at.is_(None),
                GroupChallenge.created_at < self.expiry.cutoff(now),
                self._still_open(),
            )
            .values(expired_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        if result.rowcount:
            logger.info("group_challenges_expired", count=result.rowcount)
        return result.rowcount or 0

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    async def to_response(self, state: GroupState, viewer_id: UUID) -> GroupChallengeResponse:
        group = state.group
        refs = await load_user_refs(self.session, [group.creator_id])
        full = state.can_see_results(viewer_id)

        participants = []
        for entry in competition_ranks((p.user_id, p.score, p) for p in state.participants):
            p = entry.payload
            fields = dict(user=UserRef(id=p.user_id, username=p.username), status=p.status)
            if full:
                fields.update(score=p.score, rank=entry.rank, guess=p.guess_text)
            participants.append(ParticipantResponse(**fields))

        me = state.participant(viewer_id)
        fields = dict(
            id=group.id,
            creator=refs.get(group.creator_id) or unknown_user(group.creator_id),
            image_url=group.image_url,
            status=state.status,
            participants=participants,
            my_status="creator" if viewer_id == group.creator_id else (me.status if me else None),
            created_at=group.created_at,
            updated_at=group.updated_at,
        )
        if full:
            fields.update(
                prompt=group.prompt,
                stats=stats_response(summarize(p.score for p in state.participants)),
            )
        return GroupChallengeResponse(**fields)

    async def _snapshot(self, group_id: UUID, viewer_id: UUID) -> dict:
        state = await self._load(group_id)
        response = await self.to_response(state, viewer_id)
        return response.model_dump(mode="json", exclude_unset=True)

    @staticmethod
    def _result(state: GroupState, guess: Guess | ScoreResult, text: str) -> GuessResultResponse:
        scored = [p.score for p in state.participants if p.score is not None]
        return GuessResultResponse(
            instance_id=state.group.id,
            score=guess.score,
            breakdown=guess.breakdown,
            rank=rank_of(guess.score, scored),
            total_guesses=len(scored),
            status=state.status,
            guess=text,
            prompt=state.group.prompt,
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def create(self, creator: User, participant_ids: list[UUID], prompt: str) -> GroupState:
        """Create a group challenge with one pending participant per invitee."""
        prompt = clean_text(prompt, "prompt", self.settings.max_prompt_length)
        low, high = self.settings.min_group_participants, self.settings.max_group_participants
        if not low <= len(participant_ids) <= high:
            raise ValidationFailedError(
                f"A group challenge needs between {low} and {high} participants",
                field="participant_ids",
            )
        if len(set(participant_ids)) != len(participant_ids):
            raise ValidationFailedError("Participants must be distinct", field="participant_ids")
        if creator.id in participant_ids:
            raise ValidationFailedError(
                "The creator cannot be a participant", field="participant_ids"
            )

        result = await self.session.execute(
            select(User).where(User.id.in_(participant_ids), User.status == "active")
        )
        users = {u.id: u for u in result.scalars().all()}
        missing = [pid for pid in participant_ids if pid not in users]
        if missing:
            raise NotFoundError("user", missing[0])

        now = self.clock.now()
        group = GroupChallenge(
            id=uuid4(),
            creator_id=creator.id,
            prompt=prompt,
            created_at=now,
            updated_at=now,
        )
        self.session.add(group)
        for position, pid in enumerate(participant_ids):
            self.session.add(
                GroupChallengeParticipant(
                    id=uuid4(),
                    group_challenge_id=group.id,
                    user_id=pid,
                    username=users[pid].username,
                    position=position,
                    status="pending",
                    created_at=now,
                    updated_at=now,
                )
            )
        await self.session.commit()
        logger.info(
            "group_challenge_created",
            group_challenge_id=str(group.id),
            creator_id=str(creator.id),
            participants=len(participant_ids),
        )
        return await self._load(group.id)

    async def mark_image_ready(self, group_id: UUID, image_url: str) -> GroupState:
        state = await self._load(group_id)
        if state.status != "pending":
            raise InvalidStateError(
                f"Group challenge is {state.status}, not pending", current_status=state.status
            )
        now = self.clock.now()
        result = await self.session.execute(
            update(GroupChallenge)
            .where(GroupChallenge.id == group_id, GroupChallenge.activated_at.is_(None))
            .values(image_url=image_url, activated_at=now, updated_at=now)
        )
        await self.session.commit()
        if result.rowcount != 1:
            state = await self._load(group_id)
            raise InvalidStateError(
                f"Group challenge is {state.status}, not pending", current_status=state.status
            )
        logger.info("group_challenge_activated", group_challenge_id=str(group_id))
        return await self._load(group_id)

    async def get_detail(self, group_id: UUID, viewer: User) -> GroupChallengeResponse:
        state = await self._load(group_id, viewer.id)
        return await self.to_response(state, viewer.id)

    def _require_participant(self, state: GroupState, user_id: UUID) -> GroupChallengeParticipant:
        me = state.participant(user_id)
        if me is None:
            raise InvalidStateError("The creator does not take part in their own challenge")
        return me

    async def _move_participant(
        self,
        state: GroupState,
        me: GroupChallengeParticipant,
        target: str,
        viewer_id: UUID,
    ) -> GroupState:
        group_id, current = state.group.id, me.status
        try:
            validate_transition("participant", current, target)
        except StateTransitionError as e:
            raise ConflictError(
                f"You have already {current} this challenge",
                f"already_{current}",
                current_state=await self._snapshot(group_id, viewer_id),
            ) from e

        now = self.clock.now()
        result = await self.session.execute(
            update(GroupChallengeParticipant)
            .where(
                GroupChallengeParticipant.id == me.id,
                GroupChallengeParticipant.status == current,
            )
            .values(status=target, updated_at=now)
        )
        if result.rowcount != 1:
            await self.session.rollback()
            raise ConflictError(
                "Your participation changed meanwhile",
                "participant_changed",
                current_state=await self._snapshot(group_id, viewer_id),
            )
        await self.session.execute(
            update(GroupChallenge).where(GroupChallenge.id == group_id).values(updated_at=now)
        )
        await self.session.commit()

        updated = await self._load(group_id)
        logger.info(
            "group_participant_transitioned",
            group_challenge_id=str(group_id),
            user_id=str(viewer_id),
            from_status=current,
            to_status=target,
            group_status=updated.status,
        )
        return updated

    async def join(self, group_id: UUID, user: User) -> GroupChallengeResponse:
        state = await self._load(group_id, user.id)
        me = self._require_participant(state, user.id)
        if me.status != "pending":
            raise ConflictError(
                f"You have already {me.status} this challenge",
                f"already_{me.status}",
                current_state=await self._snapshot(group_id, user.id),
            )
        if state.status != "active":
            raise InvalidStateError(
                f"Cannot join a {state.status} group challenge", current_status=state.status
            )
        state = await self._move_participant(state, me, "joined", user.id)
        return await self.to_response(state, user.id)

    async def decline(self, group_id: UUID, user: User) -> GroupChallengeResponse:
        state = await self._load(group_id, user.id)
        me = self._require_participant(state, user.id)
        if me.status not in OPEN_PARTICIPANT_STATUSES:
            raise ConflictError(
                f"You have already {me.status} this challenge",
                f"already_{me.status}",
                current_state=await self._snapshot(group_id, user.id),
            )
        if state.status in GROUP_TERMINAL:
            raise InvalidStateError(
                f"Cannot decline a {state.status} group challenge", current_status=state.status
            )
        state = await self._move_participant(state, me, "declined", user.id)
        return await self.to_response(state, user.id)

    async def submit_guess(self, group_id: UUID, user: User, guess_text: str) -> GuessResultResponse:
        """Admit, score and record ``user``'s single guess on a group challenge."""
        text = clean_text(guess_text, "guess", self.settings.max_guess_length)
        user_id = user.id
        state = await self._load(group_id, user_id)
        me = self._require_participant(state, user_id)
        prompt = state.group.prompt
        gate = self._gate()
        key = InstanceKey("group", group_id, user_id)

        prior = await gate.get_scored(key)
        if prior is not None:
            raise await self._already_guessed(group_id, user_id, prior)

        if state.status != "active":
            raise InvalidStateError(
                f"Cannot guess on a {state.status} group challenge", current_status=state.status
            )
        if me.status != "joined":
            raise InvalidStateError(
                "Join the challenge before guessing"
                if me.status == "pending"
                else f"Cannot guess after having {me.status}",
                current_status=state.status,
            )

        async def apply(result: ScoreResult) -> None:
            group = (
                await self.session.execute(
                    select(GroupChallenge)
                    .where(GroupChallenge.id == group_id)
                    .with_for_update()
                    .execution_options(populate_existing=True)
                )
            ).scalar_one()
            locked = GroupState(group, await self._participants(group_id))
            mine = locked.participant(user_id)
            if locked.status != "active" or mine is None or mine.status != "joined":
                raise InvalidStateError(
                    f"Cannot guess on a {locked.status} group challenge",
                    current_status=locked.status,
                )
            now = self.clock.now()
            mine.status = "guessed"
            mine.score = result.score
            mine.guess_text = text
            mine.updated_at = now
            group.updated_at = now
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
            if e.existing is None:
                raise ConflictError(
                    "A guess for this challenge is already being scored",
                    "guess_in_progress",
                    current_state=await self._snapshot(group_id, user_id),
                ) from e
            raise await self._already_guessed(group_id, user_id, e.existing) from e

        state = await self._load(group_id)
        if state.status == "completed":
            logger.info("group_challenge_completed", group_challenge_id=str(group_id))
        return self._result(state, result, text)

    def _gate(self) -> GuessAdmissionGate:
        return GuessAdmissionGate(
            self.session,
            clock=self.clock,
            wait_seconds=self.settings.admission_wait_seconds,
            poll_interval=self.settings.admission_poll_interval_seconds,
            lease_seconds=self.settings.admission_lease_seconds,
        )

    async def _already_guessed(self, group_id: UUID, user_id: UUID, prior: Guess) -> AlreadyGuessedError:
        state = await self._load(group_id)
        return AlreadyGuessedError(
            prior_result=self._result(state, prior, prior.guess_text).model_dump(mode="json"),
            current_state=(await self.to_response(state, user_id)).model_dump(
                mode="json", exclude_unset=True
            ),
        )

    # ------------------------------------------------------------------
    # Lists
    # ------------------------------------------------------------------

    async def list_for_user(self, user: User, limit: int = 50) -> list[GroupChallengeResponse]:
        """Group challenges the user created or was invited to, latest activity first."""
        await self.expire_overdue()
        invited = select(GroupChallengeParticipant.group_challenge_id).where(
            GroupChallengeParticipant.user_id == user.id
        )
        result = await self.session.execute(
            select(GroupChallenge.id)
            .where(or_(GroupChallenge.creator_id == user.id, GroupChallenge.id.in_(invited)))
            .order_by(GroupChallenge.updated_at.desc())
            .limit(limit)
        )
        responses = []
        for group_id in result.scalars().all():
            responses.append(await self.to_response(await self._load(group_id), user.id))
        return responses
