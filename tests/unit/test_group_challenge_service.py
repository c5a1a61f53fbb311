"""GroupChallengeService: creation rules, participant lifecycle, derived status."""

from uuid import uuid4

import pytest
import pytest_asyncio

from promptguess.exceptions import (
    AlreadyGuessedError,
    ConflictError,
    InvalidStateError,
    NotFoundError,
    ValidationFailedError,
)
from promptguess.services.group_challenge_service import GroupChallengeService
from tests.factories import StubScorer, create_active_group


@pytest.fixture
def service_for(settings, clock):
    def _make(session, scorer=None):
        return GroupChallengeService(
            session, scorer=scorer or StubScorer(), clock=clock, settings=settings
        )

    return _make


@pytest_asyncio.fixture
async def crew(make_user):
    """Creator plus three invitees."""
    return (
        await make_user("creator"),
        await make_user("alice"),
        await make_user("bob"),
        await make_user("dana"),
    )


def _by_user(response, user):
    return next(p for p in response.participants if p.user.id == user.id)


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_is_pending_with_pending_participants(self, db_session, service_for, crew):
        creator, alice, bob, _ = crew
        state = await service_for(db_session).create(creator, [alice.id, bob.id], "a cat")
        assert state.status == "pending"
        assert [p.user_id for p in state.participants] == [alice.id, bob.id]
        assert {p.status for p in state.participants} == {"pending"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("count", [1, 11])
    async def test_participant_count_bounds(self, db_session, service_for, crew, count):
        creator = crew[0]
        with pytest.raises(ValidationFailedError):
            await service_for(db_session).create(creator, [uuid4() for _ in range(count)], "a cat")

    @pytest.mark.asyncio
    async def test_duplicate_participants(self, db_session, service_for, crew):
        creator, alice, _, _ = crew
        with pytest.raises(ValidationFailedError, match="distinct"):
            await service_for(db_session).create(creator, [alice.id, alice.id], "a cat")

    @pytest.mark.asyncio
    async def test_creator_cannot_be_participant(self, db_session, service_for, crew):
        creator, alice, _, _ = crew
        with pytest.raises(ValidationFailedError):
            await service_for(db_session).create(creator, [creator.id, alice.id], "a cat")

    @pytest.mark.asyncio
    async def test_unknown_participant(self, db_session, service_for, crew):
        creator, alice, _, _ = crew
        with pytest.raises(NotFoundError):
            await service_for(db_session).create(creator, [alice.id, uuid4()], "a cat")

    @pytest.mark.asyncio
    async def test_image_ready_activates(self, db_session, crew, clock, settings):
        creator, alice, bob, _ = crew
        state = await create_active_group(db_session, creator, [alice, bob], clock, settings)
        assert state.status == "active"
        assert state.group.image_url == "https://img.example/g.png"


class TestParticipantLifecycle:
    @pytest.mark.asyncio
    async def test_cannot_join_before_image_ready(self, db_session, service_for, crew):
        creator, alice, bob, _ = crew
        service = service_for(db_session)
        state = await service.create(creator, [alice.id, bob.id], "a cat")
        with pytest.raises(InvalidStateError):
            await service.join(state.group.id, alice)

    @pytest.mark.asyncio
    async def test_join_twice_is_conflict(self, db_session, service_for, crew, clock, settings):
        creator, alice, bob, _ = crew
        state = await create_active_group(db_session, creator, [alice, bob], clock, settings)
        service = service_for(db_session)

        joined = await service.join(state.group.id, alice)
        assert joined.my_status == "joined"

        with pytest.raises(ConflictError) as exc_info:
            await service.join(state.group.id, alice)
        assert exc_info.value.error_type == "already_joined"
        assert exc_info.value.current_state["my_status"] == "joined"

    @pytest.mark.asyncio
    async def test_must_join_before_guessing(self, db_session, service_for, crew, clock, settings):
        creator, alice, bob, _ = crew
        state = await create_active_group(db_session, creator, [alice, bob], clock, settings)
        scorer = StubScorer()
        with pytest.raises(InvalidStateError, match="Join"):
            await service_for(db_session, scorer).submit_guess(state.group.id, alice, "a cat")
        assert scorer.calls == []

    @pytest.mark.asyncio
    async def test_creator_does_not_play(self, db_session, service_for, crew, clock, settings):
        creator, alice, bob, _ = crew
        state = await create_active_group(db_session, creator, [alice, bob], clock, settings)
        service = service_for(db_session)
        with pytest.raises(InvalidStateError):
            await service.join(state.group.id, creator)
        with pytest.raises(InvalidStateError):
            await service.submit_guess(state.group.id, creator, "a cat")

    @pytest.mark.asyncio
    async def test_outsider_gets_not_found(self, db_session, service_for, crew, clock, settings):
        creator, alice, bob, dana = crew
        state = await create_active_group(db_session, creator, [alice, bob], clock, settings)
        with pytest.raises(NotFoundError):
            await service_for(db_session).get_detail(state.group.id, dana)

    @pytest.mark.asyncio
    async def test_decline_after_join_then_no_guess(self, db_session, service_for, crew, clock, settings):
        creator, alice, bob, _ = crew
        state = await create_active_group(db_session, creator, [alice, bob], clock, settings)
        service = service_for(db_session)
        await service.join(state.group.id, alice)
        declined = await service.decline(state.group.id, alice)
        assert declined.my_status == "declined"

        with pytest.raises(ConflictError) as exc_info:
            await service.decline(state.group.id, alice)
        assert exc_info.value.error_type == "already_declined"

        with pytest.raises(InvalidStateError):
            await service.submit_guess(state.group.id, alice, "a cat")

    @pytest.mark.asyncio
    async def test_cannot_decline_after_guessing(self, db_session, service_for, crew, clock, settings):
        creator, alice, bob, _ = crew
        state = await create_active_group(db_session, creator, [alice, bob], clock, settings)
        service = service_for(db_session)
        await service.join(state.group.id, alice)
        await service.submit_guess(state.group.id, alice, "a cat")
        with pytest.raises(ConflictError) as exc_info:
            await service.decline(state.group.id, alice)
        assert exc_info.value.error_type == "already_guessed"

    @pytest.mark.asyncio
    async def test_second_guess_returns_prior_result(self, db_session, service_for, crew, clock, settings):
        creator, alice, bob, _ = crew
        state = await create_active_group(db_session, creator, [alice, bob], clock, settings)
        service = service_for(db_session, StubScorer(score=72))
        await service.join(state.group.id, alice)
        await service.submit_guess(state.group.id, alice, "a cat")

        with pytest.raises(AlreadyGuessedError) as exc_info:
            await service.submit_guess(state.group.id, alice, "a dog")
        assert exc_info.value.prior_result["score"] == 72
        assert exc_info.value.prior_result["guess"] == "a cat"


class TestDerivedStatus:
    @pytest.mark.asyncio
    async def test_guess_plus_decline_completes(self, db_session, service_for, crew, clock, settings):
        creator, alice, bob, _ = crew
        state = await create_active_group(db_session, creator, [alice, bob], clock, settings)
        service = service_for(db_session, StubScorer(score=80))

        await service.join(state.group.id, alice)
        result = await service.submit_guess(state.group.id, alice, "a cat")
        assert result.score == 80
        assert result.status == "active"
        assert result.rank == 1

        await service.decline(state.group.id, bob)
        detail = await service.get_detail(state.group.id, creator)
        assert detail.status == "completed"
        assert _by_user(detail, alice).rank == 1
        assert _by_user(detail, bob).rank is None
        assert detail.stats.total_guesses == 1

    @pytest.mark.asyncio
    async def test_everyone_declining_completes(self, db_session, service_for, crew, clock, settings):
        creator, alice, bob, _ = crew
        state = await create_active_group(db_session, creator, [alice, bob], clock, settings)
        service = service_for(db_session)
        await service.decline(state.group.id, alice)
        detail = await service.decline(state.group.id, bob)
        assert detail.status == "completed"
        assert detail.stats is None

    @pytest.mark.asyncio
    async def test_declines_while_rendering_stay_pending(self, db_session, service_for, crew):
        creator, alice, bob, _ = crew
        service = service_for(db_session)
        state = await service.create(creator, [alice.id, bob.id], "a cat")
        await service.decline(state.group.id, alice)
        detail = await service.decline(state.group.id, bob)
        assert detail.status == "pending"
        assert (await service.get_detail(state.group.id, creator)).status == "pending"

        ready = await service.mark_image_ready(state.group.id, "https://img.example/g.png")
        assert ready.status == "completed"

    @pytest.mark.asyncio
    async def test_ties_share_rank(self, db_session, service_for, crew, clock, settings):
        creator, alice, bob, dana = crew
        state = await create_active_group(db_session, creator, [alice, bob, dana], clock, settings)
        service = service_for(db_session, StubScorer(scores={"cat": 80, "kitten": 80, "dog": 60}))
        for user, guess in ((alice, "cat"), (bob, "kitten"), (dana, "dog")):
            await service.join(state.group.id, user)
            await service.submit_guess(state.group.id, user, guess)

        detail = await service.get_detail(state.group.id, creator)
        assert detail.status == "completed"
        assert [p.rank for p in detail.participants] == [1, 1, 3]
        assert detail.stats.average_score == 73

    @pytest.mark.asyncio
    async def test_lazy_expiry(self, db_session, service_for, crew, clock, settings):
        creator, alice, bob, _ = crew
        state = await create_active_group(db_session, creator, [alice, bob], clock, settings)
        service = service_for(db_session)
        await service.join(state.group.id, alice)
        await service.submit_guess(state.group.id, alice, "a cat")

        clock.advance(days=7, seconds=1)
        detail = await service.get_detail(state.group.id, alice)
        assert detail.status == "expired"
        with pytest.raises(InvalidStateError):
            await service.join(state.group.id, bob)

    @pytest.mark.asyncio
    async def test_completed_group_does_not_expire(self, db_session, service_for, crew, clock, settings):
        creator, alice, bob, _ = crew
        state = await create_active_group(db_session, creator, [alice, bob], clock, settings)
        service = service_for(db_session)
        await service.decline(state.group.id, alice)
        await service.decline(state.group.id, bob)

        clock.advance(days=30)
        assert await service.expire_overdue() == 0
        assert (await service.get_detail(state.group.id, creator)).status == "completed"


class TestVisibility:
    @pytest.mark.asyncio
    async def test_creator_sees_prompt_while_pending(self, db_session, service_for, crew):
        creator, alice, bob, _ = crew
        service = service_for(db_session)
        state = await service.create(creator, [alice.id, bob.id], "a cat")
        detail = await service.get_detail(state.group.id, creator)
        assert detail.prompt == "a cat"
        assert detail.my_status == "creator"

    @pytest.mark.asyncio
    async def test_results_hidden_until_own_guess(self, db_session, service_for, crew, clock, settings):
        creator, alice, bob, _ = crew
        state = await create_active_group(db_session, creator, [alice, bob], clock, settings)
        service = service_for(db_session)
        await service.join(state.group.id, alice)
        await service.join(state.group.id, bob)
        await service.submit_guess(state.group.id, alice, "a cat")

        bob_view = await service.get_detail(state.group.id, bob)
        assert "prompt" not in bob_view.model_fields_set
        assert "score" not in _by_user(bob_view, alice).model_fields_set
        assert "guess" not in _by_user(bob_view, alice).model_fields_set
        assert _by_user(bob_view, alice).status == "guessed"

        alice_view = await service.get_detail(state.group.id, alice)
        assert alice_view.prompt == "a cat"
        assert _by_user(alice_view, alice).guess == "a cat"

    @pytest.mark.asyncio
    async def test_list_for_user(self, db_session, service_for, crew, clock, settings):
        creator, alice, bob, dana = crew
        state = await create_active_group(db_session, creator, [alice, bob], clock, settings)
        service = service_for(db_session)
        assert [g.id for g in await service.list_for_user(creator)] == [state.group.id]
        assert [g.id for g in await service.list_for_user(alice)] == [state.group.id]
        assert await service.list_for_user(dana) == []
