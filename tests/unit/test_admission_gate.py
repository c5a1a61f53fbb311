"""Guess admission gate against a real (SQLite) database.

The interesting cases are races: many requests for the same (instance,
user) pair must produce exactly one accepted guess.
"""

import asyncio
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from promptguess.exceptions import AlreadyGuessedError, ConflictError, UpstreamError
from promptguess.models import Guess
from promptguess.services.admission import AdmissionRejected, GuessAdmissionGate, InstanceKey
from promptguess.services.group_challenge_service import GroupChallengeService
from promptguess.services.scoring import ScoreResult
from tests.factories import StubScorer, create_active_group


async def _ledger_rows(session_factory, **filters):
    async with session_factory() as session:
        query = select(func.count()).select_from(Guess)
        for column, value in filters.items():
            query = query.where(getattr(Guess, column) == value)
        return (await session.execute(query)).scalar()


class TestGateBasics:
    @pytest.mark.asyncio
    async def test_admit_then_settle(self, db_session, make_user, clock):
        user = await make_user()
        gate = GuessAdmissionGate(db_session, clock=clock)
        key = InstanceKey("round", uuid4(), user.id)

        claim = await gate.admit(key, "a cat")
        await gate.settle(claim, ScoreResult(score=55))
        await db_session.commit()

        scored = await gate.get_scored(key)
        assert scored.score == 55
        assert scored.status == "scored"

    @pytest.mark.asyncio
    async def test_second_admit_rejected_with_prior(self, db_session, make_user, clock):
        user = await make_user()
        gate = GuessAdmissionGate(db_session, clock=clock)
        key = InstanceKey("round", uuid4(), user.id)
        claim = await gate.admit(key, "first")
        await gate.settle(claim, ScoreResult(score=40))
        await db_session.commit()

        with pytest.raises(AdmissionRejected) as exc_info:
            await gate.admit(key, "second")
        assert exc_info.value.existing.score == 40
        assert exc_info.value.existing.guess_text == "first"

    @pytest.mark.asyncio
    async def test_release_allows_retry(self, db_session, make_user, clock):
        user = await make_user()
        gate = GuessAdmissionGate(db_session, clock=clock)
        key = InstanceKey("challenge", uuid4(), user.id)

        claim = await gate.admit(key, "try")
        await gate.release(claim)
        assert await gate.get(key) is None

        again = await gate.admit(key, "try again")
        assert again.guess_id != claim.guess_id

    @pytest.mark.asyncio
    async def test_fresh_claim_blocks_until_wait_runs_out(self, session_factory, make_user, clock):
        user = await make_user()
        key = InstanceKey("round", uuid4(), user.id)
        async with session_factory() as holder:
            await GuessAdmissionGate(holder, clock=clock).admit(key, "in flight")

        async with session_factory() as session:
            gate = GuessAdmissionGate(session, clock=clock, wait_seconds=0.05, poll_interval=0.01)
            with pytest.raises(AdmissionRejected) as exc_info:
                await gate.admit(key, "impatient")
        assert exc_info.value.existing is None

    @pytest.mark.asyncio
    async def test_stale_claim_is_taken_over(self, session_factory, make_user, clock):
        user = await make_user()
        key = InstanceKey("round", uuid4(), user.id)
        async with session_factory() as crashed:
            dead = await GuessAdmissionGate(crashed, clock=clock).admit(key, "lost")

        clock.advance(seconds=120)
        async with session_factory() as session:
            gate = GuessAdmissionGate(session, clock=clock, lease_seconds=60)
            claim = await gate.admit(key, "recovered")
            assert claim.guess_id == dead.guess_id
            assert claim.token != dead.token

            # The original owner can no longer settle
            await gate.settle(claim, ScoreResult(score=70))
            await session.commit()

        async with session_factory() as crashed:
            with pytest.raises(AdmissionRejected) as exc_info:
                await GuessAdmissionGate(crashed, clock=clock).settle(dead, ScoreResult(score=10))
        assert exc_info.value.existing.score == 70


class TestGateRun:
    @pytest.mark.asyncio
    async def test_scorer_failure_releases_claim(self, db_session, session_factory, make_user, clock):
        user = await make_user()
        gate = GuessAdmissionGate(db_session, clock=clock)
        key = InstanceKey("round", uuid4(), user.id)
        apply_calls = []

        async def apply(result):
            apply_calls.append(result)

        with pytest.raises(UpstreamError):
            await gate.run(key, "x", "prompt", StubScorer(error=UpstreamError()), apply, timeout=1)

        assert apply_calls == []
        assert await _ledger_rows(session_factory, user_id=user.id) == 0

    @pytest.mark.asyncio
    async def test_scorer_timeout_releases_claim(self, db_session, session_factory, make_user, clock):
        user = await make_user()
        gate = GuessAdmissionGate(db_session, clock=clock)
        key = InstanceKey("round", uuid4(), user.id)

        async def apply(result):
            raise AssertionError("apply must not run")

        with pytest.raises(UpstreamError, match="timed out"):
            await gate.run(key, "x", "prompt", StubScorer(delay=1.0), apply, timeout=0.05)

        assert await _ledger_rows(session_factory, user_id=user.id) == 0

    @pytest.mark.asyncio
    async def test_apply_failure_rolls_back_and_releases(self, db_session, session_factory, make_user, clock):
        user = await make_user()
        gate = GuessAdmissionGate(db_session, clock=clock)
        key = InstanceKey("round", uuid4(), user.id)

        async def apply(result):
            raise ConflictError("state moved on")

        with pytest.raises(ConflictError):
            await gate.run(key, "x", "prompt", StubScorer(), apply, timeout=1)

        assert await _ledger_rows(session_factory, user_id=user.id) == 0


class TestConcurrentDuplicateSubmissions:
    @pytest.mark.asyncio
    async def test_exactly_one_of_many_parallel_guesses_is_accepted(
        self, session_factory, make_user, clock, settings
    ):
        creator = await make_user("creator")
        alice = await make_user("alice")
        bob = await make_user("bob")
        async with session_factory() as session:
            state = await create_active_group(session, creator, [alice, bob], clock, settings)
            service = GroupChallengeService(session, clock=clock, settings=settings)
            await service.join(state.group.id, alice)

        scorer = StubScorer(score=77, delay=0.05)

        async def attempt(i: int):
            async with session_factory() as session:
                service = GroupChallengeService(session, scorer=scorer, clock=clock, settings=settings)
                return await service.submit_guess(state.group.id, alice, f"guess number {i}")

        outcomes = await asyncio.gather(*(attempt(i) for i in range(8)), return_exceptions=True)

        accepted = [o for o in outcomes if not isinstance(o, Exception)]
        rejected = [o for o in outcomes if isinstance(o, Exception)]
        assert len(accepted) == 1
        assert all(isinstance(e, AlreadyGuessedError) for e in rejected), rejected
        assert all(e.prior_result["score"] == accepted[0].score for e in rejected)
        assert len(scorer.calls) == 1

        assert await _ledger_rows(session_factory, instance_id=state.group.id, user_id=alice.id) == 1

    @pytest.mark.asyncio
    async def test_different_users_score_in_parallel(self, session_factory, make_user, clock, settings):
        creator = await make_user("host")
        players = [await make_user(f"p{i}") for i in range(4)]
        async with session_factory() as session:
            state = await create_active_group(session, creator, players, clock, settings)
            service = GroupChallengeService(session, clock=clock, settings=settings)
            for p in players:
                await service.join(state.group.id, p)

        scores = {f"guess by p{i}": s for i, s in enumerate([90, 90, 70, 40])}
        scorer = StubScorer(scores=scores, delay=0.02)

        async def attempt(i: int):
            async with session_factory() as session:
                service = GroupChallengeService(session, scorer=scorer, clock=clock, settings=settings)
                return await service.submit_guess(state.group.id, players[i], f"guess by p{i}")

        await asyncio.gather(*(attempt(i) for i in range(4)))

        async with session_factory() as session:
            service = GroupChallengeService(session, clock=clock, settings=settings)
            detail = await service.get_detail(state.group.id, creator)
        assert detail.status == "completed"
        assert [p.rank for p in detail.participants] == [1, 1, 3, 4]
        assert detail.stats.total_guesses == 4

    @pytest.mark.asyncio
    async def test_stale_lease_window_is_respected(self, session_factory, make_user, clock):
        user = await make_user()
        key = InstanceKey("round", uuid4(), user.id)
        async with session_factory() as holder:
            await GuessAdmissionGate(holder, clock=clock).admit(key, "slow")

        clock.advance(seconds=59)
        async with session_factory() as session:
            gate = GuessAdmissionGate(
                session, clock=clock, lease_seconds=60, wait_seconds=0.03, poll_interval=0.01
            )
            with pytest.raises(AdmissionRejected):
                await gate.admit(key, "too early")
