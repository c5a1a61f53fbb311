"""FastAPI dependencies wiring services to the request session."""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from promptguess.database import get_db
from promptguess.services.challenge_service import ChallengeService
from promptguess.services.expiry import Clock, SystemClock
from promptguess.services.group_challenge_service import GroupChallengeService
from promptguess.services.round_service import RoundService
from promptguess.services.scoring import ScoringGateway, get_scoring_gateway


def get_clock() -> Clock:
    return SystemClock()


def get_scorer() -> ScoringGateway:
    return get_scoring_gateway()


def get_challenge_service(
    db: AsyncSession = Depends(get_db),
    scorer: ScoringGateway = Depends(get_scorer),
    clock: Clock = Depends(get_clock),
) -> ChallengeService:
    return ChallengeService(db, scorer=scorer, clock=clock)


def get_group_challenge_service(
    db: AsyncSession = Depends(get_db),
    scorer: ScoringGateway = Depends(get_scorer),
    clock: Clock = Depends(get_clock),
) -> GroupChallengeService:
    return GroupChallengeService(db, scorer=scorer, clock=clock)


def get_round_service(
    db: AsyncSession = Depends(get_db),
    scorer: ScoringGateway = Depends(get_scorer),
    clock: Clock = Depends(get_clock),
) -> RoundService:
    return RoundService(db, scorer=scorer, clock=clock)
