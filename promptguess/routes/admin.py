"""Operator endpoints: round rotation, image pipeline callbacks, expiry sweep.

All routes require the ``X-Admin-Key`` header.
"""

from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from promptguess.auth import require_admin
from promptguess.database import get_db
from promptguess.dependencies import (
    get_challenge_service,
    get_clock,
    get_group_challenge_service,
    get_round_service,
)
from promptguess.logging_config import get_logger
from promptguess.schemas import (
    ImageReadyRequest,
    RoundResponse,
    RoundRotateRequest,
    SweepResponse,
)
from promptguess.services.challenge_service import ChallengeService
from promptguess.services.expiry import Clock
from promptguess.services.expiry_sweep import run_expiry_sweep
from promptguess.services.group_challenge_service import GroupChallengeService
from promptguess.services.round_service import RoundService

logger = get_logger(__name__)
router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_admin)])


@router.post("/rounds/rotate", response_model=RoundResponse, response_model_exclude_unset=True)
async def rotate_round(
    body: RoundRotateRequest,
    service: RoundService = Depends(get_round_service),
):
    """Complete the active round (if any) and start a new one."""
    round_ = await service.rotate_round(body.image_url, body.prompt)
    return await service.to_response(round_)


@router.post("/challenges/{challenge_id}/image-ready")
async def challenge_image_ready(
    challenge_id: UUID,
    body: ImageReadyRequest,
    service: ChallengeService = Depends(get_challenge_service),
):
    challenge = await service.mark_image_ready(challenge_id, body.image_url)
    return {"id": str(challenge.id), "status": challenge.status}


@router.post("/challenges/{challenge_id}/image-failed")
async def challenge_image_failed(
    challenge_id: UUID,
    service: ChallengeService = Depends(get_challenge_service),
):
    challenge = await service.mark_image_failed(challenge_id)
    logger.warning("challenge_image_failed", challenge_id=str(challenge_id))
    return {"id": str(challenge.id), "status": challenge.status}


@router.post("/group-challenges/{group_id}/image-ready")
async def group_image_ready(
    group_id: UUID,
    body: ImageReadyRequest,
    service: GroupChallengeService = Depends(get_group_challenge_service),
):
    state = await service.mark_image_ready(group_id, body.image_url)
    return {"id": str(state.group.id), "status": state.status}


@router.post("/expiry/sweep", response_model=SweepResponse)
async def sweep_expired(
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    result = await run_expiry_sweep(db, clock=clock)
    return SweepResponse(
        challenges_expired=result.challenges_expired,
        group_challenges_expired=result.group_challenges_expired,
    )
