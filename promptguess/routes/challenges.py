"""1:1 challenge endpoints: create, lists, detail, guess, decline."""

from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from promptguess.auth import get_current_user
from promptguess.dependencies import get_challenge_service
from promptguess.logging_config import get_logger
from promptguess.models import User
from promptguess.schemas import (
    ChallengeCreateRequest,
    ChallengeHistoryResponse,
    ChallengeResponse,
    GuessRequest,
    GuessResultResponse,
)
from promptguess.services.challenge_service import ChallengeService
from promptguess.services.common import page_limit

logger = get_logger(__name__)
router = APIRouter(prefix="/api/challenges", tags=["challenges"])


@router.post(
    "",
    response_model=ChallengeResponse,
    response_model_exclude_unset=True,
    status_code=status.HTTP_202_ACCEPTED,
)
async def create_challenge(
    body: ChallengeCreateRequest,
    user: User = Depends(get_current_user),
    service: ChallengeService = Depends(get_challenge_service),
):
    """Create a challenge. It stays ``pending`` until its image is ready."""
    challenge = await service.create(user, body.challenged_id, body.prompt)
    return await service.to_response(challenge, user.id)


@router.get("/incoming", response_model=list[ChallengeResponse], response_model_exclude_unset=True)
async def list_incoming(
    user: User = Depends(get_current_user),
    service: ChallengeService = Depends(get_challenge_service),
):
    """Active challenges waiting on the current user."""
    return await service.list_incoming(user)


@router.get("/sent", response_model=list[ChallengeResponse], response_model_exclude_unset=True)
async def list_sent(
    user: User = Depends(get_current_user),
    service: ChallengeService = Depends(get_challenge_service),
):
    return await service.list_sent(user)


@router.get(
    "/history/{friend_id}",
    response_model=ChallengeHistoryResponse,
    response_model_exclude_unset=True,
)
async def challenge_history(
    friend_id: UUID,
    page: int = Query(1, ge=1),
    limit: int | None = Query(None, ge=1, le=50),
    user: User = Depends(get_current_user),
    service: ChallengeService = Depends(get_challenge_service),
):
    """Paginated challenges between the current user and a friend."""
    limit = page_limit(limit, service.settings)
    items, has_more = await service.history(user, friend_id, page=page, limit=limit)
    return ChallengeHistoryResponse(items=items, page=page, limit=limit, has_more=has_more)


@router.get("/{challenge_id}", response_model=ChallengeResponse, response_model_exclude_unset=True)
async def get_challenge(
    challenge_id: UUID,
    user: User = Depends(get_current_user),
    service: ChallengeService = Depends(get_challenge_service),
):
    return await service.get_detail(challenge_id, user)


@router.post(
    "/{challenge_id}/guess",
    response_model=GuessResultResponse,
    response_model_exclude_unset=True,
)
async def submit_guess(
    challenge_id: UUID,
    body: GuessRequest,
    user: User = Depends(get_current_user),
    service: ChallengeService = Depends(get_challenge_service),
):
    return await service.submit_guess(challenge_id, user, body.guess)


@router.post(
    "/{challenge_id}/decline",
    response_model=ChallengeResponse,
    response_model_exclude_unset=True,
)
async def decline_challenge(
    challenge_id: UUID,
    user: User = Depends(get_current_user),
    service: ChallengeService = Depends(get_challenge_service),
):
    return await service.decline(challenge_id, user)
