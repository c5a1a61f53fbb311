"""Daily round endpoints."""

from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from promptguess.auth import get_current_user, get_current_user_optional
from promptguess.dependencies import get_round_service
from promptguess.exceptions import NotFoundError
from promptguess.models import User
from promptguess.schemas import (
    GuessRequest,
    GuessResultResponse,
    LeaderboardResponse,
    RoundHistoryResponse,
    RoundResponse,
    ShareResponse,
)
from promptguess.services.common import page_limit
from promptguess.services.round_service import RoundService

router = APIRouter(prefix="/api/rounds", tags=["rounds"])


@router.get("/active", response_model=RoundResponse, response_model_exclude_unset=True)
async def get_active_round(
    user: User | None = Depends(get_current_user_optional),
    service: RoundService = Depends(get_round_service),
):
    """Current round with guess count; includes the caller's own result when signed in."""
    round_ = await service.get_active_round()
    if round_ is None:
        raise NotFoundError("active round", None)
    return await service.to_response(round_, user)


@router.get("/history", response_model=RoundHistoryResponse)
async def round_history(
    page: int = Query(1, ge=1),
    limit: int | None = Query(None, ge=1, le=50),
    service: RoundService = Depends(get_round_service),
):
    limit = page_limit(limit, service.settings)
    items, has_more = await service.list_completed(page=page, limit=limit)
    return RoundHistoryResponse(items=items, page=page, limit=limit, has_more=has_more)


@router.get("/{round_id}", response_model=RoundResponse, response_model_exclude_unset=True)
async def get_round(
    round_id: UUID,
    user: User | None = Depends(get_current_user_optional),
    service: RoundService = Depends(get_round_service),
):
    """Round detail; the prompt is only revealed once the round is completed."""
    return await service.to_response(await service.get_round(round_id), user)


@router.post(
    "/{round_id}/guess",
    response_model=GuessResultResponse,
    response_model_exclude_unset=True,
    status_code=status.HTTP_201_CREATED,
)
async def submit_round_guess(
    round_id: UUID,
    body: GuessRequest,
    user: User = Depends(get_current_user),
    service: RoundService = Depends(get_round_service),
):
    return await service.submit_guess(round_id, user, body.guess)


@router.get(
    "/{round_id}/leaderboard",
    response_model=LeaderboardResponse,
    response_model_exclude_unset=True,
)
async def round_leaderboard(
    round_id: UUID,
    limit: int = Query(50, ge=1, le=100),
    service: RoundService = Depends(get_round_service),
):
    return await service.leaderboard(round_id, limit=limit)


@router.get("/{round_id}/share/{user_id}", response_model=ShareResponse)
async def share_round_result(
    round_id: UUID,
    user_id: UUID,
    service: RoundService = Depends(get_round_service),
):
    """Public score card, no authentication."""
    return await service.share(round_id, user_id)
