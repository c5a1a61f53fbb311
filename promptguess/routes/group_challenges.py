"""Group challenge endpoints."""

from uuid import UUID

from fastapi import APIRouter, Depends, status

from promptguess.auth import get_current_user
from promptguess.dependencies import get_group_challenge_service
from promptguess.models import User
from promptguess.schemas import (
    GroupChallengeCreateRequest,
    GroupChallengeResponse,
    GuessRequest,
    GuessResultResponse,
)
from promptguess.services.group_challenge_service import GroupChallengeService

router = APIRouter(prefix="/api/group-challenges", tags=["group-challenges"])


@router.post(
    "",
    response_model=GroupChallengeResponse,
    response_model_exclude_unset=True,
    status_code=status.HTTP_202_ACCEPTED,
)
async def create_group_challenge(
    body: GroupChallengeCreateRequest,
    user: User = Depends(get_current_user),
    service: GroupChallengeService = Depends(get_group_challenge_service),
):
    state = await service.create(user, body.participant_ids, body.prompt)
    return await service.to_response(state, user.id)


@router.get("", response_model=list[GroupChallengeResponse], response_model_exclude_unset=True)
async def list_group_challenges(
    user: User = Depends(get_current_user),
    service: GroupChallengeService = Depends(get_group_challenge_service),
):
    """Group challenges the current user created or was invited to."""
    return await service.list_for_user(user)


@router.get("/{group_id}", response_model=GroupChallengeResponse, response_model_exclude_unset=True)
async def get_group_challenge(
    group_id: UUID,
    user: User = Depends(get_current_user),
    service: GroupChallengeService = Depends(get_group_challenge_service),
):
    return await service.get_detail(group_id, user)


@router.post(
    "/{group_id}/join",
    response_model=GroupChallengeResponse,
    response_model_exclude_unset=True,
)
async def join_group_challenge(
    group_id: UUID,
    user: User = Depends(get_current_user),
    service: GroupChallengeService = Depends(get_group_challenge_service),
):
    return await service.join(group_id, user)


@router.post(
    "/{group_id}/guess",
    response_model=GuessResultResponse,
    response_model_exclude_unset=True,
)
async def submit_group_guess(
    group_id: UUID,
    body: GuessRequest,
    user: User = Depends(get_current_user),
    service: GroupChallengeService = Depends(get_group_challenge_service),
):
    return await service.submit_guess(group_id, user, body.guess)


@router.post(
    "/{group_id}/decline",
    response_model=GroupChallengeResponse,
    response_model_exclude_unset=True,
)
async def decline_group_challenge(
    group_id: UUID,
    user: User = Depends(get_current_user),
    service: GroupChallengeService = Depends(get_group_challenge_service),
):
    return await service.decline(group_id, user)
