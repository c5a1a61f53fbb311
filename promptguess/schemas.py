"""Pydantic v2 request/response schemas.

Responses that carry hidden fields (prompt, guess text) are built without
those fields when the viewer may not see them and rendered with
``response_model_exclude_unset=True``, so hidden fields are absent rather
than null.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class UserRef(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    username: str


class StatsResponse(BaseModel):
    total_guesses: int
    average_score: int
    highest_score: int
    lowest_score: int


class GuessRequest(BaseModel):
    guess: str = Field(..., description="Free-text guess of the hidden prompt")


class GuessResultResponse(BaseModel):
    instance_id: UUID
    score: int
    breakdown: dict[str, Any] | None = None
    rank: int
    total_guesses: int
    status: str
    guess: str | None = None
    prompt: str | None = None


# ---------------------------------------------------------------------------
# 1:1 challenges
# ---------------------------------------------------------------------------


class ChallengeCreateRequest(BaseModel):
    challenged_id: UUID
    prompt: str


class ChallengeResponse(BaseModel):
    id: UUID
    challenger: UserRef
    challenged: UserRef
    image_url: str | None = None
    status: str
    challenger_score: int | None = None
    challenged_score: int | None = None
    challenger_guess: str | None = None
    challenged_guess: str | None = None
    prompt: str | None = None
    created_at: datetime
    updated_at: datetime


class ChallengeHistoryResponse(BaseModel):
    items: list[ChallengeResponse]
    page: int
    limit: int
    has_more: bool


# ---------------------------------------------------------------------------
# Group challenges
# ---------------------------------------------------------------------------


class GroupChallengeCreateRequest(BaseModel):
    participant_ids: list[UUID]
    prompt: str


class ParticipantResponse(BaseModel):
    user: UserRef
    status: str
    score: int | None = None
    rank: int | None = None
    guess: str | None = None


class GroupChallengeResponse(BaseModel):
    id: UUID
    creator: UserRef
    image_url: str | None = None
    status: str
    prompt: str | None = None
    participants: list[ParticipantResponse]
    my_status: str | None = None
    stats: StatsResponse | None = None
    created_at: datetime
    updated_at: datetime


# ---------------------------------------------------------------------------
# Rounds
# ---------------------------------------------------------------------------


class RoundResponse(BaseModel):
    id: UUID
    image_url: str
    status: str
    started_at: datetime | None = None
    ends_at: datetime | None = None
    ended_at: datetime | None = None
    prompt: str | None = None
    guess_count: int
    has_guessed: bool | None = None
    user_score: int | None = None


class RoundHistoryItem(BaseModel):
    id: UUID
    image_url: str
    prompt: str
    started_at: datetime | None = None
    ended_at: datetime | None = None
    total_guesses: int
    top_score: int | None = None


class RoundHistoryResponse(BaseModel):
    items: list[RoundHistoryItem]
    page: int
    limit: int
    has_more: bool


class LeaderboardEntryResponse(BaseModel):
    rank: int | None
    user: UserRef
    score: int | None
    guess: str | None = None


class ShareResponse(BaseModel):
    round_id: UUID
    user: UserRef
    score: int
    rank: int
    total_guesses: int
    image_url: str


class LeaderboardResponse(BaseModel):
    round_id: UUID
    status: str
    total_guesses: int
    entries: list[LeaderboardEntryResponse]
    stats: StatsResponse | None = None


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


class RoundRotateRequest(BaseModel):
    image_url: str = Field(..., min_length=1)
    prompt: str = Field(..., min_length=1)


class ImageReadyRequest(BaseModel):
    image_url: str = Field(..., min_length=1)


class SweepResponse(BaseModel):
    challenges_expired: int
    group_challenges_expired: int


# ---------------------------------------------------------------------------
# Monitoring
# ---------------------------------------------------------------------------


class HealthCheckResponse(BaseModel):
    status: str
    latency_ms: float | None = None


class SystemStatusResponse(BaseModel):
    status: str
    checks: dict[str, HealthCheckResponse]
    timestamp: datetime
