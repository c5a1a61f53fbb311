"""Helpers shared by the game services."""

from collections.abc import Iterable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from promptguess.config import Settings
from promptguess.exceptions import NotFoundError, ValidationFailedError
from promptguess.models import User
from promptguess.schemas import UserRef, StatsResponse
from promptguess.services.ranking import ScoreStats


def clean_text(value: str | None, field: str, max_length: int) -> str:
    """Trim ``value`` and enforce 1..max_length characters."""
    text = (value or "").strip()
    if not text:
        raise ValidationFailedError(f"{field.capitalize()} is required", field=field)
    if len(text) > max_length:
        raise ValidationFailedError(
            f"{field.capitalize()} must be {max_length} characters or less", field=field
        )
    return text


async def get_active_user(session: AsyncSession, user_id: UUID) -> User:
    result = await session.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user is None or user.status != "active":
        raise NotFoundError("user", user_id)
    return user


async def load_user_refs(session: AsyncSession, user_ids: Iterable[UUID]) -> dict[UUID, UserRef]:
    ids = set(user_ids)
    if not ids:
        return {}
    result = await session.execute(select(User.id, User.username).where(User.id.in_(ids)))
    return {row.id: UserRef(id=row.id, username=row.username) for row in result.all()}


def unknown_user(user_id: UUID) -> UserRef:
    return UserRef(id=user_id, username="unknown")


def stats_response(stats: ScoreStats | None) -> StatsResponse | None:
    if stats is None:
        return None
    return StatsResponse(
        total_guesses=stats.total_guesses,
        average_score=stats.average_score,
        highest_score=stats.highest_score,
        lowest_score=stats.lowest_score,
    )


def page_limit(limit: int | None, settings: Settings) -> int:
    """Page size for a list call; ``None`` means the configured default."""
    if limit is None:
        limit = settings.default_page_size
    return max(1, min(limit, settings.max_page_size))
