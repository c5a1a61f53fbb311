"""Ranking and aggregate statistics, recomputed from recorded scores per query.

Ranks use standard competition ranking: equal scores share a rank and the
next distinct score skips ahead (90, 90, 70 → 1, 1, 3). Entries without a
score sort last and receive no rank.
"""

from collections.abc import Hashable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class RankedEntry:
    key: Hashable
    score: int | None
    rank: int | None
    payload: Any = None


@dataclass(frozen=True)
class ScoreStats:
    total_guesses: int
    average_score: int
    highest_score: int
    lowest_score: int


def _sort_key(item: tuple[Hashable, int | None, Any, int]) -> tuple:
    key, score, _, position = item
    # Nulls last, then score descending, then original position for stable display
    return (score is None, -(score or 0), position)


def competition_ranks(
    entries: Iterable[tuple[Hashable, int | None]] | Iterable[tuple[Hashable, int | None, Any]],
) -> list[RankedEntry]:
    """Order ``(key, score[, payload])`` entries and assign competition ranks.

    The rank of an entry depends only on the multiset of scores, so the
    result is the same whatever order the entries arrive in; only the
    relative placement of tied entries follows input order.
    """
    items = []
    for position, entry in enumerate(entries):
        key, score = entry[0], entry[1]
        payload = entry[2] if len(entry) > 2 else None
        items.append((key, score, payload, position))
    items.sort(key=_sort_key)

    scored = [score for _, score, _, _ in items if score is not None]
    ranked: list[RankedEntry] = []
    for key, score, payload, _ in items:
        rank = rank_of(score, scored) if score is not None else None
        ranked.append(RankedEntry(key=key, score=score, rank=rank, payload=payload))
    return ranked


def rank_of(score: int, scores: Sequence[int | None]) -> int:
    """Rank = 1 + number of strictly higher scores."""
    return 1 + sum(1 for other in scores if other is not None and other > score)


def summarize(scores: Iterable[int | None]) -> ScoreStats | None:
    """Aggregate stats over non-null scores; None when nothing has been scored."""
    values = [s for s in scores if s is not None]
    if not values:
        return None
    return ScoreStats(
        total_guesses=len(values),
        average_score=round(sum(values) / len(values)),
        highest_score=max(values),
        lowest_score=min(values),
    )
