"""Scoring gateway: turns (prompt, guess) into a 0-100 score.

The real similarity model lives in a separate service reached over HTTP.
``MockScoringGateway`` is a deterministic word-overlap stand-in used for
local development and tests.
"""

import asyncio
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from promptguess.config import Settings, get_settings
from promptguess.exceptions import UpstreamError
from promptguess.logging_config import get_logger

logger = get_logger(__name__)

_STOPWORDS = frozenset(
    "a an the of in on at to and or with for by from is are was were be this that".split()
)


@dataclass(frozen=True)
class ScoreResult:
    score: int
    breakdown: dict[str, Any] | None = field(default=None)

    def __post_init__(self) -> None:
        object.__setattr__(self, "score", clamp_score(self.score))


def clamp_score(value: float) -> int:
    return max(0, min(100, int(round(value))))


class ScoringGateway(Protocol):
    async def score(self, prompt: str, guess: str) -> ScoreResult: ...


class HttpScoringGateway:
    """Client for the external similarity scoring service."""

    def __init__(self, url: str, timeout: float = 10.0, transport: httpx.AsyncBaseTransport | None = None):
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def score(self, prompt: str, guess: str) -> ScoreResult:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.url, json={"prompt": prompt, "guess": guess})
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException as e:
            logger.warning("scoring_timeout", url=self.url, timeout=self.timeout)
            raise UpstreamError("Scoring service timed out, please retry") from e
        except httpx.HTTPStatusError as e:
            logger.warning("scoring_http_error", url=self.url, status=e.response.status_code)
            raise UpstreamError() from e
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("scoring_request_failed", url=self.url, error=str(e))
            raise UpstreamError() from e

        if not isinstance(data, dict) or not isinstance(data.get("score"), (int, float)):
            logger.warning("scoring_malformed_response", url=self.url)
            raise UpstreamError("Scoring service returned an invalid response")

        breakdown = data.get("breakdown")
        return ScoreResult(
            score=data["score"],
            breakdown=breakdown if isinstance(breakdown, dict) else None,
        )


def _words(text: str) -> list[str]:
    return [w for w in re.findall(r"[a-z0-9']+", text.lower()) if w not in _STOPWORDS]


class MockScoringGateway:
    """Deterministic word-overlap scorer.

    Exact word matches count fully, prefix matches (``cat``/``cats``) count
    half. The score is the weighted share of prompt words found.
    """

    def __init__(self, delay: float = 0.0):
        self.delay = delay

    async def score(self, prompt: str, guess: str) -> ScoreResult:
        if self.delay:
            await asyncio.sleep(self.delay)

        prompt_words = _words(prompt)
        guess_words = set(_words(guess))
        if not prompt_words:
            return ScoreResult(score=0, breakdown={"matchedWords": [], "partialMatches": []})

        matched: list[str] = []
        partial: list[str] = []
        for word in dict.fromkeys(prompt_words):
            if word in guess_words:
                matched.append(word)
            elif any(g.startswith(word) or word.startswith(g) for g in guess_words if len(g) > 2):
                partial.append(word)

        unique = len(dict.fromkeys(prompt_words))
        element_score = (len(matched) + 0.5 * len(partial)) / unique * 100
        return ScoreResult(
            score=element_score,
            breakdown={
                "matchedWords": matched,
                "partialMatches": partial,
                "elementScore": clamp_score(element_score),
            },
        )


def get_scoring_gateway(settings: Settings | None = None) -> ScoringGateway:
    """Build the gateway configured by ``scoring_provider``."""
    settings = settings or get_settings()
    if settings.scoring_provider == "http":
        return HttpScoringGateway(settings.scoring_url, timeout=settings.scoring_timeout_seconds)
    if settings.scoring_provider == "mock":
        return MockScoringGateway()
    raise ValueError(f"Unknown scoring provider: {settings.scoring_provider}")
