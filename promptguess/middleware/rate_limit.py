"""Redis sliding-window rate limit on guess submissions."""

import hashlib
import time

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from promptguess.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_LIMIT = 30
DEFAULT_WINDOW = 60  # seconds


def is_guess_submission(request: Request) -> bool:
    return request.method == "POST" and request.url.path.rstrip("/").endswith("/guess")


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Caps guess submissions per caller (ZADD + ZREMRANGEBYSCORE window)."""

    def __init__(self, app, redis_getter, limit: int = DEFAULT_LIMIT, window: int = DEFAULT_WINDOW):
        super().__init__(app)
        self._redis_getter = redis_getter
        self._limit = limit
        self._window = window

    def _identify(self, request: Request) -> str:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            return hashlib.sha256(auth_header[7:].encode()).hexdigest()[:16]
        return request.client.host if request.client else "unknown"

    async def dispatch(self, request: Request, call_next) -> Response:
        if not is_guess_submission(request):
            return await call_next(request)

        identifier = self._identify(request)
        key = f"ratelimit:guess:{identifier}"

        try:
            redis = self._redis_getter()
            now = time.time()
            pipe = redis.pipeline()
            pipe.zremrangebyscore(key, 0, now - self._window)
            pipe.zadd(key, {str(now): now})
            pipe.zcard(key)
            pipe.expire(key, self._window + 1)
            results = await pipe.execute()
            request_count = results[2]
        except Exception as e:
            # Redis unavailable: let the request through
            logger.warning("rate_limit_redis_error", error=str(e))
            return await call_next(request)

        if request_count > self._limit:
            logger.warning(
                "rate_limit_exceeded",
                identifier=identifier,
                path=request.url.path,
                count=request_count,
                limit=self._limit,
            )
            return JSONResponse(
                status_code=429,
                content={
                    "error": {
                        "code": "rate_limit_exceeded",
                        "message": f"Too many guesses: {self._limit} per {self._window}s",
                    }
                },
                headers={"Retry-After": str(self._window)},
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(self._limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self._limit - request_count))
        return response
