# src/app/middleware/auth.py
import logging
import math
import secrets
from typing import Optional

from fastapi import Request
from src.core.config import settings
from src.core.errors import (
    RateLimitExceededError, configuration_error, invalid_api_key, missing_authorization
)
from src.app.middleware.rate_limiting import auth_failure_limiter, client_key

logger = logging.getLogger(settings.APP_NAME)

BEARER_PREFIX = "Bearer "


def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization")
    if not header or not header.startswith(BEARER_PREFIX):
        return None
    return header[len(BEARER_PREFIX):]


async def require_api_key(request: Request) -> None:
    """
    FastAPI dependency guarding every /api route with a static Bearer key.

    Only failed attempts count towards the per-address auth limit; once that is
    exhausted further failures get 429 instead of 401.
    """
    expected = settings.MIDDLEWARE_KEY
    if not expected:
        logger.error("MIDDLEWARE_KEY is not configured; rejecting API request")
        raise configuration_error(
            "Middleware API key not configured",
            "MIDDLEWARE_KEY environment variable is required",
        )

    token = _bearer_token(request)
    if token is not None and secrets.compare_digest(token.encode(), expected.encode()):
        request.state.authenticated = True
        return

    key = client_key(request)
    state = auth_failure_limiter.hit(key)
    if not state.allowed:
        logger.warning(f"Authentication rate limit exceeded for {key}")
        raise RateLimitExceededError(
            "Too many authentication attempts, please try again later",
            details=(
                f"Rate limit: {auth_failure_limiter.max_requests} failed authentication attempts "
                f"per {int(auth_failure_limiter.window_seconds // 60)} minutes"
            ),
            code="AUTH_RATE_LIMIT_EXCEEDED",
            retry_after=math.ceil(state.reset_in),
        )

    if token is None:
        logger.info(f"Missing or malformed Authorization header from {key}")
        raise missing_authorization(
            "Authorization header required",
            "Include Authorization: Bearer <your-api-key> header",
        )
    logger.info(f"Invalid API key presented by {key}")
    raise invalid_api_key("Invalid API key", "The provided API key is not valid")
