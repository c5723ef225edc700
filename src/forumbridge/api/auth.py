"""OIDC authentication for the migration trigger endpoint."""

import os

from fastapi import Header, HTTPException, status
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token

from forumbridge.config import get_settings
from forumbridge.utils.logging import get_logger

logger = get_logger(__name__)

BEARER_PREFIX = "Bearer "


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


async def verify_oidc_token(
    authorization: str | None = Header(default=None),
) -> None:
    """Verify the caller's Google-signed OIDC token.

    When ``allowed_invokers`` is configured, the token's ``email`` claim must
    be one of them.

    Raises:
        HTTPException: 401 for a missing or invalid token, 403 for a caller
            that is not an allowed invoker.
    """
    settings = get_settings()

    # K_SERVICE is always set on Cloud Run
    is_cloud_run = os.environ.get("K_SERVICE") is not None
    if settings.skip_auth and not is_cloud_run:
        logger.warning("Skipping auth (local development mode)")
        return

    if not authorization:
        logger.warning("Missing authorization header")
        raise _unauthorized("Missing authorization header")
    if not authorization.startswith(BEARER_PREFIX):
        logger.warning("Invalid authorization header format")
        raise _unauthorized("Invalid authorization header format")

    try:
        claims: dict[str, object] = id_token.verify_oauth2_token(
            authorization[len(BEARER_PREFIX):], google_requests.Request(), audience=None
        )  # type: ignore[no-untyped-call]
    except ValueError as e:
        logger.warning("Invalid OIDC token", error=str(e))
        raise _unauthorized("Invalid OIDC token") from e

    email = str(claims.get("email", ""))
    if settings.allowed_invokers and email not in settings.allowed_invokers:
        logger.warning("Caller is not an allowed invoker", email=email or "unknown")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Caller not allowed")

    logger.info("OIDC token verified", email=email or "unknown", issuer=claims.get("iss", "unknown"))
