import asyncio
import logging
from typing import Optional

import requests

import config

logger = logging.getLogger(__name__)


class AuthServiceUnavailable(Exception):
    """Raised when credentials cannot be checked at all (not configured or unreachable)."""
    pass


def _verify_sync(username: str, password: str) -> Optional[dict]:
    if not config.AUTH_SERVICE_URL:
        raise AuthServiceUnavailable("AUTH_SERVICE_URL is not configured")
    try:
        response = requests.post(
            config.AUTH_SERVICE_URL,
            json={"username": username, "password": password},
            timeout=config.AUTH_SERVICE_TIMEOUT,
        )
    except requests.RequestException as e:
        logger.error("HTTP error calling auth service: %s", e)
        raise AuthServiceUnavailable(str(e)) from e

    if response.status_code in (401, 403, 404):
        return None
    try:
        response.raise_for_status()
        data = response.json()
        user = data.get("user", data)
        return {"id": user["id"], "username": user["username"]}
    except (requests.RequestException, ValueError, KeyError, TypeError, AttributeError) as e:
        logger.error("Unexpected auth service response (%s): %s", response.status_code, e)
        raise AuthServiceUnavailable(str(e)) from e


async def verify_credentials(username: str, password: str) -> Optional[dict]:
    """Return ``{id, username}`` for valid credentials, None for rejected ones."""
    return await asyncio.to_thread(_verify_sync, username, password)
