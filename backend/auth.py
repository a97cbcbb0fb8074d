"""
Simple API key authentication

Each ``API_KEY_USER<n>`` environment variable maps one key to user id ``n``.
User 1 is the admin.
"""

from functools import lru_cache
import logging
import os
from typing import Dict

from dotenv import load_dotenv
from fastapi import Security, HTTPException, status
from fastapi.security import APIKeyHeader

logger = logging.getLogger(__name__)

# API Key header
API_KEY_HEADER = APIKeyHeader(name="X-API-Key", auto_error=False)

MAX_API_USERS = 10
ADMIN_USER_ID = 1


@lru_cache(maxsize=1)
def get_valid_api_keys() -> Dict[str, int]:
    """Load valid API keys from environment variables"""
    load_dotenv()
    keys = {}

    for i in range(1, MAX_API_USERS + 1):
        key = os.getenv(f"API_KEY_USER{i}")
        if key:
            keys[key] = i

    if not keys:
        # Development fallback (never use in production)
        if os.getenv("ENVIRONMENT") == "development":
            keys["dev-key-insecure"] = ADMIN_USER_ID
        else:
            logger.error("No API keys configured; set API_KEY_USER1 in the environment")

    return keys


async def verify_api_key(api_key: str = Security(API_KEY_HEADER)) -> int:
    """
    Verify API key and return the caller's user id

    Usage in FastAPI routes:
        @app.get("/protected")
        async def protected_route(user_id: int = Depends(verify_api_key)):
            return {"user_id": user_id}
    """
    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key required. Include 'X-API-Key' header.",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    valid_keys = get_valid_api_keys()
    if api_key not in valid_keys:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    return valid_keys[api_key]


async def verify_admin_api_key(user_id: int = Security(verify_api_key)) -> int:
    """Admin-only routes (only user 1 is admin)"""
    if user_id != ADMIN_USER_ID:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )

    return user_id
