"""FastAPI dependencies."""

import hmac
from typing import Optional

from fastapi import Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from subscan.config import settings
from subscan.db.session import get_db


async def get_database() -> AsyncSession:
    """Dependency for database session."""
    async for session in get_db():
        yield session
        break  # Only yield once, as FastAPI handles the session lifecycle


async def require_worker_key(
    authorization: Optional[str] = Header(None, alias="Authorization")
) -> None:
    """
    Dependency guarding worker and cron trigger endpoints.

    Args:
        authorization: ``Bearer <worker_api_key>`` header

    Raises:
        HTTPException: 503 if no key is configured but one is required,
            401 if the header is missing, 403 if the key is wrong
    """
    if not settings.worker_api_key:
        if settings.require_worker_key:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Worker API key not configured"
            )
        return

    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token"
        )

    token = authorization[7:].strip()
    if not hmac.compare_digest(token, settings.worker_api_key):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid worker API key"
        )
