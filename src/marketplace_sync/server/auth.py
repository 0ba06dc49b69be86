"""
Authentication Dependencies

API key authentication for the sync endpoints and owner resolution.
"""

from typing import Optional

from fastapi import Header, HTTPException, Query, status

from marketplace_sync.config.settings import settings


def _check_key(provided: Optional[str]) -> bool:
    expected_key = settings.dashboard_api_key

    if not expected_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync API not configured (DASHBOARD_API_KEY not set in environment)"
        )

    if provided != expected_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "ApiKey"}
        )

    return True


async def verify_api_key(x_api_key: str = Header(..., description="Dashboard API key")):
    """
    Verify API key from X-API-Key header.

    Raises:
        HTTPException: If API key is invalid or the service is not configured

    Returns:
        True if authentication successful
    """
    return _check_key(x_api_key)


async def verify_stream_api_key(
    x_api_key: Optional[str] = Header(None, description="Dashboard API key"),
    api_key: Optional[str] = Query(None, alias="apiKey", description="Key for EventSource clients"),
):
    """Same check as ``verify_api_key``; EventSource cannot send headers, so a query key is accepted."""
    return _check_key(x_api_key or api_key)


async def get_owner_id(x_user_id: str = Header(..., description="Owner of the synced accounts")) -> str:
    owner_id = x_user_id.strip()
    if not owner_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="X-User-Id header is empty")
    return owner_id


async def get_stream_owner_id(
    x_user_id: Optional[str] = Header(None),
    user_id: Optional[str] = Query(None, alias="userId"),
) -> str:
    owner_id = (x_user_id or user_id or "").strip()
    if not owner_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Owner not provided")
    return owner_id
