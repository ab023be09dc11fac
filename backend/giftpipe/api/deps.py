"""
FastAPI dependencies: database session, pipeline wiring and operator access.
"""

import secrets
from typing import Annotated, AsyncIterator, Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from giftpipe.core.config import get_settings
from giftpipe.core.logging import get_logger
from giftpipe.database.connection import get_db
from giftpipe.services.fulfillment.zinc_client import ZincClient
from giftpipe.services.pipeline import Pipeline

logger = get_logger(__name__)

DatabaseSession = Annotated[AsyncSession, Depends(get_db)]


async def get_vendor_client() -> AsyncIterator[ZincClient]:
    """Vendor client for the duration of one request."""
    async with ZincClient() as client:
        yield client


async def get_pipeline(
    db: DatabaseSession,
    vendor_client: Annotated[ZincClient, Depends(get_vendor_client)],
) -> Pipeline:
    return Pipeline(db, vendor_client)


async def require_admin_key(
    x_admin_key: Annotated[Optional[str], Header(alias="X-Admin-Key")] = None,
) -> str:
    """
    Check the operator API key.

    Raises:
        HTTPException: 401 if the header is missing or does not match
    """
    expected = get_settings().admin_api_key
    if not x_admin_key or not secrets.compare_digest(x_admin_key, expected):
        logger.warning("Operator authentication failed")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing admin key",
        )
    return x_admin_key


PipelineDep = Annotated[Pipeline, Depends(get_pipeline)]
AdminKey = Annotated[str, Depends(require_admin_key)]
