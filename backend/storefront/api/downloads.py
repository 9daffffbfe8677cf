"""
Downloads API Endpoints
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Dict, Any
import logging

from ..db.init_db import get_db
from ..models.catalog import Identity
from ..services.fulfillment import request_download
from ..services.storage import ObjectStorage, get_storage
from .deps import get_current_identity

logger = logging.getLogger(__name__)

router = APIRouter()


class DownloadRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(alias="productId", min_length=1)


@router.post("/request")
async def request_download_endpoint(
    request: DownloadRequest,
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
    storage: ObjectStorage = Depends(get_storage)
) -> Dict[str, Any]:
    """
    Exchange an entitlement for a short-lived signed download URL.

    Returns:
        {"downloadUrl": str, "title": str, "expiresInSeconds": int}

    Errors:
        401 auth:unauthenticated
        403 download:not_entitled
        404 catalog:not_found

    Example:
        POST /downloads/request
        {"productId": "A"}
    """
    grant = await request_download(db, identity, request.product_id, storage)
    return grant.model_dump(by_alias=True)
