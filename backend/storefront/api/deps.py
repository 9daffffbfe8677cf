"""
Shared API Dependencies
"""
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.init_db import get_db
from ..models.catalog import Identity
from ..services.chat_gateway import TelegramGateway, get_chat_gateway
from ..services.fulfillment import ChatFulfillmentNotifier
from ..services.identity import get_identity_from_token
from ..services.storage import ObjectStorage, get_storage

bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db)
) -> Identity:
    """
    Authenticated caller.

    Raises:
        AuthError: Missing or invalid bearer token (rendered as 401)
    """
    token = credentials.credentials if credentials else None
    return await get_identity_from_token(db, token)


def get_fulfillment_notifier(
    gateway: TelegramGateway = Depends(get_chat_gateway),
    storage: ObjectStorage = Depends(get_storage)
) -> ChatFulfillmentNotifier:
    return ChatFulfillmentNotifier(gateway, storage)
