"""
Telegram Bot Webhook Endpoint
"""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from ..db.init_db import get_db
from ..providers.registry import ProviderRegistry, get_provider_registry
from ..services.chat_bot import handle_update
from ..services.chat_gateway import TelegramGateway, get_chat_gateway

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/webhook")
async def telegram_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: TelegramGateway = Depends(get_chat_gateway),
    registry: ProviderRegistry = Depends(get_provider_registry)
) -> PlainTextResponse:
    """
    Receive a Telegram update.

    Always answers 200 "OK"; Telegram redelivers anything else, which
    would replay the conversation step.
    """
    try:
        update = await request.json()
        await handle_update(db, update, gateway, registry)
    except Exception as e:
        await db.rollback()
        logger.error(f"Telegram bot error: {e}", exc_info=True)

    return PlainTextResponse("OK", status_code=200)
