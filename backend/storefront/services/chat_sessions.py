"""
Chat Session Service

Conversation state for the Telegram bot, persisted per chat id so an
in-flight purchase survives restarts and multiple workers.

Sessions are a UI convenience only: which product the chat is buying and
whether a phone number is awaited. Payment and entitlement state lives in
the order ledger.
"""
import json
from datetime import datetime, timedelta
from typing import Dict, Any, Optional
from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from ..db.models import ChatSessionModel

logger = logging.getLogger(__name__)


def _to_dict(session: ChatSessionModel) -> Dict[str, Any]:
    return {
        "chat_id": session.chat_id,
        "state": session.state,
        "awaiting_phone": bool(session.awaiting_phone),
        "context_data": json.loads(session.context_data) if session.context_data else {},
        "created_at": session.created_at.isoformat(),
        "last_activity_at": session.last_activity_at.isoformat()
    }


# ============================================================================
# Session Retrieval
# ============================================================================

async def get_session(db: AsyncSession, chat_id: str) -> Optional[Dict[str, Any]]:
    """
    Look up the conversation for a chat.

    Returns:
        None for an unknown chat, otherwise:
        {
            "chat_id": str,
            "state": "idle" | "awaiting_phone" | "awaiting_payment",
            "awaiting_phone": bool,
            "context_data": Dict,
            "created_at": str,
            "last_activity_at": str
        }
    """
    result = await db.execute(
        select(ChatSessionModel).where(ChatSessionModel.chat_id == chat_id)
    )
    session = result.scalar_one_or_none()
    return _to_dict(session) if session else None


async def get_or_create_session(db: AsyncSession, chat_id: str) -> Dict[str, Any]:
    """Existing session for the chat, or a fresh idle one."""
    existing = await get_session(db, chat_id)
    if existing:
        return existing

    now = datetime.utcnow()
    db_session = ChatSessionModel(
        chat_id=chat_id,
        state="idle",
        context_data=json.dumps({}),
        awaiting_phone=False,
        last_activity_at=now,
        created_at=now
    )
    db.add(db_session)
    await db.commit()

    logger.info(f"Created chat session: {chat_id}")
    return _to_dict(db_session)


# ============================================================================
# Session Updates
# ============================================================================

async def update_session(
    db: AsyncSession,
    chat_id: str,
    state: Optional[str] = None,
    context_data: Optional[Dict[str, Any]] = None,
    merge_context: Optional[Dict[str, Any]] = None
) -> Optional[Dict[str, Any]]:
    """
    Move the conversation to a new state and/or rewrite its context.

    Args:
        db: Database session
        chat_id: Chat identifier
        state: New conversation state; awaiting_phone follows it
        context_data: Complete context to replace the stored one
        merge_context: Keys to merge into the stored context

    Returns:
        The updated session, or None when the chat has no session
    """
    result = await db.execute(
        select(ChatSessionModel).where(ChatSessionModel.chat_id == chat_id)
    )
    session = result.scalar_one_or_none()

    if not session:
        logger.warning(f"Chat session not found for update: {chat_id}")
        return None

    if state is not None:
        session.state = state
        session.awaiting_phone = state == "awaiting_phone"

    if context_data is not None:
        session.context_data = json.dumps(context_data)
    elif merge_context is not None:
        current_context = json.loads(session.context_data) if session.context_data else {}
        current_context.update(merge_context)
        session.context_data = json.dumps(current_context)

    session.last_activity_at = datetime.utcnow()

    await db.commit()

    logger.debug(f"Updated chat session: {chat_id}, state={session.state}")
    return _to_dict(session)


async def start_purchase(
    db: AsyncSession,
    chat_id: str,
    product_id: str,
    product_slug: str,
    product_title: str,
    product_price: float
) -> Optional[Dict[str, Any]]:
    """Select a product and wait for the payer's phone number."""
    await get_or_create_session(db, chat_id)
    return await update_session(
        db,
        chat_id,
        state="awaiting_phone",
        context_data={
            "product_id": product_id,
            "product_slug": product_slug,
            "product_title": product_title,
            "product_price": product_price,
        }
    )


async def reset_session(db: AsyncSession, chat_id: str) -> Optional[Dict[str, Any]]:
    return await update_session(db, chat_id, state="idle", context_data={})


# ============================================================================
# Session Cleanup
# ============================================================================

async def delete_inactive_sessions(db: AsyncSession, days_inactive: int = 7) -> int:
    """
    Prune conversations with no activity in the last days_inactive days.

    Returns:
        How many sessions were removed
    """
    cutoff = datetime.utcnow() - timedelta(days=days_inactive)

    result = await db.execute(
        delete(ChatSessionModel).where(ChatSessionModel.last_activity_at < cutoff)
    )

    deleted_count = result.rowcount
    await db.commit()

    logger.info(f"Deleted {deleted_count} inactive chat sessions (older than {days_inactive} days)")
    return deleted_count
