"""
Payments API Endpoints

Checkout initiation and client-side payment status polling.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Dict, Any
import logging

from ..db.init_db import get_db
from ..models.catalog import Identity
from ..models.payments import InitiatePaymentRequest
from ..providers.registry import ProviderRegistry, get_provider_registry
from ..services.follow_up import poll_order_status
from ..services.fulfillment import ChatFulfillmentNotifier
from ..services.payment_initiator import initiate_payment
from .deps import get_current_identity, get_fulfillment_notifier

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/initiate")
async def initiate_payment_endpoint(
    request: InitiatePaymentRequest,
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
    registry: ProviderRegistry = Depends(get_provider_registry)
) -> Dict[str, Any]:
    """
    Start a payment for the caller's cart.

    Request Body:
        {
            "channel": "mpesa" | "pesapal" | "payhero" | "bank",
            "items": [{"productId": str, "amount": float, "quantity": int}],
            "channelDetails": {"phone": str, "email": str, ...}
        }

    Returns:
        One of:
        - {"success": true, "merchantReference", "redirectUrl", "orderTrackingId"}
        - {"success": true, "merchantReference", "pushSent": true, "message"}
        - {"success": false, "status": "pending_integration", "needsManualSetup": true, "message"}
        - {"success": false, "status": "pending_verification", "message"} (bank transfer)

    Errors:
        400 payment:invalid_cart | payment:price_mismatch | payment:invalid_details
        401 auth:unauthenticated
        502 provider:rejected

    Example:
        POST /payments/initiate
        {"channel": "mpesa", "items": [{"productId": "A", "amount": 500}],
         "channelDetails": {"phone": "0712345678"}}
    """
    logger.info(
        f"Checkout by {identity.id}: channel={request.channel}, items={len(request.items)}"
    )
    result = await initiate_payment(db, identity, request, registry)
    return result.to_response()


@router.get("/status/{merchant_reference}")
async def payment_status_endpoint(
    merchant_reference: str,
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
    registry: ProviderRegistry = Depends(get_provider_registry),
    notifier: ChatFulfillmentNotifier = Depends(get_fulfillment_notifier)
) -> Dict[str, Any]:
    """
    Poll an order while the client shows "verifying payment".

    Each call on a pending order counts as one status check and asks the
    provider for the current status. Once the checks are used up the
    message directs the user to support.

    Returns:
        {"merchantReference", "status", "attemptsRemaining", "message"}

    Example:
        GET /payments/status/ORD-18c2f1a9b3ec41d2
    """
    view = await poll_order_status(db, identity, merchant_reference, registry, notifier)
    return view.model_dump(by_alias=True)
