"""
Provider Webhook Endpoints

Every delivery is acknowledged with 200 in the body shape the provider
expects, whatever happens internally. Providers treat anything else as
"retry", and a retry storm is worse than a logged failure; unresolved
orders are picked up by polling and the periodic sweep.

Routes:
- POST /webhooks/mpesa                   Daraja stkCallback (web checkout)
- POST /webhooks/telegram-mpesa          Daraja stkCallback (chat checkout)
- GET|POST /webhooks/pesapal             PesaPal IPN
- POST /webhooks/payhero                 PayHero STK result
- GET /webhooks/hosted-redirect/return   PesaPal browser return (no fulfillment)
"""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Any, Dict
from urllib.parse import urlencode
import logging

from ..config import settings
from ..db.init_db import get_db
from ..exceptions import MalformedPayloadError
from ..providers.base import ProviderAdapter
from ..providers.registry import ProviderRegistry, get_provider_registry
from ..services.fulfillment import ChatFulfillmentNotifier
from ..services.reconciliation import reconcile_delivery
from .deps import get_fulfillment_notifier

logger = logging.getLogger(__name__)

router = APIRouter()


async def _read_payload(request: Request) -> Dict[str, Any]:
    """Query parameters merged with a JSON object body, if any."""
    payload: Dict[str, Any] = dict(request.query_params)
    body = await request.body()
    if body:
        try:
            data = await request.json()
        except ValueError:
            logger.warning(f"Non-JSON webhook body on {request.url.path}")
        else:
            if isinstance(data, dict):
                payload.update(data)
    return payload


async def _handle_callback(
    db: AsyncSession,
    adapter: ProviderAdapter,
    payload: Dict[str, Any],
    notifier=None
) -> JSONResponse:
    async def resolve():
        return adapter.parse_callback(payload)

    result = await reconcile_delivery(db, resolve, notifier)
    logger.info(f"{adapter.channel} callback processed: {result.status.value} (order {result.order_id})")
    return JSONResponse(status_code=200, content=adapter.acknowledgement(payload))


@router.post("/mpesa")
async def mpesa_callback(
    request: Request,
    db: AsyncSession = Depends(get_db),
    registry: ProviderRegistry = Depends(get_provider_registry)
) -> JSONResponse:
    """
    Daraja STK callback for web checkouts.

    Returns:
        {"ResultCode": 0, "ResultDesc": "Accepted"}
    """
    payload = await _read_payload(request)
    logger.info("M-Pesa callback received")
    return await _handle_callback(db, registry.daraja, payload)


@router.post("/telegram-mpesa")
async def telegram_mpesa_callback(
    request: Request,
    db: AsyncSession = Depends(get_db),
    registry: ProviderRegistry = Depends(get_provider_registry),
    notifier: ChatFulfillmentNotifier = Depends(get_fulfillment_notifier)
) -> JSONResponse:
    """
    Daraja STK callback for chat checkouts; results are pushed into the chat.

    Returns:
        {"ResultCode": 0, "ResultDesc": "Accepted"}
    """
    payload = await _read_payload(request)
    logger.info("Telegram M-Pesa callback received")
    return await _handle_callback(db, registry.chat_bot, payload, notifier)


@router.post("/payhero")
async def payhero_callback(
    request: Request,
    db: AsyncSession = Depends(get_db),
    registry: ProviderRegistry = Depends(get_provider_registry)
) -> JSONResponse:
    """
    PayHero payment result. Matched to the order by PayHero reference,
    then by external_reference (our merchant reference).

    Returns:
        {"success": true, "message": "Callback processed"}
    """
    payload = await _read_payload(request)
    logger.info("PayHero callback received")
    return await _handle_callback(db, registry.payhero, payload)


@router.api_route("/pesapal", methods=["GET", "POST"])
async def pesapal_ipn(
    request: Request,
    db: AsyncSession = Depends(get_db),
    registry: ProviderRegistry = Depends(get_provider_registry)
) -> JSONResponse:
    """
    PesaPal IPN. The notification is verified against PesaPal's
    transaction status endpoint before anything is granted.

    Returns:
        {"orderNotificationType", "orderTrackingId", "orderMerchantReference", "status": 200}
    """
    adapter = registry.pesapal
    payload = await _read_payload(request)
    logger.info(f"PesaPal IPN received: {payload}")

    result = await reconcile_delivery(db, lambda: adapter.resolve_notification(payload))
    logger.info(f"PesaPal IPN processed: {result.status.value} (order {result.order_id})")
    return JSONResponse(status_code=200, content=adapter.acknowledgement(payload))


@router.get("/hosted-redirect/return")
async def hosted_redirect_return(
    request: Request,
    registry: ProviderRegistry = Depends(get_provider_registry)
) -> RedirectResponse:
    """
    Browser return from the hosted payment page.

    Not a trust boundary: sends the browser to the client's verifying
    view, which polls /payments/status. Nothing is granted here.

    Example:
        GET /webhooks/hosted-redirect/return?OrderTrackingId=abc&OrderMerchantReference=ORD-1
        -> 302 {app_url}/checkout?payment=verifying&order=abc&reference=ORD-1
    """
    app_url = settings.app_url.rstrip("/")
    try:
        tracking_id, merchant_reference = registry.pesapal.parse_return(dict(request.query_params))
    except MalformedPayloadError:
        logger.warning(f"Hosted redirect return without identifiers: {dict(request.query_params)}")
        return RedirectResponse(f"{app_url}/checkout?payment=error", status_code=302)

    params = {"payment": "verifying"}
    if tracking_id:
        params["order"] = tracking_id
    if merchant_reference:
        params["reference"] = merchant_reference

    logger.info(f"Hosted redirect return: tracking_id={tracking_id}, reference={merchant_reference}")
    return RedirectResponse(f"{app_url}/checkout?{urlencode(params)}", status_code=302)
