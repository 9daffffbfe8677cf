"""
Payment Initiator

Validates a checkout, persists the PendingOrder, then hands it to the
channel's adapter.

Ordering matters: the order row is committed BEFORE the provider is
called, so a crash after dispatch leaves a pending order that a callback
can still find. A failed dispatch leaves the order pending; it is inert
and never fulfilled.
"""
import logging
from typing import Dict, List, Any

from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..exceptions import (
    AuthError, InvalidCartError, InvalidPaymentDetailsError, PriceMismatchError, ProviderConfigError
)
from ..models.catalog import Identity, Product
from ..models.orders import LineItem, PendingOrder
from ..models.payments import (
    ChannelDetails, CheckoutItem, InitiatePaymentRequest, InitiationResult, PaymentInitiation
)
from ..providers.base import ProviderAdapter
from ..providers.registry import ProviderRegistry
from . import catalog, ledger

logger = logging.getLogger(__name__)


# ============================================================================
# Cart Validation
# ============================================================================

async def validate_cart(db: AsyncSession, items: List[CheckoutItem]) -> Dict[str, Any]:
    """
    Check a submitted cart against the catalog.

    Returns:
        {"items": List[LineItem], "products": Dict[str, Product]}

    Raises:
        InvalidCartError: Empty cart, malformed or repeated item, unknown product
        PriceMismatchError: amount differs from price x quantity beyond tolerance
    """
    if not items:
        raise InvalidCartError("Cart is empty")

    product_ids = [item.product_id for item in items]
    for item in items:
        if not item.product_id or item.amount <= 0:
            raise InvalidCartError("Invalid item in cart", details={"product_id": item.product_id})
    if len(set(product_ids)) != len(product_ids):
        raise InvalidCartError("Each product may appear only once in the cart")

    products = await catalog.get_products_by_ids(db, product_ids)
    missing = [pid for pid in product_ids if pid not in products]
    if missing:
        raise InvalidCartError("One or more products not found", details={"missing": missing})

    for item in items:
        expected = products[item.product_id].price * item.quantity
        if abs(item.amount - expected) > settings.price_tolerance:
            logger.error(
                f"Price mismatch for product {item.product_id}: "
                f"expected {expected}, got {item.amount}"
            )
            raise PriceMismatchError(
                "Price verification failed. Please refresh and try again.",
                details={"product_id": item.product_id, "expected": expected, "submitted": item.amount}
            )

    return {
        "items": [
            LineItem(product_id=item.product_id, amount=item.amount, quantity=item.quantity)
            for item in items
        ],
        "products": products,
    }


def describe_order(products: Dict[str, Product], items: List[LineItem]) -> str:
    first = products[items[0].product_id].title
    if len(items) == 1:
        return f"{settings.app_name} - {first}"
    return f"{settings.app_name} - {first} +{len(items) - 1} more"


CHANNEL_LABELS = {"mpesa": "M-Pesa", "pesapal": "PesaPal", "payhero": "M-Pesa", "telegram": "M-Pesa"}


def pending_integration(channel: str) -> InitiationResult:
    return InitiationResult(
        success=False,
        status="pending_integration",
        needs_manual_setup=True,
        message=(
            f"{CHANNEL_LABELS.get(channel, channel)} integration pending setup. "
            f"Please contact support at {settings.support_email} to complete your purchase."
        ),
    )


def bank_transfer(identity: Identity, details: ChannelDetails, items: List[LineItem]) -> InitiationResult:
    """
    Record a bank transfer claim for manual verification.

    No order is created; support matches the transfer reference against the
    bank statement and grants the purchase by hand.
    """
    if not details.account_name or not details.reference_number:
        raise InvalidPaymentDetailsError(
            "Account name and transfer reference number are required for bank transfers"
        )

    logger.info(
        f"Bank transfer submitted by {identity.id}: account_name={details.account_name}, "
        f"reference_number={details.reference_number}, "
        f"products={[item.product_id for item in items]}, "
        f"total={sum(item.amount for item in items)}"
    )
    return InitiationResult(
        success=False,
        status="pending_verification",
        message=(
            "Thank you! Your bank transfer details have been received. We will verify your "
            "payment and send you a download link within 24 hours. For faster processing, "
            f"contact us at {settings.support_email} with your reference number."
        ),
    )


# ============================================================================
# Dispatch
# ============================================================================

async def dispatch(
    db: AsyncSession,
    adapter: ProviderAdapter,
    order: PendingOrder,
    description: str,
    contact_details: Dict[str, Any]
) -> PaymentInitiation:
    """
    Start the provider payment for a persisted order and record the
    provider's tracking id on it.

    Raises:
        ProviderCallError: Provider refused or could not be reached
    """
    logger.info(f"Dispatching order {order.id} ({order.merchant_reference}) to {adapter.channel}")
    try:
        initiation = await adapter.initiate(
            order.total_amount, order.merchant_reference, description, contact_details
        )
    except ProviderConfigError:
        return PaymentInitiation.manual_setup()

    if initiation.provider_reference:
        await ledger.attach_tracking_id(db, order.id, initiation.provider_reference)
    return initiation


async def initiate_payment(
    db: AsyncSession,
    identity: Identity,
    request: InitiatePaymentRequest,
    registry: ProviderRegistry
) -> InitiationResult:
    """
    Checkout entry point.

    Returns:
        InitiationResult in one of four shapes:
        - {success, merchant_reference, redirect_url, order_tracking_id}
        - {success, merchant_reference, push_sent, message}
        - {success: False, status: "pending_integration", message}
        - {success: False, status: "pending_verification", message} (bank)

    Raises:
        AuthError, InvalidCartError, PriceMismatchError,
        InvalidPaymentDetailsError, ProviderCallError
    """
    if identity is None:
        raise AuthError()

    cart = await validate_cart(db, request.items)

    if request.channel == "bank":
        return bank_transfer(identity, request.channel_details, cart["items"])

    adapter = registry.get(request.channel)

    if not adapter.is_configured:
        logger.warning(f"Checkout on unconfigured channel {request.channel} by {identity.id}")
        return pending_integration(request.channel)

    contact_details = adapter.prepare_contact_details(request.channel_details)

    order = await ledger.create_pending_order(
        db,
        user_id=identity.id,
        channel=adapter.channel,
        items=cart["items"],
        contact_phone=contact_details.get("phone") or contact_details.get("phone_number"),
    )

    initiation = await dispatch(
        db, adapter, order, describe_order(cart["products"], cart["items"]), contact_details
    )

    if initiation.needs_manual_setup:
        return pending_integration(request.channel)

    if initiation.redirect_url:
        return InitiationResult(
            success=True,
            merchant_reference=order.merchant_reference,
            redirect_url=initiation.redirect_url,
            order_tracking_id=initiation.provider_reference,
        )

    return InitiationResult(
        success=True,
        merchant_reference=order.merchant_reference,
        push_sent=initiation.push_sent,
        message=initiation.message,
    )
