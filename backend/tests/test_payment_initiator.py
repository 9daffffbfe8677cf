"""
Checkout validation and dispatch.
"""
import json

import pytest
from sqlalchemy import func, select

from storefront.db.models import PendingOrderModel
from storefront.exceptions import (
    AuthError, InvalidCartError, InvalidPaymentDetailsError, PriceMismatchError, ProviderCallError
)
from storefront.models.catalog import Identity
from storefront.models.payments import ChannelDetails, CheckoutItem, InitiatePaymentRequest
from storefront.services import ledger
from storefront.services.payment_initiator import initiate_payment, validate_cart

from helpers import BUYER_ID

BUYER = Identity(id=BUYER_ID)


async def _order_count(db) -> int:
    result = await db.execute(select(func.count()).select_from(PendingOrderModel))
    return result.scalar_one()


def _request(channel="mpesa", items=None, **details) -> InitiatePaymentRequest:
    if not details:
        details = {"phone": "0712345678"} if channel == "mpesa" else {"email": "buyer@example.com"}
    return InitiatePaymentRequest(
        channel=channel,
        items=items or [CheckoutItem(product_id="A", amount=500)],
        channel_details=ChannelDetails(**details),
    )


# ============================================================================
# Validation
# ============================================================================

async def test_price_mismatch_creates_no_order(db, products, registry, daraja_stub):
    request = _request(items=[CheckoutItem(product_id="A", amount=1)])

    with pytest.raises(PriceMismatchError) as exc_info:
        await initiate_payment(db, BUYER, request, registry)

    assert exc_info.value.details["expected"] == 500
    assert await _order_count(db) == 0
    assert daraja_stub.requests == []


async def test_price_within_tolerance_is_accepted(db, products):
    cart = await validate_cart(db, [CheckoutItem(product_id="A", amount=500.004)])
    assert cart["items"][0].amount == 500.004


async def test_quantity_multiplies_price(db, products):
    cart = await validate_cart(db, [CheckoutItem(product_id="B", amount=2400, quantity=2)])
    assert cart["items"][0].quantity == 2

    with pytest.raises(PriceMismatchError):
        await validate_cart(db, [CheckoutItem(product_id="B", amount=1200, quantity=2)])


@pytest.mark.parametrize("items", [
    [],
    [CheckoutItem(product_id="A", amount=0)],
    [CheckoutItem(product_id="", amount=500)],
    [CheckoutItem(product_id="A", amount=500), CheckoutItem(product_id="A", amount=500)],
    [CheckoutItem(product_id="MISSING", amount=500)],
])
async def test_invalid_cart(db, products, items):
    with pytest.raises(InvalidCartError):
        await validate_cart(db, items)


async def test_anonymous_checkout_is_refused(db, products, registry):
    with pytest.raises(AuthError):
        await initiate_payment(db, None, _request(), registry)


async def test_bad_phone_creates_no_order(db, products, registry):
    with pytest.raises(InvalidPaymentDetailsError):
        await initiate_payment(db, BUYER, _request(phone="12345"), registry)

    assert await _order_count(db) == 0


# ============================================================================
# Dispatch
# ============================================================================

async def test_unconfigured_channel_is_pending_integration(db, products, unconfigured_registry):
    result = await initiate_payment(db, BUYER, _request(), unconfigured_registry)

    response = result.to_response()
    assert response["success"] is False
    assert response["status"] == "pending_integration"
    assert response["needsManualSetup"] is True
    assert "contact support" in response["message"]
    assert "M-Pesa" in response["message"]
    assert await _order_count(db) == 0


async def test_stk_checkout_records_tracking_id(db, products, registry, daraja_stub):
    result = await initiate_payment(db, BUYER, _request(), registry)

    assert result.success is True
    assert result.push_sent is True
    assert result.redirect_url is None
    assert result.merchant_reference.startswith("ORD-")

    order = await ledger.get_order_by_reference(db, result.merchant_reference)
    assert order.status == "pending"
    assert order.provider_tracking_id == "ws_CO_000001"
    assert order.user_id == BUYER_ID
    assert order.channel == "mpesa"
    assert order.total_amount == 500
    assert order.contact_phone == "254712345678"

    push = json.loads(daraja_stub.calls("/mpesa/stkpush/v1/processrequest")[0].content)
    assert push["TransactionDesc"] == "Storefront Payments - Side Hustle Guide"


async def test_hosted_checkout_keeps_cart_order(db, products, registry, pesapal_stub):
    items = [CheckoutItem(product_id="B", amount=1200), CheckoutItem(product_id="A", amount=500)]

    result = await initiate_payment(db, BUYER, _request("pesapal", items=items), registry)

    response = result.to_response()
    assert response["success"] is True
    assert response["redirectUrl"].startswith("https://pay.example.com/")
    assert response["orderTrackingId"] == "trk-1"
    assert "pushSent" not in response

    order = await ledger.get_order_by_tracking_id(db, "trk-1")
    assert order.merchant_reference == result.merchant_reference
    assert order.product_ids == ["B", "A"]
    assert order.total_amount == 1700

    submitted = json.loads(pesapal_stub.calls("/api/Transactions/SubmitOrderRequest")[0].content)
    assert submitted["id"] == result.merchant_reference
    assert submitted["amount"] == 1700
    assert submitted["description"] == "Storefront Payments - Budgeting 101 +1 more"


async def test_provider_error_leaves_order_pending(db, products, registry, daraja_stub):
    daraja_stub.add(
        "POST", "/mpesa/stkpush/v1/processrequest",
        {"errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid PhoneNumber"},
        status_code=400,
    )

    with pytest.raises(ProviderCallError, match="Invalid PhoneNumber"):
        await initiate_payment(db, BUYER, _request(), registry)

    result = await db.execute(select(PendingOrderModel))
    orders = result.scalars().all()
    assert len(orders) == 1
    assert orders[0].status == "pending"
    assert orders[0].provider_tracking_id is None


async def test_each_checkout_gets_its_own_reference(db, products, registry):
    first = await initiate_payment(db, BUYER, _request(), registry)
    second = await initiate_payment(db, BUYER, _request(), registry)

    assert first.merchant_reference != second.merchant_reference
    assert (await ledger.get_order_by_reference(db, second.merchant_reference)).provider_tracking_id == "ws_CO_000002"


async def test_payhero_checkout_records_payhero_reference(db, products, registry, payhero_stub):
    result = await initiate_payment(
        db, BUYER, _request("payhero", phone="0712345678", first_name="Amina"), registry
    )

    assert result.success is True
    assert result.push_sent is True

    order = await ledger.get_order_by_tracking_id(db, "PH-1")
    assert order.merchant_reference == result.merchant_reference
    assert order.channel == "payhero"
    assert order.contact_phone == "254712345678"

    push = json.loads(payhero_stub.calls("/api/v2/payments")[0].content)
    assert push["external_reference"] == result.merchant_reference


# ============================================================================
# Bank transfer
# ============================================================================

async def test_bank_transfer_is_pending_verification(db, products, registry, daraja_stub):
    request = _request("bank", account_name="Amina Otieno", reference_number="FT24123XYZ")

    result = await initiate_payment(db, BUYER, request, registry)

    response = result.to_response()
    assert response["success"] is False
    assert response["status"] == "pending_verification"
    assert "24 hours" in response["message"]
    assert "merchantReference" not in response
    assert await _order_count(db) == 0
    assert daraja_stub.requests == []


@pytest.mark.parametrize("details", [
    {"account_name": "Amina Otieno"},
    {"reference_number": "FT24123XYZ"},
])
async def test_bank_transfer_requires_account_and_reference(db, products, registry, details):
    with pytest.raises(InvalidPaymentDetailsError):
        await initiate_payment(db, BUYER, _request("bank", **details), registry)

    assert await _order_count(db) == 0
