"""
Secure fulfillment gate and chat delivery.
"""
from datetime import datetime

import pytest

from storefront.db.models import ANONYMOUS_USER_ID, PurchaseModel
from storefront.exceptions import AuthError, NotEntitledError, ProductNotFoundError, StorageError
from storefront.models.catalog import Identity
from storefront.models.orders import LineItem
from storefront.services import ledger
from storefront.services.catalog import get_product
from storefront.services.fulfillment import ChatFulfillmentNotifier, request_download
from storefront.services.storage import ObjectStorage

from helpers import ADMIN_ID, BUYER_ID, OTHER_ID, FakeStorage

BUYER = Identity(id=BUYER_ID)
OTHER = Identity(id=OTHER_ID)
ADMIN = Identity(id=ADMIN_ID, is_admin=True)


async def grant(db, user_id, product_id, transaction_id="QKT1ABC2DE"):
    db.add(PurchaseModel(
        id=f"pur_{user_id[:8]}{product_id}",
        user_id=user_id,
        product_id=product_id,
        amount=500.0,
        payment_method="mpesa",
        transaction_id=transaction_id,
        created_at=datetime.utcnow(),
    ))
    await db.commit()


# ============================================================================
# Download requests
# ============================================================================

async def test_unauthenticated_download_is_refused(db, products, storage):
    with pytest.raises(AuthError):
        await request_download(db, None, "A", storage)


async def test_non_purchaser_is_refused(db, products, storage):
    await grant(db, BUYER_ID, "A")

    with pytest.raises(NotEntitledError):
        await request_download(db, OTHER, "A", storage)

    assert storage.signed == []


async def test_purchaser_gets_short_lived_url(db, products, storage):
    await grant(db, BUYER_ID, "A")

    download = await request_download(db, BUYER, "A", storage)

    assert download.download_url.startswith("https://storage.example.com/signed/a.pdf")
    assert download.title == "Side Hustle Guide"
    assert download.expires_in_seconds == 300
    assert storage.signed == [("products-pdfs/a.pdf", 300)]
    assert "products-pdfs/a.pdf" not in download.model_dump_json()


async def test_download_counter_increments(db, products, storage):
    await grant(db, BUYER_ID, "A")

    await request_download(db, BUYER, "A", storage)
    await request_download(db, BUYER, "A", storage)

    db.expire_all()
    assert (await get_product(db, "A")).downloads == 2


async def test_admin_needs_no_purchase(db, products, storage):
    download = await request_download(db, ADMIN, "B", storage)

    assert download.title == "Budgeting 101"
    assert storage.signed == [("b.pdf", 300)]


async def test_product_without_file_is_not_found(db, products, storage):
    with pytest.raises(ProductNotFoundError):
        await request_download(db, ADMIN, "NOFILE", storage)


async def test_unknown_product_for_admin_is_not_found(db, products, storage):
    with pytest.raises(ProductNotFoundError):
        await request_download(db, ADMIN, "MISSING", storage)


async def test_entitlement_is_checked_before_existence(db, products, storage):
    with pytest.raises(NotEntitledError):
        await request_download(db, BUYER, "MISSING", storage)


def test_object_key_strips_bucket_prefix():
    store = ObjectStorage(bucket="products-pdfs")

    assert store.object_key("products-pdfs/guides/a.pdf") == "guides/a.pdf"
    assert store.object_key("/products-pdfs/a.pdf") == "a.pdf"
    assert store.object_key("a.pdf") == "a.pdf"


# ============================================================================
# Chat delivery
# ============================================================================

async def chat_order(db, product_id="A", amount=500.0):
    return await ledger.create_pending_order(
        db,
        user_id=ANONYMOUS_USER_ID,
        channel="telegram",
        items=[LineItem(product_id=product_id, amount=amount)],
        reference_prefix="TG",
        delivery_chat_id="555",
    )


async def test_chat_success_sends_receipt_and_document(db, products, gateway, storage):
    order = await chat_order(db)

    await ChatFulfillmentNotifier(gateway, storage).notify_success(db, order, "QKT1ABC2DE")

    receipt = gateway.texts("555")[0]
    assert "Payment Successful" in receipt
    assert "Side Hustle Guide" in receipt
    assert "QKT1ABC2DE" in receipt
    assert "KES 500" in receipt

    assert storage.signed == [("products-pdfs/a.pdf", 86400)]
    [(chat_id, url, caption)] = gateway.documents
    assert chat_id == "555"
    assert "expires=86400" in url
    assert "24 hours" in caption


async def test_chat_success_without_file_sends_support_notice(db, products, gateway, storage):
    order = await chat_order(db, product_id="NOFILE", amount=300.0)

    await ChatFulfillmentNotifier(gateway, storage).notify_success(db, order, "QKT1ABC2DE")

    assert gateway.documents == []
    assert "contact" in gateway.texts("555")[-1]


async def test_signing_failure_never_exposes_storage_path(db, products, gateway):
    class BrokenStorage(FakeStorage):
        async def create_signed_url(self, path, ttl_seconds):
            raise StorageError("Could not generate download link")

    order = await chat_order(db)

    await ChatFulfillmentNotifier(gateway, BrokenStorage()).notify_success(db, order, "QKT1ABC2DE")

    assert gateway.documents == []
    texts = gateway.texts("555")
    assert "QKT1ABC2DE" in texts[-1]
    assert all("a.pdf" not in text for text in texts)


async def test_chat_failure_message(db, products, gateway, storage):
    order = await chat_order(db)

    await ChatFulfillmentNotifier(gateway, storage).notify_failure(order, "Request cancelled by user")

    [text] = gateway.texts("555")
    assert "Payment Failed" in text
    assert "Request cancelled by user" in text
    assert "/products" in text
