"""
Secure Fulfillment Gate

Turns an entitlement into a short-lived signed download URL, and pushes
purchased artifacts into chat conversations after chat-originated payments.

The artifact's permanent storage path never crosses the trust boundary;
only signed URLs do.
"""
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..exceptions import AuthError, NotEntitledError, ProductNotFoundError, StorefrontError
from ..models.catalog import DownloadGrant, Identity
from ..models.orders import PendingOrder
from .catalog import get_product, increment_downloads
from .chat_gateway import TelegramGateway
from .ledger import has_purchase
from .reconciliation import FulfillmentNotifier
from .storage import ObjectStorage

logger = logging.getLogger(__name__)


# ============================================================================
# Download Requests
# ============================================================================

async def request_download(
    db: AsyncSession,
    identity: Optional[Identity],
    product_id: str,
    storage: ObjectStorage
) -> DownloadGrant:
    """
    Issue a signed download URL for an entitled identity.

    Entitlement is the admin capability or a purchase of the product.
    It is checked before product lookup, so non-entitled callers learn
    nothing about which products exist.

    Raises:
        AuthError: No identity (401)
        NotEntitledError: Neither admin nor purchaser (403)
        ProductNotFoundError: Unknown product or no artifact (404)
        StorageError: Signing failed (502)
    """
    if identity is None:
        raise AuthError()

    if not identity.is_admin and not await has_purchase(db, identity.id, product_id):
        logger.warning(f"Download refused: {identity.id} has not purchased {product_id}")
        raise NotEntitledError(
            "You have not purchased this product",
            details={"product_id": product_id}
        )

    product = await get_product(db, product_id)
    if product is None:
        raise ProductNotFoundError("Product not found", details={"product_id": product_id})
    if not product.pdf_url:
        raise ProductNotFoundError("Product file not available", details={"product_id": product_id})

    ttl = settings.download_url_ttl_seconds
    url = await storage.create_signed_url(product.pdf_url, ttl)

    await increment_downloads(db, product_id)

    logger.info(
        f"Download granted: product={product_id}, user={identity.id}, "
        f"admin={identity.is_admin}, ttl={ttl}s"
    )
    return DownloadGrant(download_url=url, title=product.title, expires_in_seconds=ttl)


# ============================================================================
# Chat Delivery
# ============================================================================

class ChatFulfillmentNotifier(FulfillmentNotifier):
    """
    Delivers chat-originated orders back into the chat.

    Success: receipt message, then each product as a document behind a
    signed link. Failure: the provider's reason and a retry hint.
    """

    def __init__(self, gateway: TelegramGateway, storage: ObjectStorage):
        self.gateway = gateway
        self.storage = storage

    async def notify_success(self, db: AsyncSession, order: PendingOrder, transaction_id: str) -> None:
        chat_id = order.delivery_chat_id

        for item in order.items:
            product = await get_product(db, item.product_id)
            title = product.title if product else item.product_id

            await self.gateway.send_message(
                chat_id,
                f"🎉 <b>Payment Successful!</b>\n\n"
                f"📦 Product: <b>{title}</b>\n"
                f"💰 Amount: {settings.currency} {item.amount:,.0f}\n"
                f"🧾 Receipt: {transaction_id}\n\n"
                f"Thank you for your purchase! 🙏"
            )

            if product is None or not product.pdf_url:
                logger.error(f"Paid chat order {order.id} has no deliverable file for {item.product_id}")
                await self._send_support_notice(chat_id, transaction_id)
                continue

            try:
                url = await self.storage.create_signed_url(
                    product.pdf_url, settings.chat_download_url_ttl_seconds
                )
            except StorefrontError as e:
                logger.error(f"Could not sign artifact for order {order.id}: {e.message}")
                await self._send_support_notice(chat_id, transaction_id)
                continue

            await self.gateway.send_document(
                chat_id,
                url,
                f"📥 <b>{product.title}</b>\nThis link expires in 24 hours.",
            )
            await increment_downloads(db, product.id)

        logger.info(f"Delivered chat order {order.id} to chat {chat_id}")

    async def notify_failure(self, order: PendingOrder, reason: Optional[str]) -> None:
        await self.gateway.send_message(
            order.delivery_chat_id,
            f"❌ <b>Payment Failed</b>\n\n"
            f"Reason: {reason or 'The payment was not completed'}\n\n"
            f"Type /products to try again."
        )

    async def _send_support_notice(self, chat_id: str, transaction_id: str) -> None:
        await self.gateway.send_message(
            chat_id,
            f"❌ Error retrieving your product. Please contact {settings.support_email} "
            f"with receipt {transaction_id}."
        )
