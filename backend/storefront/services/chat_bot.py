"""
Telegram Bot Conversation

Commands:
- /start                 welcome
- /start <slug>          deep link straight into a product
- /products              up to 10 products with /buy_<slug> links
- /buy_<slug>            select a product

After a product is selected the bot waits for a phone number, either a
shared contact or a typed number, then creates an anonymous pending order
tagged with the chat id and sends the STK push. The payment result
arrives later on /webhooks/telegram-mpesa and is delivered into the chat
by the reconciliation engine.
"""
import logging
import re
from typing import Any, Dict

from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..db.models import ANONYMOUS_USER_ID
from ..exceptions import ProviderCallError
from ..models.orders import LineItem
from ..providers.daraja import format_phone_number
from ..providers.registry import ProviderRegistry
from . import catalog, chat_sessions, ledger
from .chat_gateway import TelegramGateway
from .payment_initiator import dispatch

logger = logging.getLogger(__name__)

PRODUCT_LIST_LIMIT = 10
CHAT_REFERENCE_PREFIX = "TG"


def _price_line(product) -> str:
    usd = f" (~${product.price_usd:.2f})" if product.price_usd else ""
    return f"💰 Price: <b>{settings.currency} {product.price:,.0f}</b>{usd}"


def is_phone_number(text: str) -> bool:
    return re.fullmatch(settings.chat_phone_pattern, re.sub(r"\s", "", text)) is not None


# ============================================================================
# Update Dispatch
# ============================================================================

async def handle_update(
    db: AsyncSession,
    update: Dict[str, Any],
    gateway: TelegramGateway,
    registry: ProviderRegistry
) -> None:
    """Process one Telegram update. Updates without a message are ignored."""
    message = update.get("message")
    if not message:
        logger.debug(f"Ignoring update without message: {update.get('update_id')}")
        return

    chat_id = str(message["chat"]["id"])
    text = (message.get("text") or "").strip()
    contact = message.get("contact")
    first_name = (message.get("from") or {}).get("first_name") or "there"

    logger.info(f"Processing message from {first_name} ({chat_id}): {text}")

    session = await chat_sessions.get_or_create_session(db, chat_id)
    context = session["context_data"]
    has_selection = session["awaiting_phone"] and context.get("product_id")

    if text.startswith("/start"):
        parts = text.split(maxsplit=1)
        if len(parts) > 1:
            await offer_product(db, gateway, chat_id, parts[1].strip())
        else:
            await gateway.send_message(
                chat_id,
                f"👋 Welcome to <b>{settings.app_name}</b>, {first_name}!\n\n"
                f"🛍️ We sell digital products: ebooks, guides and courses.\n\n"
                f"📱 Type /products to see what's available.\n\n"
                f"Click on any product link to start your purchase!"
            )
    elif text == "/products":
        await list_products(db, gateway, chat_id)
    elif text.startswith("/buy_"):
        await offer_product(db, gateway, chat_id, text[len("/buy_"):])
    elif contact and has_selection:
        await checkout(db, gateway, registry, chat_id, context, contact.get("phone_number", ""))
    elif has_selection and is_phone_number(text):
        await checkout(db, gateway, registry, chat_id, context, text)
    elif session["awaiting_phone"]:
        await gateway.send_message(
            chat_id,
            "Please share your phone number using the button, or type it in format: 0712345678"
        )
    else:
        await gateway.send_message(
            chat_id,
            f"👋 Hi {first_name}! Welcome to {settings.app_name}!\n\n"
            f"📱 Type /products to see what's available."
        )


# ============================================================================
# Catalog Browsing
# ============================================================================

async def list_products(db: AsyncSession, gateway: TelegramGateway, chat_id: str) -> None:
    products = await catalog.list_products(db, limit=PRODUCT_LIST_LIMIT)
    if not products:
        await gateway.send_message(chat_id, "❌ No products available at the moment. Check back soon!")
        return

    lines = ["📚 <b>Available Products:</b>\n"]
    for index, p in enumerate(products, start=1):
        lines.append(
            f"{index}. <b>{p.title}</b>\n"
            f"   💰 {settings.currency} {p.price:,.0f}\n"
            f"   🔗 /buy_{catalog.slugify(p.title)}\n"
        )
    lines.append("Click any /buy_... link above to purchase!")
    await gateway.send_message(chat_id, "\n".join(lines))


async def offer_product(db: AsyncSession, gateway: TelegramGateway, chat_id: str, slug: str) -> None:
    product = await catalog.find_product_by_slug(db, slug)
    if product is None:
        await gateway.send_message(
            chat_id,
            f"❌ Sorry, product \"{slug}\" not found.\n\n📱 Type /products to see available products."
        )
        return

    await chat_sessions.start_purchase(
        db, chat_id,
        product_id=product.id,
        product_slug=slug,
        product_title=product.title,
        product_price=product.price,
    )

    summary = (product.description or "")[:200]
    await gateway.send_message(
        chat_id,
        f"🛒 <b>{product.title}</b>\n\n"
        f"{summary}\n\n"
        f"{_price_line(product)}\n\n"
        f"To purchase, share your M-Pesa phone number:"
    )
    await gateway.request_contact(chat_id, "👇 Tap below or type your number (e.g., 0712345678):")


# ============================================================================
# Checkout
# ============================================================================

async def checkout(
    db: AsyncSession,
    gateway: TelegramGateway,
    registry: ProviderRegistry,
    chat_id: str,
    context: Dict[str, Any],
    raw_phone: str
) -> None:
    """
    Create the anonymous pending order and send the STK push.

    The price comes from the catalog, not from the session cache.
    """
    adapter = registry.chat_bot
    phone = format_phone_number(raw_phone, settings.phone_country_code)

    if not adapter.is_configured:
        await chat_sessions.reset_session(db, chat_id)
        await gateway.remove_keyboard(
            chat_id,
            f"❌ M-Pesa payments are not available right now. "
            f"Please contact {settings.support_email} to complete your purchase."
        )
        return

    product = await catalog.get_product(db, context["product_id"])
    if product is None:
        await chat_sessions.reset_session(db, chat_id)
        await gateway.remove_keyboard(chat_id, "❌ This product is no longer available. Type /products to browse.")
        return

    await chat_sessions.update_session(
        db, chat_id, state="awaiting_payment", merge_context={"phone_number": phone}
    )
    await gateway.remove_keyboard(
        chat_id,
        f"📱 Phone: {phone}\n\n"
        f"🔄 Initiating M-Pesa payment for <b>{product.title}</b>...\n\n"
        f"💡 Check your phone for the M-Pesa prompt!"
    )

    order = await ledger.create_pending_order(
        db,
        user_id=ANONYMOUS_USER_ID,
        channel=adapter.channel,
        items=[LineItem(product_id=product.id, amount=product.price)],
        reference_prefix=CHAT_REFERENCE_PREFIX,
        delivery_chat_id=chat_id,
        contact_phone=phone,
    )

    try:
        initiation = await dispatch(db, adapter, order, adapter.describe(product.title), {"phone": phone})
    except ProviderCallError as e:
        logger.warning(f"Chat STK push failed for order {order.id}: {e.message}")
        await chat_sessions.reset_session(db, chat_id)
        await gateway.send_message(
            chat_id,
            f"❌ Failed to initiate payment: {e.message}\n\nPlease try again or contact support."
        )
        return

    if initiation.needs_manual_setup:
        await chat_sessions.reset_session(db, chat_id)
        await gateway.send_message(chat_id, f"❌ Payments are paused. Please contact {settings.support_email}.")
        return

    await chat_sessions.update_session(
        db, chat_id, merge_context={"merchant_reference": order.merchant_reference}
    )
    await gateway.send_message(
        chat_id,
        "✅ M-Pesa prompt sent!\n\n"
        "📱 Enter your M-Pesa PIN on your phone to complete payment.\n\n"
        "⏳ Waiting for payment confirmation..."
    )
