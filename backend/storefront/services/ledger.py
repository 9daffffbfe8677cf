"""
Order Ledger Service

Durable store of PendingOrder and Purchase records; the single source of
truth for fulfillment state.

Ledger rules:
- merchant_reference and provider_tracking_id are unique and write-once
- status moves pending -> completed|failed with a compare-and-set update
- purchases for one order are inserted together with the completion flag,
  in one transaction, behind unique indexes; a losing concurrent insert
  surfaces as LedgerConflictError, never as a second grant
"""
import secrets
import time
import uuid
from datetime import datetime
from typing import Any, Iterable, List, Optional, Set
from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from ..config import settings
from ..db.models import (
    ANONYMOUS_USER_ID, PendingOrderModel, OrderItemModel, PurchaseModel
)
from ..exceptions import LedgerConflictError
from ..models.orders import LineItem, PendingOrder, Purchase

logger = logging.getLogger(__name__)

REFERENCE_ATTEMPTS = 3


# ============================================================================
# Identifiers
# ============================================================================

def generate_merchant_reference(
    prefix: Optional[str] = None,
    max_length: Optional[int] = None
) -> str:
    """
    Generate a merchant reference: prefix, millisecond clock in hex, random hex.

    Truncated to max_length (providers cap reference length); the unique
    index on pending_orders catches the rare collision.

    Example:
        ORD-18c2f1a9b3ec41d2
    """
    prefix = prefix or settings.merchant_reference_prefix
    max_length = max_length or settings.merchant_reference_max_length
    stamp = format(int(time.time() * 1000), "x")
    reference = f"{prefix}-{stamp}{secrets.token_hex(4)}"
    return reference[:max_length]


def _order_to_pydantic(order: PendingOrderModel, items: List[OrderItemModel]) -> PendingOrder:
    return PendingOrder(
        id=order.id,
        merchant_reference=order.merchant_reference,
        provider_tracking_id=order.provider_tracking_id,
        user_id=order.user_id,
        channel=order.channel,
        items=[
            LineItem(product_id=i.product_id, amount=i.amount, quantity=i.quantity)
            for i in sorted(items, key=lambda i: i.position)
        ],
        total_amount=order.total_amount,
        status=order.status,
        delivery_chat_id=order.delivery_chat_id,
        contact_phone=order.contact_phone,
        transaction_id=order.transaction_id,
        status_checks=order.status_checks or 0,
        created_at=order.created_at,
        updated_at=order.updated_at,
    )


def _purchase_to_pydantic(p: PurchaseModel) -> Purchase:
    return Purchase(
        id=p.id,
        user_id=p.user_id,
        product_id=p.product_id,
        amount=p.amount,
        payment_method=p.payment_method,
        transaction_id=p.transaction_id,
        order_id=p.order_id,
        created_at=p.created_at,
    )


# ============================================================================
# Pending Order Creation
# ============================================================================

async def create_pending_order(
    db: AsyncSession,
    user_id: str,
    channel: str,
    items: List[LineItem],
    reference_prefix: Optional[str] = None,
    reference_max_length: Optional[int] = None,
    delivery_chat_id: Optional[str] = None,
    contact_phone: Optional[str] = None
) -> PendingOrder:
    """
    Persist a pending order with a fresh merchant reference.

    Called before the provider is contacted, so a crash after dispatch
    cannot leave a payment without a local order.

    Args:
        db: Database session
        user_id: Owning identity (ANONYMOUS_USER_ID for chat orders)
        channel: mpesa, pesapal, payhero or telegram
        items: Validated line items, in cart order
        reference_prefix: Merchant reference prefix override
        reference_max_length: Provider limit on reference length
        delivery_chat_id: Chat to deliver into on success (chat orders)
        contact_phone: Normalized payer phone, if any

    Returns:
        Created PendingOrder with status "pending"
    """
    total_amount = round(sum(item.amount for item in items), 2)

    for attempt in range(1, REFERENCE_ATTEMPTS + 1):
        order_id = f"ord_{uuid.uuid4().hex[:16]}"
        merchant_reference = generate_merchant_reference(reference_prefix, reference_max_length)
        now = datetime.utcnow()

        db_order = PendingOrderModel(
            id=order_id,
            merchant_reference=merchant_reference,
            user_id=user_id,
            channel=channel,
            total_amount=total_amount,
            status="pending",
            delivery_chat_id=delivery_chat_id,
            contact_phone=contact_phone,
            status_checks=0,
            created_at=now,
            updated_at=now,
        )
        db_items = [
            OrderItemModel(
                order_id=order_id,
                position=position,
                product_id=item.product_id,
                amount=item.amount,
                quantity=item.quantity,
            )
            for position, item in enumerate(items)
        ]

        db.add(db_order)
        db.add_all(db_items)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            logger.warning(
                f"Merchant reference collision on {merchant_reference} "
                f"(attempt {attempt}/{REFERENCE_ATTEMPTS})"
            )
            continue

        logger.info(
            f"Created pending order: {order_id}, reference={merchant_reference}, "
            f"channel={channel}, total={total_amount}, items={len(items)}"
        )
        return _order_to_pydantic(db_order, db_items)

    raise RuntimeError("Could not allocate a unique merchant reference")


async def attach_tracking_id(
    db: AsyncSession,
    order_id: str,
    tracking_id: str
) -> bool:
    """
    Record the provider's tracking id on an order.

    Write-once: an order that already carries a tracking id keeps it.

    Returns:
        True if the tracking id was stored (or was already this value)
    """
    try:
        result = await db.execute(
            update(PendingOrderModel)
            .where(PendingOrderModel.id == order_id)
            .where(PendingOrderModel.provider_tracking_id.is_(None))
            .values(provider_tracking_id=tracking_id, updated_at=datetime.utcnow())
        )
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.error(f"Tracking id {tracking_id} already belongs to another order (order {order_id})")
        return False

    if result.rowcount == 1:
        logger.debug(f"Attached tracking id {tracking_id} to order {order_id}")
        return True

    existing = await get_order(db, order_id)
    if existing and existing.provider_tracking_id == tracking_id:
        return True

    logger.warning(
        f"Refused to overwrite tracking id on order {order_id} "
        f"(existing={existing.provider_tracking_id if existing else None}, new={tracking_id})"
    )
    return False


# ============================================================================
# Pending Order Retrieval
# ============================================================================

async def _load(db: AsyncSession, condition) -> Optional[PendingOrder]:
    result = await db.execute(select(PendingOrderModel).where(condition))
    order = result.scalar_one_or_none()
    if not order:
        return None

    items_result = await db.execute(
        select(OrderItemModel).where(OrderItemModel.order_id == order.id)
    )
    return _order_to_pydantic(order, list(items_result.scalars().all()))


async def get_order(db: AsyncSession, order_id: str) -> Optional[PendingOrder]:
    return await _load(db, PendingOrderModel.id == order_id)


async def get_order_by_reference(db: AsyncSession, merchant_reference: str) -> Optional[PendingOrder]:
    return await _load(db, PendingOrderModel.merchant_reference == merchant_reference)


async def get_order_by_tracking_id(db: AsyncSession, tracking_id: str) -> Optional[PendingOrder]:
    return await _load(db, PendingOrderModel.provider_tracking_id == tracking_id)


async def find_order(
    db: AsyncSession,
    tracking_id: Optional[str] = None,
    merchant_reference: Optional[str] = None
) -> Optional[PendingOrder]:
    """
    Two-key order lookup used by reconciliation.

    Primary key: provider_tracking_id. Populated after initiation by
    Daraja (CheckoutRequestID) and PesaPal (order_tracking_id).

    Secondary key: merchant_reference. Used when the tracking id is
    unknown locally, e.g. the provider called back before the initiator
    stored the tracking id, or the provider only echoes our reference.
    """
    if tracking_id:
        order = await get_order_by_tracking_id(db, tracking_id)
        if order:
            return order

    if merchant_reference:
        order = await get_order_by_reference(db, merchant_reference)
        if order:
            logger.info(
                f"Order {order.id} matched by merchant reference {merchant_reference} "
                f"(tracking id {tracking_id} not found)"
            )
            return order

    return None


async def list_stale_pending_orders(
    db: AsyncSession,
    channel: str,
    older_than: datetime,
    newer_than: datetime,
    limit: int = 50
) -> List[PendingOrder]:
    """
    Pending orders on a channel created inside a time window.

    Used by the follow-up sweep to re-query providers whose notification
    never arrived.
    """
    result = await db.execute(
        select(PendingOrderModel.id)
        .where(PendingOrderModel.channel == channel)
        .where(PendingOrderModel.status == "pending")
        .where(PendingOrderModel.provider_tracking_id.is_not(None))
        .where(PendingOrderModel.created_at <= older_than)
        .where(PendingOrderModel.created_at >= newer_than)
        .order_by(PendingOrderModel.created_at)
        .limit(limit)
    )
    orders = []
    for order_id in result.scalars().all():
        order = await get_order(db, order_id)
        if order:
            orders.append(order)
    return orders


# ============================================================================
# Purchase Queries
# ============================================================================

async def purchase_exists_for_transaction(db: AsyncSession, transaction_id: str) -> bool:
    """True if any purchase already carries this provider transaction id."""
    result = await db.execute(
        select(PurchaseModel.id).where(PurchaseModel.transaction_id == transaction_id).limit(1)
    )
    return result.scalar_one_or_none() is not None


async def owned_product_ids(
    db: AsyncSession,
    user_id: str,
    product_ids: Iterable[str]
) -> Set[str]:
    """Subset of product_ids the identity already holds a purchase for."""
    product_ids = list(product_ids)
    if not product_ids:
        return set()

    result = await db.execute(
        select(PurchaseModel.product_id)
        .where(PurchaseModel.user_id == user_id)
        .where(PurchaseModel.product_id.in_(product_ids))
    )
    return set(result.scalars().all())


async def has_purchase(db: AsyncSession, user_id: str, product_id: str) -> bool:
    return bool(await owned_product_ids(db, user_id, [product_id]))


async def get_purchases_for_transaction(db: AsyncSession, transaction_id: str) -> List[Purchase]:
    result = await db.execute(
        select(PurchaseModel).where(PurchaseModel.transaction_id == transaction_id)
    )
    return [_purchase_to_pydantic(p) for p in result.scalars().all()]


async def count_purchases(db: AsyncSession, **filters: Any) -> int:
    query = select(func.count()).select_from(PurchaseModel)
    for column, value in filters.items():
        query = query.where(getattr(PurchaseModel, column) == value)
    result = await db.execute(query)
    return result.scalar_one()


# ============================================================================
# State Transitions
# ============================================================================

async def complete_order(
    db: AsyncSession,
    order: PendingOrder,
    transaction_id: str,
    payment_method: str,
    skip_product_ids: Optional[Set[str]] = None
) -> List[Purchase]:
    """
    Insert the order's purchases and mark it completed, atomically.

    Args:
        db: Database session
        order: Pending order being fulfilled
        transaction_id: Provider receipt, the retransmission dedup key
        payment_method: Channel tag stored on each purchase
        skip_product_ids: Products the owner already holds

    Returns:
        Purchases created (empty if every product was already owned)

    Raises:
        LedgerConflictError: A unique index rejected an insert, or the
            order stopped being pending before commit. Nothing is written.
    """
    skip_product_ids = skip_product_ids or set()
    now = datetime.utcnow()

    db_purchases = [
        PurchaseModel(
            id=f"pur_{uuid.uuid4().hex[:16]}",
            user_id=order.user_id,
            product_id=item.product_id,
            amount=item.amount,
            payment_method=payment_method,
            transaction_id=transaction_id,
            order_id=order.id,
            created_at=now,
        )
        for item in order.items
        if item.product_id not in skip_product_ids
    ]

    try:
        db.add_all(db_purchases)
        result = await db.execute(
            update(PendingOrderModel)
            .where(PendingOrderModel.id == order.id)
            .where(PendingOrderModel.status == "pending")
            .values(status="completed", transaction_id=transaction_id, updated_at=now)
        )
        if result.rowcount != 1:
            await db.rollback()
            raise LedgerConflictError(f"Order {order.id} is no longer pending")
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        raise LedgerConflictError(
            f"Purchase insert for order {order.id} rejected by ledger constraint"
        ) from e

    logger.info(
        f"Completed order {order.id}: transaction={transaction_id}, "
        f"purchases={len(db_purchases)}, skipped={len(order.items) - len(db_purchases)}"
    )
    return [_purchase_to_pydantic(p) for p in db_purchases]


async def fail_order(db: AsyncSession, order_id: str) -> bool:
    """
    Mark a pending order failed.

    Returns:
        False if the order was already terminal (no change made)
    """
    result = await db.execute(
        update(PendingOrderModel)
        .where(PendingOrderModel.id == order_id)
        .where(PendingOrderModel.status == "pending")
        .values(status="failed", updated_at=datetime.utcnow())
    )
    await db.commit()

    changed = result.rowcount == 1
    if changed:
        logger.info(f"Marked order {order_id} failed")
    return changed


async def record_status_check(db: AsyncSession, order_id: str) -> int:
    """Count one follow-up status check against an order; returns the new count."""
    await db.execute(
        update(PendingOrderModel)
        .where(PendingOrderModel.id == order_id)
        .values(status_checks=PendingOrderModel.status_checks + 1)
    )
    await db.commit()

    result = await db.execute(
        select(PendingOrderModel.status_checks).where(PendingOrderModel.id == order_id)
    )
    return result.scalar_one()


def is_anonymous(order: PendingOrder) -> bool:
    return order.user_id == ANONYMOUS_USER_ID

