"""
Reconciliation Engine

Applies a normalized PaymentOutcome to the order it belongs to.

State machine per order: pending -> completed | failed, one way only.

Idempotency:
- retransmission: a purchase already carrying the outcome's transaction id
  means the delivery was processed before; nothing happens
- existing grant: products the owner already holds are skipped, so a
  repeat purchase completes the order without a second entitlement row
- concurrency: both checks are backed by unique indexes; a losing
  concurrent insert raises LedgerConflictError and is reported as
  ALREADY_PROCESSED

Every provider delivery must be acknowledged, so callers use
reconcile_delivery(), which logs and swallows all internal errors.
"""
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from ..exceptions import LedgerConflictError
from ..models.orders import PendingOrder
from ..models.payments import PaymentOutcome
from . import ledger

logger = logging.getLogger(__name__)

AMOUNT_WARNING_THRESHOLD = 1.0


class ReconcileStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    PENDING = "pending"
    ALREADY_PROCESSED = "already_processed"
    ORDER_NOT_FOUND = "order_not_found"
    ERROR = "error"


class ReconcileResult(BaseModel):
    status: ReconcileStatus
    order_id: Optional[str] = None
    merchant_reference: Optional[str] = None
    purchases_created: int = 0


class FulfillmentNotifier(ABC):
    """Pushes order results back into the channel an order came from."""

    @abstractmethod
    async def notify_success(self, db: AsyncSession, order: PendingOrder, transaction_id: str) -> None:
        """Deliver the purchased goods for a completed order."""

    @abstractmethod
    async def notify_failure(self, order: PendingOrder, reason: Optional[str]) -> None:
        """Tell the payer the payment did not go through."""


def _result(status: ReconcileStatus, order: Optional[PendingOrder] = None, created: int = 0) -> ReconcileResult:
    return ReconcileResult(
        status=status,
        order_id=order.id if order else None,
        merchant_reference=order.merchant_reference if order else None,
        purchases_created=created,
    )


# ============================================================================
# Outcome Application
# ============================================================================

async def reconcile(
    db: AsyncSession,
    outcome: PaymentOutcome,
    notifier: Optional[FulfillmentNotifier] = None
) -> ReconcileResult:
    """
    Apply one outcome.

    Lookup uses provider_tracking_id = correlation_key first, then
    merchant_reference (the outcome's echoed reference, or the
    correlation key itself for providers that only know our reference).
    """
    order = await ledger.find_order(
        db,
        tracking_id=outcome.correlation_key,
        merchant_reference=outcome.merchant_reference or outcome.correlation_key,
    )
    if order is None:
        logger.error(
            f"No pending order for outcome: key={outcome.correlation_key}, "
            f"reference={outcome.merchant_reference}, status={outcome.result_status}"
        )
        return _result(ReconcileStatus.ORDER_NOT_FOUND)

    if outcome.result_status == "pending":
        logger.info(f"Order {order.id} still pending at provider ({outcome.description})")
        return _result(ReconcileStatus.PENDING, order)

    if outcome.result_status == "success":
        return await _apply_success(db, order, outcome, notifier)

    return await _apply_failure(db, order, outcome, notifier)


async def _apply_success(
    db: AsyncSession,
    order: PendingOrder,
    outcome: PaymentOutcome,
    notifier: Optional[FulfillmentNotifier]
) -> ReconcileResult:
    transaction_id = outcome.provider_transaction_id or outcome.correlation_key

    if await ledger.purchase_exists_for_transaction(db, transaction_id):
        logger.info(f"Transaction {transaction_id} already processed (order {order.id})")
        return _result(ReconcileStatus.ALREADY_PROCESSED, order)

    if order.is_terminal:
        if order.status == "failed":
            logger.error(
                f"Success outcome for failed order {order.id} "
                f"(transaction {transaction_id}); needs manual review"
            )
        else:
            logger.info(f"Order {order.id} already completed; ignoring transaction {transaction_id}")
        return _result(ReconcileStatus.ALREADY_PROCESSED, order)

    if outcome.raw_amount is not None and abs(outcome.raw_amount - order.total_amount) > AMOUNT_WARNING_THRESHOLD:
        logger.warning(
            f"Amount mismatch on order {order.id}: expected {order.total_amount}, "
            f"provider reported {outcome.raw_amount}"
        )

    owned = set()
    if not ledger.is_anonymous(order):
        owned = await ledger.owned_product_ids(db, order.user_id, order.product_ids)
        if owned:
            logger.info(f"Order {order.id}: {order.user_id} already owns {sorted(owned)}")

    try:
        purchases = await ledger.complete_order(
            db,
            order,
            transaction_id=transaction_id,
            payment_method=outcome.payment_method or order.channel,
            skip_product_ids=owned,
        )
    except LedgerConflictError as e:
        logger.info(f"Concurrent delivery lost the race for order {order.id}: {e}")
        return _result(ReconcileStatus.ALREADY_PROCESSED, order)

    if notifier and order.delivery_chat_id:
        try:
            await notifier.notify_success(db, order, transaction_id)
        except Exception as e:
            logger.error(f"Fulfillment notification failed for order {order.id}: {e}", exc_info=True)

    return _result(ReconcileStatus.COMPLETED, order, created=len(purchases))


async def _apply_failure(
    db: AsyncSession,
    order: PendingOrder,
    outcome: PaymentOutcome,
    notifier: Optional[FulfillmentNotifier]
) -> ReconcileResult:
    if not await ledger.fail_order(db, order.id):
        logger.info(f"Order {order.id} already {order.status}; failure outcome ignored")
        return _result(ReconcileStatus.ALREADY_PROCESSED, order)

    logger.info(f"Payment failed for order {order.id}: {outcome.description}")
    if notifier and order.delivery_chat_id:
        try:
            await notifier.notify_failure(order, outcome.description)
        except Exception as e:
            logger.error(f"Failure notification failed for order {order.id}: {e}", exc_info=True)

    return _result(ReconcileStatus.FAILED, order)


# ============================================================================
# Webhook Boundary
# ============================================================================

async def reconcile_delivery(
    db: AsyncSession,
    resolve: Callable[[], Awaitable[PaymentOutcome]],
    notifier: Optional[FulfillmentNotifier] = None
) -> ReconcileResult:
    """
    Resolve and apply one provider delivery, never raising.

    Any exception (malformed payload, provider timeout during a status
    query, database error) is logged for operator follow-up and reported
    as ERROR; the caller still acknowledges the provider.
    """
    try:
        outcome = await resolve()
        return await reconcile(db, outcome, notifier)
    except Exception as e:
        await db.rollback()
        logger.error(f"Reconciliation failed: {e}", exc_info=True)
        return _result(ReconcileStatus.ERROR)
