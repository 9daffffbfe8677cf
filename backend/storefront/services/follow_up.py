"""
Follow-up Reconciliation

Resolves orders whose provider notification was lost, late or could not
be processed:
- client polling: each poll of a pending order asks the provider for its
  status, up to status_poll_max_attempts; after that the client is told
  to contact support
- periodic sweep: the scheduler re-queries pending orders between the
  minimum and maximum sweep age

Provider status queries are authenticated server-to-server calls, so
their outcomes go through the same reconcile() path as webhooks.
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..exceptions import OrderNotFoundError, StorefrontError
from ..models.catalog import Identity
from ..models.orders import PendingOrder
from ..models.payments import OrderStatusView
from ..providers.registry import ProviderRegistry
from . import ledger
from .reconciliation import FulfillmentNotifier, ReconcileResult, ReconcileStatus, reconcile

logger = logging.getLogger(__name__)

SWEEP_BATCH_SIZE = 50


async def check_order_status(
    db: AsyncSession,
    order: PendingOrder,
    registry: ProviderRegistry,
    notifier: Optional[FulfillmentNotifier] = None
) -> ReconcileResult:
    """
    Query the provider for one order and reconcile the answer.

    Raises:
        ProviderCallError: Provider unreachable or refused the query
    """
    adapter = registry.get(order.channel)
    if not order.provider_tracking_id or not adapter.is_configured:
        return ReconcileResult(
            status=ReconcileStatus.PENDING, order_id=order.id, merchant_reference=order.merchant_reference
        )

    outcome = await adapter.query_outcome(order.provider_tracking_id, order.merchant_reference)
    return await reconcile(db, outcome, notifier)


def _view(order: PendingOrder, attempts_remaining: int, exhausted: bool = False) -> OrderStatusView:
    if order.status == "completed":
        message = "Payment confirmed. Your products are ready for download."
    elif order.status == "failed":
        message = "Payment was not completed. Please try again."
    elif exhausted:
        message = (
            f"We could not confirm your payment yet. Please contact {settings.support_email} "
            f"with reference {order.merchant_reference}."
        )
    else:
        message = "Waiting for payment confirmation..."

    return OrderStatusView(
        merchant_reference=order.merchant_reference,
        status=order.status,
        attempts_remaining=attempts_remaining,
        message=message,
    )


async def poll_order_status(
    db: AsyncSession,
    identity: Identity,
    merchant_reference: str,
    registry: ProviderRegistry,
    notifier: Optional[FulfillmentNotifier] = None
) -> OrderStatusView:
    """
    Client-side "verifying payment" poll.

    Raises:
        OrderNotFoundError: Unknown reference, or an order of another identity
    """
    order = await ledger.get_order_by_reference(db, merchant_reference)
    if order is None or (order.user_id != identity.id and not identity.is_admin):
        raise OrderNotFoundError("Order not found", details={"merchant_reference": merchant_reference})

    max_attempts = settings.status_poll_max_attempts
    if order.is_terminal:
        return _view(order, max(0, max_attempts - order.status_checks))

    checks = await ledger.record_status_check(db, order.id)
    if checks > max_attempts:
        logger.info(f"Order {order.id} still pending after {max_attempts} status checks")
        return _view(order, 0, exhausted=True)

    try:
        await check_order_status(db, order, registry, notifier)
    except StorefrontError as e:
        logger.warning(f"Status check failed for order {order.id}: {e.message}")

    refreshed = await ledger.get_order(db, order.id)
    remaining = max(0, max_attempts - checks)
    return _view(refreshed, remaining, exhausted=remaining == 0 and not refreshed.is_terminal)


async def sweep_pending_orders(
    db: AsyncSession,
    registry: ProviderRegistry,
    notifier: Optional[FulfillmentNotifier] = None,
    now: Optional[datetime] = None
) -> Dict[str, int]:
    """
    Re-query stale pending orders on every configured channel.

    Returns:
        Count of orders per ReconcileStatus value
    """
    now = now or datetime.utcnow()
    older_than = now - timedelta(minutes=settings.reconcile_sweep_min_age_minutes)
    newer_than = now - timedelta(hours=settings.reconcile_sweep_max_age_hours)
    counts: Dict[str, int] = {}

    for channel in registry.channels():
        if not registry.get(channel).is_configured:
            continue

        orders = await ledger.list_stale_pending_orders(
            db, channel, older_than=older_than, newer_than=newer_than, limit=SWEEP_BATCH_SIZE
        )
        for order in orders:
            try:
                result = await check_order_status(db, order, registry, notifier)
                status = result.status.value
            except Exception as e:
                await db.rollback()
                logger.error(f"Sweep check failed for order {order.id}: {e}", exc_info=True)
                status = ReconcileStatus.ERROR.value
            counts[status] = counts.get(status, 0) + 1

    if counts:
        logger.info(f"Pending order sweep: {counts}")
    return counts
