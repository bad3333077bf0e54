import logging
from typing import Optional, List, Dict
from ticket_commerce.database import get_db_connection, TRANSIENT_ERRORS
from ticket_commerce.models.order import (
    Order, OrderItem, OrderStatus, RefundStatus, ItemType, PaymentConfirmation
)
from ticket_commerce.models.refund import Refund, RefundItem
from ticket_commerce.core.exceptions import (
    ValidationError, NotFoundError, ConcurrencyConflict
)

logger = logging.getLogger(__name__)


def derive_refund_status(order: Order, refunded: Dict[str, int]) -> RefundStatus:
    """None, Partial or Full, judged on the order's Tickets items"""
    if not any(refunded.values()):
        return RefundStatus.NONE

    tickets = order.items_of_type(ItemType.TICKETS)
    if tickets and all(refunded.get(item.id, 0) >= item.quantity for item in tickets):
        return RefundStatus.FULL
    return RefundStatus.PARTIAL


async def fetch_order(conn, order_id: str, for_update: bool = False) -> Optional[Order]:
    """Load an order and its item tree using an open connection"""
    lock = " FOR UPDATE" if for_update else ""
    row = await conn.fetchrow(f"""
        SELECT o.id, o.organization_id, o.user_id, o.status, o.box_office_pricing,
               o.created_at, o.paid_at
        FROM orders o
        WHERE o.id = $1{lock}
    """, order_id)

    if not row:
        return None

    items = await conn.fetch("""
        SELECT oi.id, oi.order_id, oi.event_id, oi.parent_id, oi.item_type,
               oi.ticket_type_id, oi.hold_id, oi.code_id, oi.quantity,
               oi.unit_price_in_cents, oi.client_fee_in_cents
        FROM order_items oi
        WHERE oi.order_id = $1
        ORDER BY oi.parent_id NULLS FIRST, oi.id
    """, order_id)

    order_dict = dict(row)
    order_dict['items'] = [OrderItem(**dict(item)) for item in items]
    return Order(**order_dict)


async def fetch_refunded_quantities(conn, order_id: str) -> Dict[str, int]:
    """Already-refunded quantity per order item"""
    rows = await conn.fetch("""
        SELECT ri.order_item_id, SUM(ri.quantity) as refunded_quantity
        FROM refund_items ri
        JOIN refunds r ON r.id = ri.refund_id
        WHERE r.order_id = $1
        GROUP BY ri.order_item_id
    """, order_id)

    return {str(row['order_item_id']): int(row['refunded_quantity']) for row in rows}


async def fetch_refunds(conn, order_id: str) -> List[Refund]:
    refunds = await conn.fetch("""
        SELECT r.id, r.order_id, r.request_id, r.reason, r.created_at
        FROM refunds r
        WHERE r.order_id = $1
        ORDER BY r.created_at
    """, order_id)

    if not refunds:
        return []

    items = await conn.fetch("""
        SELECT ri.id, ri.refund_id, ri.order_item_id, ri.quantity, ri.amount_in_cents
        FROM refund_items ri
        JOIN refunds r ON r.id = ri.refund_id
        WHERE r.order_id = $1
    """, order_id)

    by_refund: Dict[str, List[RefundItem]] = {}
    for item in items:
        refund_item = RefundItem(**dict(item))
        by_refund.setdefault(refund_item.refund_id, []).append(refund_item)

    result = []
    for row in refunds:
        refund = Refund(**dict(row))
        refund.items = by_refund.get(refund.id, [])
        result.append(refund)
    return result


async def get_order(order_id: str) -> Order:
    """Order with its items and derived refund status"""
    async with get_db_connection(isolation='repeatable_read', readonly=True) as conn:
        order = await fetch_order(conn, order_id)
        if not order:
            raise NotFoundError(f"Order {order_id} not found")

        refunded = await fetch_refunded_quantities(conn, order_id)
        order.refund_status = derive_refund_status(order, refunded)
        return order


async def list_refunds(order_id: str) -> List[Refund]:
    async with get_db_connection(isolation='repeatable_read', readonly=True) as conn:
        exists = await conn.fetchval("SELECT 1 FROM orders WHERE id = $1", order_id)
        if not exists:
            raise NotFoundError(f"Order {order_id} not found")
        return await fetch_refunds(conn, order_id)


async def confirm_payment(order_id: str, confirmation: PaymentConfirmation) -> Order:
    """
    Move a Pending order to Paid once the payment collaborator has
    captured exactly the order total. Replaying the same confirmation on a
    Paid order is a no-op.
    """
    try:
        async with get_db_connection(isolation='serializable') as conn:
            order = await fetch_order(conn, order_id, for_update=True)
            if not order:
                raise NotFoundError(f"Order {order_id} not found")

            if confirmation.amount_in_cents != order.total_in_cents:
                raise ValidationError(
                    "Payment amount does not match order total",
                    {"amount_in_cents": confirmation.amount_in_cents, "total_in_cents": order.total_in_cents}
                )

            if order.status == OrderStatus.PAID:
                return order

            if order.status != OrderStatus.PENDING:
                raise ValidationError(
                    f"Cannot pay an order in status {order.status.value}",
                    {"status": order.status.value}
                )

            row = await conn.fetchrow("""
                UPDATE orders
                SET status = $2, paid_at = NOW(), payment_reference = $3, updated_at = NOW()
                WHERE id = $1
                RETURNING paid_at
            """, order_id, OrderStatus.PAID.value, confirmation.external_reference)
    except TRANSIENT_ERRORS as e:
        raise ConcurrencyConflict(details={"operation": "confirm_payment", "cause": str(e)})

    order.status = OrderStatus.PAID
    order.paid_at = row['paid_at'] if row else None
    logger.info(f"Order {order_id} paid: {order.total_in_cents} cents")
    return order


async def cancel_order(order_id: str) -> Order:
    """Cancel an unpaid order; paid orders are corrected through refunds"""
    async with get_db_connection() as conn:
        order = await fetch_order(conn, order_id, for_update=True)
        if not order:
            raise NotFoundError(f"Order {order_id} not found")

        if order.status == OrderStatus.CANCELLED:
            return order

        if order.status != OrderStatus.PENDING:
            raise ValidationError(
                f"Cannot cancel an order in status {order.status.value}",
                {"status": order.status.value}
            )

        await conn.execute("""
            UPDATE orders SET status = $2, updated_at = NOW() WHERE id = $1
        """, order_id, OrderStatus.CANCELLED.value)

    order.status = OrderStatus.CANCELLED
    logger.info(f"Order {order_id} cancelled")
    return order
