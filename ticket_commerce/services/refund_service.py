import hashlib
import logging
import uuid
from typing import Optional, List, Dict
import asyncpg
from ticket_commerce.config import settings
from ticket_commerce.database import get_db_connection, TRANSIENT_ERRORS
from ticket_commerce.models.order import Order, OrderStatus, ItemType
from ticket_commerce.models.refund import (
    Refund, RefundItem, RefundRequest, RefundResponse, RefundChildPolicy
)
from ticket_commerce.services import orders_service
from ticket_commerce.core.exceptions import (
    ValidationError, NotFoundError, OverRefundError, ConcurrencyConflict
)
from ticket_commerce.core.money import line_total, prorate

logger = logging.getLogger(__name__)


def configured_policy() -> RefundChildPolicy:
    return RefundChildPolicy(settings.refund_child_policy)


def request_fingerprint(request: RefundRequest) -> str:
    """Stable digest of what the caller asked for (not what was derived)"""
    merged = _merge_requested(request)
    payload = ";".join(f"{item_id}:{qty}" for item_id, qty in sorted(merged.items()))
    return hashlib.sha256(payload.encode()).hexdigest()


def _merge_requested(request: RefundRequest) -> Dict[str, int]:
    merged: Dict[str, int] = {}
    for item in request.items:
        merged[item.order_item_id] = merged.get(item.order_item_id, 0) + item.quantity
    return merged


def _child_share(
    policy: RefundChildPolicy,
    child_quantity: int,
    child_refunded: int,
    parent_quantity: int,
    requested: int,
    parent_fully_refunded: bool
) -> int:
    if parent_fully_refunded:
        return child_quantity - child_refunded
    if policy == RefundChildPolicy.PROPORTIONAL:
        return prorate(child_quantity, requested, parent_quantity)
    if policy == RefundChildPolicy.EXPLICIT:
        return 0
    raise ValueError(f"Unhandled refund child policy: {policy}")


def plan_refund(
    order: Order,
    refunded: Dict[str, int],
    request: RefundRequest,
    policy: RefundChildPolicy = RefundChildPolicy.PROPORTIONAL,
    refund_event_fee_on_full_refund: bool = True
) -> List[RefundItem]:
    """
    Turn a refund request into the RefundItems it implies.

    ``refunded`` holds the quantity already refunded per order item. Children
    of a refunded Tickets item that the caller did not list are refunded per
    ``policy``; a parent left fully refunded always takes its children with
    it. Nothing is written; the result is validated against over-refund.
    """
    if order.status != OrderStatus.PAID:
        raise ValidationError(
            f"Only paid orders can be refunded (order is {order.status.value})",
            {"order_id": order.id, "status": order.status.value}
        )

    by_id = order.items_by_id()
    requested = _merge_requested(request)

    for item_id in requested:
        if item_id not in by_id:
            raise ValidationError(
                "Order item does not belong to this order",
                {"order_id": order.id, "order_item_id": item_id}
            )

    planned: Dict[str, int] = dict(requested)

    for item_id, quantity in requested.items():
        parent = by_id[item_id]
        if parent.item_type != ItemType.TICKETS:
            continue

        parent_fully_refunded = refunded.get(parent.id, 0) + quantity >= parent.quantity
        for child in order.children_of(parent.id):
            if child.id in requested:
                continue
            share = _child_share(
                policy,
                child.quantity,
                refunded.get(child.id, 0),
                parent.quantity,
                quantity,
                parent_fully_refunded
            )
            if share > 0:
                planned[child.id] = share

    for item_id, quantity in planned.items():
        item = by_id[item_id]
        refundable = item.quantity - refunded.get(item_id, 0)
        if quantity > refundable:
            raise OverRefundError(details={
                "order_item_id": item_id,
                "item_type": item.item_type.value,
                "requested": quantity,
                "refundable": refundable
            })

    if refund_event_fee_on_full_refund:
        tickets = order.items_of_type(ItemType.TICKETS)
        all_tickets_refunded = bool(tickets) and all(
            refunded.get(t.id, 0) + planned.get(t.id, 0) >= t.quantity for t in tickets
        )
        if all_tickets_refunded:
            for fee in order.items_of_type(ItemType.EVENT_FEES):
                remaining = fee.quantity - refunded.get(fee.id, 0) - planned.get(fee.id, 0)
                if remaining > 0:
                    planned[fee.id] = planned.get(fee.id, 0) + remaining

    refund_items = [
        RefundItem(
            order_item_id=item.id,
            quantity=planned[item.id],
            amount_in_cents=line_total(planned[item.id], item.unit_price_in_cents)
        )
        for item in order.items
        if planned.get(item.id)
    ]

    amount = sum(ri.amount_in_cents for ri in refund_items)
    if amount < 0:
        raise ValidationError(
            "Refund would return a negative amount",
            {"order_id": order.id, "amount_in_cents": amount}
        )

    return refund_items


async def find_refund_by_request(conn, order_id: str, request_id: str) -> Optional[dict]:
    row = await conn.fetchrow("""
        SELECT r.id, r.order_id, r.request_id, r.request_fingerprint, r.reason, r.created_at
        FROM refunds r
        WHERE r.order_id = $1 AND r.request_id = $2
    """, order_id, request_id)

    if not row:
        return None

    refund = dict(row)
    items = await conn.fetch("""
        SELECT ri.id, ri.refund_id, ri.order_item_id, ri.quantity, ri.amount_in_cents
        FROM refund_items ri
        WHERE ri.refund_id = $1
    """, refund['id'])
    refund['items'] = [RefundItem(**dict(item)) for item in items]
    return refund


async def _apply_refund(
    order_id: str,
    request: RefundRequest,
    policy: RefundChildPolicy,
    refund_event_fee_on_full_refund: bool
) -> RefundResponse:
    fingerprint = request_fingerprint(request)

    try:
        async with get_db_connection(isolation='serializable') as conn:
            # Row lock serializes refunds of the same order
            order = await orders_service.fetch_order(conn, order_id, for_update=True)
            if not order:
                raise NotFoundError(f"Order {order_id} not found")

            existing = await find_refund_by_request(conn, order_id, request.request_id)
            if existing:
                if existing.pop('request_fingerprint') != fingerprint:
                    raise ValidationError(
                        "request_id was already used for a different refund",
                        {"order_id": order_id, "request_id": request.request_id}
                    )
                logger.info(f"Refund request {request.request_id} on order {order_id} replayed")
                return RefundResponse.from_refund(Refund(**existing), replayed=True)

            refunded = await orders_service.fetch_refunded_quantities(conn, order_id)
            refund_items = plan_refund(
                order, refunded, request, policy, refund_event_fee_on_full_refund
            )

            refund_id = str(uuid.uuid4())
            amount = sum(ri.amount_in_cents for ri in refund_items)
            row = await conn.fetchrow("""
                INSERT INTO refunds (id, order_id, request_id, request_fingerprint, reason, amount_in_cents)
                VALUES ($1, $2, $3, $4, $5, $6)
                RETURNING created_at
            """, refund_id, order_id, request.request_id, fingerprint, request.reason, amount)

            for ri in refund_items:
                ri.id = str(uuid.uuid4())
                ri.refund_id = refund_id

            await conn.executemany("""
                INSERT INTO refund_items (id, refund_id, order_item_id, quantity, amount_in_cents)
                VALUES ($1, $2, $3, $4, $5)
            """, [
                (ri.id, ri.refund_id, ri.order_item_id, ri.quantity, ri.amount_in_cents)
                for ri in refund_items
            ])
    except TRANSIENT_ERRORS as e:
        raise ConcurrencyConflict(details={"operation": "refund_order", "cause": str(e)})
    except asyncpg.exceptions.UniqueViolationError as e:
        # Same request_id committed by a concurrent call; the retry replays it
        raise ConcurrencyConflict(details={"operation": "refund_order", "cause": str(e)})

    refund = Refund(
        id=refund_id,
        order_id=order_id,
        request_id=request.request_id,
        reason=request.reason,
        items=refund_items,
        created_at=row['created_at'] if row else None
    )
    logger.info(
        f"Refund {refund.id} on order {order_id}: {len(refund_items)} items, "
        f"{refund.amount_in_cents} cents"
    )
    return RefundResponse.from_refund(refund)


async def refund_order(
    order_id: str,
    request: RefundRequest,
    policy: Optional[RefundChildPolicy] = None,
    refund_event_fee_on_full_refund: Optional[bool] = None
) -> RefundResponse:
    """
    Refund items of a paid order, atomically and idempotently per request_id.

    A concurrency conflict is retried transparently (once by default) and
    surfaced if it persists.
    """
    policy = policy or configured_policy()
    if refund_event_fee_on_full_refund is None:
        refund_event_fee_on_full_refund = settings.refund_event_fee_on_full_refund

    attempts = max(settings.refund_conflict_retries, 0) + 1
    for attempt in range(1, attempts + 1):
        try:
            return await _apply_refund(order_id, request, policy, refund_event_fee_on_full_refund)
        except ConcurrencyConflict:
            if attempt >= attempts:
                logger.error(f"Refund {request.request_id} on order {order_id} conflicted {attempt} times")
                raise
            logger.warning(f"Refund {request.request_id} on order {order_id} conflicted, retrying")
