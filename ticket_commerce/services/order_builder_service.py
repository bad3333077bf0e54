import logging
import uuid
from typing import Optional, List, Dict, Callable, Tuple
from datetime import datetime, timezone
from pydantic import BaseModel
from ticket_commerce.database import get_db_connection, TRANSIENT_ERRORS
from ticket_commerce.models.order import (
    Order, OrderItem, OrderStatus, ItemType, CartSelection, ChannelContext
)
from ticket_commerce.models.ticket_type import TicketType
from ticket_commerce.models.redemption import Redemption
from ticket_commerce.models.fee_schedule import FeeQuote
from ticket_commerce.services import fee_service, redemption_service
from ticket_commerce.core.exceptions import (
    ValidationError, InvalidTicketType, ReconciliationError, ConcurrencyConflict
)
from ticket_commerce.core.money import line_total

logger = logging.getLogger(__name__)


class PricedLine(BaseModel):
    """One validated cart selection with its resolved prices"""
    ticket_type: TicketType
    quantity: int
    base_price_in_cents: int
    redemption: Optional[Redemption] = None
    fee: FeeQuote

    @property
    def redeemed_price_in_cents(self) -> int:
        if self.redemption is None:
            return self.base_price_in_cents
        return self.redemption.redeemed_price_in_cents


def _new_id() -> str:
    return str(uuid.uuid4())


def validate_selections(
    selections: List[CartSelection],
    ticket_types: Dict[str, TicketType],
    organization_id: str,
    now: datetime
):
    """Quantity, on-sale window, increment and per-person limit checks"""
    if not selections:
        raise ValidationError("At least one ticket selection is required")

    requested: Dict[str, int] = {}
    for selection in selections:
        if selection.quantity <= 0:
            raise ValidationError(
                "Quantity must be greater than zero",
                {"ticket_type_id": selection.ticket_type_id, "quantity": selection.quantity}
            )

        ticket_type = ticket_types.get(selection.ticket_type_id)
        if ticket_type is None or ticket_type.organization_id != organization_id:
            raise InvalidTicketType(
                "Ticket type not found",
                {"ticket_type_id": selection.ticket_type_id}
            )
        if not ticket_type.is_on_sale(now):
            raise InvalidTicketType(
                f"Ticket type {ticket_type.name} is not on sale",
                {"ticket_type_id": ticket_type.id, "status": ticket_type.status.value}
            )
        if selection.quantity % ticket_type.increment:
            raise ValidationError(
                f"Quantity must be a multiple of {ticket_type.increment}",
                {"ticket_type_id": ticket_type.id, "increment": ticket_type.increment}
            )

        requested[ticket_type.id] = requested.get(ticket_type.id, 0) + selection.quantity

    for ticket_type_id, quantity in requested.items():
        limit = ticket_types[ticket_type_id].limit_per_person
        if limit and quantity > limit:
            raise ValidationError(
                f"At most {limit} tickets of this type per order",
                {"ticket_type_id": ticket_type_id, "limit_per_person": limit, "requested": quantity}
            )


def build_item_tree(
    order_id: str,
    lines: List[PricedLine],
    event_fee: FeeQuote,
    new_id: Callable[[], str] = _new_id
) -> List[OrderItem]:
    """
    Expand priced lines into the order's item tree.

    Each line gives one Tickets item at the base price, an optional Discount
    child carrying the negative per-unit discount, and a PerUnitFees child.
    A single EventFees item closes the order. Parents always precede their
    children in the returned list.
    """
    items: List[OrderItem] = []

    for line in lines:
        redemption = line.redemption
        tickets = OrderItem(
            id=new_id(),
            order_id=order_id,
            event_id=line.ticket_type.event_id,
            item_type=ItemType.TICKETS,
            ticket_type_id=line.ticket_type.id,
            hold_id=redemption.hold_id if redemption else None,
            code_id=redemption.code_id if redemption else None,
            quantity=line.quantity,
            unit_price_in_cents=line.base_price_in_cents
        )
        items.append(tickets)

        if redemption and redemption.discount_per_unit_in_cents > 0:
            items.append(OrderItem(
                id=new_id(),
                order_id=order_id,
                event_id=tickets.event_id,
                parent_id=tickets.id,
                item_type=ItemType.DISCOUNT,
                ticket_type_id=tickets.ticket_type_id,
                hold_id=tickets.hold_id,
                code_id=tickets.code_id,
                quantity=line.quantity,
                unit_price_in_cents=-redemption.discount_per_unit_in_cents
            ))

        items.append(OrderItem(
            id=new_id(),
            order_id=order_id,
            event_id=tickets.event_id,
            parent_id=tickets.id,
            item_type=ItemType.PER_UNIT_FEES,
            ticket_type_id=tickets.ticket_type_id,
            quantity=line.quantity,
            unit_price_in_cents=line.fee.fee_in_cents,
            client_fee_in_cents=line.fee.client_fee_in_cents
        ))

    if lines:
        items.append(OrderItem(
            id=new_id(),
            order_id=order_id,
            event_id=lines[0].ticket_type.event_id,
            item_type=ItemType.EVENT_FEES,
            quantity=1,
            unit_price_in_cents=event_fee.fee_in_cents,
            client_fee_in_cents=event_fee.client_fee_in_cents
        ))

    return items


def verify_item_tree(items: List[OrderItem], lines: List[PricedLine], event_fee: FeeQuote):
    """
    Re-check every pricing invariant of a freshly built tree.

    Any failure is an internal bug and aborts the order.
    """
    by_id = {item.id: item for item in items}
    subtotal = 0
    unit_fees = 0
    event_fees = 0

    for item in items:
        if item.item_type.is_root:
            if item.parent_id is not None:
                raise ReconciliationError(f"{item.item_type.value} item must not have a parent", {"item_id": item.id})
        else:
            parent = by_id.get(item.parent_id)
            if parent is None or parent.item_type != ItemType.TICKETS:
                raise ReconciliationError(
                    f"{item.item_type.value} item must modify a Tickets item",
                    {"item_id": item.id, "parent_id": item.parent_id}
                )

        if item.item_type in (ItemType.TICKETS, ItemType.DISCOUNT):
            subtotal += item.total_in_cents
        elif item.item_type == ItemType.PER_UNIT_FEES:
            unit_fees += item.total_in_cents
        elif item.item_type == ItemType.EVENT_FEES:
            event_fees += item.total_in_cents
        elif item.item_type == ItemType.CREDIT_CARD_FEES:
            raise ReconciliationError("Credit card fees are not priced by the builder", {"item_id": item.id})
        else:
            raise ValueError(f"Unhandled item type: {item.item_type}")

        if item.item_type == ItemType.DISCOUNT:
            parent = by_id[item.parent_id]
            if item.unit_price_in_cents > 0 or -item.unit_price_in_cents > parent.unit_price_in_cents:
                raise ReconciliationError(
                    "Discount exceeds its ticket price",
                    {"item_id": item.id, "discount": item.unit_price_in_cents, "price": parent.unit_price_in_cents}
                )

    expected_subtotal = sum(line_total(line.quantity, line.redeemed_price_in_cents) for line in lines)
    expected_unit_fees = sum(line_total(line.quantity, line.fee.fee_in_cents) for line in lines)
    expected_event_fees = event_fee.fee_in_cents if lines else 0

    if (subtotal, unit_fees, event_fees) != (expected_subtotal, expected_unit_fees, expected_event_fees):
        raise ReconciliationError(details={
            "subtotal": subtotal, "expected_subtotal": expected_subtotal,
            "unit_fees": unit_fees, "expected_unit_fees": expected_unit_fees,
            "event_fees": event_fees, "expected_event_fees": expected_event_fees,
        })

    total = sum(item.total_in_cents for item in items)
    if total != subtotal + unit_fees + event_fees:
        raise ReconciliationError(details={"total": total})


async def load_ticket_types(conn, ticket_type_ids: List[str]) -> Dict[str, TicketType]:
    rows = await conn.fetch("""
        SELECT tt.id, tt.event_id, e.organization_id, tt.name, tt.status, tt.rank,
               tt.start_date, tt.end_date, tt.price_in_cents, tt.box_office_price_in_cents,
               tt.increment, tt.limit_per_person
        FROM ticket_types tt
        JOIN events e ON e.id = tt.event_id
        WHERE tt.id = ANY($1::uuid[])
    """, list(set(ticket_type_ids)))

    ticket_types = [TicketType(**dict(row)) for row in rows]
    return {tt.id: tt for tt in ticket_types}


async def price_selections(
    conn,
    selections: List[CartSelection],
    ticket_types: Dict[str, TicketType],
    context: ChannelContext,
    now: datetime
) -> Tuple[List[PricedLine], FeeQuote]:
    org_fees = await fee_service.get_organization_fees(conn, context.organization_id)

    lines: List[PricedLine] = []
    pending_by_code: Dict[str, int] = {}

    for selection in selections:
        ticket_type = ticket_types[selection.ticket_type_id]
        base_price = ticket_type.unit_price_for(context.box_office_pricing)

        redemption = None
        if selection.redemption_code:
            code_key = redemption_service.normalize_code(selection.redemption_code)
            redemption = await redemption_service.resolve_redemption(
                conn,
                selection.redemption_code,
                ticket_type,
                base_price,
                selection.quantity,
                now,
                pending_quantity=pending_by_code.get(code_key, 0)
            )
            pending_by_code[code_key] = pending_by_code.get(code_key, 0) + selection.quantity

        redeemed_price = redemption.redeemed_price_in_cents if redemption else base_price
        lines.append(PricedLine(
            ticket_type=ticket_type,
            quantity=selection.quantity,
            base_price_in_cents=base_price,
            redemption=redemption,
            fee=fee_service.resolve_per_unit_fee(org_fees, redeemed_price)
        ))

    return lines, fee_service.resolve_event_fee(org_fees)


async def build_order(
    selections: List[CartSelection],
    context: ChannelContext,
    now: Optional[datetime] = None
) -> Order:
    """
    Price a cart into a Pending order and persist its item tree.

    Runs in one serializable transaction: either the whole tree is stored
    or nothing is.
    """
    now = now or datetime.now(timezone.utc)

    try:
        async with get_db_connection(isolation='serializable') as conn:
            ticket_types = await load_ticket_types(conn, [s.ticket_type_id for s in selections])
            validate_selections(selections, ticket_types, context.organization_id, now)

            lines, event_fee = await price_selections(conn, selections, ticket_types, context, now)

            order_id = _new_id()
            items = build_item_tree(order_id, lines, event_fee)
            verify_item_tree(items, lines, event_fee)

            row = await conn.fetchrow("""
                INSERT INTO orders (id, organization_id, user_id, status, box_office_pricing)
                VALUES ($1, $2, $3, $4, $5)
                RETURNING created_at
            """, order_id, context.organization_id, context.user_id,
                OrderStatus.PENDING.value, context.box_office_pricing)

            await conn.executemany("""
                INSERT INTO order_items (
                    id, order_id, event_id, parent_id, item_type, ticket_type_id,
                    hold_id, code_id, quantity, unit_price_in_cents, client_fee_in_cents
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            """, [
                (
                    item.id, item.order_id, item.event_id, item.parent_id, item.item_type.value,
                    item.ticket_type_id, item.hold_id, item.code_id, item.quantity,
                    item.unit_price_in_cents, item.client_fee_in_cents
                )
                for item in items
            ])
    except TRANSIENT_ERRORS as e:
        raise ConcurrencyConflict(details={"operation": "build_order", "cause": str(e)})

    order = Order(
        id=order_id,
        organization_id=context.organization_id,
        user_id=context.user_id,
        status=OrderStatus.PENDING,
        box_office_pricing=context.box_office_pricing,
        items=items,
        created_at=row['created_at'] if row else now
    )

    logger.info(
        f"Order {order.id} built: {len(items)} items, total {order.total_in_cents} cents "
        f"(box_office={context.box_office_pricing})"
    )
    return order
