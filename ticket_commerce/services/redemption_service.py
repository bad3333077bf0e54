import logging
from typing import Optional, Union
from datetime import datetime, timezone
from ticket_commerce.models.redemption import (
    Hold, HoldType, Code, CodeType, Redemption
)
from ticket_commerce.models.ticket_type import TicketType
from ticket_commerce.core.exceptions import (
    CodeExhausted, CodeExpired, CodeNotApplicable
)
from ticket_commerce.core.money import percentage_of

logger = logging.getLogger(__name__)


def normalize_code(code: str) -> str:
    return code.upper().strip()


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def redeem_hold(
    hold: Hold,
    ticket_type: TicketType,
    base_price_in_cents: int,
    quantity: int,
    now: datetime,
    pending_quantity: int = 0
) -> Redemption:
    """
    Validate a hold's redemption code and price the units it unlocks.

    ``pending_quantity`` counts units of the same hold already requested
    earlier in the same cart, which are not yet in the redeemed total.
    """
    if hold.ticket_type_id != ticket_type.id:
        raise CodeNotApplicable(details={"code": hold.redemption_code, "ticket_type_id": ticket_type.id})

    if hold.end_at is not None and _aware(now) >= _aware(hold.end_at):
        raise CodeExpired(details={"code": hold.redemption_code, "end_at": hold.end_at.isoformat()})

    if hold.max_per_user and quantity + pending_quantity > hold.max_per_user:
        raise CodeExhausted(
            f"Hold allows at most {hold.max_per_user} tickets per order",
            {"code": hold.redemption_code, "max_per_user": hold.max_per_user}
        )

    remaining = hold.quantity - hold.redeemed_quantity - pending_quantity
    if remaining < quantity:
        raise CodeExhausted(details={"code": hold.redemption_code, "remaining": max(remaining, 0)})

    if hold.hold_type == HoldType.COMP:
        redeemed_price = 0
    elif hold.hold_type == HoldType.DISCOUNT:
        discount = min(hold.discount_in_cents or 0, base_price_in_cents)
        redeemed_price = base_price_in_cents - discount
    else:
        raise ValueError(f"Unhandled hold type: {hold.hold_type}")

    return Redemption(
        base_price_in_cents=base_price_in_cents,
        redeemed_price_in_cents=redeemed_price,
        hold_id=hold.id,
        hold_type=hold.hold_type,
        name=hold.name
    )


def redeem_code(
    code: Code,
    ticket_type: TicketType,
    base_price_in_cents: int,
    quantity: int,
    now: datetime,
    pending_quantity: int = 0
) -> Redemption:
    """Validate a promo code against a ticket type and price it"""
    if ticket_type.id not in code.ticket_type_ids:
        raise CodeNotApplicable(details={"code": code.redemption_code, "ticket_type_id": ticket_type.id})

    current = _aware(now)
    if current < _aware(code.start_date) or current >= _aware(code.end_date):
        raise CodeExpired(details={
            "code": code.redemption_code,
            "start_date": code.start_date.isoformat(),
            "end_date": code.end_date.isoformat()
        })

    if code.max_tickets_per_user and quantity + pending_quantity > code.max_tickets_per_user:
        raise CodeExhausted(
            f"Code allows at most {code.max_tickets_per_user} tickets per order",
            {"code": code.redemption_code, "max_tickets_per_user": code.max_tickets_per_user}
        )

    if code.max_uses:
        remaining = code.max_uses - code.redeemed_quantity - pending_quantity
        if remaining < quantity:
            raise CodeExhausted(details={"code": code.redemption_code, "remaining": max(remaining, 0)})

    if code.code_type == CodeType.ACCESS:
        discount = 0
    elif code.code_type == CodeType.DISCOUNT:
        if code.discount_as_percentage is not None:
            discount = percentage_of(base_price_in_cents, code.discount_as_percentage)
        else:
            discount = code.discount_in_cents or 0
    else:
        raise ValueError(f"Unhandled code type: {code.code_type}")

    discount = min(discount, base_price_in_cents)

    return Redemption(
        base_price_in_cents=base_price_in_cents,
        redeemed_price_in_cents=base_price_in_cents - discount,
        code_id=code.id,
        name=code.name
    )


def redeem(
    redeemable: Union[Hold, Code],
    ticket_type: TicketType,
    base_price_in_cents: int,
    quantity: int,
    now: datetime,
    pending_quantity: int = 0
) -> Redemption:
    if isinstance(redeemable, Hold):
        return redeem_hold(redeemable, ticket_type, base_price_in_cents, quantity, now, pending_quantity)
    return redeem_code(redeemable, ticket_type, base_price_in_cents, quantity, now, pending_quantity)


async def find_redeemable(conn, redemption_code: str) -> Optional[Union[Hold, Code]]:
    """
    Look a redemption code up among holds first, then promo codes.

    Redeemed quantities count every Tickets item on a non-cancelled order;
    refunds do not give uses back.
    """
    code = normalize_code(redemption_code)

    hold = await conn.fetchrow("""
        SELECT h.id, h.name, h.redemption_code, h.hold_type, h.ticket_type_id,
               h.quantity, h.discount_in_cents, h.end_at, h.max_per_user,
               COALESCE((
                   SELECT SUM(oi.quantity)
                   FROM order_items oi
                   JOIN orders o ON o.id = oi.order_id
                   WHERE oi.hold_id = h.id
                     AND oi.item_type = 'Tickets'
                     AND o.status <> 'Cancelled'
               ), 0) as redeemed_quantity
        FROM holds h
        WHERE UPPER(h.redemption_code) = $1
          AND h.deleted_at IS NULL
    """, code)

    if hold:
        return Hold(**dict(hold))

    promo = await conn.fetchrow("""
        SELECT c.id, c.name, c.redemption_code, c.code_type,
               c.discount_in_cents, c.discount_as_percentage,
               c.start_date, c.end_date, c.max_uses, c.max_tickets_per_user,
               ARRAY(
                   SELECT ctt.ticket_type_id FROM code_ticket_types ctt
                   WHERE ctt.code_id = c.id
               ) as ticket_type_ids,
               COALESCE((
                   SELECT SUM(oi.quantity)
                   FROM order_items oi
                   JOIN orders o ON o.id = oi.order_id
                   WHERE oi.code_id = c.id
                     AND oi.item_type = 'Tickets'
                     AND o.status <> 'Cancelled'
               ), 0) as redeemed_quantity
        FROM codes c
        WHERE UPPER(c.redemption_code) = $1
          AND c.deleted_at IS NULL
    """, code)

    if promo:
        return Code(**dict(promo))

    return None


async def resolve_redemption(
    conn,
    redemption_code: str,
    ticket_type: TicketType,
    base_price_in_cents: int,
    quantity: int,
    now: datetime,
    pending_quantity: int = 0
) -> Redemption:
    redeemable = await find_redeemable(conn, redemption_code)
    if redeemable is None:
        raise CodeNotApplicable(
            "Redemption code not found",
            {"code": normalize_code(redemption_code)}
        )

    redemption = redeem(redeemable, ticket_type, base_price_in_cents, quantity, now, pending_quantity)
    logger.debug(
        f"Code {normalize_code(redemption_code)} redeemed on ticket type {ticket_type.id}: "
        f"{redemption.base_price_in_cents} -> {redemption.redeemed_price_in_cents}"
    )
    return redemption
