"""
Sales summary by ticket type, net of refunds.

The report is built in two explicit passes over rows read from one snapshot:

1. sales: paid root order items whose payment falls in the transaction
   window, each contributing its full quantity;
2. refunds: every (root item, refund) pair where the refund returned a
   positive amount inside the transaction window, contributing the negative
   of what that refund took back, even when the original sale happened
   outside the window.

Both passes feed the same grouping, so a group that was sold and fully
refunded in the window nets to zero and is dropped.
"""
import logging
from typing import Optional, List, Dict, Tuple
from datetime import datetime, timezone
from pydantic import BaseModel
from ticket_commerce.config import settings
from ticket_commerce.database import get_db_connection
from ticket_commerce.models.order import ItemType, OrderStatus
from ticket_commerce.models.redemption import HoldType
from ticket_commerce.models.ticket_type import TicketTypeStatus
from ticket_commerce.models.report import (
    SalesSummaryFilters, SaleLine, RefundLine, SalesSummaryRow, SalesSummaryPage,
    PER_ORDER_FEE_NAME
)
from ticket_commerce.core.exceptions import InvalidRange, ValidationError

logger = logging.getLogger(__name__)


class SalesEntry(BaseModel):
    """Signed contribution of one root item to the report"""
    line: SaleLine
    quantity: int
    fee_quantity: int


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _in_window(value: Optional[datetime], start: Optional[datetime], end: Optional[datetime]) -> bool:
    if start is None and end is None:
        return True
    if value is None:
        return False
    value = _aware(value)
    if start is not None and value < _aware(start):
        return False
    if end is not None and value > _aware(end):
        return False
    return True


def validate_filters(filters: SalesSummaryFilters):
    for name, start, end in (
        ("transaction", filters.transaction_start, filters.transaction_end),
        ("event", filters.event_start, filters.event_end),
    ):
        if start is not None and end is not None and _aware(end) < _aware(start):
            raise InvalidRange(
                f"{name} range ends before it starts",
                {"range": name, "start": start.isoformat(), "end": end.isoformat()}
            )

    if filters.page_size > settings.report_max_page_size:
        raise ValidationError(
            f"page_size cannot exceed {settings.report_max_page_size}",
            {"page_size": filters.page_size}
        )


def is_reportable(line: SaleLine, filters: SalesSummaryFilters) -> bool:
    """Row-level filters shared by both passes; the event window only bounds sales"""
    if line.order_status != OrderStatus.PAID:
        return False
    if line.organization_id != filters.organization_id:
        return False
    if line.item_type == ItemType.CREDIT_CARD_FEES:
        return False
    if line.item_type == ItemType.EVENT_FEES and line.client_fee_in_cents <= 0:
        return False
    return True


def collect_sales(lines: List[SaleLine], filters: SalesSummaryFilters) -> List[SalesEntry]:
    """Pass 1: original sales paid inside the transaction window, for events inside the event window"""
    return [
        SalesEntry(line=line, quantity=line.quantity, fee_quantity=line.fee_quantity)
        for line in lines
        if is_reportable(line, filters)
        and _in_window(line.event_start, filters.event_start, filters.event_end)
        and _in_window(line.paid_at, filters.transaction_start, filters.transaction_end)
    ]


def collect_refunds(
    lines_by_id: Dict[str, SaleLine],
    refund_lines: List[RefundLine],
    filters: SalesSummaryFilters
) -> List[SalesEntry]:
    """Pass 2: refund adjustments, one per (root item, refund) pair, regardless of the event window"""
    returned: Dict[Tuple[str, str], int] = {}
    for rl in refund_lines:
        key = (rl.refund_id, rl.order_item_id)
        returned[key] = returned.get(key, 0) + rl.quantity

    pairs = []
    seen = set()
    for rl in refund_lines:
        if rl.amount_in_cents <= 0:
            continue
        if not _in_window(rl.created_at, filters.transaction_start, filters.transaction_end):
            continue
        pair = (rl.root_item_id, rl.refund_id)
        if pair not in seen:
            seen.add(pair)
            pairs.append(pair)

    entries = []
    for root_item_id, refund_id in pairs:
        line = lines_by_id.get(root_item_id)
        if line is None or not is_reportable(line, filters):
            continue
        fee_returned = returned.get((refund_id, line.fee_item_id), 0) if line.fee_item_id else 0
        entries.append(SalesEntry(
            line=line,
            quantity=-returned.get((refund_id, root_item_id), 0),
            fee_quantity=-fee_returned
        ))
    return entries


def _ticket_name(line: SaleLine) -> str:
    if line.item_type == ItemType.EVENT_FEES:
        return PER_ORDER_FEE_NAME

    name = line.ticket_type_name or ""
    if line.ticket_type_status == TicketTypeStatus.CANCELLED:
        name = f"{name} (Cancelled)"
    if line.hold_name:
        name = f"{name} - Hold - {line.hold_name}"
    elif line.code_name:
        name = f"{name} - Promo - {line.code_name}"
    return name


def _face_value(line: SaleLine) -> int:
    if line.item_type == ItemType.EVENT_FEES:
        return 0
    return line.unit_price_in_cents + line.discount_unit_price_in_cents


def _group_key(line: SaleLine) -> tuple:
    return (
        line.event_id,
        line.item_type == ItemType.EVENT_FEES,
        line.ticket_type_id,
        line.ticket_type_status,
        _face_value(line),
        line.hold_name,
        line.code_name,
    )


def _sort_key(line: SaleLine) -> tuple:
    event_start = _aware(line.event_start)
    is_fee_row = line.item_type == ItemType.EVENT_FEES
    return (
        event_start is None,
        event_start or datetime.min.replace(tzinfo=timezone.utc),
        line.event_id,
        is_fee_row,
        line.ticket_type_rank if line.ticket_type_rank is not None else 0,
        line.ticket_type_name or "",
        line.hold_name or line.code_name or "",
    )


def _accumulate(row: SalesSummaryRow, entry: SalesEntry):
    line = entry.line

    if line.item_type == ItemType.EVENT_FEES:
        if not line.box_office_pricing:
            row.total_online_client_fees_in_cents += entry.quantity * line.client_fee_in_cents
        return

    if line.item_type != ItemType.TICKETS:
        raise ValueError(f"Unhandled root item type in report: {line.item_type}")

    if line.hold_type == HoldType.COMP:
        row.comp_sale_count += entry.quantity
    elif line.box_office_pricing:
        row.box_office_sale_count += entry.quantity
    else:
        row.online_sale_count += entry.quantity

    if not line.box_office_pricing:
        row.total_online_client_fees_in_cents += entry.fee_quantity * line.fee_client_fee_in_cents


def summarize_sales(
    sale_lines: List[SaleLine],
    refund_roots: List[SaleLine],
    refund_lines: List[RefundLine],
    filters: SalesSummaryFilters
) -> SalesSummaryPage:
    """
    Group sales and refund adjustments into report rows and paginate.

    ``sale_lines`` are candidate root items for pass 1; ``refund_roots``
    supply the context of refunded root items whose sale may fall outside
    the window. Rows whose four counters are all zero are dropped before
    counting the total.
    """
    validate_filters(filters)

    lines_by_id = {line.order_item_id: line for line in refund_roots}
    lines_by_id.update({line.order_item_id: line for line in sale_lines})

    entries = collect_sales(sale_lines, filters) + collect_refunds(lines_by_id, refund_lines, filters)

    groups: Dict[tuple, SalesSummaryRow] = {}
    group_lines: Dict[tuple, SaleLine] = {}
    for entry in entries:
        key = _group_key(entry.line)
        row = groups.get(key)
        if row is None:
            row = SalesSummaryRow(
                event_name=entry.line.event_name,
                event_date=entry.line.event_start,
                ticket_name=_ticket_name(entry.line),
                face_value_in_cents=_face_value(entry.line)
            )
            groups[key] = row
            group_lines[key] = entry.line
        _accumulate(row, entry)

    ordered = sorted(
        (key for key, row in groups.items() if not row.is_empty()),
        key=lambda k: _sort_key(group_lines[k])
    )

    offset = filters.page * filters.page_size
    page_keys = ordered[offset:offset + filters.page_size]

    return SalesSummaryPage(
        rows=[groups[key] for key in page_keys],
        total=len(ordered),
        page=filters.page,
        page_size=filters.page_size
    )


SALE_LINE_SELECT = """
    SELECT oi.id as order_item_id, oi.order_id, oi.item_type, oi.quantity,
           oi.unit_price_in_cents, oi.client_fee_in_cents,
           o.status as order_status, o.paid_at, o.box_office_pricing,
           e.organization_id, e.id as event_id, e.name as event_name, e.event_start,
           tt.id as ticket_type_id, tt.name as ticket_type_name,
           tt.status as ticket_type_status, tt.rank as ticket_type_rank,
           h.name as hold_name, h.hold_type, c.name as code_name,
           COALESCE(d.unit_price_in_cents, 0) as discount_unit_price_in_cents,
           f.id as fee_item_id,
           COALESCE(f.quantity, 0) as fee_quantity,
           COALESCE(f.client_fee_in_cents, 0) as fee_client_fee_in_cents
    FROM order_items oi
    JOIN orders o ON o.id = oi.order_id
    JOIN events e ON e.id = oi.event_id
    LEFT JOIN ticket_types tt ON tt.id = oi.ticket_type_id
    LEFT JOIN holds h ON h.id = oi.hold_id
    LEFT JOIN codes c ON c.id = oi.code_id
    LEFT JOIN order_items d ON d.parent_id = oi.id AND d.item_type = 'Discount'
    LEFT JOIN order_items f ON f.parent_id = oi.id AND f.item_type = 'PerUnitFees'
    WHERE oi.parent_id IS NULL
      AND o.status = 'Paid'
      AND e.organization_id = $1
      AND oi.item_type <> 'CreditCardFees'
      AND (oi.item_type <> 'EventFees' OR oi.client_fee_in_cents > 0)
"""


async def fetch_sale_lines(conn, filters: SalesSummaryFilters) -> List[SaleLine]:
    rows = await conn.fetch(SALE_LINE_SELECT + """
      AND ($2::timestamptz IS NULL OR o.paid_at >= $2)
      AND ($3::timestamptz IS NULL OR o.paid_at <= $3)
      AND ($4::timestamptz IS NULL OR e.event_start >= $4)
      AND ($5::timestamptz IS NULL OR e.event_start <= $5)
    """, filters.organization_id,
        filters.transaction_start, filters.transaction_end,
        filters.event_start, filters.event_end)
    return [SaleLine(**dict(row)) for row in rows]


async def fetch_refund_lines(conn, filters: SalesSummaryFilters) -> List[RefundLine]:
    """Every refund item of refunds created in the window, with its root item id"""
    rows = await conn.fetch("""
        SELECT ri.refund_id, ri.order_item_id,
               COALESCE(oi.parent_id, oi.id) as root_item_id,
               ri.quantity, ri.amount_in_cents, r.created_at
        FROM refunds r
        JOIN refund_items ri ON ri.refund_id = r.id
        JOIN order_items oi ON oi.id = ri.order_item_id
        JOIN orders o ON o.id = r.order_id
        WHERE o.organization_id = $1
          AND ($2::timestamptz IS NULL OR r.created_at >= $2)
          AND ($3::timestamptz IS NULL OR r.created_at <= $3)
    """, filters.organization_id, filters.transaction_start, filters.transaction_end)
    return [RefundLine(**dict(row)) for row in rows]


async def fetch_lines_by_id(conn, organization_id: str, item_ids: List[str]) -> List[SaleLine]:
    if not item_ids:
        return []
    rows = await conn.fetch(SALE_LINE_SELECT + """
      AND oi.id = ANY($2::uuid[])
    """, organization_id, item_ids)
    return [SaleLine(**dict(row)) for row in rows]


async def aggregate_sales(filters: SalesSummaryFilters) -> SalesSummaryPage:
    """
    Sales summary report for one organization.

    Both passes read from one repeatable-read snapshot so a refund committed
    between the two reads can never be counted twice or half.
    """
    validate_filters(filters)

    async with get_db_connection(isolation='repeatable_read', readonly=True) as conn:
        sale_lines = await fetch_sale_lines(conn, filters)
        refund_lines = await fetch_refund_lines(conn, filters)

        known = {line.order_item_id for line in sale_lines}
        missing = sorted({rl.root_item_id for rl in refund_lines} - known)
        refund_roots = await fetch_lines_by_id(conn, filters.organization_id, missing)

    page = summarize_sales(sale_lines, refund_roots, refund_lines, filters)
    logger.info(
        f"Sales summary for organization {filters.organization_id}: "
        f"{len(page.rows)} of {page.total} rows (page {filters.page})"
    )
    return page
