import logging
from typing import Optional
from ticket_commerce.models.fee_schedule import (
    FeeSchedule, FeeScheduleRange, OrganizationFees, FeeQuote
)
from ticket_commerce.core.exceptions import NoFeeScheduleConfigured
from ticket_commerce.core.money import require_non_negative

logger = logging.getLogger(__name__)

ZERO_FEE = FeeQuote(fee_in_cents=0, client_fee_in_cents=0)


def select_range(schedule: FeeSchedule, price_in_cents: int) -> Optional[FeeScheduleRange]:
    """Highest min_price range at or below the price"""
    candidates = [r for r in schedule.ranges if r.min_price_in_cents <= price_in_cents]
    if not candidates:
        return None
    return max(candidates, key=lambda r: r.min_price_in_cents)


def resolve_per_unit_fee(org_fees: OrganizationFees, unit_price_in_cents: int) -> FeeQuote:
    """
    Per-unit fee for a ticket sold at ``unit_price_in_cents``.

    Free units carry no fee. Anything else must be covered by the
    organization's schedule; a missing schedule or uncovered price is a
    server-side misconfiguration, never defaulted to zero.
    """
    require_non_negative(unit_price_in_cents, "unit_price_in_cents")

    schedule = org_fees.fee_schedule
    if schedule is None or not schedule.ranges:
        raise NoFeeScheduleConfigured(
            f"Organization {org_fees.organization_id} has no fee schedule",
            {"organization_id": org_fees.organization_id}
        )

    if unit_price_in_cents == 0:
        return ZERO_FEE

    fee_range = select_range(schedule, unit_price_in_cents)
    if fee_range is None:
        raise NoFeeScheduleConfigured(
            f"Fee schedule {schedule.id} has no range for {unit_price_in_cents} cents",
            {"fee_schedule_id": schedule.id, "price_in_cents": unit_price_in_cents}
        )

    return FeeQuote(
        fee_in_cents=fee_range.fee_in_cents,
        client_fee_in_cents=fee_range.client_fee_in_cents
    )


def resolve_event_fee(org_fees: OrganizationFees) -> FeeQuote:
    """Fixed per-order fee, independent of quantity"""
    return FeeQuote(
        fee_in_cents=org_fees.event_fee_in_cents,
        client_fee_in_cents=org_fees.client_event_fee_in_cents
    )


async def get_organization_fees(conn, organization_id: str) -> OrganizationFees:
    """Load an organization's event fee and fee schedule ranges"""
    org = await conn.fetchrow("""
        SELECT o.id, o.fee_schedule_id,
               o.company_event_fee_in_cents, o.client_event_fee_in_cents,
               fs.name as fee_schedule_name
        FROM organizations o
        LEFT JOIN fee_schedules fs ON fs.id = o.fee_schedule_id
        WHERE o.id = $1
    """, organization_id)

    if not org:
        raise NoFeeScheduleConfigured(
            f"Organization {organization_id} not found while resolving fees",
            {"organization_id": organization_id}
        )

    schedule = None
    if org['fee_schedule_id']:
        ranges = await conn.fetch("""
            SELECT min_price_in_cents, company_fee_in_cents, client_fee_in_cents
            FROM fee_schedule_ranges
            WHERE fee_schedule_id = $1
            ORDER BY min_price_in_cents
        """, org['fee_schedule_id'])

        schedule = FeeSchedule(
            id=org['fee_schedule_id'],
            name=org['fee_schedule_name'],
            ranges=[FeeScheduleRange(**dict(r)) for r in ranges]
        )

    return OrganizationFees(
        organization_id=organization_id,
        fee_schedule=schedule,
        company_event_fee_in_cents=org['company_event_fee_in_cents'] or 0,
        client_event_fee_in_cents=org['client_event_fee_in_cents'] or 0
    )
