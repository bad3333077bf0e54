from fastapi import APIRouter, Query
from typing import Optional
from datetime import datetime
from ticket_commerce.config import settings
from ticket_commerce.models.report import SalesSummaryFilters, SalesSummaryPage
from ticket_commerce.services import sales_report_service

router = APIRouter()


@router.get("/organizations/{organization_id}/sales-summary", response_model=SalesSummaryPage)
async def sales_summary(
    organization_id: str,
    transaction_start: Optional[datetime] = Query(None, description="Paid at / refunded at, inclusive"),
    transaction_end: Optional[datetime] = Query(None, description="Paid at / refunded at, inclusive"),
    event_start: Optional[datetime] = Query(None, description="Event date, inclusive"),
    event_end: Optional[datetime] = Query(None, description="Event date, inclusive"),
    page: int = Query(0, ge=0),
    page_size: Optional[int] = Query(None, ge=1)
):
    """
    Sales summary by ticket type, net of refunds.

    One row per event, ticket type, face value and hold/promo, with online,
    box office and comp counts plus online client fees. Rows that net to zero
    are omitted; `total` counts the remaining rows.
    """
    filters = SalesSummaryFilters(
        organization_id=organization_id,
        transaction_start=transaction_start,
        transaction_end=transaction_end,
        event_start=event_start,
        event_end=event_end,
        page=page,
        page_size=page_size or settings.report_default_page_size
    )
    return await sales_report_service.aggregate_sales(filters)
