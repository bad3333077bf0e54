from pydantic import BaseModel, Field, StrictInt, field_validator
from typing import Optional, List
from datetime import datetime
from uuid import UUID

from ticket_commerce.models.order import ItemType, OrderStatus
from ticket_commerce.models.redemption import HoldType
from ticket_commerce.models.ticket_type import TicketTypeStatus


PER_ORDER_FEE_NAME = "Per Order Fee"


class SalesSummaryFilters(BaseModel):
    """Filtros del reporte de ventas por tipo de boleta"""
    organization_id: str
    transaction_start: Optional[datetime] = None
    transaction_end: Optional[datetime] = None
    event_start: Optional[datetime] = None
    event_end: Optional[datetime] = None
    page: int = Field(default=0, ge=0)
    page_size: int = Field(default=100, ge=1)


class SaleLine(BaseModel):
    """
    Item raiz ya unido con su contexto (orden, evento, hold, codigo, tipo
    de boleta y los hijos de descuento / cargo por boleta).
    """
    order_item_id: str
    order_id: str
    item_type: ItemType
    quantity: StrictInt
    unit_price_in_cents: StrictInt
    client_fee_in_cents: StrictInt = 0
    order_status: OrderStatus = OrderStatus.PAID
    paid_at: Optional[datetime] = None
    box_office_pricing: bool = False

    organization_id: str
    event_id: str
    event_name: str
    event_start: Optional[datetime] = None

    ticket_type_id: Optional[str] = None
    ticket_type_name: Optional[str] = None
    ticket_type_status: Optional[TicketTypeStatus] = None
    ticket_type_rank: Optional[int] = None

    hold_name: Optional[str] = None
    hold_type: Optional[HoldType] = None
    code_name: Optional[str] = None

    discount_unit_price_in_cents: StrictInt = 0
    fee_item_id: Optional[str] = None
    fee_quantity: StrictInt = 0
    fee_client_fee_in_cents: StrictInt = 0

    @field_validator('order_item_id', 'order_id', 'organization_id', 'event_id', 'ticket_type_id', 'fee_item_id', mode='before')
    @classmethod
    def convert_uuid_to_str(cls, v):
        if isinstance(v, UUID):
            return str(v)
        return v


class RefundLine(BaseModel):
    """Un item reembolsado dentro de un reembolso"""
    refund_id: str
    order_item_id: str
    root_item_id: str
    quantity: StrictInt
    amount_in_cents: StrictInt
    created_at: Optional[datetime] = None

    @field_validator('refund_id', 'order_item_id', 'root_item_id', mode='before')
    @classmethod
    def convert_uuid_to_str(cls, v):
        if isinstance(v, UUID):
            return str(v)
        return v


class SalesSummaryRow(BaseModel):
    """Fila del reporte de ventas"""
    event_name: str
    event_date: Optional[datetime] = None
    ticket_name: str
    face_value_in_cents: StrictInt
    online_sale_count: int = 0
    total_online_client_fees_in_cents: StrictInt = 0
    box_office_sale_count: int = 0
    comp_sale_count: int = 0

    def is_empty(self) -> bool:
        return not (
            self.online_sale_count
            or self.box_office_sale_count
            or self.comp_sale_count
            or self.total_online_client_fees_in_cents
        )


class SalesSummaryPage(BaseModel):
    """Pagina del reporte con el total de grupos"""
    rows: List[SalesSummaryRow] = []
    total: int = 0
    page: int = 0
    page_size: int = 100
