from pydantic import BaseModel, Field, StrictInt, field_validator, computed_field
from typing import Optional, List, Dict
from datetime import datetime
from enum import Enum
from uuid import UUID


class ItemType(str, Enum):
    """Tipo de linea dentro de una orden"""
    TICKETS = "Tickets"
    DISCOUNT = "Discount"
    PER_UNIT_FEES = "PerUnitFees"
    EVENT_FEES = "EventFees"
    CREDIT_CARD_FEES = "CreditCardFees"

    @property
    def is_root(self) -> bool:
        """Root items have no parent; every other type modifies a Tickets item"""
        if self in (ItemType.TICKETS, ItemType.EVENT_FEES, ItemType.CREDIT_CARD_FEES):
            return True
        if self in (ItemType.DISCOUNT, ItemType.PER_UNIT_FEES):
            return False
        raise ValueError(f"Unhandled item type: {self}")


class OrderStatus(str, Enum):
    """Estados de la orden"""
    PENDING = "Pending"
    PAID = "Paid"
    CANCELLED = "Cancelled"


class RefundStatus(str, Enum):
    """Estado de reembolso, derivado del log de reembolsos"""
    NONE = "None"
    PARTIAL = "Partial"
    FULL = "Full"


def _uuid_to_str(v):
    if isinstance(v, UUID):
        return str(v)
    return v


class OrderItem(BaseModel):
    """Una linea con precio dentro de una orden"""
    id: str
    order_id: str
    event_id: str
    parent_id: Optional[str] = None
    item_type: ItemType
    ticket_type_id: Optional[str] = None
    hold_id: Optional[str] = None
    code_id: Optional[str] = None
    quantity: StrictInt = Field(..., ge=0)
    unit_price_in_cents: StrictInt
    client_fee_in_cents: StrictInt = Field(default=0, ge=0)

    @field_validator(
        'id', 'order_id', 'event_id', 'parent_id', 'ticket_type_id', 'hold_id', 'code_id',
        mode='before'
    )
    @classmethod
    def convert_uuid_to_str(cls, v):
        return _uuid_to_str(v)

    @property
    def total_in_cents(self) -> int:
        return self.quantity * self.unit_price_in_cents

    class Config:
        from_attributes = True


class Order(BaseModel):
    """Orden con su arbol de items"""
    id: str
    organization_id: str
    user_id: Optional[str] = None
    status: OrderStatus = OrderStatus.PENDING
    box_office_pricing: bool = False
    items: List[OrderItem] = []
    refund_status: RefundStatus = RefundStatus.NONE
    created_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None

    @field_validator('id', 'organization_id', 'user_id', mode='before')
    @classmethod
    def convert_uuid_to_str(cls, v):
        return _uuid_to_str(v)

    @computed_field
    @property
    def total_in_cents(self) -> int:
        # Always recomputed from the items, never stored
        return sum(item.total_in_cents for item in self.items)

    def children_of(self, item_id: str) -> List[OrderItem]:
        return [item for item in self.items if item.parent_id == item_id]

    def items_of_type(self, item_type: ItemType) -> List[OrderItem]:
        return [item for item in self.items if item.item_type == item_type]

    def items_by_id(self) -> Dict[str, OrderItem]:
        return {item.id: item for item in self.items}

    class Config:
        from_attributes = True


# Request Models

class CartSelection(BaseModel):
    """Seleccion del carrito: tipo de boleta, cantidad y codigo opcional"""
    ticket_type_id: str = Field(..., description="ID del tipo de boleta")
    quantity: StrictInt = Field(..., description="Cantidad de boletas")
    redemption_code: Optional[str] = Field(None, max_length=50, description="Codigo de hold o promocion")

    @field_validator('redemption_code', mode='before')
    @classmethod
    def blank_code_is_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v


class ChannelContext(BaseModel):
    """Contexto de canal para construir la orden"""
    organization_id: str
    box_office_pricing: bool = False
    user_id: Optional[str] = None


class OrderCreate(BaseModel):
    """Schema para crear una orden desde el carrito"""
    organization_id: str
    box_office_pricing: bool = False
    user_id: Optional[str] = None
    items: List[CartSelection] = Field(..., min_length=1)

    def context(self) -> ChannelContext:
        return ChannelContext(
            organization_id=self.organization_id,
            box_office_pricing=self.box_office_pricing,
            user_id=self.user_id
        )


class PaymentConfirmation(BaseModel):
    """Senal de pago confirmado enviada por el colaborador de pagos"""
    amount_in_cents: StrictInt = Field(..., ge=0)
    external_reference: Optional[str] = Field(None, max_length=255)
