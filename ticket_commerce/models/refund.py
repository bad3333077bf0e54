from pydantic import BaseModel, Field, StrictInt, field_validator
from typing import Optional, List
from datetime import datetime
from enum import Enum
from uuid import UUID


class RefundChildPolicy(str, Enum):
    """Como se reembolsan los hijos (descuento, cargo por boleta) de un item Tickets"""
    PROPORTIONAL = "proportional"   # Se derivan de la cantidad reembolsada del padre
    EXPLICIT = "explicit"           # Solo los listados, salvo reembolso total del padre


class RefundItemRequest(BaseModel):
    """Cantidad a reembolsar de un item de la orden"""
    order_item_id: str
    quantity: StrictInt = Field(..., gt=0)


class RefundRequest(BaseModel):
    """Solicitud de reembolso; request_id es la llave de idempotencia"""
    request_id: str = Field(..., min_length=1, max_length=100)
    items: List[RefundItemRequest] = Field(..., min_length=1)
    reason: Optional[str] = Field(None, max_length=255)


class RefundItem(BaseModel):
    """Registro inmutable de cantidad/monto devuelto sobre un item"""
    id: Optional[str] = None
    refund_id: Optional[str] = None
    order_item_id: str
    quantity: StrictInt = Field(..., ge=0)
    amount_in_cents: StrictInt

    @field_validator('id', 'refund_id', 'order_item_id', mode='before')
    @classmethod
    def convert_uuid_to_str(cls, v):
        if isinstance(v, UUID):
            return str(v)
        return v

    class Config:
        from_attributes = True


class Refund(BaseModel):
    """Evento de correccion sobre una orden pagada"""
    id: str
    order_id: str
    request_id: str
    reason: Optional[str] = None
    items: List[RefundItem] = []
    created_at: Optional[datetime] = None

    @field_validator('id', 'order_id', mode='before')
    @classmethod
    def convert_uuid_to_str(cls, v):
        if isinstance(v, UUID):
            return str(v)
        return v

    @property
    def amount_in_cents(self) -> int:
        return sum(item.amount_in_cents for item in self.items)

    class Config:
        from_attributes = True


class RefundResponse(BaseModel):
    """Respuesta de reembolso"""
    id: str
    order_id: str
    request_id: str
    reason: Optional[str] = None
    items: List[RefundItem]
    amount_in_cents: StrictInt
    created_at: Optional[datetime] = None
    replayed: bool = False

    @classmethod
    def from_refund(cls, refund: Refund, replayed: bool = False) -> "RefundResponse":
        return cls(
            id=refund.id,
            order_id=refund.order_id,
            request_id=refund.request_id,
            reason=refund.reason,
            items=refund.items,
            amount_in_cents=refund.amount_in_cents,
            created_at=refund.created_at,
            replayed=replayed
        )
