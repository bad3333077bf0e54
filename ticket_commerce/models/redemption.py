from pydantic import BaseModel, Field, StrictInt, field_validator
from typing import Optional, List
from datetime import datetime
from enum import Enum
from uuid import UUID


class HoldType(str, Enum):
    """Tipos de hold de inventario"""
    COMP = "Comp"           # Cortesia, no genera ingreso
    DISCOUNT = "Discount"   # Precio reducido


class CodeType(str, Enum):
    """Tipos de codigo promocional"""
    DISCOUNT = "Discount"
    ACCESS = "Access"       # Solo desbloquea el tipo de boleta


class Hold(BaseModel):
    """Inventario reservado fuera del flujo normal de venta"""
    id: str
    name: str
    redemption_code: str
    hold_type: HoldType
    ticket_type_id: str
    quantity: StrictInt = Field(..., ge=0)
    discount_in_cents: Optional[StrictInt] = Field(None, ge=0)
    end_at: Optional[datetime] = None
    max_per_user: Optional[int] = Field(None, ge=0)
    redeemed_quantity: StrictInt = Field(default=0, ge=0)

    @field_validator('id', 'ticket_type_id', mode='before')
    @classmethod
    def convert_uuid_to_str(cls, v):
        if isinstance(v, UUID):
            return str(v)
        return v

    class Config:
        from_attributes = True


class Code(BaseModel):
    """Codigo promocional ligado a uno o mas tipos de boleta"""
    id: str
    name: str
    redemption_code: str
    code_type: CodeType = CodeType.DISCOUNT
    ticket_type_ids: List[str] = []
    discount_in_cents: Optional[StrictInt] = Field(None, ge=0)
    discount_as_percentage: Optional[int] = Field(None, ge=0, le=100)
    start_date: datetime
    end_date: datetime
    max_uses: int = Field(default=0, ge=0)  # 0 = ilimitado
    max_tickets_per_user: Optional[int] = Field(None, ge=0)
    redeemed_quantity: StrictInt = Field(default=0, ge=0)

    @field_validator('id', mode='before')
    @classmethod
    def convert_uuid_to_str(cls, v):
        if isinstance(v, UUID):
            return str(v)
        return v

    @field_validator('ticket_type_ids', mode='before')
    @classmethod
    def convert_uuid_list(cls, v):
        if v is None:
            return []
        return [str(x) for x in v]

    class Config:
        from_attributes = True


class Redemption(BaseModel):
    """Resultado de redimir un codigo sobre un tipo de boleta"""
    base_price_in_cents: StrictInt = Field(..., ge=0)
    redeemed_price_in_cents: StrictInt = Field(..., ge=0)
    hold_id: Optional[str] = None
    hold_type: Optional[HoldType] = None
    code_id: Optional[str] = None
    name: str

    @property
    def discount_per_unit_in_cents(self) -> int:
        return self.base_price_in_cents - self.redeemed_price_in_cents
