from pydantic import BaseModel, Field, StrictInt, field_validator
from typing import Optional, List
from uuid import UUID


class FeeScheduleRange(BaseModel):
    """Tramo de la tabla de comisiones: desde min_price aplica este cargo"""
    min_price_in_cents: StrictInt = Field(..., ge=0)
    company_fee_in_cents: StrictInt = Field(default=0, ge=0)
    client_fee_in_cents: StrictInt = Field(default=0, ge=0)

    @property
    def fee_in_cents(self) -> int:
        return self.company_fee_in_cents + self.client_fee_in_cents

    class Config:
        from_attributes = True


class FeeSchedule(BaseModel):
    """Tabla de comisiones de una organizacion"""
    id: str
    name: Optional[str] = None
    ranges: List[FeeScheduleRange] = []

    @field_validator('id', mode='before')
    @classmethod
    def convert_uuid_to_str(cls, v):
        if isinstance(v, UUID):
            return str(v)
        return v

    class Config:
        from_attributes = True


class OrganizationFees(BaseModel):
    """Cargos de la organizacion: tabla por boleta y cargo fijo por orden"""
    organization_id: str
    fee_schedule: Optional[FeeSchedule] = None
    company_event_fee_in_cents: StrictInt = Field(default=0, ge=0)
    client_event_fee_in_cents: StrictInt = Field(default=0, ge=0)

    @field_validator('organization_id', mode='before')
    @classmethod
    def convert_uuid_to_str(cls, v):
        if isinstance(v, UUID):
            return str(v)
        return v

    @property
    def event_fee_in_cents(self) -> int:
        return self.company_event_fee_in_cents + self.client_event_fee_in_cents


class FeeQuote(BaseModel):
    """Cargo resuelto por unidad"""
    fee_in_cents: StrictInt = Field(..., ge=0)
    client_fee_in_cents: StrictInt = Field(..., ge=0)
