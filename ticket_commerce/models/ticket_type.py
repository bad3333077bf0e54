from pydantic import BaseModel, Field, StrictInt, field_validator
from typing import Optional
from datetime import datetime, timezone
from enum import Enum
from uuid import UUID


class TicketTypeStatus(str, Enum):
    """Estados del tipo de boleta"""
    PUBLISHED = "Published"
    CANCELLED = "Cancelled"


class TicketType(BaseModel):
    """Tipo de boleta con su precio base"""
    id: str
    event_id: str
    organization_id: Optional[str] = None
    name: str
    status: TicketTypeStatus = TicketTypeStatus.PUBLISHED
    rank: int = 0
    start_date: datetime
    end_date: datetime
    price_in_cents: StrictInt = Field(..., ge=0)
    box_office_price_in_cents: Optional[StrictInt] = Field(None, ge=0)
    increment: int = Field(default=1, ge=1)
    limit_per_person: int = Field(default=0, ge=0)  # 0 = sin limite

    @field_validator('id', 'event_id', 'organization_id', mode='before')
    @classmethod
    def convert_uuid_to_str(cls, v):
        if isinstance(v, UUID):
            return str(v)
        return v

    def is_on_sale(self, now: datetime) -> bool:
        if self.status == TicketTypeStatus.CANCELLED:
            return False
        start, end = _aware(self.start_date), _aware(self.end_date)
        return start <= _aware(now) < end

    def unit_price_for(self, box_office_pricing: bool) -> int:
        if box_office_pricing and self.box_office_price_in_cents is not None:
            return self.box_office_price_in_cents
        return self.price_in_cents

    class Config:
        from_attributes = True


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
