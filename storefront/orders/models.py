from typing import Optional
from pydantic import BaseModel, Field


class CreateOrderInput(BaseModel):
    address_id: int
    cart_id: Optional[int] = None
    billing_address_id: Optional[int] = None
    payment_method: Optional[str] = None
    notes: Optional[str] = Field(default=None, max_length=1000)


class StatusUpdateInput(BaseModel):
    status: str
    reason: Optional[str] = None


class CancelOrderInput(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)
    notes: Optional[str] = None
