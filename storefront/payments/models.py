from typing import Optional
from pydantic import BaseModel, Field


class GatewayOrderInput(BaseModel):
    address_id: int
    cart_id: Optional[int] = None
    billing_address_id: Optional[int] = None
    notes: Optional[str] = Field(default=None, max_length=1000)


class ConfirmCardInput(BaseModel):
    order_id: int
    payment_method_id: Optional[str] = None
    return_url: Optional[str] = None


class StepUpInput(BaseModel):
    order_id: int
    payment_intent_id: str


class CaptureInput(BaseModel):
    order_id: int
    gateway_order_id: str


class RefundInput(BaseModel):
    amount: Optional[int] = Field(default=None, gt=0)
    reason: Optional[str] = None
