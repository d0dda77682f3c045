from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Optional, List
from uuid import UUID
from decimal import Decimal
from datetime import datetime

from shopsphere.models import OrderStatus


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class OrderItem(CamelModel):
    title: str
    price: Decimal = Field(..., ge=0, max_digits=18, decimal_places=2)
    quantity: int = Field(..., gt=0)
    images: List[str] = Field(default_factory=list)


class ShippingInfo(CamelModel):
    full_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None


class Pricing(CamelModel):
    subtotal: Decimal = Field(..., ge=0, max_digits=18, decimal_places=2)
    delivery_fee: Decimal = Field(Decimal("0"), ge=0, max_digits=18, decimal_places=2)
    handling_fee: Decimal = Field(Decimal("0"), ge=0, max_digits=18, decimal_places=2)
    grand_total: Optional[Decimal] = Field(None, ge=0, max_digits=18, decimal_places=2)


class OrderData(CamelModel):
    user_id: str = Field(..., min_length=1)
    items: List[OrderItem] = Field(..., min_length=1)
    shipping_info: Optional[ShippingInfo] = None
    pricing: Pricing


class CreatePaymentOrderRequest(CamelModel):
    # optional here so that a missing amount reaches the workflow's own check
    amount: Optional[Decimal] = Field(None, max_digits=18, decimal_places=2, description="Amount in major currency units")
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    receipt: Optional[str] = Field(None, max_length=40)
    order_data: OrderData


class CreatePaymentOrderResponse(CamelModel):
    intent_id: str
    amount: int
    currency: str
    local_order_id: UUID


class VerifyPaymentRequest(CamelModel):
    intent_id: str
    payment_ref: str
    signature: str
    local_order_id: Optional[UUID] = None


class CodOrderRequest(CamelModel):
    order_data: OrderData


class OrderRead(CamelModel):
    id: UUID
    order_id: str
    user_id: str
    order_date: Optional[datetime]
    status: str
    items: List[OrderItem]
    shipping_info: Optional[ShippingInfo]
    subtotal: float
    delivery_fee: float
    handling_fee: float
    grand_total: float
    payment_method: str
    payment_status: str
    payment_id: Optional[str]
    paid_at: Optional[datetime]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]


class OrderSummary(CamelModel):
    id: UUID
    order_id: str
    status: str
    payment_method: str
    payment_status: str
    grand_total: float


class VerifyPaymentResponse(CamelModel):
    verified: bool
    order: Optional[OrderRead] = None


class StatusUpdateRequest(CamelModel):
    status: OrderStatus


class UserRead(CamelModel):
    id: str
    total_orders: int
    total_spent: float
    created_at: Optional[datetime]
    updated_at: Optional[datetime]


class UserTotals(CamelModel):
    total_orders: int
    total_spent: float


class UserAudit(CamelModel):
    user_id: str
    stored: UserTotals
    computed: UserTotals
    in_sync: bool


class ReconcileResult(CamelModel):
    user_id: str
    before: UserTotals
    after: UserTotals
