from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class CartItemIn(BaseModel):
    id: int
    quantity: int
    price: Decimal


class CheckoutIn(BaseModel):
    method: str
    amount: Decimal
    cart: list[CartItemIn]
    phone: str | None = None


class CheckoutOut(BaseModel):
    success: bool = True
    order_id: int
    transaction_id: str
    checkout_request_id: str | None = None


class InitiateIn(BaseModel):
    order_id: int = Field(gt=0)


class InitiateOut(BaseModel):
    success: bool = True
    message: str = "STK push sent successfully"
    response: dict


class CallbackAck(BaseModel):
    ResultCode: int
    ResultDesc: str


class OrderItemOut(BaseModel):
    product_id: int
    quantity: int
    subtotal: float

    model_config = ConfigDict(from_attributes=True)


class OrderOut(BaseModel):
    id: int
    status: str
    payment_status: str
    total: float
    checkout_request_id: str | None = None
    payment_method: str | None = None
    transaction_id: str | None = None
    items: list[OrderItemOut]


class StalledTransactionOut(BaseModel):
    order_id: int
    checkout_request_id: str
    phone: str
    amount: float
    status: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
