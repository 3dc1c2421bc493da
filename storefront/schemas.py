from pydantic import BaseModel, Field
from typing import Optional, List, Any, Dict
from decimal import Decimal
from datetime import datetime

from storefront.models import CartLine, Order, PlacedOrder, OrderSource


class CartItemAdd(BaseModel):
    product: Optional[Dict[str, Any]] = None # {id, name, price, discountPrice?, image?}
    quantity: int = 1

class CartItemUpdate(BaseModel):
    quantity: int

class CartResponse(BaseModel):
    user_id: Optional[str] = None
    items: List[CartLine]
    total: Decimal
    count: int

class CheckoutStateResponse(BaseModel):
    step: str
    subtotal: Optional[Decimal] = None
    shipping_fee: Optional[Decimal] = None
    total_amount: Optional[Decimal] = None

class PaymentSetupResponse(BaseModel):
    client_secret: str = Field(..., alias="clientSecret")
    total_amount: Decimal

    class Config:
        populate_by_name = True

class PaymentConfirm(BaseModel):
    # Omit when the provider already confirmed the payment client-side
    payment_details: Optional[Dict[str, Any]] = Field(None, alias="paymentDetails")

    class Config:
        populate_by_name = True

class CheckoutResultResponse(BaseModel):
    order: PlacedOrder
    warning: Optional[str] = None

class OrderListResponse(BaseModel):
    orders: List[Order]
    unavailable: List[OrderSource] = []


class OrderCreate(BaseModel):
    """Body of the primary API order-creation call."""

    subject_id: str = Field(..., alias="subjectId")
    items: List[dict]
    shipping_address: dict = Field(..., alias="shippingAddress")
    payment_method: str = Field(..., alias="paymentMethod")
    total_amount: float = Field(..., alias="totalAmount")
    status: str
    payment_status: str = Field(..., alias="paymentStatus")
    order_date: datetime = Field(..., alias="orderDate")

    class Config:
        populate_by_name = True

    def to_payload(self) -> dict:
        payload = self.dict(by_alias=True)
        payload["orderDate"] = self.order_date.isoformat()
        return payload
