from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, List, Tuple, Dict, Any
from pydantic import BaseModel, Field, field_validator

from shared.security_config import sanitize_input

PLACEHOLDER_NAME = "Product"
CENTS = Decimal("0.01")
# Largest magnitude accepted for a stored or submitted price
MONEY_LIMIT = Decimal("1e12")


class OrderStatus(str, Enum):
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class OrderSource(str, Enum):
    PRIMARY_API = "primary-api"
    REMOTE_TOP_LEVEL = "remote-top-level"
    REMOTE_USER_SCOPED = "remote-user-scoped"


def to_money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENTS)


def parse_money(value: Any) -> Optional[Decimal]:
    """Read an amount; None when it is unreadable, not finite or beyond MONEY_LIMIT."""
    if value is None or isinstance(value, bool):
        return None
    try:
        result = Decimal(str(value))
    except (ArithmeticError, ValueError):
        return None
    if not result.is_finite() or abs(result) >= MONEY_LIMIT:
        return None
    return result


def parse_decimal(value: Any) -> Decimal:
    """Restore a Decimal from a stored float/str; anything unusable is zero."""
    result = parse_money(value)
    return result if result is not None else Decimal(0)


class CartLine(BaseModel):
    product_id: str = Field(..., alias="productId")
    quantity: int = 1
    name: str = PLACEHOLDER_NAME
    unit_price: Decimal = Field(Decimal(0), alias="unitPrice") # Snapshot at add time
    discounted_unit_price: Optional[Decimal] = Field(None, alias="discountedUnitPrice")
    image_ref: Optional[str] = Field(None, alias="imageRef")

    class Config:
        populate_by_name = True

    @property
    def effective_unit_price(self) -> Decimal:
        if self.discounted_unit_price is not None:
            return self.discounted_unit_price
        return self.unit_price

    def to_document(self) -> dict:
        # Stores hold plain JSON numbers, Decimal is restored on read
        doc = self.dict(by_alias=True)
        doc["unitPrice"] = float(self.unit_price)
        if self.discounted_unit_price is not None:
            doc["discountedUnitPrice"] = float(self.discounted_unit_price)
        return doc


REQUIRED_ADDRESS_FIELDS = ("full_name", "address", "city", "postal_code", "country", "phone")


class ShippingAddress(BaseModel):
    full_name: str = Field("", alias="fullName")
    address: str = ""
    city: str = ""
    state: Optional[str] = None
    postal_code: str = Field("", alias="postalCode")
    country: str = "US"
    phone: str = ""

    class Config:
        populate_by_name = True
        frozen = True

    @field_validator("full_name", "address", "city", "state", "postal_code", "country", "phone", mode="before")
    def sanitize_fields(cls, v):
        if v is None:
            return ""
        return sanitize_input(str(v))

    def missing_fields(self) -> List[str]:
        return [name for name in REQUIRED_ADDRESS_FIELDS if not getattr(self, name)]

    def to_document(self) -> dict:
        doc = self.dict(by_alias=True)
        doc["addressLine1"] = self.address
        return doc


class OrderItem(BaseModel):
    product_id: str
    name: str
    unit_price: Decimal
    quantity: int
    image_ref: Optional[str] = None
    line_subtotal: Decimal

    class Config:
        frozen = True

    @classmethod
    def from_line(cls, line: CartLine) -> "OrderItem":
        unit_price = line.effective_unit_price
        return cls(
            product_id=line.product_id,
            name=line.name,
            unit_price=unit_price,
            quantity=line.quantity,
            image_ref=line.image_ref,
            line_subtotal=to_money(unit_price * line.quantity),
        )

    def to_document(self) -> dict:
        return {
            "productId": self.product_id,
            "name": self.name,
            "price": float(self.unit_price),
            "quantity": self.quantity,
            "image": self.image_ref,
            "subtotal": float(self.line_subtotal),
        }


class OrderDraft(BaseModel):
    """Priced snapshot of the cart taken when payment begins."""

    items: Tuple[OrderItem, ...]
    shipping_address: ShippingAddress
    subtotal: Decimal
    shipping_fee: Decimal
    total_amount: Decimal
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        frozen = True


class Order(BaseModel):
    id: str
    subject_id: Optional[str] = None
    items: List[OrderItem] = []
    shipping_address: Optional[Dict[str, Any]] = None
    total_amount: Decimal = Decimal(0)
    status: str = "pending"
    payment_status: str = PaymentStatus.PENDING.value
    payment_method: Optional[str] = None
    source: OrderSource
    created_at: Optional[datetime] = None
    order_date: Optional[datetime] = None
    placed_at: datetime # Resolved sort timestamp


class OrderHistory(BaseModel):
    orders: List[Order] = []
    unavailable: List[OrderSource] = [] # Sources that failed this read


class ProductSales(BaseModel):
    product_id: str
    name: str
    quantity: int


class OrderSummary(BaseModel):
    counts: Dict[str, int]
    revenue: Decimal
    needing_attention: int
    recent: List[Order]
    top_products: List[ProductSales]


class PlacedOrder(BaseModel):
    id: str
    subject_id: str
    items: List[OrderItem]
    shipping_address: ShippingAddress
    total_amount: Decimal
    status: str = OrderStatus.PROCESSING.value
    payment_status: str = PaymentStatus.PAID.value
    payment_method: str
    order_date: datetime
    synced: bool = True # False when the primary API did not record it
