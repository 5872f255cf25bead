# provide dataclass models, one flat record per table (plus OrderDetail)

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Literal, Optional

PaymentStatus = Literal["pending", "paid", "failed", "refunded"]
OrderStatus = Literal["pending", "confirmed", "shipped", "delivered", "cancelled"]
ClaimStatus = Literal["pending", "approved", "rejected", "resolved"]
RegistrationType = Literal["auto", "manual"]

PAYMENT_STATUSES: tuple[str, ...] = ("pending", "paid", "failed", "refunded")
ORDER_STATUSES: tuple[str, ...] = (
    "pending",
    "confirmed",
    "shipped",
    "delivered",
    "cancelled",
)
CLAIM_STATUSES: tuple[str, ...] = ("pending", "approved", "rejected", "resolved")


@dataclass(frozen=True)
class Product:
    product_id: str
    name: str
    price: Decimal
    stock: int
    warranty_months: int
    is_active: bool


@dataclass(frozen=True)
class CartLine:
    user_id: str
    product_id: str
    quantity: int


@dataclass(frozen=True)
class CartLineWithProduct:
    line: CartLine
    product: Product

    @property
    def line_total(self) -> Decimal:
        return self.product.price * self.line.quantity


@dataclass(frozen=True)
class ShippingAddress:
    recipient_name: str
    street: str
    city: str
    postal_code: str
    state: Optional[str] = None
    phone: Optional[str] = None

    REQUIRED = ("recipient_name", "street", "city", "postal_code")

    def to_dict(self) -> dict[str, Any]:
        return {
            "recipient_name": self.recipient_name,
            "street": self.street,
            "city": self.city,
            "postal_code": self.postal_code,
            "state": self.state,
            "phone": self.phone,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ShippingAddress":
        return cls(
            recipient_name=data.get("recipient_name", ""),
            street=data.get("street", ""),
            city=data.get("city", ""),
            postal_code=data.get("postal_code", ""),
            state=data.get("state"),
            phone=data.get("phone"),
        )


@dataclass(frozen=True)
class Order:
    order_id: str
    user_id: str
    subtotal: Decimal
    shipping_fee: Decimal
    tax: Decimal
    total_price: Decimal  # fixed at creation, never recomputed
    payment_status: str  # PaymentStatus
    order_status: str  # OrderStatus
    payment_method: str
    payment_reference: Optional[str]
    shipping_address: ShippingAddress
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class OrderItem:
    item_id: str
    order_id: str
    product_id: str
    quantity: int
    price_at_purchase: Decimal  # unit price at time of order


@dataclass(frozen=True)
class OrderDetail:
    order: Order
    items: list[OrderItem]

    @property
    def units(self) -> int:
        return sum(item.quantity for item in self.items)


@dataclass(frozen=True)
class Warranty:
    warranty_id: str
    user_id: str
    product_id: str
    order_id: Optional[str]
    unit_index: Optional[int]
    purchase_date: datetime
    expiry_date: datetime
    serial_number: Optional[str]
    invoice_url: Optional[str]
    registration_type: str  # RegistrationType
    created_at: datetime

    def is_active(self, now: datetime) -> bool:
        return now <= self.expiry_date


@dataclass(frozen=True)
class Claim:
    claim_id: str
    warranty_id: str
    issue_description: str
    status: str  # ClaimStatus
    admin_notes: Optional[str]
    image_url: Optional[str]
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class Notification:
    kind: str
    subject: str
    user_id: Optional[str] = None  # None -> admin alert
    payload: dict[str, Any] = field(default_factory=dict)
