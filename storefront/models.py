from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

CENT = Decimal("0.01")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


class DBModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, use_enum_values=True, validate_default=True)

    id: Optional[str] = Field(None, alias="_id")


class UserDB(DBModel):
    username: str
    email: str
    password_hash: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_admin: bool = False
    preferred_language: str = "en"
    # Embedded in every token; bumping it revokes all outstanding tokens
    token_version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ProductDB(DBModel):
    title: str
    description: str = ""
    price: Decimal
    discount_percentage: Decimal = Decimal(0)
    stock: int = 0
    brand: str = ""
    category: Optional[str] = None
    thumbnail: str = ""
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def effective_price(self) -> Decimal:
        """Unit price after the product's own discount, rounded to cents."""
        factor = (Decimal(100) - Decimal(self.discount_percentage)) / Decimal(100)
        return money(Decimal(self.price) * factor)


class CartDB(DBModel):
    user_id: str
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class CartItemDB(DBModel):
    cart_id: str
    product_id: str
    quantity: int
    added_at: datetime = Field(default_factory=utcnow)


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


# Admin-driven moves; "refunded" is reachable only through the refund flow
ORDER_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.COMPLETED, OrderStatus.CANCELLED},
    OrderStatus.COMPLETED: set(),
    OrderStatus.CANCELLED: set(),
    OrderStatus.REFUNDED: set(),
}


def can_transition(current: str, requested: str) -> bool:
    return OrderStatus(requested) in ORDER_TRANSITIONS[OrderStatus(current)]


class ShippingAddress(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    street: str
    city: str
    state: str
    country: str
    zip_code: str


class AddressDB(DBModel):
    """An entry in a user's saved address book."""
    user_id: str
    street: str
    street2: Optional[str] = None
    city: str
    state: str
    country: str
    zip_code: str
    phone: Optional[str] = None
    is_default: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def to_shipping_address(self) -> ShippingAddress:
        street = f"{self.street}, {self.street2}" if self.street2 else self.street
        return ShippingAddress(
            street=street, city=self.city, state=self.state, country=self.country, zip_code=self.zip_code
        )


class OrderDB(DBModel):
    user_id: str
    status: OrderStatus = OrderStatus.PENDING
    total: Decimal
    tax: Decimal
    shipping: Decimal
    discount: Decimal = Decimal(0)
    promo_code: Optional[str] = None
    payment_intent_id: Optional[str] = None
    shipping_address: Optional[ShippingAddress] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def grand_total(self) -> Decimal:
        return money(Decimal(self.total) + Decimal(self.tax) + Decimal(self.shipping))


class OrderItemDB(DBModel):
    # Snapshot of the product at purchase time; never recomputed
    order_id: str
    product_id: str
    title: str
    price: Decimal
    quantity: int
    subtotal: Decimal
