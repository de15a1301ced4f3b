from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import Optional, List
from decimal import Decimal
from datetime import datetime
from shared.security_config import password_problems, sanitize_input
from storefront.models import OrderStatus, ShippingAddress


class APIModel(BaseModel):
    # camelCase on the wire, snake_case accepted on input too
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _strong_password(v: str) -> str:
    problems = password_problems(v)
    if problems:
        raise ValueError("Password must contain " + ", ".join(problems))
    return v


# --- Auth ---

class UserRegister(APIModel):
    username: str = Field(..., min_length=3, max_length=50, pattern=r"^[A-Za-z0-9_.@-]+$")
    email: EmailStr
    password: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    preferred_language: str = Field("en", pattern="^[a-z]{2}$")

    @field_validator("password")
    def password_complexity(cls, v):
        return _strong_password(v)

    @field_validator("first_name", "last_name")
    def sanitize_names(cls, v):
        return sanitize_input(v)

class UserLogin(APIModel):
    username: str
    password: str

class RefreshTokenRequest(APIModel):
    refresh_token: str

class LogoutRequest(APIModel):
    everywhere: bool = False

class PasswordChange(APIModel):
    current_password: str
    new_password: str

    @field_validator("new_password")
    def password_complexity(cls, v):
        return _strong_password(v)

class ProfileUpdate(APIModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[EmailStr] = None
    preferred_language: Optional[str] = Field(None, pattern="^[a-z]{2}$")

    @field_validator("first_name", "last_name")
    def sanitize_names(cls, v):
        return sanitize_input(v)

class UserResponse(APIModel):
    id: str
    username: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_admin: bool
    preferred_language: str
    created_at: datetime

class TokenResponse(APIModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"

class AuthResponse(TokenResponse):
    user: UserResponse

class AdminUserUpdate(APIModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[EmailStr] = None
    is_admin: Optional[bool] = None
    preferred_language: Optional[str] = Field(None, pattern="^[a-z]{2}$")

    @field_validator("first_name", "last_name")
    def sanitize_names(cls, v):
        return sanitize_input(v)


# --- Address book ---

class AddressCreate(APIModel):
    street: str = Field(..., min_length=1)
    street2: Optional[str] = None
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    country: str = Field(..., min_length=1)
    zip_code: str = Field(..., min_length=1)
    phone: Optional[str] = None
    is_default: bool = False

    @field_validator("street", "street2", "city", "state", "country", "zip_code", "phone")
    def sanitize_text(cls, v):
        return sanitize_input(v)

class AddressUpdate(APIModel):
    street: Optional[str] = Field(None, min_length=1)
    street2: Optional[str] = None
    city: Optional[str] = Field(None, min_length=1)
    state: Optional[str] = Field(None, min_length=1)
    country: Optional[str] = Field(None, min_length=1)
    zip_code: Optional[str] = Field(None, min_length=1)
    phone: Optional[str] = None
    is_default: Optional[bool] = None

    @field_validator("street", "street2", "city", "state", "country", "zip_code", "phone")
    def sanitize_text(cls, v):
        return sanitize_input(v)

class AddressResponse(APIModel):
    id: str
    street: str
    street2: Optional[str] = None
    city: str
    state: str
    country: str
    zip_code: str
    phone: Optional[str] = None
    is_default: bool


# --- Catalog ---

class ProductCreate(APIModel):
    title: str = Field(..., min_length=1)
    description: str = ""
    price: Decimal = Field(..., ge=0)
    discount_percentage: Decimal = Field(Decimal(0), ge=0, le=100)
    stock: int = Field(0, ge=0)
    brand: str = ""
    category: Optional[str] = None
    thumbnail: str = ""
    is_active: bool = True

    @field_validator("title", "description", "brand", "category")
    def sanitize_text(cls, v):
        return sanitize_input(v)

class ProductUpdate(APIModel):
    title: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    price: Optional[Decimal] = Field(None, ge=0)
    discount_percentage: Optional[Decimal] = Field(None, ge=0, le=100)
    stock: Optional[int] = Field(None, ge=0)
    brand: Optional[str] = None
    category: Optional[str] = None
    thumbnail: Optional[str] = None
    is_active: Optional[bool] = None

    @field_validator("title", "description", "brand", "category")
    def sanitize_text(cls, v):
        return sanitize_input(v)

class ProductResponse(APIModel):
    id: str
    title: str
    description: str
    price: Decimal
    discount_percentage: Decimal
    effective_price: Decimal
    stock: int
    brand: str
    category: Optional[str] = None
    thumbnail: str
    is_active: bool


# --- Cart ---

class CartItemAdd(APIModel):
    product_id: str
    quantity: int = Field(1, gt=0)

class CartItemUpdate(APIModel):
    # Range is enforced by the cart manager so that 0 and negatives fail with invalid_quantity
    quantity: int

class CartItemResponse(APIModel):
    id: str
    cart_id: str
    product_id: str
    quantity: int
    title: Optional[str] = None
    thumbnail: Optional[str] = None
    price: Decimal
    subtotal: Decimal
    available: bool = True


# --- Checkout ---

class PromoRequest(APIModel):
    code: str

class PromoResponse(APIModel):
    valid: bool
    code: Optional[str] = None
    type: Optional[str] = None
    discount: Optional[Decimal] = None
    message: str

class QuoteRequest(APIModel):
    promo_code: Optional[str] = None

class QuoteResponse(APIModel):
    total_items: int
    subtotal: Decimal
    discount: Decimal
    total: Decimal
    tax: Decimal
    shipping: Decimal
    grand_total: Decimal
    promo_code: Optional[str] = None

class PaymentIntentCreate(APIModel):
    amount: Decimal = Field(..., gt=0)

class PaymentIntentResponse(APIModel):
    client_secret: str
    payment_intent_id: str

class CheckoutDetails(APIModel):
    promo_code: Optional[str] = None
    shipping_address: Optional[ShippingAddress] = None
    # A saved address; ignored when shippingAddress is given
    address_id: Optional[str] = None

    @field_validator("shipping_address")
    def sanitize_address(cls, v):
        if v is None:
            return v
        return ShippingAddress(**{k: sanitize_input(val) for k, val in v.model_dump().items()})

class OrderItemResponse(APIModel):
    id: str
    product_id: str
    title: str
    price: Decimal
    quantity: int
    subtotal: Decimal

class OrderResponse(APIModel):
    id: str
    user_id: str
    status: str
    total: Decimal
    tax: Decimal
    shipping: Decimal
    discount: Decimal
    grand_total: Decimal
    promo_code: Optional[str] = None
    payment_intent_id: Optional[str] = None
    shipping_address: Optional[ShippingAddress] = None
    items: List[OrderItemResponse] = []
    created_at: datetime
    updated_at: Optional[datetime] = None

class PaymentVerificationResponse(APIModel):
    payment_intent_id: str
    status: str
    paid: bool
    order: Optional[OrderResponse] = None


# --- Admin ---

class OrderStatusUpdate(APIModel):
    status: OrderStatus

class RefundRequest(APIModel):
    payment_intent_id: Optional[str] = None

class RefundResponse(APIModel):
    refund_id: str
    refund_status: str
    order: OrderResponse


# --- Builders ---

def user_response(user) -> UserResponse:
    return UserResponse(**user.model_dump())

def address_response(address) -> AddressResponse:
    return AddressResponse(**address.model_dump())

def product_response(product) -> ProductResponse:
    return ProductResponse(**product.model_dump(), effective_price=product.effective_price())

def cart_item_response(line) -> CartItemResponse:
    product = line.product
    return CartItemResponse(
        **line.item.model_dump(),
        title=product.title if product else None,
        thumbnail=product.thumbnail if product else None,
        price=line.unit_price,
        subtotal=line.subtotal,
        available=line.available,
    )

def order_response(order, items=()) -> OrderResponse:
    return OrderResponse(
        **order.model_dump(),
        grand_total=order.grand_total,
        items=[OrderItemResponse(**item.model_dump()) for item in items],
    )

def quote_response(quote) -> QuoteResponse:
    return QuoteResponse(
        total_items=quote.total_items,
        subtotal=quote.subtotal,
        discount=quote.discount,
        total=quote.total,
        tax=quote.tax,
        shipping=quote.shipping,
        grand_total=quote.grand_total,
        promo_code=quote.promo_code,
    )
