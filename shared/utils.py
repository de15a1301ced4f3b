from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional, Generic, TypeVar, Any, List
from fastapi import HTTPException, status, Header
from motor.motor_asyncio import AsyncIOMotorClient
from passlib.context import CryptContext
from pydantic import BaseModel, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from jose import JWTError, jwt
import uuid

# --- Configuration ---
class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    MONGO_URL: str = "mongodb://localhost:27017"
    MONGO_DB: str = "storefront"
    STORAGE_BACKEND: str = "mongo"  # mongo | memory

    SECRET_KEY: str = "secret"
    REFRESH_SECRET_KEY: str = "refresh_secret"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7

    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_TIMEOUT_SECONDS: int = 20
    CURRENCY: str = "usd"
    TAX_RATE: Decimal = Decimal("0.08")
    SHIPPING_FEE: Decimal = Decimal("10.00")

    RATE_LIMIT_ENABLED: bool = True
    LOGIN_RATE_LIMIT: str = "5/minute"
    CORS_ORIGINS: List[str] = ["*"]
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    LOG_LEVEL: str = "INFO"

    ADMIN_USERNAME: Optional[str] = None
    ADMIN_PASSWORD: Optional[str] = None
    ADMIN_EMAIL: Optional[str] = None

    @model_validator(mode="after")
    def distinct_signing_secrets(self):
        if self.SECRET_KEY == self.REFRESH_SECRET_KEY:
            raise ValueError("SECRET_KEY and REFRESH_SECRET_KEY must differ")
        return self

settings = Settings()

# --- Database ---
def get_db_client(url: str = settings.MONGO_URL) -> AsyncIOMotorClient:
    return AsyncIOMotorClient(url, tz_aware=True)

# --- Authentication ---
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

def verify_password(plain_password: str, hashed_password: str) -> bool:
    if not hashed_password:
        return False
    return pwd_context.verify(plain_password, hashed_password)

def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)

def _encode_token(data: dict, secret: str, algorithm: str, expires_delta: timedelta, token_type: str) -> str:
    to_encode = data.copy()
    # Unique per token, so two rotations never yield the same string
    if "jti" not in to_encode:
        to_encode.update({"jti": str(uuid.uuid4())})
    to_encode.update({
        "exp": datetime.now(timezone.utc) + expires_delta,
        "type": token_type,
    })
    return jwt.encode(to_encode, secret, algorithm=algorithm)

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None, config: Settings = settings) -> str:
    if expires_delta is None:
        expires_delta = timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES)
    return _encode_token(data, config.SECRET_KEY, config.ALGORITHM, expires_delta, "access")

def create_refresh_token(data: dict, expires_delta: Optional[timedelta] = None, config: Settings = settings) -> str:
    if expires_delta is None:
        expires_delta = timedelta(days=config.REFRESH_TOKEN_EXPIRE_DAYS)
    return _encode_token(data, config.REFRESH_SECRET_KEY, config.ALGORITHM, expires_delta, "refresh")

def _decode_token(token: str, secret: str, algorithm: str, token_type: str) -> dict:
    try:
        payload = jwt.decode(token, secret, algorithms=[algorithm])
    except JWTError:
        raise InvalidTokenError()
    if payload.get("type") != token_type or "sub" not in payload:
        raise InvalidTokenError()
    return payload

def verify_token(token: str, config: Settings = settings) -> dict:
    return _decode_token(token, config.SECRET_KEY, config.ALGORITHM, "access")

def verify_refresh_token(token: str, config: Settings = settings) -> dict:
    return _decode_token(token, config.REFRESH_SECRET_KEY, config.ALGORITHM, "refresh")

# --- Response Models ---
T = TypeVar("T")

class SuccessResponse(BaseModel, Generic[T]):
    success: bool = True
    data: Optional[T] = None
    message: Optional[str] = None

class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    details: Optional[Any] = None

class HealthResponse(BaseModel):
    service: str
    status: str
    timestamp: datetime
    version: str
    database: Optional[str] = None
    dependencies: Optional[dict] = None


# --- Exceptions ---
class AppException(HTTPException):
    code = "error"

    def __init__(
        self,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        detail: str = "An error occurred",
        headers: Optional[dict] = None
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)

class NotFoundException(AppException):
    code = "not_found"

    def __init__(self, detail: str = "Resource not found"):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)

class UnauthorizedException(AppException):
    code = "unauthorized"

    def __init__(self, detail: str = "Unauthorized"):
         super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"}
        )

class ForbiddenException(AppException):
    code = "forbidden"

    def __init__(self, detail: str = "Admin access required"):
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=detail)

class ConflictError(AppException):
    code = "conflict"

    def __init__(self, detail: str = "Resource already exists"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)

# Authentication
class InvalidCredentialsError(UnauthorizedException):
    code = "invalid_credentials"

    def __init__(self, detail: str = "Invalid username or password"):
        super().__init__(detail)

class InvalidTokenError(UnauthorizedException):
    code = "invalid_token"

    def __init__(self, detail: str = "Could not validate credentials"):
        super().__init__(detail)

class UserNotFoundError(UnauthorizedException):
    code = "user_not_found"

    def __init__(self, detail: str = "User not found"):
        super().__init__(detail)

# Cart
class OwnershipError(NotFoundException):
    """Raised for ids that are unknown or belong to someone else; both look the same to the caller."""

    def __init__(self, detail: str = "Cart item not found"):
        super().__init__(detail)

class InvalidQuantityError(AppException):
    code = "invalid_quantity"

    def __init__(self, detail: str = "Quantity must be at least 1"):
        super().__init__(detail=detail)

class UnknownProductError(NotFoundException):
    code = "unknown_product"

    def __init__(self, product_id: str):
        super().__init__(f"Product {product_id} not found")

class ProductUnavailableError(AppException):
    code = "product_unavailable"

    def __init__(self, detail: str = "Product is not active"):
        super().__init__(detail=detail)

# Checkout
class EmptyCartError(AppException):
    code = "empty_cart"

    def __init__(self, detail: str = "Cart is empty"):
        super().__init__(detail=detail)

class AuthenticationRequiredError(UnauthorizedException):
    code = "order_not_recorded"

    def __init__(self, detail: str = "Payment received but no authenticated purchaser; please contact support"):
        super().__init__(detail)

class OrderNotRecordedError(AppException):
    code = "order_not_recorded"

    def __init__(self, detail: str = "Payment received but the order could not be recorded; please contact support"):
        super().__init__(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=detail)

class InvalidPromoCodeError(AppException):
    code = "invalid_promo_code"

    def __init__(self, detail: str = "Invalid promo code"):
        super().__init__(detail=detail)

class NotRefundableError(AppException):
    code = "not_refundable"

    def __init__(self, detail: str = "Order has no payment to refund"):
        super().__init__(detail=detail)

class InvalidStatusTransitionError(AppException):
    code = "invalid_status_transition"

    def __init__(self, current: str, requested: str):
        super().__init__(detail=f"Cannot move order from {current} to {requested}")

# Payment provider
class PaymentProviderError(AppException):
    code = "payment_provider_error"

    def __init__(self, detail: str):
        super().__init__(status_code=status.HTTP_502_BAD_GATEWAY, detail=detail)

class PaymentProviderUnavailableError(AppException):
    code = "payment_provider_unavailable"

    def __init__(self, detail: str = "Payment provider unavailable, please retry"):
        super().__init__(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail)

# --- Decorators/Dependencies ---
def parse_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, param = authorization.partition(" ")
    if scheme.lower() != "bearer" or not param:
        raise InvalidTokenError("Invalid authentication credentials")
    return param

async def bearer_token(authorization: Optional[str] = Header(None)) -> Optional[str]:
    return parse_bearer(authorization)
