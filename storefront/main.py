import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from shared.logging_config import setup_logging, RequestLoggingMiddleware
from shared.security_config import setup_rate_limiting, SecurityHeadersMiddleware
from shared.utils import (
    AppException, ErrorResponse, HealthResponse, Settings, get_password_hash, settings as default_settings
)
from storefront import __version__
from storefront.addresses import AddressBook
from storefront.cart import CartManager
from storefront.checkout import CheckoutOrchestrator
from storefront.models import UserDB
from storefront.payments import PaymentGateway, StripeGateway
from storefront.routes import addresses, admin, auth, cart, checkout, products
from storefront.storage import Storage, create_storage
from storefront.tokens import TokenService

SERVICE_NAME = "storefront"

logger = logging.getLogger(SERVICE_NAME)


def _error(status_code: int, error: str, details=None, headers=None) -> JSONResponse:
    body = ErrorResponse(error=error, details=details).model_dump()
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body), headers=headers)


async def seed_admin(storage: Storage, config: Settings) -> None:
    if not (config.ADMIN_USERNAME and config.ADMIN_PASSWORD):
        return
    existing = await storage.get_user_by_username(config.ADMIN_USERNAME)
    if existing is not None:
        if not existing.is_admin:
            await storage.update_user(existing.id, {"is_admin": True})
            logger.info(f"Promoted {config.ADMIN_USERNAME} to admin")
        return
    await storage.create_user(UserDB(
        username=config.ADMIN_USERNAME,
        email=config.ADMIN_EMAIL or f"{config.ADMIN_USERNAME}@localhost",
        password_hash=get_password_hash(config.ADMIN_PASSWORD),
        is_admin=True,
    ))
    logger.info(f"Seeded admin user {config.ADMIN_USERNAME}")


def create_app(
    config: Optional[Settings] = None,
    storage: Optional[Storage] = None,
    gateway: Optional[PaymentGateway] = None,
) -> FastAPI:
    config = config or default_settings
    storage = storage or create_storage(config)
    gateway = gateway or StripeGateway(config.STRIPE_SECRET_KEY, config.STRIPE_TIMEOUT_SECONDS)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await storage.connect()
        await seed_admin(storage, config)
        yield
        await storage.close()

    app = FastAPI(title="Storefront", version=__version__, lifespan=lifespan)

    app.state.config = config
    app.state.storage = storage
    app.state.gateway = gateway
    app.state.tokens = TokenService(storage, config)
    app.state.carts = CartManager(storage)
    app.state.addresses = AddressBook(storage)
    app.state.checkout = CheckoutOrchestrator(storage, app.state.carts, gateway, config)

    # Security Setup
    setup_rate_limiting(app, enabled=config.RATE_LIMIT_ENABLED)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestLoggingMiddleware, service_name=SERVICE_NAME)

    # CORS Configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # --- Error envelope ---

    @app.exception_handler(AppException)
    async def app_exception_handler(request: Request, exc: AppException):
        return _error(exc.status_code, exc.detail, {"code": exc.code}, exc.headers)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return _error(exc.status_code, str(exc.detail), {"code": "http_error"}, getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = jsonable_encoder(exc.errors(), custom_encoder={Exception: str})
        return _error(
            422, "Validation error", {"code": "validation_error", "errors": errors}
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.error("Unhandled error", exc_info=exc)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error", {"code": "internal_error"})

    # --- Routes ---

    for module in (auth, addresses, products, cart, checkout, admin):
        app.include_router(module.router)

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        db_status = "connected" if await storage.ping() else "disconnected"
        if db_status != "connected":
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Service Unhealthy"
            )

        return HealthResponse(
            service=SERVICE_NAME,
            status="healthy",
            timestamp=datetime.now(timezone.utc),
            version=__version__,
            database=db_status,
            dependencies={"payments": "configured" if config.STRIPE_SECRET_KEY else "unconfigured"},
        )

    return app


setup_logging(SERVICE_NAME, getattr(logging, default_settings.LOG_LEVEL.upper(), logging.INFO))

app = create_app()


def run():
    uvicorn.run("storefront.main:app", host=default_settings.HOST, port=default_settings.PORT)


if __name__ == "__main__":
    run()
