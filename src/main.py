"""Dojo billing FastAPI application."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from src.core.config import settings
from src.core.exceptions import AppException
from src.core.exceptions.handlers import (
    app_exception_handler,
    http_exception_handler,
    sqlalchemy_db_error_handler,
    validation_exception_handler,
)
from src.core.logging import configure_logging
from src.integrations.registry import build_payment_provider
from src.integrations.webhooks.router import router as webhooks_router
from src.modules.discounts.router import router as discounts_router
from src.modules.invoices.router import router as invoices_router
from src.modules.payments.router import (
    router as payments_router,
    sessions_router as payment_sessions_router,
)
from src.modules.tax_rates.router import router as tax_rates_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    logger.info("Payments go through %s (%s checkout)", app.state.payment_provider.name, settings.checkout_mode)
    yield
    # Shutdown
    await app.state.payment_provider.aclose()


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    configure_logging()

    app = FastAPI(
        title="Dojo Billing",
        description="Billing and payment orchestration for a martial-arts school",
        version="0.1.0",
        debug=settings.debug,
        lifespan=lifespan,
    )
    # One provider client per process, chosen by configuration
    app.state.payment_provider = build_payment_provider(settings)

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(SQLAlchemyError, sqlalchemy_db_error_handler)

    # Health check endpoint (must be first for Railway/Heroku health checks)
    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    # Routers
    app.include_router(tax_rates_router, prefix="/api/v1")
    app.include_router(discounts_router, prefix="/api/v1")
    app.include_router(invoices_router, prefix="/api/v1")
    app.include_router(payment_sessions_router, prefix="/api/v1")
    app.include_router(payments_router, prefix="/api/v1")
    app.include_router(webhooks_router, prefix="/api/v1")

    return app


app = create_app()
