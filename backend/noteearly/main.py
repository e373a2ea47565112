"""
NoteEarly Billing - FastAPI Application

Main entry point for the billing API.
Provides subscription plans, checkout, the customer portal and the Stripe
webhook endpoint.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from noteearly.config.settings import settings
from noteearly.infrastructure.exceptions import (
    NoteEarlyError,
    UpstreamServiceError,
    WebhookSignatureError,
)

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    logger.info(f"NoteEarly Billing starting in {settings.environment} mode...")

    if settings.database_url:
        try:
            from noteearly.infrastructure.db.database import init_db
            await init_db()
            logger.info("SQLModel database connection pool initialized")
        except Exception as e:
            logger.warning(f"SQLModel database initialization skipped: {e}")

    yield

    # Shutdown
    if settings.database_url:
        try:
            from noteearly.infrastructure.db.database import close_db
            await close_db()
            logger.info("SQLModel database connection pool closed")
        except Exception as e:
            logger.warning(f"SQLModel database shutdown error: {e}")

    logger.info("NoteEarly Billing shutting down...")


app = FastAPI(
    title="NoteEarly Billing",
    description="Subscription plans, checkout and Stripe webhook reconciliation",
    version="1.0.0",
    lifespan=lifespan,
    debug=settings.debug,
)

# CORS configuration from Settings
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# Exception Handlers
# ============================================================================

@app.exception_handler(WebhookSignatureError)
async def webhook_signature_error_handler(request: Request, exc: WebhookSignatureError):
    """Signature failures may be spoofed events; always log them."""
    logger.error(f"Rejected webhook on {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
    )


@app.exception_handler(UpstreamServiceError)
async def upstream_error_handler(request: Request, exc: UpstreamServiceError):
    """Handle failures of Stripe or the database."""
    logger.error(f"Upstream failure on {request.url.path}: {exc.message} {exc.details}")
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
    )


@app.exception_handler(NoteEarlyError)
async def application_error_handler(request: Request, exc: NoteEarlyError):
    """Handle all other application errors with their own status code."""
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
    )


# ============================================================================
# Health Check
# ============================================================================

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "noteearly-billing"}


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "NoteEarly Billing API",
        "version": "1.0.0",
        "docs": "/docs",
    }


# ============================================================================
# Import and register routers
# ============================================================================

from noteearly.api.routes import subscriptions, webhooks  # noqa: E402

app.include_router(subscriptions.router, prefix="/api", tags=["Subscriptions"])
app.include_router(webhooks.router, prefix="/api", tags=["Webhooks"])
