"""
FastAPI application entry point for the TradersUtopia billing core.

Stripe webhooks reconcile subscription state; access checks read it through
the AccessService. Authentication happens upstream: the auth middleware
attaches the account id to request.state before these routes run.
"""

import os
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from tradersutopia.api.routes import health
from tradersutopia.api.routes import subscription_access
from tradersutopia.api.routes import webhooks_stripe
from tradersutopia.config.billing_config import get_billing_config
from tradersutopia.entitlements.cache import get_access_cache

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info("Starting TradersUtopia billing API")

    stripe_vars = ["STRIPE_WEBHOOK_SECRET", "STRIPE_SECRET_KEY"]
    env_status = {var: "set" if os.getenv(var) else "missing" for var in stripe_vars}
    app.state.webhooks_configured = bool(os.getenv("STRIPE_WEBHOOK_SECRET"))

    if not app.state.webhooks_configured:
        logger.warning(
            "STRIPE_WEBHOOK_SECRET not configured. Stripe webhooks will return 503."
        )
    if not os.getenv("STRIPE_SECRET_KEY"):
        logger.warning(
            "STRIPE_SECRET_KEY not configured. Reconciliation will rely on webhook payloads only."
        )
    logger.info("Stripe configuration", extra={"env_status": env_status})

    # Database connectivity check - surface misconfigurations in deploy logs
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        logger.error("DATABASE_URL is not set. Webhook and access endpoints will return 503.")
        app.state.database_configured = False
    else:
        # Mask credentials for safe logging
        masked = database_url.split("@")[-1] if "@" in database_url else "(no @ found)"
        logger.info("DATABASE_URL configured", extra={"host_db": masked})
        app.state.database_configured = True

    config = get_billing_config()
    logger.info("Billing configuration loaded", extra={
        "allowed_products": len(config.allowed_product_ids),
        "access_cache_ttl_seconds": config.access_cache_ttl_seconds,
        "cancelled_grace_until_period_end": config.cancelled_grace_until_period_end,
    })

    # Decisions cached by the previous deploy were made against its allow-list
    get_access_cache().invalidate_all(reason="startup")

    yield

    # Shutdown
    logger.info("Shutting down TradersUtopia billing API")


# Create FastAPI app
app = FastAPI(
    title="TradersUtopia Billing API",
    description="Stripe subscription reconciliation and premium access checks",
    version="0.1.0",
    lifespan=lifespan
)

cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

# Include health route (bypasses authentication)
app.include_router(health.router)

# Stripe webhooks (signature verified, no user auth)
app.include_router(webhooks_stripe.router)

# Access checks (requires authenticated account)
app.include_router(subscription_access.router)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unhandled exceptions with proper logging."""
    logger.error(
        "Unhandled exception",
        extra={
            "account_id": getattr(request.state, "account_id", "unknown"),
            "error": str(exc),
            "error_type": type(exc).__name__,
            "path": request.url.path
        },
        exc_info=True
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "detail": "An unexpected error occurred"
        }
    )


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        reload=os.getenv("ENV") == "development"
    )
