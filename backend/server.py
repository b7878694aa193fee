from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import uuid
from contextlib import asynccontextmanager
from database import database
from routes import billing, webhooks
from services.billing_config import get_billing_config
from services.stripe_gateway import StripeGateway

import os
import logging
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def _log_billing_config() -> None:
    """Log Stripe mode and price source at startup (never the keys themselves)."""
    config = get_billing_config()
    if not config.stripe_secret_key:
        logger.error("STRIPE_SECRET_KEY / STRIPE_API_KEY is not set. Checkout and webhooks will fail.")
    else:
        stripe_mode = "test" if config.stripe_secret_key.startswith("sk_test_") else "live"
        logger.info("STRIPE_MODE = %s (from Stripe key prefix)", stripe_mode)

    if not config.stripe_webhook_secret:
        logger.error("STRIPE_WEBHOOK_SECRET is not set. Webhooks will be rejected with 500.")

    if config.price_lookup_key:
        logger.info("Pro price resolved by lookup key %s", config.price_lookup_key)
    elif config.price_id:
        logger.info("Pro price id %s", config.price_id)
    else:
        logger.error("Missing STRIPE_PRICE_LOOKUP_KEY_PRO or STRIPE_PRICE_ID. Checkout will fail.")


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Chat Billing API")
    skip_db = os.environ.get("PYTEST_RUNNING") == "1"
    if not skip_db:
        await database.connect()

    _log_billing_config()
    if getattr(app.state, "stripe_gateway", None) is None:
        app.state.stripe_gateway = StripeGateway(get_billing_config().stripe_secret_key)

    yield

    # Shutdown
    logger.info("Shutting down Chat Billing API")
    if not skip_db:
        await database.close()

# Create FastAPI app
app = FastAPI(
    title="Chat Billing API",
    description="Pro subscription checkout, Stripe webhooks and entitlement",
    version="1.0.0",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(billing.router)
app.include_router(webhooks.router)

# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development")
    }

# Validation error handler: log request_id + errors (loc path) for client debugging
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = str(uuid.uuid4())
    errors = exc.errors()
    logger.warning(
        "Request validation failed request_id=%s path=%s errors=%s",
        request_id,
        request.url.path,
        [(e.get("loc"), e.get("msg"), e.get("type")) for e in errors],
    )
    return JSONResponse(
        status_code=422,
        content={"detail": [{"loc": list(e.get("loc", [])), "msg": e.get("msg"), "type": e.get("type")} for e in errors], "request_id": request_id},
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8001,
        reload=os.getenv("ENVIRONMENT") == "development"
    )
