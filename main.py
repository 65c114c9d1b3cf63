"""
Tipping Platform FastAPI Application

Entry point for the restaurant tipping payout service: tip ledger,
distribution groups, monthly payout generation and disbursement.
"""

import os
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
import logging

# Load environment variables
load_dotenv()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

from database.db import create_tables, engine  # noqa: E402
from services.errors import PayoutError  # noqa: E402
from tipping.dependencies import get_settings  # noqa: E402
from tipping.routers import bank_accounts, distribution, payouts, tips, webhooks  # noqa: E402

# Create FastAPI app
app = FastAPI(
    title="Tipping Platform API",
    description="Restaurant tip commissions, monthly payouts and disbursement",
    version="1.0.0"
)

# CORS configuration (allow web dashboard to call API)
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================
# Error Mapping
# ============================================

@app.exception_handler(PayoutError)
async def payout_error_handler(request: Request, exc: PayoutError):
    """Domain errors become {"error": reason, "message": ..., **details}."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ============================================
# Routers
# ============================================

app.include_router(tips.router)
app.include_router(distribution.router)
app.include_router(bank_accounts.router)
app.include_router(payouts.router)
app.include_router(webhooks.router)


# ============================================
# Health Check Endpoint
# ============================================

@app.get("/health")
async def health_check():
    """
    Health check endpoint for monitoring.

    Returns server status and basic info.
    """
    return {
        "status": "healthy",
        "service": "Tipping Platform API",
        "version": "1.0.0",
        "environment": os.getenv("APP_ENV", "development")
    }


@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "message": "Welcome to the Tipping Platform API",
        "documentation": "/docs",
        "health": "/health"
    }


# ============================================
# Startup/Shutdown Events
# ============================================

@app.on_event("startup")
async def startup_event():
    """Run on application startup."""
    logger.info("Tipping Platform API starting up...")
    logger.info(f"Environment: {os.getenv('APP_ENV', 'development')}")
    logger.info(f"Database: {engine.url.get_backend_name()}")

    # Bad configuration should stop the process here, not mid-dispatch
    settings = get_settings()
    logger.info(
        f"Payouts: currency {settings.currency}, minimum {settings.minimum_payout}, "
        f"bank provider {settings.bank_provider.value}, M-Pesa {'mock' if settings.mpesa.is_mock else settings.mpesa.environment}"
    )

    if os.getenv("AUTO_CREATE_TABLES", "false").lower() == "true":
        create_tables()


@app.on_event("shutdown")
async def shutdown_event():
    """Run on application shutdown."""
    logger.info("Tipping Platform API shutting down...")
    engine.dispose()


# ============================================
# Run Server (Development Only)
# ============================================

if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("APP_PORT", 8000))
    host = os.getenv("APP_HOST", "0.0.0.0")

    logger.info(f"Starting server on {host}:{port}")

    uvicorn.run(
        "main:app",
        host=host,
        port=port,
        reload=True,  # Auto-reload on code changes (dev only!)
        log_level="info"
    )
