"""
Exam Prep Subscriptions - FastAPI Application

Main entry point for the subscription lifecycle API: tiers, payments,
paper access, referrals and operator maintenance.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config.settings import settings
from app.infrastructure.exceptions import (
    ConfigurationError,
    DuplicateError,
    ExamPrepError,
    InvalidTransitionError,
    NotFoundError,
    PaymentProviderError,
    ProvisioningError,
    ValidationError,
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
    logger.info(f"Exam prep subscriptions API starting in {settings.environment} mode...")

    if settings.database_url or settings.supabase_password:
        try:
            from app.infrastructure.db.database import init_db
            await init_db()
            logger.info("Database connection pool initialized")
        except Exception as e:
            logger.warning(f"Database initialization skipped: {e}")

    yield

    if settings.database_url or settings.supabase_password:
        try:
            from app.infrastructure.db.database import close_db
            await close_db()
            logger.info("Database connection pool closed")
        except Exception as e:
            logger.warning(f"Database shutdown error: {e}")

    logger.info("Exam prep subscriptions API shutting down...")


app = FastAPI(
    title="Exam Prep Subscriptions",
    description="Subscription lifecycle for the exam preparation tutor",
    version="1.0.0",
    lifespan=lifespan,
    debug=settings.debug,
)

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

def _error_response(status_code: int, exc: ExamPrepError) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return _error_response(400, exc)


@app.exception_handler(NotFoundError)
async def not_found_error_handler(request: Request, exc: NotFoundError):
    return _error_response(404, exc)


@app.exception_handler(DuplicateError)
async def duplicate_error_handler(request: Request, exc: DuplicateError):
    return _error_response(409, exc)


@app.exception_handler(InvalidTransitionError)
async def invalid_transition_handler(request: Request, exc: InvalidTransitionError):
    return _error_response(409, exc)


@app.exception_handler(ProvisioningError)
async def provisioning_error_handler(request: Request, exc: ProvisioningError):
    """Tier could not be provisioned; see provisioning_status on the transaction."""
    logger.error(f"Provisioning error on {request.url.path}: {exc.message}")
    return _error_response(422, exc)


@app.exception_handler(PaymentProviderError)
async def payment_provider_error_handler(request: Request, exc: PaymentProviderError):
    """Stripe/PayPal call failed upstream."""
    logger.error(f"Payment provider error on {request.url.path}: {exc.message}")
    return _error_response(502, exc)


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    logger.critical(f"Configuration error: {exc.message}")
    return _error_response(503, exc)


@app.exception_handler(ExamPrepError)
async def general_error_handler(request: Request, exc: ExamPrepError):
    """Handle all other application errors."""
    logger.error(f"Unhandled application error on {request.url.path}: {exc.message}")
    return _error_response(500, exc)


# ============================================================================
# Health Check
# ============================================================================

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "exam-prep-subscriptions"}


@app.get("/")
async def root():
    return {
        "message": "Exam Prep Subscriptions API",
        "version": "1.0.0",
        "docs": "/docs",
    }


# ============================================================================
# Import and register routers
# ============================================================================

from app.api.routes import admin, papers, payments, referrals, subscriptions, webhooks  # noqa: E402

app.include_router(subscriptions.router, prefix="/api", tags=["Subscriptions"])
app.include_router(papers.router, prefix="/api", tags=["Papers"])
app.include_router(payments.router, prefix="/api", tags=["Payments"])
app.include_router(referrals.router, prefix="/api", tags=["Referrals"])
app.include_router(webhooks.router, prefix="/api", tags=["Webhooks"])
app.include_router(admin.router)
