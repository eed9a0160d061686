"""
AgroMarket Payments API - Main Application

FastAPI application entry point for the marketplace payment core.
Handles saved payment methods, checkout quotes, payment processing,
retries and refunds.

Port: 7300
"""

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from core.config import get_settings
from core.database import init_db
from core.exceptions import (
    ConfigurationError,
    GatewayError,
    GatewayTimeoutError,
    InvalidTransitionError,
    MaxRetriesExceededError,
    NotFoundError,
    PaymentError,
    PaymentMethodError,
    StorageError,
    ValidationError,
)
from core.logger import get_logger, setup_logging
from api.dependencies import shutdown_transaction_engine
from api.routes import payment_methods, transactions

# Initialize centralized logging
setup_logging()
logger = get_logger(__name__)

# Get settings
settings = get_settings()

app = FastAPI(
    title=settings.APP_NAME,
    description="Payment core of the AgroMarket agricultural marketplace",
    version=settings.APP_VERSION,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
    openapi_url="/openapi.json" if settings.DEBUG else None
)

# Most specific first: the first isinstance match wins
ERROR_RESPONSES = [
    (MaxRetriesExceededError, status.HTTP_409_CONFLICT, "max_retries_exceeded"),
    (InvalidTransitionError, status.HTTP_409_CONFLICT, "invalid_transition"),
    (ValidationError, status.HTTP_400_BAD_REQUEST, "validation_error"),
    (PaymentMethodError, status.HTTP_400_BAD_REQUEST, "payment_method_error"),
    (NotFoundError, status.HTTP_404_NOT_FOUND, "not_found"),
    (GatewayTimeoutError, status.HTTP_504_GATEWAY_TIMEOUT, "gateway_timeout"),
    (GatewayError, status.HTTP_502_BAD_GATEWAY, "gateway_error"),
    (StorageError, status.HTTP_503_SERVICE_UNAVAILABLE, "storage_unavailable"),
    (ConfigurationError, status.HTTP_500_INTERNAL_SERVER_ERROR, "configuration_error"),
]


# Health check endpoint
@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint to verify API is running.

    Returns:
        dict: Status and version information
    """
    return {
        "status": "healthy",
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT
    }


# Include routers
app.include_router(payment_methods.router, prefix="/api/v1/users", tags=["Payment Methods"])
app.include_router(transactions.router, prefix="/api/v1", tags=["Transactions"])


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    """
    Translate payment core errors into HTTP responses.

    Returns:
        JSONResponse: {"detail": {"message": ..., "error_code": ...}}
    """
    status_code, error_code = status.HTTP_500_INTERNAL_SERVER_ERROR, "payment_error"
    for error_type, mapped_status, mapped_code in ERROR_RESPONSES:
        if isinstance(exc, error_type):
            status_code, error_code = mapped_status, mapped_code
            break

    if status_code >= 500:
        logger.error(f"{exc.__class__.__name__} on {request.url.path}: {str(exc)}")
    else:
        logger.info(f"{exc.__class__.__name__} on {request.url.path}: {str(exc)}")
    return JSONResponse(
        status_code=status_code,
        content={
            "detail": {
                "message": str(exc),
                "error_code": error_code
            }
        }
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """
    Global exception handler for unhandled errors.

    Args:
        request: The request that caused the exception
        exc: The exception that was raised

    Returns:
        JSONResponse: Error response with details
    """
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "detail": {
                "message": str(exc) if settings.DEBUG else "An error occurred",
                "error_code": "internal_error"
            }
        }
    )


# Startup event
@app.on_event("startup")
async def startup_event():
    """
    Application startup event handler.
    Creates missing tables.
    """
    if settings.ENVIRONMENT == "production" and settings.DEBUG:
        logger.critical("SECURITY ERROR: DEBUG=True in production environment!")
        raise RuntimeError("DEBUG must be False in production. Check your environment variables.")

    logger.info(f"Starting {settings.APP_NAME} API v{settings.APP_VERSION}")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    init_db()


# Shutdown event
@app.on_event("shutdown")
async def shutdown_event():
    """
    Application shutdown event handler.
    Drains the payment worker pool.
    """
    shutdown_transaction_engine()
    logger.info(f"Shutting down {settings.APP_NAME} API")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "api.main:app",
        host="0.0.0.0",
        port=7300,
        reload=settings.DEBUG
    )
