import uvicorn as uvicorn
from fastapi import FastAPI, Request, HTTPException, Depends
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from contextlib import asynccontextmanager
from fastapi.middleware.cors import CORSMiddleware
from fastapi_limiter import FastAPILimiter
from fastapi_limiter.depends import RateLimiter
import redis.asyncio as redis
import logging

from homeservices.commonUtils.exceptions import MarketplaceError
from homeservices.config.container import build_services
from homeservices.config.database import startDB
from homeservices.config.settings import settings
from homeservices.realtime.connectionRegistry import ConnectionRegistry
from homeservices.routes import userRoute, bookingRoute, paymentRoute, stripeWebhookHandler, realtimeRoute
from homeservices.adminUtils.adminRoutes import admin_booking_routes
from homeservices.schedulers.auto_confirm_scheduler import AutoConfirmScheduler

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def rate_limit(times: int, seconds: int) -> list:
    """Router dependencies for fastapi-limiter; empty when the limiter is not initialised."""
    if not settings.RATE_LIMITING_ENABLED:
        return []
    return [Depends(RateLimiter(times=times, seconds=seconds))]


# Initialize FastAPI app with lifespan context
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Initialize database connection and models (startup logic)
    client = await startDB()

    # Initialize rate limiter
    if settings.RATE_LIMITING_ENABLED:
        redis_connection = redis.from_url(settings.REDIS_URL, encoding="utf-8")
        await FastAPILimiter.init(redis_connection)

    registry = ConnectionRegistry()
    services = build_services(registry)
    app.state.services = services

    scheduler = AutoConfirmScheduler(services.sweep)
    if settings.AUTO_CONFIRM_SWEEP_ENABLED:
        scheduler.start(settings.AUTO_CONFIRM_SWEEP_MINUTES)
    else:
        logger.info("Auto-confirm sweep disabled")

    yield

    # Shutdown logic
    scheduler.stop()
    await services.notifier.drain()
    await registry.close()
    if settings.RATE_LIMITING_ENABLED:
        await FastAPILimiter.close()
    client.close()


app = FastAPI(
    lifespan=lifespan,
    docs_url=None if settings.ENVIRONMENT.lower() == "production" else "/docs",
    redoc_url=None if settings.ENVIRONMENT.lower() == "production" else "/redoc"
)


async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler that formats all errors consistently"""
    error_response = {
        "error": {
            "type": exc.__class__.__name__,
            "message": "An error occurred",
            "detail": str(exc),
            "path": request.url.path,
        }
    }

    status_code = 500

    # Domain errors carry their own status and machine code
    if isinstance(exc, MarketplaceError):
        status_code = exc.status_code
        error_response["error"]["type"] = exc.code
        error_response["error"]["message"] = exc.message
        error_response["error"]["detail"] = exc.detail

    # Handle HTTP exceptions (404, 401, etc.)
    elif isinstance(exc, HTTPException):
        status_code = exc.status_code
        error_response["error"]["message"] = exc.detail
        error_response["error"]["detail"] = exc.detail

    # Handle validation errors
    elif isinstance(exc, RequestValidationError):
        status_code = 422
        error_response["error"]["message"] = "Validation error"
        error_response["error"]["detail"] = exc.errors()

    # Log unexpected errors
    if status_code >= 500:
        logger.error(f"Unexpected error on {request.url.path}: {str(exc)}", exc_info=True)
        if not isinstance(exc, MarketplaceError):
            error_response["error"]["message"] = "Internal server error"
            # Don't expose internal details in production
            error_response["error"]["detail"] = "Please contact support"

    return JSONResponse(
        status_code=status_code,
        content=error_response
    )


# Register the handler for domain errors and for everything else
app.add_exception_handler(MarketplaceError, global_exception_handler)
app.add_exception_handler(Exception, global_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(userRoute.router, prefix='/api/v1', dependencies=rate_limit(100, 60))
app.include_router(bookingRoute.router, tags=['bookings'], prefix='/api/v1',
                   dependencies=rate_limit(100, 60))
app.include_router(paymentRoute.router, tags=['payments'], prefix='/api/v1',
                   dependencies=rate_limit(30, 60))
app.include_router(stripeWebhookHandler.router, tags=['StripeWebhook'], prefix='/api/v1')
app.include_router(admin_booking_routes.router, tags=['AdminUtils'], prefix='/api/v1/admin',
                   dependencies=rate_limit(100, 60))
app.include_router(realtimeRoute.router)


@app.get("/api/healthchecker", dependencies=rate_limit(100, 60))
def root():
    return {"message": f"Welcome to {settings.PLATFORM_NAME}"}


if __name__ == "__main__":
    uvicorn.run("homeservices.main:app", host="0.0.0.0", port=5001, reload=True, log_level="info")
