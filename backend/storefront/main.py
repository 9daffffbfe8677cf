"""
Storefront Payments Backend - FastAPI Application

Payment reconciliation and fulfillment for the digital-goods storefront:
checkout initiation over M-Pesa STK push, PesaPal hosted checkout and the
Telegram bot, provider webhooks, and signed downloads.
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging

from .config import settings
from .exceptions import StorefrontError
from .db.init_db import initialize_database
from .providers.registry import get_provider_registry, close_provider_registry
from .services.chat_gateway import close_chat_gateway
from .services.scheduler import start_scheduler, shutdown_scheduler
from .api.payments import router as payments_router
from .api.webhooks import router as webhooks_router
from .api.downloads import router as downloads_router
from .api.telegram import router as telegram_router


logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Schema and adapters come up before the first request; the sweep
    scheduler starts last and stops first. Provider and bot HTTP clients
    are closed on the way out.
    """
    logger.info(f"Storefront payments starting (demo_mode={settings.demo_mode})")

    try:
        initialize_database()
    except Exception as e:
        logger.error(f"Ledger schema could not be applied: {e}")
        raise

    registry = get_provider_registry()
    logger.info(f"Payment channels: {', '.join(registry.channels())}")

    if settings.scheduler_enabled:
        try:
            start_scheduler()
        except Exception as e:
            logger.error(f"Reconciliation scheduler failed to start: {e}")
            if not settings.demo_mode:
                raise
            logger.warning("Demo mode: serving without the reconciliation sweep")

    yield

    logger.info("Storefront payments stopping")

    if settings.scheduler_enabled:
        try:
            shutdown_scheduler(wait=True)
        except Exception as e:
            logger.error(f"Reconciliation scheduler did not stop cleanly: {e}")

    await close_provider_registry()
    await close_chat_gateway()


app = FastAPI(
    title="Storefront Payments API",
    description="Multi-provider payment reconciliation and digital-goods fulfillment",
    version="0.1.0",
    lifespan=lifespan,
)


# Storefront client is served from a different origin
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError):
    """
    Render storefront errors in the standard error format.

    The HTTP status comes from the exception class (400 validation,
    401 auth, 403 entitlement, 404 not found, 502 provider/storage).
    """
    logger.warning(
        f"{request.method} {request.url.path} -> {exc.error_code}: {exc.message}",
        extra={"details": exc.details}
    )

    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    """Bad input that got past request-model validation."""
    logger.warning(f"{request.method} {request.url.path} rejected: {exc}")

    return JSONResponse(
        status_code=400,
        content={"error_code": "validation_error", "message": str(exc), "details": {}}
    )


@app.exception_handler(Exception)
async def general_error_handler(request: Request, exc: Exception):
    """
    Last resort: log with traceback and answer with an opaque 500. The
    exception type is echoed only in demo mode.
    """
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)

    return JSONResponse(
        status_code=500,
        content={
            "error_code": "internal_error",
            "message": "An unexpected error occurred",
            "details": {"error_type": type(exc).__name__} if settings.demo_mode else {}
        }
    )


@app.get("/api/health")
async def health_check():
    """Liveness plus which payment channels have credentials."""
    registry = get_provider_registry()
    return {
        "status": "healthy",
        "version": "0.1.0",
        "demo_mode": settings.demo_mode,
        "channels": {
            channel: registry.get(channel).is_configured for channel in registry.channels()
        },
    }


app.include_router(payments_router, prefix="/payments", tags=["Payments"])
app.include_router(webhooks_router, prefix="/webhooks", tags=["Webhooks"])
app.include_router(downloads_router, prefix="/downloads", tags=["Downloads"])
app.include_router(telegram_router, prefix="/telegram", tags=["Telegram"])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "storefront.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.demo_mode,
        log_level=settings.log_level.lower()
    )
