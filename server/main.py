"""
FastAPI backend for the client portal.

Hosts the cache, the pub/sub registry and the durable store in one process and
exposes them through session-authenticated HTTP routes and a WebSocket feed.
"""

import logging
from datetime import datetime
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, ORJSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from core.container import container
from core.config import Settings
from core.errors import StoreError, StoreErrorKind, ValidationError
from core.logging import configure_logging, get_logger
from middleware.auth import AuthMiddleware
from routers import auth, deliverables, messages, notifications, security, websocket

# Initialize settings and logging
settings = Settings()
configure_logging(settings)
logger = get_logger(__name__)

# Suppress noisy loggers
logging.getLogger("uvicorn").setLevel(logging.WARNING)
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
logging.getLogger("uvicorn.error").setLevel(logging.WARNING)
logging.getLogger("watchfiles").setLevel(logging.WARNING)

STORE_ERROR_STATUS = {
    StoreErrorKind.PERMISSION_DENIED: status.HTTP_403_FORBIDDEN,
    StoreErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    StoreErrorKind.CONSTRAINT: status.HTTP_409_CONFLICT,
    StoreErrorKind.NETWORK: status.HTTP_503_SERVICE_UNAVAILABLE,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    logger.info("Starting client portal services")

    # Wire dependency injection
    container.wire(modules=[
        "routers.auth",
        "routers.messages",
        "routers.notifications",
        "routers.security",
        "routers.deliverables",
        "routers.websocket",
        "middleware.auth"
    ])

    # Start services
    await container.database().startup()
    await container.cache().startup()

    logger.info("Services started successfully", cache_backend=container.cache().backend)
    yield

    # Shutdown
    container.pubsub().clear()
    await container.cache().shutdown()
    await container.database().shutdown()
    logger.info("Services shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Client Portal Services",
    version="1.0.0",
    description="Sessions, messaging and notifications for the client portal",
    lifespan=lifespan,
    default_response_class=ORJSONResponse
)


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(
        status_code=422,
        content={"success": False, "detail": str(exc), "errors": exc.errors}
    )


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    code = STORE_ERROR_STATUS.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
    return JSONResponse(
        status_code=code,
        content={
            "success": False,
            "detail": exc.user_message,
            "kind": exc.kind.value,
            "operation": exc.operation,
            "relation": exc.relation
        }
    )


class CatchAllExceptionsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error("Unhandled exception", error_type=type(e).__name__, error=str(e), exc_info=True)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "success": False,
                    "error": f"{type(e).__name__}: {str(e)}",
                    "detail": "Internal server error"
                }
            )


app.add_middleware(CatchAllExceptionsMiddleware)

# Session middleware (restores the session cookie for protected routes)
app.add_middleware(AuthMiddleware)

# CORS must be outermost so preflight requests never hit the session check
logger.info("Configuring CORS middleware",
            origins_count=len(settings.cors_origins),
            origins=settings.cors_origins)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(auth.router)
app.include_router(messages.router)
app.include_router(notifications.router)
app.include_router(security.router)
app.include_router(deliverables.router)
app.include_router(deliverables.storage_router)
app.include_router(websocket.router)


@app.get("/health")
async def health_check():
    """Detailed health check."""
    cache = container.cache()
    pubsub = container.pubsub()

    return {
        "status": "OK",
        "service": "client-portal",
        "version": "1.0.0",
        "environment": "development" if settings.debug else "production",
        "cache_backend": cache.backend,
        "redis_enabled": settings.redis_enabled,
        "channels": len(pubsub.channels()),
        "timestamp": datetime.now().isoformat()
    }


if __name__ == "__main__":
    import uvicorn
    logger.info("Starting client portal services",
                host=settings.host, port=settings.port, debug=settings.debug)
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        reload_dirs=["."] if settings.debug else None,
        reload_excludes=["*.pyc", "__pycache__", "*.log", "*.db"] if settings.debug else None
    )
