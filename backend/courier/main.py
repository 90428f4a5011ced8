"""Courier Backend Application.

This is the main entry point for the Courier messaging service: direct
and community messages delivered live over WebSocket, with HTTP endpoints
as the fallback path.

Modules:
    - realtime: connection registry, rooms, delivery engine, WebSocket protocol
    - messages: DuckDB message store and HTTP fallback endpoints
    - directory: users, communities and membership (external collaborators)
    - notifications: push-token registration and the push outbox
    - media: attachment uploads

Run with:
    uvicorn courier.main:app --app-dir backend
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from courier.config import AppSettings, get_config
from courier.errors import AuthorizationError, MessagingError
from courier.hub import MessagingHub
from courier.messages.router import router as messages_router
from courier.notifications.router import router as notifications_router
from courier.realtime.router import router as realtime_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
# uvicorn.access logs every HTTP request; multipart logs every form part.
for _noisy in (
    "uvicorn.access",
    "multipart",
    "python_multipart",
    "httpx",
    "httpcore",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


async def messaging_error_handler(request: Request, exc: MessagingError) -> JSONResponse:
    """Render a MessagingError as ``{"error", "code"}`` with its status code."""
    if isinstance(exc, AuthorizationError):
        logger.warning(f"Forbidden {request.method} {request.url.path}: {exc.reason}")
    elif exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(
        {"error": exc.message, "code": exc.code},
        status_code=exc.status_code,
    )


def create_app(settings: Optional[AppSettings] = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Settings to run with. Defaults to ``get_config()``,
            resolved when the application starts.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager for startup/shutdown events."""
        # Startup
        config = settings or get_config()

        # Apply configured log level to root logger so that
        # `logging.level: "debug"` in courier.settings.yaml activates DEBUG output.
        configured_level = getattr(logging, config.logging.level.upper(), None)
        if configured_level is not None:
            logging.getLogger().setLevel(configured_level)
            logger.info("Root logger level set to %s", config.logging.level.upper())

        app.state.hub = MessagingHub(config)
        logger.info(
            f"Courier running on http://{config.server.host}:{config.server.port}"
        )

        yield  # Application runs here

        # Shutdown
        app.state.hub.close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Courier API",
        description="Real-time direct and community messaging",
        version="0.1.0",
        lifespan=lifespan,
    )

    allowed_origins = (settings or get_config()).server.allowed_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials="*" not in allowed_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(MessagingError, messaging_error_handler)

    # Register all routers
    app.include_router(realtime_router)
    app.include_router(messages_router)
    app.include_router(notifications_router)

    @app.get("/health")
    async def health() -> dict:
        """Health check endpoint.

        Returns:
            dict: Status object indicating the server is running.
        """
        return {"status": "ok"}

    return app


app = create_app()
