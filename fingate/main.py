"""
FinGate - API key guard and webhook notifier

FastAPI application entry point.
"""
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

# Import observability modules
from fingate.config import settings
from fingate.database import create_engine, create_session_factory
from fingate.logging_config import configure_logging
from fingate.sentry_config import configure_sentry
from fingate.middleware.logging import LoggingMiddleware
from fingate.routes.metrics import router as metrics_router
from fingate.services.api_guard import ApiGuard
from fingate.services.webhook_service import WebhookSender
from fingate.tasks import drain

# Import route modules
from fingate.routes.api_keys import router as api_keys_router
from fingate.routes.webhooks import router as webhooks_router
from fingate.routes.transactions_v1 import router as transactions_v1_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Let in-flight webhook deliveries and usage logs finish
    await drain()
    engine = getattr(app.state, "engine", None)
    if engine is not None:
        await engine.dispose()


def create_app(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    webhook_transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        session_factory: Persistence handle; built from DATABASE_URL if omitted
        webhook_transport: httpx transport for outbound webhooks (tests)
    """
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="API key authentication, rate limiting and signed webhook delivery",
        lifespan=lifespan,
    )

    if session_factory is None:
        app.state.engine = create_engine()
        session_factory = create_session_factory(app.state.engine)

    app.state.session_factory = session_factory
    app.state.api_guard = ApiGuard(session_factory)
    app.state.webhook_sender = WebhookSender(session_factory, transport=webhook_transport)

    # Add logging middleware FIRST (runs before other middleware)
    app.add_middleware(LoggingMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include metrics endpoint FIRST (so it's always available)
    app.include_router(metrics_router)

    # Owner management routes
    app.include_router(api_keys_router)
    app.include_router(webhooks_router)

    # Public API, guarded by API keys
    app.include_router(transactions_v1_router)

    @app.get("/")
    async def root():
        """Health check endpoint."""
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "status": "running"
        }

    @app.get("/health")
    async def health():
        """Liveness check."""
        return {"status": "healthy"}

    return app


# Initialize logging first
configure_logging()

# Initialize Sentry (if SENTRY_DSN is set)
configure_sentry()

app = create_app()
