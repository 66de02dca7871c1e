"""
ShelfSense Sync & Analytics
Main FastAPI application
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from shelfsense import __version__
from shelfsense.api import analytics, health, sync
from shelfsense.config import get_settings
from shelfsense.models.base import create_session_factory, init_db, probe_capabilities
from shelfsense.scheduler import SyncScheduler
from shelfsense.services.slow_mover_rules import get_rule
from shelfsense.services.sync_engine import default_client_factory
from shelfsense.utils.logger import log


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    settings = get_settings()
    log.info(f"Starting {settings.app_name} v{__version__}")
    log.info(f"Environment: {settings.environment}")

    # Fail fast on a bad rule name instead of on the first analytics request
    get_rule(settings.slow_mover_rule)

    # Tests may pre-wire their own engine
    if getattr(app.state, "session_factory", None) is None:
        engine, session_factory = create_session_factory(settings.database_url)
        app.state.engine = engine
        app.state.session_factory = session_factory

    init_db(app.state.engine)
    log.info("Database initialized")
    app.state.capabilities = probe_capabilities(app.state.engine)

    if getattr(app.state, "client_factory", None) is None:
        app.state.client_factory = default_client_factory(settings)

    app.state.scheduler = None
    if settings.scheduler_enabled:
        app.state.scheduler = SyncScheduler(
            app.state.session_factory,
            client_factory=app.state.client_factory,
            settings=settings,
        )
        app.state.scheduler.start()

    yield

    # Shutdown
    if app.state.scheduler is not None:
        app.state.scheduler.stop()
    app.state.engine.dispose()
    log.info("Shutting down application")


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(
        title=settings.app_name,
        version=__version__,
        description="""
    Incremental Shopify ingestion and inventory analytics

    - Resumable order and variant-snapshot syncs with a monotonic cursor
    - Top sellers over a trailing window
    - Slow movers with a suggested markdown
    - Pricing and restock recommendations
    """,
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(health.router, tags=["health"])
    app.include_router(sync.router)
    app.include_router(analytics.router)

    @app.get("/")
    async def root():
        """Root endpoint with API information"""
        return {
            "app": settings.app_name,
            "version": __version__,
            "docs": "/docs",
            "health": "/health",
            "status": "/status",
            "endpoints": {
                "sync_orders": "POST /sync/orders?store_id=",
                "sync_variants": "POST /sync/variants?store_id=",
                "analytics": "GET /analytics?store_id=&windowDays=&minStock=&inactivityDays=&discountPct=&maxSalesInWindow=",
                "top_sellers": "GET /analytics/top-sellers?store_id=&windowDays=",
                "recommendations": "GET /analytics/recommendations?store_id=&windowDays=&minStock=&inactivityDays=&discountPct=&maxSalesInWindow=",
            },
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run(
        "shelfsense.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
    )
