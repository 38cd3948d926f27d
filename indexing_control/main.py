"""Indexing Control Center - Main Application.

Admin backend for regression-testing the remote indexing pipeline,
unlocking production videos for indexing with demo protection, and
monitoring indexing operations.
"""

import logging
import sys
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .api import router as api_router
from .api.routes import register_exception_handlers, set_dependencies
from .config import get_settings
from .metrics import get_metrics_endpoint
from .services import (
    AdminVerifier,
    FixtureCatalog,
    IndexerClient,
    IndexingOpsDashboard,
    InMemoryStore,
    RunLogSink,
    SupabaseStore,
    TestRunLedger,
    TestRunOrchestrator,
    UnlockAndIndexService,
)


def configure_logging(level: str = "INFO") -> None:
    """Configure structlog JSON output and route stdlib logging to stdout."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        stream=sys.stdout,
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(get_settings().log_level)
logger = structlog.get_logger(__name__)

# Global instances
store = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global store

    settings = get_settings()
    logger.info("Starting Indexing Control Center", port=settings.port)

    if settings.supabase_configured:
        store = SupabaseStore(
            supabase_url=settings.supabase_url,
            supabase_key=settings.supabase_service_role_key,
            timeout=settings.store_timeout_seconds,
        )
        logger.info("Using Supabase store", supabase_url=settings.supabase_url)
    else:
        store = InMemoryStore()
        logger.warning("SUPABASE_URL or SUPABASE_SERVICE_ROLE_KEY not set, using in-memory store")

    indexer = IndexerClient(
        supabase_url=settings.supabase_url,
        service_key=settings.supabase_service_role_key,
        timeout=settings.indexer_timeout_seconds,
    )
    ledger = TestRunLedger(store, RunLogSink(store))

    set_dependencies(
        verifier=AdminVerifier(
            supabase_url=settings.supabase_url,
            anon_key=settings.supabase_anon_key,
            store=store,
            timeout=settings.store_timeout_seconds,
        ),
        ledger=ledger,
        orchestrator=TestRunOrchestrator(
            ledger=ledger,
            indexer=indexer,
            indexer_function=settings.indexer_function,
            personal_indexer_function=settings.personal_indexer_function,
        ),
        fixtures=FixtureCatalog(store, ledger),
        unlock_service=UnlockAndIndexService(store, indexer, settings.indexer_function),
        ops_dashboard=IndexingOpsDashboard(store),
    )

    logger.info("Indexing Control Center started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Indexing Control Center")
    await store.close()
    logger.info("Indexing Control Center shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Indexing Control Center",
    description="Indexing test runs, unlock & index and indexing ops",
    version=__version__,
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routes
app.include_router(api_router)
register_exception_handlers(app)


# Health check endpoint
@app.get("/healthz")
async def health_check():
    """Health check endpoint."""
    settings = get_settings()
    return {
        "status": "healthy" if settings.supabase_configured else "degraded",
        "service": settings.service_name,
        "store": "supabase" if isinstance(store, SupabaseStore) else "memory",
        "indexer_configured": settings.indexer_configured,
    }


# Prometheus metrics endpoint
@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    endpoint = get_metrics_endpoint()
    return await endpoint()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "indexing_control.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
