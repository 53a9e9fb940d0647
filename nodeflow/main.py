"""
nodeflow - FastAPI Application Entry Point.

Exposes the workflow execution core over HTTP and WebSocket.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging

from nodeflow.config import settings
from nodeflow.api.routes import flow, handlers, websocket
from nodeflow.engine.redaction import redact_secrets
from nodeflow.nodes.registry import handler_registry
from nodeflow.storage.memory import run_storage

# Import the built-in handler to register it
import nodeflow.nodes.builtin  # noqa: F401


# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Log the scheduler setup on boot and stop in-flight runs on exit."""
    logger.info(
        f"{settings.APP_NAME} v{settings.APP_VERSION} up: "
        f"concurrency={settings.CONCURRENCY}, "
        f"downstream_policy={settings.DOWNSTREAM_POLICY}, "
        f"{len(handler_registry)} handler(s)"
    )

    yield

    stopped = await flow.stop_active_runs()
    logger.info(f"{settings.APP_NAME} down, cancelled {stopped} in-flight run(s)")


app = FastAPI(
    title=settings.APP_NAME,
    description="""
Execution core for visual workflow graphs.

Submit a DAG of typed nodes with `POST /flow/run`. Nodes whose dependencies
have finished run together in waves of at most `CONCURRENCY`, each under its
own `timeout` (ms) and `retries`. Every node and workflow status change is
checked against a state machine and recorded in a snapshot.

- `POST /flow/validate` reports cycles, dangling edges and limits without running
- `GET /flow/runs/{run_id}` returns the latest snapshot of a background run
- `WS /ws/run` streams each snapshot as it changes
- `GET /handlers` lists the node types with a registered handler
    """,
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)


# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Include routers
app.include_router(flow.router)
app.include_router(handlers.router)
app.include_router(websocket.router)


# ============================================================
# Root Endpoints
# ============================================================

@app.get("/", tags=["Root"])
async def root():
    """API root - returns basic info and links."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "description": "Async execution core for workflow graphs",
        "docs": "/docs",
        "redoc": "/redoc",
        "endpoints": {
            "flow": "/flow",
            "handlers": "/handlers",
            "websocket_run": "/ws/run",
        },
    }


@app.get("/health", tags=["Root"])
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": settings.APP_VERSION,
        "runs_count": len(run_storage),
        "handlers_count": len(handler_registry),
    }


# ============================================================
# Error Handlers
# ============================================================

@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Global exception handler for unhandled errors."""
    message = redact_secrets(str(exc))
    logger.exception(f"Unhandled error: {message}")
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal Server Error",
            "detail": message if settings.DEBUG else "An unexpected error occurred",
        },
    )
