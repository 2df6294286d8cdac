""" main.py: FastAPI application entry point and runtime configuration.

This module builds the ASGI app, mounts the session API router, configures CORS (Cross-Origin Resource
Sharing), and exposes a Prometheus metrics endpoint. The conversation store and the query orchestrator are
created once per app and placed on `app.state`; `create_app` accepts prebuilt instances so tests can run the
HTTP layer against fakes without touching the network. When executed directly, it starts a Uvicorn server
using host/port values from configuration.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import make_asgi_app

from config import CONFIG
from core.orchestrator import QueryOrchestrator
from services.conversation_store import ConversationStore
from services.session_scheduler import shutdown_session_sweeper, start_session_sweeper
from version import __version__

# --- Router Imports ---
from api import session as session_router

# Get a logger instance for this module
logger = logging.getLogger(__name__)


def create_app(orchestrator: QueryOrchestrator = None, store: ConversationStore = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        orchestrator (QueryOrchestrator, optional): Prebuilt orchestrator; wired from CONFIG when omitted.
        store (ConversationStore, optional): Conversation memory shared with the orchestrator.

    Returns:
        FastAPI: The configured application.
    """
    if store is None:
        store = orchestrator.store if orchestrator is not None else ConversationStore.from_config(CONFIG)
    if orchestrator is None:
        orchestrator = QueryOrchestrator.from_config(CONFIG, store)

    sweep_interval = float(CONFIG.get('conversation', {}).get('sweep_interval_s', 300))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        start_session_sweeper(app, store, interval_s=sweep_interval)
        logger.info(f"[lifespan] Session sweeper started (every {sweep_interval:.0f}s)")
        yield
        shutdown_session_sweeper(app)
        logger.info("[lifespan] Session sweeper stopped")

    app = FastAPI(title="Crypto Assistant", version=__version__, lifespan=lifespan)
    app.state.store = store
    app.state.orchestrator = orchestrator

    # Include routers
    app.include_router(session_router.router, prefix="/api", tags=["Session"])

    @app.get("/health")
    def health():
        return {
            "status": "ok",
            "version": __version__,
            "activeSessions": len(store),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    # Add Prometheus metrics endpoint
    app.mount("/metrics", make_asgi_app())

    # Configure CORS
    allow_origins = CONFIG.get('cors', {}).get('allow_origins', ["*"])
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    return app


app = create_app()


# The uvicorn server is used to run the FastAPI application.
if __name__ == '__main__':
    import uvicorn
    logger.info("[__main__] Starting Uvicorn server for main.py\n")
    uvicorn.run(
        app,
        host=CONFIG.get('server', {}).get('host', '0.0.0.0'),
        port=CONFIG.get('server', {}).get('port', 8080)
    )
