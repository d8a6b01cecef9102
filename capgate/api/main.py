"""
FastAPI Gateway

HTTP surface for capgate: grants, gateway operations and deployments.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from capgate import __version__
from capgate.api.routes.v1_core import router as v1_router
from capgate.config import config
from capgate.wiring import Runtime, build_runtime

logger = logging.getLogger(__name__)


# ============================================
# App Setup
# ============================================

def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the app around a Runtime (a default one from config if omitted)."""
    runtime = runtime or build_runtime()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        runtime.issuer.start_sweeper()
        logger.info("capgate API started")
        yield
        await runtime.shutdown()
        logger.info("capgate API stopped")

    app = FastAPI(
        title="capgate API",
        description="Capability-scoped authorization gateway and deployment orchestrator",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(v1_router, prefix="/v1")

    @app.get("/health")
    async def health():
        """Health check with grant and workflow counts."""
        stats = runtime.issuer.get_stats()
        return {
            "status": "healthy",
            "version": __version__,
            "timestamp": datetime.now().isoformat(),
            "active_grants": stats["active_grants"],
            "workflows": len(runtime.orchestrator.list_workflows()),
        }

    return app


app = create_app()


# ============================================
# Run Server
# ============================================

if __name__ == "__main__":
    from capgate.utils.logging_setup import setup_logging
    setup_logging()
    import uvicorn
    uvicorn.run(
        "capgate.api.main:app",
        host=config.api.host,
        port=config.api.port,
        reload=config.api.debug,
    )
