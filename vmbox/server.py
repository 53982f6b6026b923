import uvicorn
import logging
from typing import Optional
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from vmbox.config import settings
from vmbox.api.routes import router, ws_router
from vmbox.core.services import VMServices, build_services

logger = logging.getLogger(__name__)

def create_app(services: Optional[VMServices] = None) -> FastAPI:
    """Build the application; services are created from settings unless given"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events"""
        if getattr(app.state, "services", None) is None:
            app.state.services = build_services()
        services = app.state.services

        try:
            await services.start()
            logger.info("Server initialized successfully")
        except Exception as e:
            logger.error(f"Server initialization failed: {str(e)}")
            await services.stop()
            raise

        try:
            yield
        finally:
            await services.stop()
            logger.info("Server shutdown complete")

    app = FastAPI(
        title="VMBox API",
        description="Docker-backed VM management API",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json"
    )
    app.state.services = services

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router, prefix="/api/v1")
    app.include_router(ws_router)

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        services = app.state.services
        return {
            "status": "healthy",
            "version": "1.0.0",
            "database": await services.db.check_connection(),
            "docker": await services.runtime.ping(),
            "terminal_sessions": services.terminals.active_count(),
            "metrics_enabled": services.settings.METRICS_ENABLED,
            "reconcile_enabled": services.settings.RECONCILE_ENABLED,
        }

    return app

app = create_app()

def start():
    """Start the server"""
    uvicorn.run(
        "vmbox.server:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.RELOAD,
        workers=settings.WORKERS,
        log_level=settings.LOG_LEVEL.lower(),
        proxy_headers=True,
        forwarded_allow_ips="*"
    )

if __name__ == "__main__":
    start()
