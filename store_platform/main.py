"""
Store Provisioning Platform — API

Main entrypoint. Sets up FastAPI with:
  - CORS for dashboard access
  - Rate limiting (slowapi)
  - Audit log of every mutating request
  - Prometheus metrics (/metrics)
  - Store routes and platform endpoints (/api/...)
  - Reconciliation loop and workflow drain tied to the app lifespan
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from store_platform.config import Settings, settings as default_settings
from store_platform.exceptions import StorePlatformError
from store_platform.routers.stores import limiter, router as stores_router
from store_platform.services import metrics as prom
from store_platform.services.events import EventPublisher
from store_platform.services.helm_service import PackageDeployer
from store_platform.services.kubernetes_service import ClusterClient
from store_platform.services.reconciler import Reconciler
from store_platform.services.repository import StoreRepository
from store_platform.services.store_manager import StoreManager

logger = logging.getLogger("store-platform")
audit_logger = logging.getLogger("audit")

MUTATING_METHODS = {"POST", "PUT", "PATCH", "DELETE"}


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def build_manager(settings: Settings) -> StoreManager:
    """Wire the production collaborators together."""
    return StoreManager(
        settings,
        repository=StoreRepository.from_url(settings.DATABASE_URL),
        cluster=ClusterClient(settings),
        deployer=PackageDeployer(settings),
        publisher=EventPublisher(settings.REDIS_URL),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Store Platform API starting...")
    manager: StoreManager = app.state.manager
    manager.repository.init_schema()
    app.state.reconciler.start()
    yield
    logger.info("Store Platform API shutting down...")
    await app.state.reconciler.stop()
    await manager.shutdown()


def create_app(
    settings: Optional[Settings] = None,
    manager: Optional[StoreManager] = None,
) -> FastAPI:
    settings = settings or default_settings
    manager = manager or build_manager(settings)

    app = FastAPI(
        title="Store Provisioning Platform API",
        description="Provisioning and teardown of multi-tenant stores on Kubernetes",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.manager = manager
    app.state.reconciler = Reconciler(manager)

    # --- CORS ---
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
        allow_credentials=True,
    )

    # --- Rate Limiting ---
    limiter.enabled = settings.RATE_LIMIT_ENABLED
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # --- Audit log of mutating requests ---
    @app.middleware("http")
    async def audit_requests(request: Request, call_next):
        response = await call_next(request)
        if request.method in MUTATING_METHODS:
            try:
                manager.repository.append_audit(
                    f"{request.method} {request.url.path}",
                    {
                        "method": request.method,
                        "path": request.url.path,
                        "statusCode": response.status_code,
                    },
                    ip_address=request.client.host if request.client else None,
                )
            except Exception as e:
                audit_logger.error(f"Audit log error: {e}")
        return response

    # --- Routes ---
    app.include_router(stores_router, prefix="/api")

    @app.get("/metrics")
    async def prometheus_metrics():
        """Expose Prometheus metrics."""
        prom.update_gauges(manager.metrics())
        content, media_type = prom.exposition()
        return Response(content=content, media_type=media_type)

    # --- Error handling ---
    @app.exception_handler(StorePlatformError)
    async def platform_exception_handler(request: Request, exc: StorePlatformError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} — {exc.message}")
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    return app


configure_logging(default_settings.LOG_LEVEL)
app = create_app()


# --- Entry point ---
if __name__ == "__main__":
    uvicorn.run(
        "store_platform.main:app",
        host=default_settings.API_HOST,
        port=default_settings.API_PORT,
        log_level="info",
        reload=False,
    )
