"""
Evidence Custody Offline Sync - Main Application
"""
import logging
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from contextlib import asynccontextmanager
from sqlalchemy import text

from .api import drafts, sync
from .core.config import settings
from .core.database import engine
from .core.correlation import CorrelationIdMiddleware
from .core.deps import get_asset_cache
from .core.errors import AssetUnavailableError, OfflineQueueError, problem_response
from .core.logging_config import setup_logging
from .db.models import Base
from .services.asset_cache import AssetRequest, OfflineAssetCache, asset_cache
from .services.connectivity import connectivity_watcher, probe_connectivity
from .services.offline_queue import offline_queue
from .services.status_monitor import status_monitor

# Setup logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

# Initialize Sentry if configured
if settings.SENTRY_DSN:
    try:
        import sentry_sdk
        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            environment=settings.SENTRY_ENVIRONMENT,
            traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        )
        logger.info("Sentry monitoring initialized", extra={"correlation_id": "startup"})
    except ImportError:
        logger.warning("Sentry SDK not installed, monitoring disabled", extra={"correlation_id": "startup"})


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup/shutdown"""
    logger.info("=" * 80, extra={"correlation_id": "startup"})
    logger.info("Evidence custody offline sync starting...", extra={"correlation_id": "startup"})
    logger.info(f"Environment: {settings.ENVIRONMENT}", extra={"correlation_id": "startup"})
    logger.info(f"Offline store: {settings.OFFLINE_DATABASE_URL}", extra={"correlation_id": "startup"})
    logger.info(f"Remote platform: {settings.REMOTE_API_URL}", extra={"correlation_id": "startup"})
    logger.info(f"Asset cache: {settings.ASSET_CACHE_NAME}", extra={"correlation_id": "startup"})
    logger.info("=" * 80, extra={"correlation_id": "startup"})

    Base.metadata.create_all(bind=engine)

    # Application shell: pre-cache, then drop stale cache versions
    try:
        await asset_cache.install()
    except AssetUnavailableError as e:
        logger.warning(f"Shell pre-cache skipped: {e}", extra={"correlation_id": "startup"})
    asset_cache.activate()

    online = await probe_connectivity()
    connectivity_watcher.start_in_background(initially_online=online)
    status_monitor.start()

    yield

    await status_monitor.stop()
    await connectivity_watcher.stop()
    logger.info("Evidence custody offline sync shutting down...", extra={"correlation_id": "shutdown"})


app = FastAPI(
    title=settings.API_TITLE,
    description=settings.API_DESCRIPTION,
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs" if settings.ENABLE_DOCS else None,
    redoc_url=None,
)

app.add_middleware(CorrelationIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Correlation-Id"],
)

# Include routers
app.include_router(
    sync.router,
    prefix=f"/api/{settings.API_VERSION}/sync",
    tags=["Sync"],
)

app.include_router(
    drafts.router,
    prefix=f"/api/{settings.API_VERSION}/drafts",
    tags=["Drafts"],
)


@app.get("/app/{path:path}", tags=["Assets"])
async def serve_shell_asset(
    path: str,
    request: Request,
    cache: OfflineAssetCache = Depends(get_asset_cache),
):
    """
    Application shell through the offline asset cache

    The request class comes from the browser's Sec-Fetch-Mode and
    Sec-Fetch-Dest headers.
    """
    url = "/" + path
    if request.url.query:
        url += "?" + request.url.query

    asset_request = AssetRequest(
        url=url,
        mode=request.headers.get("sec-fetch-mode", "no-cors"),
        destination=request.headers.get("sec-fetch-dest", ""),
    )
    try:
        asset = await cache.handle(asset_request)
    except AssetUnavailableError as e:
        return problem_response(
            request=request,
            status=503,
            code="ASSET_UNAVAILABLE",
            title="Asset Unavailable Offline",
            detail=str(e),
        )

    headers = {k: v for k, v in asset.headers.items() if k.lower() not in ("content-length", "content-encoding")}
    headers["X-Asset-Source"] = asset.source
    return Response(content=asset.body, status_code=asset.status_code, headers=headers)


@app.get("/health", tags=["System"])
async def health_check():
    """
    Health check with offline store verification

    Returns 200 if healthy, 503 if the offline store is unreachable
    """
    health = {
        "status": "healthy",
        "environment": settings.ENVIRONMENT,
        "version": "0.1.0",
        "database": "unknown",
        "online": connectivity_watcher.is_online,
        "pending_count": None,
    }

    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        health["database"] = "connected"
    except Exception as e:
        health["database"] = f"disconnected: {str(e)}"
        health["status"] = "unhealthy"
        logger.error(f"Health check: database unhealthy: {e}", extra={"correlation_id": "health"})

    if health["status"] == "healthy":
        try:
            health["pending_count"] = (await offline_queue.get_status()).pending_count
        except OfflineQueueError as e:
            health["status"] = "degraded"
            logger.error(f"Health check: offline queue error: {e}", extra={"correlation_id": "health"})

    status_code = 200 if health["status"] != "unhealthy" else 503
    return JSONResponse(content=health, status_code=status_code)


@app.get("/", tags=["System"])
async def root():
    """Root endpoint"""
    return {
        "service": settings.API_TITLE,
        "version": "0.1.0",
        "environment": settings.ENVIRONMENT,
        "docs": "/docs" if settings.ENABLE_DOCS else None,
        "health": "/health",
    }
