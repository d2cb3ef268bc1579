from fastapi import FastAPI, APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
import logging
import time
import traceback
from pathlib import Path
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from sqlalchemy import text

# Load environment variables first
ROOT_DIR = Path(__file__).parent.parent
load_dotenv(ROOT_DIR / '.env')

from soa_recon.config import get_settings, get_cors_config
from soa_recon.logging_config import setup_logging, set_request_context, clear_request_context
from soa_recon.sentry_integration import init_sentry, capture_exception
from soa_recon.database.connection import init_db, dispose_engine, get_engine
from soa_recon.reconciliation.endpoints.reconciliation_api import router as soa_router
from soa_recon.reconciliation.services.collaborators import drain_notifications

settings = get_settings()

# JSON logs when asked for or in production, plain text otherwise
setup_logging(
    level=settings.LOG_LEVEL,
    json_format=settings.LOG_JSON or settings.is_production,
    service_name="soa-recon"
)
logger = logging.getLogger(__name__)

if settings.SENTRY_DSN:
    init_sentry(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        release=settings.API_VERSION,
        traces_sample_rate=0.1 if settings.is_production else 0.0,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler"""
    logger.info("=" * 60)
    logger.info("Starting SOA Reconciliation API...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Debug Mode: {settings.debug_enabled}")
    logger.info("=" * 60)

    for error in settings.validate_production_config():
        logger.warning(f"Configuration Warning: {error}")

    try:
        await init_db()
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise

    logger.info("SOA Reconciliation API started successfully")

    yield

    logger.info("Shutting down SOA Reconciliation API...")
    await drain_notifications()
    await dispose_engine()


app = FastAPI(
    title=settings.API_TITLE,
    description="""
    Statement-of-account reconciliation for vendor statements.

    ### SOA Reconciliation (/api/soa)
    - Batch matching of statement lines against the vendor ledger
    - Deterministic and fuzzy match proposals
    - Match confirmation and rejection
    - Discrepancy detection and resolution
    - Case summaries and sign-off
    """,
    version=settings.API_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs" if settings.debug_enabled else None,
    redoc_url="/api/redoc" if settings.debug_enabled else None,
)

api_router = APIRouter(prefix="/api")


# ==================== HEALTH CHECK ENDPOINTS ====================

@api_router.get("/", tags=["Health"])
async def root():
    """Basic health check - returns 200 if service is running"""
    return {
        "message": settings.API_TITLE,
        "status": "healthy",
        "version": settings.API_VERSION,
        "environment": settings.ENVIRONMENT,
    }


@api_router.get("/health", tags=["Health"])
async def health_check():
    """
    Detailed health check for load balancers and uptime monitors.

    Returns:
    - 200: All systems operational
    - 503: Database unavailable
    """
    health_status = {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": settings.API_VERSION,
        "environment": settings.ENVIRONMENT,
        "checks": {}
    }

    try:
        async with get_engine().begin() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["checks"]["database"] = {"status": "connected"}
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        health_status["status"] = "unhealthy"
        health_status["checks"]["database"] = {"status": "disconnected", "error": str(e)}

    config_errors = settings.validate_production_config()
    health_status["checks"]["configuration"] = {
        "status": "valid" if not config_errors else "invalid",
        "errors": len(config_errors)
    }

    if health_status["status"] == "unhealthy":
        raise HTTPException(status_code=503, detail=health_status)

    return health_status


@api_router.get("/health/live", tags=["Health"])
async def liveness_check():
    """Liveness probe. Does not check dependencies."""
    return {"status": "alive", "timestamp": datetime.now(timezone.utc).isoformat()}


api_router.include_router(soa_router)

app.include_router(api_router)

# ==================== MIDDLEWARE ====================

app.add_middleware(
    CORSMiddleware,
    **get_cors_config()
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log requests with timing information and bind the request context"""
    start_time = time.time()
    request_id = request.headers.get("X-Request-ID", f"req-{int(start_time * 1000)}")
    set_request_context(request_id=request_id, user_id=request.headers.get("X-User-Id"))

    if settings.debug_enabled:
        logger.debug(f"[{request_id}] {request.method} {request.url.path}")

    try:
        response = await call_next(request)

        process_time = time.time() - start_time
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = str(round(process_time * 1000, 2))

        if settings.debug_enabled or response.status_code >= 400:
            logger.info(f"[{request_id}] {request.method} {request.url.path} -> {response.status_code} ({process_time:.3f}s)")

        return response
    except Exception as e:
        logger.error(f"[{request_id}] Request failed: {str(e)}")
        raise
    finally:
        clear_request_context()


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle uncaught exceptions"""
    logger.error(f"Unhandled exception: {exc}")
    if settings.debug_enabled:
        logger.error(traceback.format_exc())
    capture_exception(exc, path=request.url.path)

    if settings.is_production:
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"}
        )
    return JSONResponse(
        status_code=500,
        content={
            "detail": str(exc),
            "type": type(exc).__name__,
        }
    )


def main():
    import uvicorn
    uvicorn.run("soa_recon.server:app", host="0.0.0.0", port=8001, log_level=settings.LOG_LEVEL.lower())


if __name__ == "__main__":
    main()
