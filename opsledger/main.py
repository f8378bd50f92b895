from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from starlette.exceptions import HTTPException as StarletteHTTPException

from opsledger.config import settings
from opsledger.api.v1.router import api_router
from opsledger.core.exceptions import AppError
from opsledger.database import init_db, async_session_factory
from opsledger.jobs.scheduler import start_scheduler, shutdown_scheduler


logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup:
    - Create tables for local SQLite runs (PostgreSQL is migrated by Alembic)
    - Start the background scheduler when a job is enabled
    """
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

    if settings.DATABASE_URL.startswith("sqlite"):
        await init_db()

    start_scheduler()

    yield

    shutdown_scheduler()
    logger.info("Shutting down...")


OPENAPI_TAGS = [
    {"name": "Inventory", "description": "Stock ledger, adjustments, reconciliation and valuation"},
    {"name": "Purchases", "description": "Vendor purchase bills, stock intake and vendor payments"},
    {"name": "Packing", "description": "Pack orders and deduct stock"},
    {"name": "Manifests", "description": "Rider runs, delivery outcomes and run settlement"},
    {"name": "Returns", "description": "Return intake and damaged goods logging"},
    {"name": "Settlements", "description": "Rider COD cash balances and deposits"},
]

API_DESCRIPTION = """
## OpsLedger API

Stock ledger and rider dispatch settlement for a direct-to-consumer fulfillment operation.

Every stock change is a ledger movement; every rider cash change is a balance
log entry. Cached totals (`current_stock`, `current_cash_balance`) can always be
recomputed from those ledgers.

### Identity

Mutating endpoints require the acting user's id in the `X-User-Id` header.

### Errors

All errors share one envelope:

```json
{"success": false, "error": {"code": "INSUFFICIENT_STOCK", "message": "...", "timestamp": "..."}}
```
"""

# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description=API_DESCRIPTION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=OPENAPI_TAGS,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API router
app.include_router(api_router)


def _error_envelope(code: str, message: str, **extra) -> dict:
    error = {
        "code": code,
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    error.update(extra)
    return {"success": False, "error": error}


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = [
        {
            "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"),
            "message": err.get("msg", "Invalid value"),
        }
        for err in exc.errors()
    ]
    content = _error_envelope(
        "VALIDATION_ERROR",
        "Request validation failed",
        details=details,
        fields={d["field"]: d["message"] for d in details},
    )
    return JSONResponse(status_code=400, content=content)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    codes = {401: "UNAUTHORIZED", 403: "FORBIDDEN", 404: "NOT_FOUND", 405: "METHOD_NOT_ALLOWED"}
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_envelope(codes.get(exc.status_code, "HTTP_ERROR"), str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content=_error_envelope("INTERNAL_ERROR", "Internal server error", type=type(exc).__name__),
    )


# Health check endpoint
@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint with database validation."""
    health_status = {
        "status": "healthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": {
            "database": "unknown"
        }
    }

    # Check database connectivity
    try:
        async with async_session_factory() as session:
            result = await session.execute(text("SELECT 1"))
            result.scalar()
            health_status["checks"]["database"] = "connected"
    except Exception as e:
        health_status["status"] = "unhealthy"
        health_status["checks"]["database"] = f"error: {str(e)}"

    # Return 503 if unhealthy
    if health_status["status"] == "unhealthy":
        return JSONResponse(status_code=503, content=health_status)

    return health_status


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint."""
    return {
        "message": f"Welcome to {settings.APP_NAME}",
        "version": settings.APP_VERSION,
        "docs": "/docs",
    }
