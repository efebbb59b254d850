from contextlib import asynccontextmanager

from fastapi import FastAPI, Depends, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import HTTPException, RequestValidationError
from fastapi.responses import JSONResponse
import structlog

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from allocator.config import settings
from allocator.database import init_db, close_db, get_db
from allocator.errors import AllocationError
from allocator.logging_config import setup_logging
from allocator.middleware.correlation import CorrelationIdMiddleware

# Import models so they are registered with Base.metadata
import allocator.models  # noqa: F401

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    logger.info("starting_allocator", env=settings.ENVIRONMENT)
    await init_db()
    yield
    await close_db()


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Exception handlers: every error leaves as
# {"error": {"code": "...", "message": "...", "details": ...}}
# ---------------------------------------------------------------------------

@app.exception_handler(AllocationError)
async def allocation_error_handler(request: Request, exc: AllocationError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.error("allocation_request_failed", code=exc.code.value, message=exc.message)
    else:
        logger.info("allocation_request_rejected", code=exc.code.value, message=exc.message)
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, str):
        detail = {"error": {"code": "HTTP_ERROR", "message": detail}}
    elif isinstance(detail, dict) and "error" not in detail:
        detail = {"error": detail}
    return JSONResponse(status_code=exc.status_code, content=detail, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={
            "error": {
                "code": "INVALID_INPUT",
                "message": "Request validation failed",
                "details": exc.errors(),
            }
        },
    )


app.add_middleware(CorrelationIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_origin_regex=settings.CORS_ORIGIN_REGEX,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Requested-With", "X-Request-ID"],
)


@app.get("/health", tags=["System"])
async def health(response: Response, db: AsyncSession = Depends(get_db)):
    health_status = {"status": "healthy", "version": settings.APP_VERSION, "checks": {}}
    try:
        await db.execute(text("SELECT 1"))
        health_status["checks"]["db"] = "ok"
    except SQLAlchemyError as e:
        logger.error("health_check_db_failed", error=str(e))
        health_status["checks"]["db"] = "error"
        health_status["status"] = "unhealthy"
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return health_status


# --- Routers ---
from allocator.routes.allocations import router as allocations_router  # noqa: E402
from allocator.routes.allocation_templates import router as templates_router  # noqa: E402
from allocator.routes.allocation_audit import router as audit_router  # noqa: E402
from allocator.routes.allocation_transfers import router as transfers_router  # noqa: E402

app.include_router(allocations_router, prefix="/api/v1/allocations", tags=["Allocations"])
app.include_router(templates_router, prefix="/api/v1/allocation-templates", tags=["Allocation Templates"])
app.include_router(audit_router, prefix="/api/v1/allocation-audit", tags=["Allocation Audit"])
app.include_router(transfers_router, prefix="/api/v1/allocation-transfers", tags=["Allocation Transfers"])
