from fastapi import FastAPI, HTTPException, Request, Depends
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from typing import List
import logging
import structlog
import time
from contextlib import asynccontextmanager

from config import Settings, get_settings
from exceptions import PointServiceError
from models import (
    ErrorResponse,
    HealthResponse,
    PointAmountRequest,
    TransactionRecord,
    UserBalance,
)
from repositories import get_point_history_repository, get_user_point_repository
from services import PointService, get_lock_registry, get_point_service


def configure_logging(settings: Settings) -> None:
    """Configure structlog on top of stdlib logging."""
    logging.basicConfig(format="%(message)s", level=settings.log_level.upper())

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.log_format == "json"
        else structlog.dev.ConsoleRenderer()
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
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


settings = get_settings()
configure_logging(settings)

logger = structlog.get_logger()

# Rate limiting
limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)


def _rate_limit() -> str:
    return f"{get_settings().rate_limit_per_minute}/minute"


# Application lifespan
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Point Ledger API", max_points=settings.max_points)
    yield
    # Shutdown
    logger.info("Shutting down Point Ledger API")

# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Per-user point ledger with serialized charge and use operations",
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# Add rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=settings.allowed_methods,
    allow_headers=settings.allowed_headers,
)

# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()

    logger.info(
        "Request started",
        method=request.method,
        url=str(request.url),
        client_ip=request.client.host if request.client else None
    )

    response = await call_next(request)

    process_time = time.time() - start_time
    logger.info(
        "Request completed",
        method=request.method,
        url=str(request.url),
        status_code=response.status_code,
        process_time=round(process_time, 4)
    )

    return response

# Dependency injection
def get_service(
    user_point_repo=Depends(get_user_point_repository),
    point_history_repo=Depends(get_point_history_repository),
    lock_registry=Depends(get_lock_registry)
) -> PointService:
    return get_point_service(user_point_repo, point_history_repo, lock_registry)

# Health check endpoint
@app.get(
    "/health",
    response_model=HealthResponse,
    summary="Health Check",
    description="Check API health and get ledger statistics"
)
def health_check(
    user_point_repo=Depends(get_user_point_repository),
    point_history_repo=Depends(get_point_history_repository),
    lock_registry=Depends(get_lock_registry)
):
    try:
        return HealthResponse(
            status="healthy",
            users_count=user_point_repo.get_users_count(),
            transactions_recorded=point_history_repo.get_transactions_count(),
            locks_registered=len(lock_registry)
        )
    except Exception as e:
        logger.error("Health check failed", error=str(e))
        raise HTTPException(
            status_code=500,
            detail="Health check failed"
        )

POINT_ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid user id or amount, balance cap exceeded, or insufficient points"},
    429: {"description": "Rate limit exceeded"},
    503: {"model": ErrorResponse, "description": "Timed out waiting for the user's lock"},
}


@app.get(
    "/point/{user_id}",
    response_model=UserBalance,
    summary="Get Balance",
    responses=POINT_ERROR_RESPONSES
)
@limiter.limit(_rate_limit)
def get_point(request: Request, user_id: int, service: PointService = Depends(get_service)):
    return service.get_balance(user_id)


@app.get(
    "/point/{user_id}/histories",
    response_model=List[TransactionRecord],
    summary="Get History",
    responses=POINT_ERROR_RESPONSES
)
@limiter.limit(_rate_limit)
def get_point_histories(request: Request, user_id: int, service: PointService = Depends(get_service)):
    return service.get_history(user_id)


@app.patch(
    "/point/{user_id}/charge",
    response_model=UserBalance,
    summary="Charge Points",
    responses=POINT_ERROR_RESPONSES
)
@limiter.limit(_rate_limit)
def charge_point(
    request: Request,
    user_id: int,
    body: PointAmountRequest,
    service: PointService = Depends(get_service)
):
    logger.info("Charge request received", user_id=user_id, amount=body.amount)
    return service.charge(user_id, body.amount)


@app.patch(
    "/point/{user_id}/use",
    response_model=UserBalance,
    summary="Use Points",
    responses=POINT_ERROR_RESPONSES
)
@limiter.limit(_rate_limit)
def use_point(
    request: Request,
    user_id: int,
    body: PointAmountRequest,
    service: PointService = Depends(get_service)
):
    logger.info("Use request received", user_id=user_id, amount=body.amount)
    return service.spend(user_id, body.amount)

# Global exception handlers
@app.exception_handler(PointServiceError)
async def point_error_handler(request: Request, exc: PointServiceError):
    logger.warning(
        "Point operation rejected",
        error_code=exc.code.value,
        detail=exc.detail,
        url=str(request.url),
        method=request.method
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            detail=exc.detail,
            error_code=exc.code.value
        ).model_dump(mode="json")
    )

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            detail=exc.detail,
            error_code=f"HTTP_{exc.status_code}"
        ).model_dump(mode="json")
    )

@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        error=str(exc),
        url=str(request.url),
        method=request.method,
        exc_info=True
    )

    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            detail="Internal server error",
            error_code="INTERNAL_ERROR"
        ).model_dump(mode="json")
    )

# Root endpoint
@app.get("/", include_in_schema=False)
async def root():
    return {"message": settings.app_name, "docs": "/docs"}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
