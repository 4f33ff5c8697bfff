"""
FastAPI application entry point.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from qbank_scoring.api.admin import router as admin_router
from qbank_scoring.api.analytics import router as analytics_router
from qbank_scoring.api.attempts import router as attempts_router
from qbank_scoring.core.config import settings
from qbank_scoring.core.database import init_db
from qbank_scoring.core.errors import ScoringError

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {settings.APP_NAME} ({settings.ENVIRONMENT})")
    if settings.AUTO_CREATE_TABLES:
        init_db()
    yield
    logger.info("Shutdown complete")


app = FastAPI(title=settings.APP_NAME, version=settings.APP_VERSION, lifespan=lifespan)
app.add_middleware(
    CORSMiddleware, allow_origins=settings.cors_origins(), allow_credentials=True, allow_methods=["*"], allow_headers=["*"]
)
app.include_router(attempts_router, prefix="/v1/qbanks", tags=["tests"])
app.include_router(analytics_router, prefix="/v1/qbanks", tags=["analytics"])
app.include_router(admin_router, prefix="/v1/admin", tags=["admin"])


@app.exception_handler(ScoringError)
async def scoring_exception_handler(request: Request, exc: ScoringError):
    """Handle domain errors raised by the services."""
    if exc.status_code >= 500:
        logger.warning(f"{exc.error_type} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handle HTTP exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {"message": exc.detail, "type": "http_error", "status_code": exc.status_code}},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle request validation errors."""
    return JSONResponse(
        status_code=422,
        content={"error": {"message": "Validation error", "type": "validation_error", "status_code": 422,
                           "details": jsonable_errors(exc)}},
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle general exceptions."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    message = "An internal error occurred" if settings.is_production() else str(exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": {"message": message, "type": "internal_error", "status_code": 500}},
    )


def jsonable_errors(exc: RequestValidationError):
    return [{"loc": list(e.get("loc", [])), "msg": e.get("msg"), "type": e.get("type")} for e in exc.errors()]


@app.get("/health")
def health():
    return {"status": "ok", "version": settings.APP_VERSION}
