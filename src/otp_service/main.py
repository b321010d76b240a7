"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse

from otp_service.api.router import router as otp_router
from otp_service.config import settings
from otp_service.database.engine import init_db
from otp_service.errors import ValidationError
from otp_service.services.outcome import INTERNAL_ERROR_REASON

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle hook."""
    logger.info("Starting %s …", settings.app_name)
    await init_db()
    logger.info("Database initialised")
    yield
    logger.info("Shutting down %s …", settings.app_name)


app = FastAPI(
    title=settings.app_name,
    description="One-time passcode issuance and verification",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(otp_router)


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"reason": str(exc)})


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    fields = sorted(
        {
            error["loc"][1]
            for error in exc.errors()
            if len(error["loc"]) > 1 and isinstance(error["loc"][1], str)
        }
    )
    detail = ", ".join(fields) if fields else "body"
    return JSONResponse(status_code=400, content={"reason": f"Invalid {detail}."})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"reason": INTERNAL_ERROR_REASON})


@app.get("/", response_class=PlainTextResponse)
async def index() -> str:
    return "OTP service is running. Use POST to /otp/request or /otp/verify."


@app.get("/health")
async def health_check():
    """Simple liveness check."""
    return {"status": "healthy", "app": settings.app_name}
