import logging
import os
import time
from datetime import datetime, timezone
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from matchflow.api import router as api_router
from matchflow.core.env import load_env

load_env()

APP_ENV = os.getenv("APP_ENV", "development").lower()
DOCS_ENABLED = APP_ENV != "production"
logger = logging.getLogger(__name__)


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        started = time.monotonic()
        response = await call_next(request)
        response.headers["X-Request-Id"] = request_id
        logger.info(
            "API_REQUEST method=%s path=%s status=%s duration_ms=%.2f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            (time.monotonic() - started) * 1000,
            request_id,
        )
        return response


app = FastAPI(
    title="Matchflow Processing API",
    docs_url="/docs" if DOCS_ENABLED else None,
    redoc_url="/redoc" if DOCS_ENABLED else None,
    openapi_url="/openapi.json" if DOCS_ENABLED else None,
)
app.add_middleware(RequestContextMiddleware)


def envelope_error(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    details: dict | None = None,
) -> JSONResponse:
    error = {"code": code, "message": message}
    if details:
        error["details"] = details
    return JSONResponse(
        status_code=status_code,
        content={
            "ok": False,
            "error": error,
            "meta": {
                "request_id": getattr(request.state, "request_id", None),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        },
    )


def jsonable_errors(exc: RequestValidationError) -> list:
    # pydantic puts the raised ValueError into ctx, which is not JSON
    errors = []
    for error in exc.errors():
        error = dict(error)
        if "ctx" in error:
            error["ctx"] = {key: str(value) for key, value in error["ctx"].items()}
        errors.append(error)
    return errors


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return envelope_error(
        request,
        422,
        "VALIDATION_ERROR",
        "Request validation failed",
        {"errors": jsonable_errors(exc)},
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    detail = exc.detail
    if not isinstance(detail, dict):
        return envelope_error(request, exc.status_code, "HTTP_ERROR", str(detail))
    return envelope_error(
        request,
        exc.status_code,
        detail.get("code") or "HTTP_ERROR",
        detail.get("message") or "Request failed",
        detail.get("details"),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception during request.")
    return envelope_error(request, 500, "INTERNAL_ERROR", "Unexpected server error")


@app.get("/health", include_in_schema=False)
def health():
    return {
        "ok": True,
        "service": "matchflow-api",
        "ts": datetime.now(timezone.utc).isoformat(),
    }


app.include_router(api_router)
