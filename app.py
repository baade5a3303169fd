# app.py
import os
import logging
import time

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from utils.json_logging import configure_json_logging
from utils.metrics import incr, observe_ms

# config.py and the feature flags read the environment at import time.
load_dotenv(os.path.join(os.path.dirname(__file__), ".env"))

configure_json_logging(
    service="yorutsuke-batch-api",
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
)
logger = logging.getLogger("api.error")

from startup_env import validate_startup_env
from services.errors import BatchPipelineError
from utils.request_id import REQUEST_ID_HEADER, get_request_id, request_id_from_headers, set_request_id

validate_startup_env()

from routes.batch import router as batch_router
from routes.contract import router as contract_router
from routes.health import router as health_router

app = FastAPI(title="Yorutsuke Batch OCR API")

_DEFAULT_ERROR_CODES = {
    400: "INVALID_REQUEST",
    404: "RESOURCE_NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "STATE_CONFLICT",
    422: "VALIDATION_ERROR",
}


def _csv_env(name: str) -> list[str]:
    ordered = []
    for item in os.getenv(name, "").split(","):
        item = item.strip()
        if item and item not in ordered:
            ordered.append(item)
    return ordered


def _route_template(request: Request) -> str:
    # /batch/jobs/{job_id} rather than one metrics series per job.
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = request_id_from_headers(request.headers)
    set_request_id(request_id)
    started = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = int(getattr(response, "status_code", 500))
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
    finally:
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        labels = {
            "method": request.method.upper(),
            "path": _route_template(request),
            "status_class": f"{status_code // 100}xx",
        }
        incr("api_http_requests_total", status_code=status_code, **labels)
        observe_ms("api_http_request_latency_ms", elapsed_ms, **labels)
        set_request_id(None)


def _message_of(detail) -> str:
    if isinstance(detail, dict):
        return str(detail.get("error_message") or detail.get("message") or detail.get("detail") or detail)
    if isinstance(detail, list):
        return "; ".join(str(x) for x in detail)
    return str(detail)


def _json_error(
    request: Request,
    *,
    status_code: int,
    detail,
    error_code: str | None = None,
    error_message: str | None = None,
    retryable: bool | None = None,
) -> JSONResponse:
    """Every error leaves the API in this one shape, whatever raised it."""
    if not error_code and isinstance(detail, dict) and detail.get("error_code"):
        error_code = str(detail["error_code"]).strip().upper()
    body = {
        "error_code": error_code or _DEFAULT_ERROR_CODES.get(status_code, f"HTTP_{status_code}"),
        "error_message": error_message or _message_of(detail),
        "detail": detail,
        "path": request.url.path,
        "request_id": get_request_id() or request_id_from_headers(request.headers),
    }
    if retryable is not None:
        body["retryable"] = retryable

    log = logger.error if status_code >= 500 else logger.warning
    log(
        "request_failed status=%s path=%s request_id=%s error_code=%s retryable=%s error_message=%s",
        status_code,
        body["path"],
        body["request_id"],
        body["error_code"],
        body.get("retryable", ""),
        body["error_message"],
    )
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return _json_error(
        request,
        status_code=422,
        detail=exc.errors(),
        error_code="VALIDATION_ERROR",
        error_message="Request validation failed",
    )


@app.exception_handler(BatchPipelineError)
async def batch_pipeline_exception_handler(request: Request, exc: BatchPipelineError):
    return _json_error(
        request,
        status_code=exc.status_code,
        detail=exc.to_detail(),
        retryable=exc.retryable,
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return _json_error(request, status_code=exc.status_code, detail=exc.detail)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(
        "request_failed_unhandled path=%s error=%s: %s",
        request.url.path,
        exc.__class__.__name__,
        exc,
    )
    return _json_error(
        request,
        status_code=500,
        detail="Unhandled server exception",
        error_code="INTERNAL_SERVER_ERROR",
        error_message="Internal server error",
    )


CORS_ALLOW_ORIGINS = _csv_env("CORS_ALLOW_ORIGINS")
logger.info("cors_configured allow_origins=%s", CORS_ALLOW_ORIGINS)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=[REQUEST_ID_HEADER],
)

app.include_router(health_router)
app.include_router(contract_router)
app.include_router(batch_router)
