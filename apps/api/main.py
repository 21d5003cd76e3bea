from fastapi import FastAPI, Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import time
import uuid
import logging

from packages.config import CORS_ORIGINS
from packages.error_reporting import init_error_reporting
from packages.logging_utils import setup_logging
from packages.request_context import request_id_var
from packages.metrics import inc, observe
from services.ingestion.errors import (
    ActiveSessionExists,
    InvalidRequest,
    InvalidSessionState,
    InvalidWindow,
    SessionLocked,
    SessionNotFound,
    SyncError,
)
from .routes import health as health_routes
from .routes import metrics as metrics_routes
from .routes import sync as sync_routes


setup_logging()
init_error_reporting("api", enable_fastapi=True)
logger = logging.getLogger("runsync.api")

app = FastAPI(title="Run Sync API")

SYNC_ERROR_STATUS = {
    SessionNotFound: 404,
    SessionLocked: 409,
    ActiveSessionExists: 409,
    InvalidSessionState: 409,
    InvalidWindow: 400,
    InvalidRequest: 400,
}


def format_error(code: str, message: str, request_id: str | None = None, details: dict | None = None):
    payload = {"error": {"code": code, "message": message, "request_id": request_id}}
    if details:
        payload["error"]["details"] = details
    return payload


app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_logging(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
    token = request_id_var.set(request_id)
    start = time.perf_counter()
    response = None
    try:
        response = await call_next(request)
        return response
    except Exception:
        duration_ms = (time.perf_counter() - start) * 1000
        logger.exception("request_error %s %s %.1fms", request.method, request.url.path, duration_ms)
        raise
    finally:
        duration_ms = (time.perf_counter() - start) * 1000
        status_code = getattr(response, "status_code", "ERR")
        route = request.scope.get("route")
        path = getattr(route, "path", request.url.path)
        inc("http_requests_total")
        inc(f"http_requests_total{{path=\"{path}\",status=\"{status_code}\"}}")
        observe(f"http_request_duration_seconds{{path=\"{path}\"}}", duration_ms / 1000.0)
        logger.info("%s %s -> %s %.1fms", request.method, request.url.path, status_code, duration_ms)
        request_id_var.reset(token)
        if response is not None:
            response.headers["x-request-id"] = request_id


# Consistent error model
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    req_id = request_id_var.get() or "-"
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    code = f"http_{exc.status_code}"
    details = exc.detail if isinstance(exc.detail, dict) else None
    return JSONResponse(status_code=exc.status_code, content=format_error(code, message, req_id, details))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    req_id = request_id_var.get() or "-"
    details = {"errors": [{"loc": list(err.get("loc", ())), "msg": err.get("msg")} for err in exc.errors()]}
    return JSONResponse(status_code=422, content=format_error("validation_error", "Invalid request", req_id, details))


@app.exception_handler(SyncError)
async def sync_exception_handler(request: Request, exc: SyncError):
    req_id = request_id_var.get() or "-"
    status_code = next(
        (code for cls, code in SYNC_ERROR_STATUS.items() if isinstance(exc, cls)),
        500,
    )
    details = {"session_id": exc.session_id} if isinstance(exc, ActiveSessionExists) and exc.session_id else None
    if status_code >= 500:
        logger.error("sync_error %s %s code=%s", request.method, request.url.path, exc.code)
    return JSONResponse(status_code=status_code, content=format_error(exc.code, exc.summary(), req_id, details))


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    req_id = request_id_var.get() or "-"
    logger.exception("unhandled_exception %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content=format_error("internal_error", "Internal server error", req_id))


# Public routes (unprefixed) + /api + /api/v1
for prefix in ("", "/api", "/api/v1"):
    app.include_router(health_routes.router, prefix=prefix)
    app.include_router(metrics_routes.router, prefix=prefix)
    app.include_router(sync_routes.router, prefix=prefix)
