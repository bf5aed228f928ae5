"""
Application entry point for the UpSkillPro admin control plane.

`create_app()` builds the FastAPI application; `run()` is the process
wrapper behind the `admin-plane` console script. Exit codes: 0 on clean
shutdown, 1 when the app cannot be built or the store cannot be reached,
2 when settings fail validation.
"""

import asyncio
import logging
import sys
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from admin_plane.core.config import Settings, get_settings
from admin_plane.core.errors import AdminError, ErrorKind
from admin_plane.core.logging import log_error, setup_logging
from admin_plane.routers import api_router
from admin_plane.services import Services
from admin_plane.services.background import metrics_sampler, realtime_supervisor


logger = logging.getLogger(__name__)

# pydantic error types -> validation rule names
VALIDATION_RULES = {
    "missing": "required",
    "string_too_short": "min_length",
    "string_too_long": "max_length",
    "too_short": "min_items",
    "too_long": "max_items",
    "enum": "enum",
    "literal_error": "enum",
    "greater_than_equal": "min",
    "less_than_equal": "max",
    "greater_than": "min",
    "less_than": "max",
    "value_error": "invalid",
    "datetime_from_date_parsing": "format",
    "datetime_parsing": "format",
    "int_parsing": "type",
    "json_invalid": "format",
}

HTTP_ERROR_CODES = {
    404: ErrorKind.NOT_FOUND.value,
    405: "METHOD_NOT_ALLOWED",
}


def _error_body(message: str, code: str, **extra: Any) -> Dict[str, Any]:
    body = {"success": False, "message": message, "error": code, "code": code}
    body.update({k: v for k, v in extra.items() if v is not None})
    return body


def _validation_field(loc) -> str:
    parts = [str(p) for p in loc if p not in ("body", "query", "path", "header")]
    return ".".join(parts) or "body"


def _route_template(request: Request) -> str:
    """
    Full route template for a matched request, e.g. /api/admin/users/{user_id}.

    Included routers may leave only the route's own relative template in the
    scope, so the leading segments are taken from the request path.
    """
    route = request.scope.get("route")
    template = getattr(route, "path_format", None) or getattr(route, "path", None)
    if template is None:
        return request.url.path
    own = [part for part in template.split("/") if part]
    segments = [part for part in request.url.path.split("/") if part]
    prefix = segments[:max(len(segments) - len(own), 0)]
    return "/" + "/".join(prefix + own)


def register_exception_handlers(app: FastAPI) -> None:
    """Translate every failure into the `{success: false, ...}` envelope."""

    @app.exception_handler(AdminError)
    async def admin_error_handler(request: Request, exc: AdminError) -> JSONResponse:
        headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.kind.value}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        first = errors[0] if errors else {"loc": (), "type": "invalid", "msg": "Invalid request"}
        field = _validation_field(first.get("loc", ()))
        rule = VALIDATION_RULES.get(first.get("type", ""), first.get("type", "invalid"))
        message = f"Invalid value for '{field}': {first.get('msg', 'invalid')}"
        return JSONResponse(
            status_code=400,
            content=_error_body(message, ErrorKind.VALIDATION.value, field=field, rule=rule),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        code = HTTP_ERROR_CODES.get(exc.status_code, f"HTTP_{exc.status_code}")
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(str(exc.detail), code),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        log_error(logger, exc, {"method": request.method, "path": request.url.path})
        return JSONResponse(
            status_code=500,
            content=_error_body("Internal server error", "INTERNAL_ERROR"),
        )


def register_middleware(app: FastAPI, settings: Settings, services: Services) -> None:
    """Per-request deadline and request metrics."""

    @app.middleware("http")
    async def deadline_middleware(request: Request, call_next):
        timeout = settings.REQUEST_TIMEOUT
        if request.url.path.endswith("/analytics/export"):
            timeout = settings.EXPORT_TIMEOUT
        request.state.deadline = time.monotonic() + timeout

        started = time.perf_counter()
        try:
            response = await asyncio.wait_for(call_next(request), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{request.method} {request.url.path} exceeded {timeout}s deadline")
            error = AdminError(ErrorKind.TIMEOUT)
            response = JSONResponse(status_code=error.status_code, content=error.to_dict())

        elapsed_ms = (time.perf_counter() - started) * 1000
        services.request_metrics.record(
            request.method, _route_template(request), response.status_code, elapsed_ms
        )
        response.headers["X-Process-Time"] = f"{elapsed_ms:.2f}"
        return response

    if settings.BACKEND_CORS_ORIGINS:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=[str(origin).rstrip("/") for origin in settings.BACKEND_CORS_ORIGINS],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Bind the realtime publisher to the running loop and start background loops.
    """
    services: Services = app.state.services
    settings = services.settings
    services.multiplexer.bind(asyncio.get_running_loop())
    if settings.CREATE_TABLE:
        await asyncio.to_thread(services.store.ensure_table)

    tasks = []
    if settings.ENABLE_BACKGROUND_TASKS:
        tasks = [
            asyncio.create_task(realtime_supervisor(services)),
            asyncio.create_task(metrics_sampler(services)),
        ]
    logger.info(f"{settings.PROJECT_NAME} ready")
    yield

    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    services.multiplexer.bind(None)
    logger.info(f"{settings.PROJECT_NAME} shutting down")


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Explicit settings (loaded from the environment when omitted)
        services: Prebuilt component graph (built from settings when omitted)
    """
    settings = settings or get_settings()
    services = services or Services(settings)

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        description=settings.DESCRIPTION,
        openapi_url=f"{settings.API_PREFIX}/openapi.json",
        docs_url=f"{settings.API_PREFIX}/docs",
        lifespan=lifespan,
    )
    app.state.services = services

    register_exception_handlers(app)
    register_middleware(app, settings, services)
    app.include_router(api_router, prefix=settings.API_PREFIX)

    @app.get("/health", tags=["health"])
    def liveness() -> Dict[str, Any]:
        """Process liveness; does not touch the store."""
        return {"status": "ok", "version": settings.VERSION}

    return app


def run() -> None:
    """Console entry point."""
    setup_logging()
    try:
        settings = get_settings()
    except ValidationError as exc:
        logger.error(f"Invalid configuration: {exc.error_count()} error(s)")
        for error in exc.errors():
            logger.error(f"  {'.'.join(str(p) for p in error['loc'])}: {error['msg']}")
        sys.exit(2)

    setup_logging(settings.LOG_LEVEL, settings.LOG_JSON)
    try:
        app = create_app(settings)
        store = app.state.services.store
        if settings.CREATE_TABLE:
            store.ensure_table()
        latency = store.ping()
        logger.info(f"Store {settings.TABLE_NAME} reachable ({latency} ms)")
    except Exception as e:
        logger.error(f"Error starting server: {e}")
        sys.exit(1)

    try:
        uvicorn.run(app, host=settings.HOST, port=settings.PORT, log_config=None)
    except KeyboardInterrupt:
        logger.info("Server stopped by user")
    sys.exit(0)


if __name__ == "__main__":
    run()
