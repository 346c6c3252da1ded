import logging
import time

from fastapi import FastAPI, Request
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from funnel_studio.services.funnel.errors import FunnelError

FUNNEL_PATH_PREFIX = "/api/v1/funnel"
logger = logging.getLogger("funnel.middleware")


def _is_funnel_request(request: Request) -> bool:
    return request.url.path.startswith(FUNNEL_PATH_PREFIX)


def _failure_detail(exc: Exception) -> str:
    action = getattr(exc, "action", None)
    return f"Failed to {action}" if action else "Request failed"


class FunnelRequestMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        response = None
        try:
            response = await call_next(request)
        except Exception as exc:
            if not _is_funnel_request(request):
                raise
            logger.exception(
                "Unhandled funnel exception",
                extra={"path": request.url.path, "method": request.method},
            )
            response = JSONResponse(
                status_code=500,
                content={
                    "error": str(exc) or "Internal server error",
                    "detail": _failure_detail(exc),
                    "path": request.url.path,
                },
            )

        duration_ms = (time.perf_counter() - start) * 1000
        if _is_funnel_request(request):
            response.headers["X-Funnel-Request-Duration-ms"] = f"{duration_ms:.2f}"
            logger.info(
                "Funnel request completed",
                extra={
                    "path": request.url.path,
                    "method": request.method,
                    "duration_ms": duration_ms,
                    "status_code": response.status_code,
                },
            )

        return response


def register_funnel_error_handlers(app: FastAPI) -> None:
    app.add_middleware(FunnelRequestMiddleware)

    @app.exception_handler(FunnelError)
    async def funnel_error_handler(request: Request, exc: FunnelError):
        if exc.status_code >= 500:
            logger.error(
                "Funnel request failed: %s",
                exc.message,
                extra={"path": request.url.path, "method": request.method, "status_code": exc.status_code},
            )
        else:
            logger.info(
                "Funnel request rejected: %s",
                exc.message,
                extra={"path": request.url.path, "method": request.method, "status_code": exc.status_code},
            )
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.message, "detail": _failure_detail(exc), "path": request.url.path},
        )

    @app.exception_handler(RequestValidationError)
    async def funnel_validation_handler(request: Request, exc: RequestValidationError):
        if not _is_funnel_request(request):
            return await request_validation_exception_handler(request, exc)

        logger.info(
            "Funnel validation error",
            extra={"path": request.url.path, "method": request.method, "errors": exc.errors()},
        )
        return JSONResponse(
            status_code=400,
            content={
                "error": "Invalid request body",
                "detail": jsonable_errors(exc),
                "path": request.url.path,
            },
        )


def jsonable_errors(exc: RequestValidationError) -> list:
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]
