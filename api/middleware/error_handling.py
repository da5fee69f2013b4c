from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from api.schemas.responses import error_response
from core.logging import get_api_logger_safe
from core.utils.exceptions import DepositFailureKind, NeuralCoreException, TransientError

logger = get_api_logger_safe("api.middleware.error_handling")


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Last-resort handler: unexpected exceptions become a 500 envelope"""

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error(
                "Unhandled API exception",
                path=request.url.path,
                method=request.method,
                error=str(e),
                exc_info=True
            )
            return JSONResponse(
                status_code=500,
                content=error_response("Internal server error",
                                       reason="An unexpected error occurred",
                                       path=request.url.path),
            )


async def neural_core_exception_handler(request: Request, exc: NeuralCoreException) -> JSONResponse:
    """Domain errors carry their own status code and human-readable reason"""
    log = logger.error if exc.status_code >= 500 else logger.info
    log("Request failed", path=request.url.path, method=request.method,
        error_type=type(exc).__name__, status_code=exc.status_code, reason=exc.reason or exc.message)

    kind = getattr(exc, "kind", None)
    content = error_response(
        exc.error,
        reason=exc.reason or exc.message,
        kind=kind.value if isinstance(kind, DepositFailureKind) else None,
        retryable=True if isinstance(exc, TransientError) and exc.retryable else None,
        broker=getattr(exc, "broker", None),
    )
    return JSONResponse(status_code=exc.status_code, content=content)


async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    reason = f"{location}: {first.get('msg')}" if location else first.get("msg", "Invalid request")
    return JSONResponse(status_code=400, content=error_response("Validation failed", reason=reason))


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=error_response(str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(NeuralCoreException, neural_core_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
