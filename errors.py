import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class LifecycleError(Exception):
    """A donation or request status transition that is not allowed right now."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


def _envelope(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message, **extra})


def _describe(error: dict) -> str:
    # ("body", "pickupTime", "start") -> "pickupTime.start"
    loc = [str(p) for p in error.get("loc", ()) if p not in ("body", "query", "path")]
    msg = error.get("msg", "Invalid value")
    return f"{'.'.join(loc)}: {msg}" if loc else msg


def install_error_handlers(app: FastAPI):
    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        message = exc.detail
        if exc.status_code == 404 and exc.detail == "Not Found":
            message = "Route not found"
        return _envelope(exc.status_code, str(message))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        message = _describe(errors[0]) if errors else "Validation failed"
        details = [{"field": ".".join(str(p) for p in e.get("loc", ())), "message": e.get("msg")} for e in errors]
        return _envelope(400, message, errors=details)

    @app.exception_handler(LifecycleError)
    async def lifecycle_exception_handler(request: Request, exc: LifecycleError):
        return _envelope(exc.status_code, exc.message)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return _envelope(500, "Server Error")
