"""
errors.py — simportal error taxonomy and its HTTP rendering.

Every error that crosses the HTTP boundary is a PortalError, rendered by the
handlers registered in register_exception_handlers():

    {"success": false, "error": {"code": ..., "message": ..., "details": [...]}}

NoCredential and InvalidCredential share code + message so the caller can
never tell which verification step failed.
"""
import logging
from http import HTTPStatus
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)

SIGN_IN_AGAIN = "Please sign in again."


class PortalError(Exception):
    status_code: int = 500
    code: str = "INTERNAL_ERROR"
    default_message: str = "An unexpected error occurred"
    retryable: bool = False

    def __init__(
        self,
        message: Optional[str] = None,
        details: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        self.message = message or self.default_message
        self.details = details or []
        super().__init__(self.message)


class NoCredential(PortalError):
    status_code = 401
    code = "UNAUTHENTICATED"
    default_message = SIGN_IN_AGAIN


class InvalidCredential(PortalError):
    status_code = 401
    code = "UNAUTHENTICATED"
    default_message = SIGN_IN_AGAIN


class Forbidden(PortalError):
    status_code = 403
    code = "FORBIDDEN"
    default_message = "Your role does not allow this action."


class NoActiveRun(PortalError):
    status_code = 404
    code = "NO_ACTIVE_RUN"
    default_message = "No active training run. Start or resume training first."


class StoreUnavailable(PortalError):
    status_code = 503
    code = "STORE_UNAVAILABLE"
    default_message = "Something went wrong saving your progress. Please try again."
    retryable = True


class LaunchRejected(PortalError):
    status_code = 401
    code = "LAUNCH_REJECTED"
    default_message = "Platform launch could not be verified."


class LoginFailed(PortalError):
    status_code = 401
    code = "INVALID_LOGIN"
    default_message = "Invalid email or password."


# ---------------------------------------------------------------------------
# HTTP rendering
# ---------------------------------------------------------------------------

def error_body(
    code: str,
    message: str,
    details: Optional[List[Dict[str, Any]]] = None,
    retryable: bool = False,
) -> Dict[str, Any]:
    error: Dict[str, Any] = {"code": code, "message": message, "details": details or []}
    if retryable:
        error["retryable"] = True
    return {"success": False, "error": error}


def _field_path(loc) -> Optional[str]:
    """Dot path of a validation error, without the leading "body" segment."""
    parts = [str(part) for part in loc if part != "body"]
    return ".".join(parts) or None


def _status_code_name(status_code: int) -> str:
    if status_code == 401:
        return NoCredential.code
    try:
        return HTTPStatus(status_code).name
    except ValueError:
        return f"HTTP_{status_code}"


def register_exception_handlers(app: FastAPI, debug: bool = False) -> None:
    """Render every failure as the standard envelope. Call before including routers."""

    @app.exception_handler(PortalError)
    async def _portal_error(request: Request, exc: PortalError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(exc.code, exc.message, exc.details, exc.retryable),
        )

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = [{"field": _field_path(err["loc"]), "issue": err["msg"]} for err in exc.errors()]
        return JSONResponse(
            status_code=422,
            content=error_body("VALIDATION_ERROR", "Request validation failed", details),
        )

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(_status_code_name(exc.status_code), str(exc.detail)),
        )

    @app.exception_handler(Exception)
    async def _unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "Unhandled %s on %s %s",
            type(exc).__name__, request.method, request.url.path, exc_info=True,
        )
        details = [{"issue": f"{type(exc).__name__}: {exc}"}] if debug else []
        return JSONResponse(
            status_code=500,
            content=error_body(PortalError.code, PortalError.default_message, details),
        )
