import logging
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base class for errors that reach the client as an envelope."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, error: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.error = error


class ValidationError(AppError):
    status_code = status.HTTP_400_BAD_REQUEST


class UnauthorizedError(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED


class ForbiddenError(AppError):
    status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(AppError):
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(AppError):
    status_code = status.HTTP_409_CONFLICT


class FailedPreconditionError(AppError):
    status_code = status.HTTP_400_BAD_REQUEST


class InsufficientStockError(FailedPreconditionError):
    def __init__(self, product_name: str, size: str, available: int, requested: int):
        super().__init__(
            "insufficient stock",
            {
                "product_name": product_name,
                "size": size,
                "available": available,
                "requested": requested,
            },
        )


class CartInvalidError(FailedPreconditionError):
    def __init__(self, issues):
        super().__init__("Cart is invalid", {"issues": list(issues)})
        self.issues = list(issues)


class InternalError(AppError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


def error_body(message: str, error: Any = None) -> dict:
    body = {"success": False, "message": message}
    if error is not None:
        body["error"] = error
    return body


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.error)
        return JSONResponse(
            status_code=exc.status_code,
            content=jsonable_encoder(error_body(exc.message, exc.error)),
        )

    @app.exception_handler(HTTPException)
    async def http_error_handler(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "Request failed"
        error = None if isinstance(exc.detail, str) else exc.detail
        return JSONResponse(
            status_code=exc.status_code,
            content=jsonable_encoder(error_body(message, error)),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"), "message": err.get("msg", "")}
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=jsonable_encoder(error_body("Validation failed", errors)),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=error_body("Internal server error", str(exc)),
        )
