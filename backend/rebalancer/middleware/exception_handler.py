"""
Exception Handlers & Request Logging Middleware
"""
import traceback
from fastapi import Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from loguru import logger

from rebalancer.core.exceptions import (
    CapacityError, ConflictError, EngineError, NotFoundError, ValidationError,
)


def _status_for(exc: EngineError) -> int:
    if isinstance(exc, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, ValidationError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, (ConflictError, CapacityError)):
        return status.HTTP_409_CONFLICT
    return status.HTTP_400_BAD_REQUEST


async def engine_exception_handler(request: Request, exc: EngineError):
    """Map engine errors to HTTP statuses using their type, never their text."""
    status_code = _status_for(exc)
    log = logger.warning if status_code == status.HTTP_409_CONFLICT else logger.info
    log(f"{request.method} {request.url.path} → {status_code} {exc.code}: {exc.message}")
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder({
            "success": False,
            "message": exc.message,
            "data": {"code": exc.code, **exc.data},
            "errors": [exc.message],
        }),
    )


async def global_exception_handler(request: Request, exc: Exception):
    """Catch all unhandled exceptions and return structured error."""
    logger.error(f"Unhandled exception: {exc}\n{traceback.format_exc()}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "message": "Internal server error",
            "errors": [str(exc)] if request.app.state.debug else ["An unexpected error occurred"],
        },
    )


async def request_logging_middleware(request: Request, call_next):
    """Log all incoming requests."""
    logger.info(f"{request.method} {request.url.path}")
    response = await call_next(request)
    logger.info(f"{request.method} {request.url.path} → {response.status_code}")
    return response
