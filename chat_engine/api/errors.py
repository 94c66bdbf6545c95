from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from chat_engine.core.exceptions import (
    ChatEngineError,
    ConfigValidationError,
    DuplicateConfigNameError,
    InvalidOperationError,
    NotFoundError,
)
from chat_engine.utils.logger import get_logger

logger = get_logger("chat_engine.api.errors")


def _status_for(exc: ChatEngineError) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, DuplicateConfigNameError):
        return 409
    if isinstance(exc, ConfigValidationError):
        return 422
    if isinstance(exc, InvalidOperationError):
        return 400
    return 500


async def chat_engine_error_handler(request: Request, exc: ChatEngineError) -> JSONResponse:
    status_code = _status_for(exc)
    if status_code >= 500:
        logger.error("Unhandled engine error", extra={"path": request.url.path, "error": str(exc), "code": exc.code})
    else:
        logger.info("Request rejected", extra={"path": request.url.path, "code": exc.code})
    return JSONResponse(
        status_code=status_code,
        content={"code": exc.code, "message": exc.message, "details": exc.details},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ChatEngineError, chat_engine_error_handler)
