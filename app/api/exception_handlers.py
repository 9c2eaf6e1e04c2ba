"""Custom exception handlers for FastAPI application"""

from fastapi import Request, HTTPException
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError as PydanticValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from typing import Union
import traceback

from app.core.exceptions import DBMasterError
from app.core.logging_config import get_logger


logger = get_logger(__name__)


async def db_master_exception_handler(
    request: Request,
    exc: DBMasterError
) -> JSONResponse:
    """
    Handle every DBMasterError subclass.

    The status code comes from the exception class: 400 validation,
    403 authorization, 404 not found, 503 connectivity, 502 credential and
    execution failures, 500 encryption and anything else.
    """
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "db_master_error_handled",
        request_path=request.url.path,
        request_method=request.method,
        error_type=exc.error_type,
        status_code=exc.status_code,
        context=exc.context,
        error_details=exc.details,
    )

    content = exc.get_api_response()
    content["timestamp"] = exc.timestamp.isoformat()
    return JSONResponse(status_code=exc.status_code, content=content)


async def validation_exception_handler(
    request: Request,
    exc: Union[RequestValidationError, PydanticValidationError]
) -> JSONResponse:
    """
    Handle Pydantic validation errors.

    Provides detailed error information for validation failures.
    """
    errors = [
        {
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"]
        }
        for error in exc.errors()
    ]

    logger.warning(
        "validation_error_handled",
        request_path=request.url.path,
        request_method=request.method,
        errors=errors,
    )

    return JSONResponse(
        status_code=422,
        content={
            "detail": "Validation error",
            "type": "validation_error",
            "errors": errors
        }
    )


async def http_exception_handler(
    request: Request,
    exc: Union[HTTPException, StarletteHTTPException]
) -> JSONResponse:
    """
    Handle HTTP exceptions with enhanced logging.

    Provides consistent error response format for HTTP exceptions.
    """
    logger.warning(
        "http_exception_handled",
        request_path=request.url.path,
        request_method=request.method,
        status_code=exc.status_code,
        detail=str(exc.detail),
    )

    content = {"detail": exc.detail}

    if exc.status_code == 401:
        content["type"] = "authentication_required"
    elif exc.status_code == 403:
        content["type"] = "permission_denied"
    elif exc.status_code == 404:
        content["type"] = "not_found"

    headers = getattr(exc, "headers", None)

    return JSONResponse(
        status_code=exc.status_code,
        content=content,
        headers=headers
    )


async def general_exception_handler(
    request: Request,
    exc: Exception
) -> JSONResponse:
    """
    Handle unexpected exceptions with secure error responses.

    Logs detailed error information but returns generic error messages
    to avoid exposing sensitive information.
    """
    logger.error(
        "unexpected_exception_handled",
        request_path=request.url.path,
        request_method=request.method,
        error_type=type(exc).__name__,
        error_message=str(exc),
        traceback=traceback.format_exc(),
    )

    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "type": "internal_server_error"
        }
    )


def register_exception_handlers(app):
    """
    Register all custom exception handlers with the FastAPI application.

    Args:
        app: FastAPI application instance
    """
    app.add_exception_handler(DBMasterError, db_master_exception_handler)

    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(PydanticValidationError, validation_exception_handler)

    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)

    app.add_exception_handler(Exception, general_exception_handler)

    logger.info(
        "exception_handlers_registered",
        handlers=[
            "DBMasterError",
            "RequestValidationError",
            "ValidationError",
            "HTTPException",
            "StarletteHTTPException",
            "Exception"
        ]
    )
