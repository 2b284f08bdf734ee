from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from quality_review.infrastructure.config import get_settings
from quality_review.infrastructure.exceptions import (
    QualityReviewError,
    create_user_friendly_error_message,
    log_error_details,
)
from quality_review.infrastructure.logging import clear_context, get_logger
from quality_review.web.routes import api

logger = get_logger("web")


def _error_response(status_code: int, kind: str, message: str, details: dict) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"kind": kind, "message": message, "details": details}},
    )


async def handle_review_error(request: Request, exc: QualityReviewError) -> JSONResponse:
    clear_context()
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_payload()})


async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {
            "field": ".".join(str(part) for part in error["loc"] if part != "body") or "body",
            "message": error["msg"],
        }
        for error in exc.errors()
    ]
    first = errors[0]["message"] if errors else "Invalid request"
    return _error_response(400, "validation", first, {"errors": errors})


async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
    clear_context()
    logger.error("Unhandled error", extra=log_error_details(exc, {"path": request.url.path}))
    return _error_response(500, "internal", create_user_friendly_error_message(exc), {})


def create_application() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title=settings.app.title,
        version=settings.app.version,
        debug=settings.app.debug,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(QualityReviewError, handle_review_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation)
    app.add_exception_handler(Exception, handle_unexpected)

    app.include_router(api.router)

    return app


app = create_application()
