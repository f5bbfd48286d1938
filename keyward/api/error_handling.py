from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from keyward.logging import get_correlation_id, get_logger
from keyward.service.errors import DEFAULT_DOCS_BASE_URL, Problem, ProblemKind, ServiceError
from keyward.storage.errors import ConstraintViolation, StorageError, StorageUnavailable

logger = get_logger(__name__)

PROBLEM_CONTENT_TYPE = "application/problem+json"

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    500: "server_error",
    503: "unavailable",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def problem_response(problem: Problem, docs_base_url: str = DEFAULT_DOCS_BASE_URL) -> JSONResponse:
    body = problem.to_dict(docs_base_url)
    cid = get_correlation_id()
    if cid:
        body.setdefault("traceId", cid)
    return JSONResponse(status_code=problem.status, content=body, media_type=PROBLEM_CONTENT_TYPE)


def _problem(
    status_code: int,
    title: str,
    code: Optional[str] = None,
    kind: ProblemKind = ProblemKind.INFRASTRUCTURE,
    **extensions: Any,
) -> Problem:
    return Problem(kind, code or _error_code_for_status(status_code), title, status_code, extensions)


def register_exception_handlers(app: FastAPI, docs_base_url: str = DEFAULT_DOCS_BASE_URL) -> None:
    """Render domain and storage failures as problem details."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        # Domain failures are expected outcomes; only 5xx are errors
        log_fn = logger.error if exc.status_code >= 500 else logger.info
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
        )
        return problem_response(exc.to_problem(), docs_base_url)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return problem_response(
            _problem(409, exc.message, "conflict", ProblemKind.CONFLICT), docs_base_url
        )

    @app.exception_handler(StorageUnavailable)
    async def handle_storage_unavailable(request: Request, exc: StorageUnavailable):
        logger.error(
            "storage_unavailable",
            path=request.url.path,
            method=request.method,
            message=exc.message,
        )
        return problem_response(
            _problem(503, "The service is temporarily unavailable.", retryable=True),
            docs_base_url,
        )

    @app.exception_handler(StorageError)
    async def handle_storage_error(request: Request, exc: StorageError):
        logger.error(
            "storage_error",
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            message=exc.message,
        )
        return problem_response(_problem(500, "internal server error"), docs_base_url)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg")}
            for err in exc.errors()
        ]
        return problem_response(
            _problem(
                400,
                "One or more validation errors occurred.",
                "validation_error",
                ProblemKind.VALIDATION,
                errors=errors,
            ),
            docs_base_url,
        )

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        title = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
            )
        return problem_response(_problem(exc.status_code, title), docs_base_url)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return problem_response(_problem(500, "internal server error"), docs_base_url)
