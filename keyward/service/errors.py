from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Generic, Mapping, Optional, TypeVar

T = TypeVar("T")
U = TypeVar("U")

DEFAULT_DOCS_BASE_URL = "https://docs.keyward.dev/errors"


class ProblemKind(str, Enum):
    """Category of a domain failure; decides the status family."""

    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    FORBIDDEN = "forbidden"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    INFRASTRUCTURE = "infrastructure"


@dataclass(frozen=True)
class Problem:
    """A typed domain failure, rendered by the HTTP boundary as problem details."""

    kind: ProblemKind
    error_code: str
    title: str
    status: int
    extensions: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self, docs_base_url: str = DEFAULT_DOCS_BASE_URL) -> dict[str, Any]:
        body: dict[str, Any] = {
            "type": f"{docs_base_url}#{self.error_code}",
            "title": self.title,
            "status": self.status,
            "errorCode": self.error_code,
        }
        for key, value in self.extensions.items():
            body.setdefault(key, value)
        return body


@dataclass(frozen=True)
class Result(Generic[T]):
    """Outcome of a core operation: either a value or a Problem."""

    value: Optional[T] = None
    problem: Optional[Problem] = None

    @classmethod
    def ok(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def fail(cls, problem: Problem) -> "Result[T]":
        return cls(problem=problem)

    @property
    def is_ok(self) -> bool:
        return self.problem is None

    @property
    def error_code(self) -> Optional[str]:
        return self.problem.error_code if self.problem else None

    def map(self, fn: Callable[[T], U]) -> "Result[U]":
        if self.problem is not None:
            return Result(problem=self.problem)
        return Result(value=fn(self.value))  # type: ignore[arg-type]

    def unwrap(self) -> T:
        """Return the value or raise ServiceError carrying the problem."""
        if self.problem is not None:
            raise ServiceError.from_problem(self.problem)
        return self.value  # type: ignore[return-value]


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Core operations return Result values; the boundary calls ``unwrap`` and
    lets this exception reach the registered handlers.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    @classmethod
    def from_problem(cls, problem: Problem) -> "ServiceError":
        error_cls = _KIND_TO_ERROR.get(problem.kind, ServiceError)
        return error_cls(
            problem.title,
            status_code=problem.status,
            detail=dict(problem.extensions),
            error_code=problem.error_code,
        )

    def to_problem(self) -> Problem:
        kind = _STATUS_TO_KIND.get(self.status_code, ProblemKind.INFRASTRUCTURE)
        return Problem(kind, self.error_code, self.message, self.status_code, self.detail)


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


_KIND_TO_ERROR: dict[ProblemKind, type[ServiceError]] = {
    ProblemKind.VALIDATION: ValidationError,
    ProblemKind.AUTHENTICATION: AuthenticationError,
    ProblemKind.FORBIDDEN: ForbiddenError,
    ProblemKind.CONFLICT: ConflictError,
    ProblemKind.NOT_FOUND: NotFoundError,
    ProblemKind.INFRASTRUCTURE: ServerError,
}

_STATUS_TO_KIND: dict[int, ProblemKind] = {
    400: ProblemKind.VALIDATION,
    401: ProblemKind.AUTHENTICATION,
    403: ProblemKind.FORBIDDEN,
    404: ProblemKind.NOT_FOUND,
    409: ProblemKind.CONFLICT,
}


# ---------------------------------------------------------------------------
# Problem constructors, one per failure path of the core operations
# ---------------------------------------------------------------------------


def validation_error(title: str, **extensions: Any) -> Problem:
    return Problem(ProblemKind.VALIDATION, "validation_error", title, 400, extensions)


def invalid_format() -> Problem:
    return Problem(
        ProblemKind.AUTHENTICATION,
        "invalid_format",
        "Please supply the apikey or apisecret header with correct value.",
        401,
    )


def unknown_key() -> Problem:
    return Problem(ProblemKind.AUTHENTICATION, "unknown_key", "The API key is not recognized.", 401)


def key_mismatch() -> Problem:
    return Problem(ProblemKind.AUTHENTICATION, "mismatch", "The API key was not valid.", 401)


def key_locked(locked_for: Optional[str]) -> Problem:
    if locked_for:
        title = f"The API key was locked {locked_for} ago."
    else:
        title = "The API key is locked."
    extensions = {"lockedFor": locked_for} if locked_for else {}
    return Problem(ProblemKind.FORBIDDEN, "locked", title, 403, extensions)


def forbidden_scope(scope: str) -> Problem:
    return Problem(
        ProblemKind.FORBIDDEN,
        "forbidden_scope",
        f"The API key does not grant the '{scope}' scope.",
        403,
        {"scope": scope},
    )


def app_conflict(app_id: str) -> Problem:
    return Problem(
        ProblemKind.CONFLICT,
        "conflict",
        f"accountName '{app_id}' is not available",
        409,
        {"appId": app_id},
    )


def app_not_found(app_id: str) -> Problem:
    return Problem(ProblemKind.NOT_FOUND, "app_not_found", "App was not found.", 404, {"appId": app_id})


def already_pending(app_id: str, delete_at: Any) -> Problem:
    return Problem(
        ProblemKind.CONFLICT,
        "already_pending",
        "App is already pending to be deleted.",
        400,
        {"appId": app_id, "deleteAt": delete_at},
    )


def app_pending_deletion(app_id: str, delete_at: Any) -> Problem:
    return Problem(
        ProblemKind.CONFLICT,
        "app_pending_deletion",
        "App is scheduled for deletion; only cancelling or deleting it is allowed.",
        409,
        {"appId": app_id, "deleteAt": delete_at},
    )


def not_pending(app_id: str) -> Problem:
    return Problem(
        ProblemKind.CONFLICT,
        "not_pending",
        "App was not scheduled for deletion.",
        400,
        {"appId": app_id},
    )


def invalid_ttl(seconds: float, minimum: int, maximum: int) -> Problem:
    return Problem(
        ProblemKind.VALIDATION,
        "invalid_ttl",
        f"The time to live must be between {minimum} and {maximum} seconds.",
        400,
        {"timeToLive": seconds, "minimum": minimum, "maximum": maximum},
    )


def unknown_token() -> Problem:
    return Problem(ProblemKind.FORBIDDEN, "unknown_token", "The token is not recognized.", 403)


def expired_token(expired_seconds: int) -> Problem:
    return Problem(
        ProblemKind.FORBIDDEN,
        "expired_token",
        f"The token expired {expired_seconds} seconds ago.",
        403,
        {"expiredSeconds": expired_seconds},
    )


def purpose_not_found(purpose: str) -> Problem:
    return Problem(
        ProblemKind.NOT_FOUND,
        "purpose_not_found",
        f"The authentication configuration '{purpose}' does not exist.",
        404,
        {"purpose": purpose},
    )


def preset_purpose(purpose: str) -> Problem:
    return Problem(
        ProblemKind.VALIDATION,
        "preset_purpose",
        f"The authentication configuration '{purpose}' is built in and cannot be deleted.",
        400,
        {"purpose": purpose},
    )


__all__ = [
    "ProblemKind",
    "Problem",
    "Result",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
]
