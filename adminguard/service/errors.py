from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional


class RejectReason(str, Enum):
    """Terminal reasons recorded on audit records and logs."""

    UNAUTHENTICATED = "unauthenticated"
    FORBIDDEN = "forbidden"
    RATE_LIMITED = "rate_limited"
    INVALID_INPUT = "invalid_input"
    UNKNOWN_OPERATION = "unknown_operation"
    CONFLICT = "conflict"
    STORE_UNAVAILABLE = "store_unavailable"
    DEPENDENCY_UNAVAILABLE = "dependency_unavailable"
    INTERNAL_ERROR = "internal_error"
    CANCELLED = "cancelled"


class AuthFailure(str, Enum):
    INVALID_TOKEN = "invalid_token"
    EXPIRED = "expired"
    UNKNOWN_SUBJECT = "unknown_subject"
    FORBIDDEN = "forbidden"


class ValidationFailure(str, Enum):
    MISSING_FIELD = "missing_field"
    TYPE_MISMATCH = "type_mismatch"
    OUT_OF_RANGE = "out_of_range"
    PATTERN_MISMATCH = "pattern_mismatch"
    UNKNOWN_FIELD = "unknown_field"


@dataclass(frozen=True)
class FieldError:
    field: str
    kind: ValidationFailure

    def to_dict(self) -> dict:
        return {"field": self.field, "kind": self.kind.value}


class ServiceError(Exception):
    """Base class for gateway exceptions mapped to HTTP responses.

    Each exception class defines an HTTP status_code, a stable error_code
    returned to callers and the reject_reason written to the audit trail:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - validation_error (400)
    - service_unavailable (503)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    reject_reason: RejectReason = RejectReason.INVALID_INPUT

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


class ValidationError(ServiceError):
    """Request payload does not match the operation schema (400)."""

    status_code = 400
    error_code = "validation_error"
    reject_reason = RejectReason.INVALID_INPUT

    def __init__(self, message: str, field_errors: List[FieldError], **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.field_errors = list(field_errors)

    @property
    def kinds(self) -> set[ValidationFailure]:
        return {err.kind for err in self.field_errors}


class AuthError(ServiceError):
    """Authentication failed or missing (401)."""

    status_code = 401
    error_code = "unauthorized"
    reject_reason = RejectReason.UNAUTHENTICATED

    def __init__(self, kind: AuthFailure, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.kind = kind


class ForbiddenError(AuthError):
    """Valid identity without the administrator flag (403)."""

    status_code = 403
    error_code = "forbidden"
    reject_reason = RejectReason.FORBIDDEN

    def __init__(self, message: str = "admin access required", **kwargs) -> None:
        super().__init__(AuthFailure.FORBIDDEN, message, **kwargs)


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""

    status_code = 429
    error_code = "rate_limited"
    reject_reason = RejectReason.RATE_LIMITED

    def __init__(self, message: str = "rate limit exceeded", *, retry_after: int = 0, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class NotFoundError(ServiceError):
    """Requested operation or resource not found (404)."""

    status_code = 404
    error_code = "not_found"
    reject_reason = RejectReason.UNKNOWN_OPERATION


class OperationError(ServiceError):
    """Failure reported by the document store during dispatch."""

    status_code = 500
    error_code = "server_error"
    reject_reason = RejectReason.INTERNAL_ERROR


class ConflictError(OperationError):
    """Store rejected the write as conflicting with existing state (409)."""

    status_code = 409
    error_code = "conflict"
    reject_reason = RejectReason.CONFLICT


class StoreUnavailableError(OperationError):
    """Document store could not be reached (503)."""

    status_code = 503
    error_code = "service_unavailable"
    reject_reason = RejectReason.STORE_UNAVAILABLE


class ServiceUnavailableError(ServiceError):
    """Identity provider or rate-limit backend unavailable (503)."""

    status_code = 503
    error_code = "service_unavailable"
    reject_reason = RejectReason.DEPENDENCY_UNAVAILABLE


class ServerError(ServiceError):
    """Internal server error (500)."""

    status_code = 500
    error_code = "server_error"
    reject_reason = RejectReason.INTERNAL_ERROR


__all__ = [
    "RejectReason",
    "AuthFailure",
    "ValidationFailure",
    "FieldError",
    "ServiceError",
    "ValidationError",
    "AuthError",
    "ForbiddenError",
    "RateLimitedError",
    "NotFoundError",
    "OperationError",
    "ConflictError",
    "StoreUnavailableError",
    "ServiceUnavailableError",
    "ServerError",
]
