from __future__ import annotations

import ipaddress
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

# Bounds shared by the ban operations
BAN_REASON_MIN_LENGTH = 4
BAN_REASON_MAX_LENGTH = 500
BAN_DURATION_MAX_DAYS = 36500

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "service_unavailable",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(f"unknown error code: {value}")
        return value


class ErrorEnvelope(BaseModel):
    success: bool = False
    error: ErrorBody
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class OperationPayload(BaseModel):
    """Base for operation payloads.

    Strict typing (no str/int coercion), camelCase wire names, and
    ``extra="forbid"`` so undeclared keys are rejected rather than ignored.
    """

    model_config = ConfigDict(
        extra="forbid",
        strict=True,
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=False,
    )

    def target_summary(self) -> str:
        return "-"


class VerifyAdminPayload(OperationPayload):
    def target_summary(self) -> str:
        return "self"


class ListUsersPayload(OperationPayload):
    limit: Optional[int] = Field(default=None, ge=1, le=1000)

    def target_summary(self) -> str:
        return f"users:limit={self.limit}" if self.limit else "users"


class BanUserPayload(OperationPayload):
    user_id: str = Field(..., min_length=10, max_length=100, pattern=r"^[A-Za-z0-9_-]+$")
    reason: str = Field(..., min_length=BAN_REASON_MIN_LENGTH, max_length=BAN_REASON_MAX_LENGTH)
    duration: int = Field(..., ge=1, le=BAN_DURATION_MAX_DAYS)

    def target_summary(self) -> str:
        return f"user:{self.user_id}"


class CreateLicensePayload(OperationPayload):
    plan: str = Field(..., min_length=3, max_length=16, pattern=r"^(basic|pro|enterprise)$")
    validity_days: int = Field(..., ge=1, le=3650)

    def target_summary(self) -> str:
        return f"license:{self.plan}:{self.validity_days}d"


class BanIpPayload(OperationPayload):
    ip_address: str = Field(..., min_length=3, max_length=45)
    reason: str = Field(..., min_length=BAN_REASON_MIN_LENGTH, max_length=BAN_REASON_MAX_LENGTH)
    duration: int = Field(..., ge=1, le=BAN_DURATION_MAX_DAYS)

    @field_validator("ip_address")
    @classmethod
    def _validate_ip(cls, value: str) -> str:
        try:
            return str(ipaddress.ip_address(value))
        except ValueError as exc:
            raise ValueError("not an IPv4 or IPv6 address") from exc

    def target_summary(self) -> str:
        return f"ip:{self.ip_address}"

