"""Privileged-operation pipeline.

``Gateway.handle`` drives one request through

    START -> VERIFIED -> RATE_CHECKED -> VALIDATED -> DISPATCHED -> AUDITED -> DONE

stopping at the first hard failure (``REJECTED`` before dispatch,
``ERRORED`` for dispatch failures and unexpected faults). Every request
ends with exactly one audit record, cancellation included: dispatch and
its audit run in a shielded task, and a request cancelled before dispatch
is recorded as ``error``/``cancelled``.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple
from uuid import uuid4

from adminguard.logging import get_logger, sanitize_error_message
from adminguard.service.audit import AuditLogger, AuditOutcome, AuditRecord
from adminguard.service.auth import AuthVerifier, Identity
from adminguard.service.errors import (
    AuthError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    OperationError,
    RateLimitedError,
    RejectReason,
    ServerError,
    ServiceError,
    ServiceUnavailableError,
    StoreUnavailableError,
    ValidationError,
)
from adminguard.service.injection import DetectionFinding, InjectionDetector
from adminguard.service.operations import OPERATIONS, OperationSpec
from adminguard.service.rate_limit import LimitClass, RateDecision, RateLimiter
from adminguard.service.validation import SchemaValidator
from adminguard.storage.errors import ConstraintViolation, StoreUnavailable
from adminguard.storage.memory import DocumentStore

logger = get_logger(__name__)

CANCELLED_STATUS = 499
MAX_OPERATION_NAME = 64

_PUBLIC_MESSAGES = {
    "unauthorized": "invalid credentials",
    "forbidden": "admin access required",
    "rate_limited": "rate limit exceeded",
    "validation_error": "invalid request payload",
    "not_found": "unknown operation",
    "conflict": "request conflicts with existing state",
    "service_unavailable": "service temporarily unavailable",
    "server_error": "internal server error",
}


class GatewayState(str, Enum):
    START = "start"
    VERIFIED = "verified"
    RATE_CHECKED = "rate_checked"
    VALIDATED = "validated"
    DISPATCHED = "dispatched"
    AUDITED = "audited"
    DONE = "done"
    REJECTED = "rejected"
    ERRORED = "errored"


@dataclass(frozen=True)
class GatewayRequest:
    operation: str
    token: Optional[str]
    payload: Any
    client_address: str
    request_id: str = field(default_factory=lambda: str(uuid4()))


@dataclass
class GatewayResult:
    status_code: int
    body: Dict[str, Any]
    outcome: AuditOutcome
    state: GatewayState
    record: AuditRecord
    trail: Tuple[GatewayState, ...] = ()
    rate: Optional[RateDecision] = None
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.outcome == AuditOutcome.ADMITTED


@dataclass
class _Context:
    request: GatewayRequest
    state: GatewayState = GatewayState.START
    trail: List[GatewayState] = field(default_factory=lambda: [GatewayState.START])
    identity: Optional[Identity] = None
    rate: Optional[RateDecision] = None
    findings: List[DetectionFinding] = field(default_factory=list)
    target_summary: Optional[str] = None
    audit_started: bool = False
    dispatch_task: Optional[asyncio.Task] = None

    def advance(self, state: GatewayState) -> None:
        self.state = state
        self.trail.append(state)

    @property
    def operation(self) -> str:
        return self.request.operation[:MAX_OPERATION_NAME]


class Gateway:
    def __init__(
        self,
        *,
        store: DocumentStore,
        verifier: AuthVerifier,
        limiter: RateLimiter,
        audit: AuditLogger,
        rate_limits: Mapping[LimitClass, Tuple[int, int]],
        validator: Optional[SchemaValidator] = None,
        detector: Optional[InjectionDetector] = None,
        operations: Optional[Mapping[str, OperationSpec]] = None,
        store_read_retries: int = 2,
        expose_field_errors: bool = True,
    ) -> None:
        self.store = store
        self.verifier = verifier
        self.limiter = limiter
        self.audit = audit
        self.rate_limits = dict(rate_limits)
        self.validator = validator or SchemaValidator()
        self.detector = detector or InjectionDetector()
        self.operations = dict(operations if operations is not None else OPERATIONS)
        self.store_read_retries = max(0, int(store_read_retries))
        self.expose_field_errors = expose_field_errors
        self._inflight: Set[asyncio.Task] = set()

    async def handle(self, request: GatewayRequest) -> GatewayResult:
        ctx = _Context(request=request)
        try:
            return await self._run(ctx)
        except asyncio.CancelledError:
            if ctx.dispatch_task is None and not ctx.audit_started:
                ctx.advance(GatewayState.ERRORED)
                record = self._build_record(
                    ctx,
                    AuditOutcome.ERROR,
                    CANCELLED_STATUS,
                    reject_reason=RejectReason.CANCELLED,
                    error_detail="request cancelled before dispatch",
                )
                logger.warning("gateway_cancelled", operation=ctx.operation, state=ctx.trail[-2].value)
                await self._write_audit(ctx, record)
            raise
        except Exception as exc:
            # Unexpected fault outside dispatch; dispatch faults are handled in the task
            logger.exception("gateway_unexpected_fault", operation=ctx.operation, error=str(exc))
            if ctx.audit_started:
                raise
            return await self._finish_error(
                ctx, ServerError("internal server error"), detail=f"{type(exc).__name__}: {exc}"
            )

    async def drain(self) -> None:
        """Wait for in-flight dispatches, e.g. on shutdown."""
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def _run(self, ctx: _Context) -> GatewayResult:
        spec = self.operations.get(ctx.request.operation)
        if spec is None:
            return await self._finish_rejected(ctx, NotFoundError("unknown operation"))

        try:
            identity = await self.verifier.verify(ctx.request.token)
        except AuthError as exc:
            return await self._finish_rejected(ctx, exc, detail=exc.kind.value)
        except (ServiceUnavailableError, StoreUnavailableError) as exc:
            return await self._finish_error(ctx, exc)
        ctx.identity = identity
        if spec.admin_only and not identity.is_admin:
            return await self._finish_rejected(ctx, ForbiddenError(), detail="not an administrator")
        ctx.advance(GatewayState.VERIFIED)

        limit, window_seconds = self.rate_limits[spec.limit_class]
        key = f"{spec.limit_class.value}:{ctx.request.client_address}:{spec.name}"
        try:
            decision = await self.limiter.check(key, window_seconds, limit)
        except Exception as exc:
            logger.error("rate_limiter_unavailable", operation=spec.name, error=str(exc))
            return await self._finish_error(
                ctx,
                ServiceUnavailableError("rate limiter unavailable"),
                detail=f"{type(exc).__name__}: {exc}",
            )
        ctx.rate = decision
        if not decision.allowed:
            retry_after = max(1, decision.reset_seconds)
            return await self._finish_rejected(
                ctx, RateLimitedError(retry_after=retry_after), detail=f"limit {limit}/{window_seconds}s"
            )
        ctx.advance(GatewayState.RATE_CHECKED)

        try:
            payload = self.validator.validate(spec.schema, ctx.request.payload)
        except ValidationError as exc:
            ctx.findings = self._scan(ctx, ctx.request.payload)
            detail = ", ".join(f"{err.field}:{err.kind.value}" for err in exc.field_errors)
            return await self._finish_rejected(ctx, exc, detail=detail)
        ctx.target_summary = payload.target_summary()
        ctx.advance(GatewayState.VALIDATED)
        ctx.findings = self._scan(ctx, payload.model_dump(by_alias=True))

        task = asyncio.ensure_future(self._dispatch_and_audit(ctx, spec, payload))
        ctx.dispatch_task = task
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return await asyncio.shield(task)

    def _scan(self, ctx: _Context, value: Any) -> List[DetectionFinding]:
        findings = self.detector.scan(value)
        if findings:
            logger.warning(
                "injection_patterns_detected",
                operation=ctx.operation,
                categories=sorted({finding.category.value for finding in findings}),
                fields=sorted({finding.field for finding in findings}),
                actor_id=ctx.identity.subject_id if ctx.identity else None,
            )
        return findings

    async def _dispatch_and_audit(self, ctx: _Context, spec: OperationSpec, payload: Any) -> GatewayResult:
        ctx.advance(GatewayState.DISPATCHED)
        try:
            data = await self._invoke(spec, payload, ctx.identity)
        except OperationError as exc:
            return await self._finish_error(ctx, exc)
        except Exception as exc:
            logger.exception("gateway_dispatch_fault", operation=spec.name, error=str(exc))
            return await self._finish_error(
                ctx, ServerError("internal server error"), detail=f"{type(exc).__name__}: {exc}"
            )

        record = self._build_record(ctx, AuditOutcome.ADMITTED, 200)
        await self._write_audit(ctx, record)
        ctx.advance(GatewayState.AUDITED)
        ctx.advance(GatewayState.DONE)
        logger.info(
            "gateway_admitted",
            operation=spec.name,
            actor_id=ctx.identity.subject_id,
            target=ctx.target_summary,
        )
        return GatewayResult(
            status_code=200,
            body={"success": True, **data},
            outcome=AuditOutcome.ADMITTED,
            state=ctx.state,
            record=record,
            trail=tuple(ctx.trail),
            rate=ctx.rate,
            headers=self._rate_headers(ctx.rate),
        )

    async def _invoke(self, spec: OperationSpec, payload: Any, identity: Identity) -> Dict[str, Any]:
        attempts = 1 if spec.mutating else self.store_read_retries + 1
        last_error: Optional[StoreUnavailable] = None
        for attempt in range(attempts):
            try:
                return await asyncio.to_thread(spec.handler, self.store, payload, identity)
            except ConstraintViolation as exc:
                raise ConflictError(exc.message, detail=exc.detail) from exc
            except StoreUnavailable as exc:
                last_error = exc
                logger.warning(
                    "store_unavailable",
                    operation=spec.name,
                    attempt=attempt + 1,
                    attempts=attempts,
                    error=sanitize_error_message(exc.message),
                )
        raise StoreUnavailableError(
            last_error.message if last_error else "document store unavailable"
        )

    async def _write_audit(self, ctx: _Context, record: AuditRecord) -> None:
        ctx.audit_started = True
        await asyncio.shield(asyncio.ensure_future(self.audit.record(record)))

    def _build_record(
        self,
        ctx: _Context,
        outcome: AuditOutcome,
        status_code: int,
        *,
        reject_reason: Optional[RejectReason] = None,
        error_detail: Optional[str] = None,
    ) -> AuditRecord:
        return AuditRecord(
            request_id=ctx.request.request_id,
            actor_id=ctx.identity.subject_id if ctx.identity else None,
            operation=ctx.operation,
            outcome=outcome,
            reject_reason=reject_reason,
            status_code=status_code,
            findings=list(ctx.findings),
            target_summary=ctx.target_summary,
            client_address=ctx.request.client_address,
            error_detail=sanitize_error_message(error_detail) if error_detail else None,
        )

    async def _finish_rejected(
        self, ctx: _Context, exc: ServiceError, *, detail: Optional[str] = None
    ) -> GatewayResult:
        ctx.advance(GatewayState.REJECTED)
        record = self._build_record(
            ctx,
            AuditOutcome.REJECTED,
            exc.status_code,
            reject_reason=exc.reject_reason,
            error_detail=detail,
        )
        logger.warning(
            "gateway_rejected",
            operation=ctx.operation,
            reason=exc.reject_reason.value,
            status_code=exc.status_code,
            client_address=ctx.request.client_address,
        )
        await self._write_audit(ctx, record)
        return self._error_result(ctx, exc, record, AuditOutcome.REJECTED)

    async def _finish_error(
        self, ctx: _Context, exc: ServiceError, *, detail: Optional[str] = None
    ) -> GatewayResult:
        ctx.advance(GatewayState.ERRORED)
        record = self._build_record(
            ctx,
            AuditOutcome.ERROR,
            exc.status_code,
            reject_reason=exc.reject_reason,
            error_detail=detail or exc.message,
        )
        logger.error(
            "gateway_error",
            operation=ctx.operation,
            reason=exc.reject_reason.value,
            status_code=exc.status_code,
        )
        await self._write_audit(ctx, record)
        return self._error_result(ctx, exc, record, AuditOutcome.ERROR)

    def _error_result(
        self, ctx: _Context, exc: ServiceError, record: AuditRecord, outcome: AuditOutcome
    ) -> GatewayResult:
        error: Dict[str, Any] = {
            "code": exc.error_code,
            "message": _PUBLIC_MESSAGES.get(exc.error_code, "request failed"),
        }
        headers = self._rate_headers(ctx.rate)
        if isinstance(exc, ValidationError) and self.expose_field_errors:
            error["details"] = {"fields": [err.to_dict() for err in exc.field_errors]}
        elif isinstance(exc, RateLimitedError):
            error["details"] = {"retry_after": exc.retry_after}
            headers["Retry-After"] = str(exc.retry_after)
        return GatewayResult(
            status_code=exc.status_code,
            body={"success": False, "error": error, "request_id": ctx.request.request_id},
            outcome=outcome,
            state=ctx.state,
            record=record,
            trail=tuple(ctx.trail),
            rate=ctx.rate,
            headers=headers,
        )

    @staticmethod
    def _rate_headers(decision: Optional[RateDecision]) -> Dict[str, str]:
        if decision is None or decision.limit <= 0:
            return {}
        return {
            "X-RateLimit-Limit": str(decision.limit),
            "X-RateLimit-Remaining": str(decision.remaining),
            "X-RateLimit-Reset": str(decision.reset_seconds),
        }


__all__ = ["Gateway", "GatewayRequest", "GatewayResult", "GatewayState", "CANCELLED_STATUS"]
