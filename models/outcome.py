from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

ERROR_CODES = {"timeout", "auth", "rate_limit", "bad_request", "provider_error", "unknown"}


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    PENDING = "pending"
    RETRYABLE_FAILURE = "retryable_failure"
    FATAL_FAILURE = "fatal_failure"


@dataclass(frozen=True)
class NormalizedError:
    code: str
    message: str
    provider: str
    retryable: bool = False
    details: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.code not in ERROR_CODES:
            object.__setattr__(self, "code", "unknown")


@dataclass(frozen=True)
class InvocationOutcome:
    """
    Normalized result of one provider call attempt.

    Exactly one of the variants is populated according to `kind`:
    - SUCCESS: payload (+ provider_meta)
    - PENDING: job_id, eta_seconds (provider accepted the job asynchronously)
    - RETRYABLE_FAILURE / FATAL_FAILURE: error
    """

    kind: OutcomeKind
    provider: str
    model: str
    payload: Any = None
    provider_meta: dict[str, Any] = field(default_factory=dict)
    job_id: str | None = None
    eta_seconds: int | None = None
    error: NormalizedError | None = None
    latency_ms: int = 0
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    )

    def __post_init__(self):
        if self.kind == OutcomeKind.PENDING and not self.job_id:
            raise ValueError("pending outcome requires job_id")
        if self.kind in (OutcomeKind.RETRYABLE_FAILURE, OutcomeKind.FATAL_FAILURE) and not self.error:
            raise ValueError(f"{self.kind.value} outcome requires error")

    @classmethod
    def success(
        cls, *, provider: str, model: str, payload: Any, provider_meta: dict | None = None, latency_ms: int = 0
    ) -> "InvocationOutcome":
        return cls(
            kind=OutcomeKind.SUCCESS,
            provider=provider,
            model=model,
            payload=payload,
            provider_meta=provider_meta or {},
            latency_ms=latency_ms,
        )

    @classmethod
    def pending(
        cls,
        *,
        provider: str,
        model: str,
        job_id: str,
        eta_seconds: int | None = None,
        provider_meta: dict | None = None,
        latency_ms: int = 0,
    ) -> "InvocationOutcome":
        return cls(
            kind=OutcomeKind.PENDING,
            provider=provider,
            model=model,
            job_id=str(job_id),
            eta_seconds=eta_seconds,
            provider_meta=provider_meta or {},
            latency_ms=latency_ms,
        )

    @classmethod
    def failure(cls, *, model: str, error: NormalizedError, latency_ms: int = 0) -> "InvocationOutcome":
        kind = OutcomeKind.RETRYABLE_FAILURE if error.retryable else OutcomeKind.FATAL_FAILURE
        return cls(kind=kind, provider=error.provider, model=model, error=error, latency_ms=latency_ms)

    @classmethod
    def retryable(
        cls, *, provider: str, model: str, code: str, message: str, details: dict | None = None, latency_ms: int = 0
    ) -> "InvocationOutcome":
        error = NormalizedError(
            code=code, message=message, provider=provider, retryable=True, details=details or {}
        )
        return cls.failure(model=model, error=error, latency_ms=latency_ms)

    @classmethod
    def fatal(
        cls, *, provider: str, model: str, message: str, details: dict | None = None, latency_ms: int = 0
    ) -> "InvocationOutcome":
        error = NormalizedError(
            code="bad_request", message=message, provider=provider, retryable=False, details=details or {}
        )
        return cls.failure(model=model, error=error, latency_ms=latency_ms)

    @property
    def is_success(self) -> bool:
        return self.kind == OutcomeKind.SUCCESS

    @property
    def is_pending(self) -> bool:
        return self.kind == OutcomeKind.PENDING

    @property
    def is_failure(self) -> bool:
        return self.error is not None

    @property
    def reason(self) -> str | None:
        if self.error is None:
            return None
        return f"{self.error.code}: {self.error.message}"
