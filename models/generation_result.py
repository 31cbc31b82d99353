from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

GenerationStatus = Literal["success", "pending", "failure"]

FAILURE_CODES = {
    "no_provider_configured",
    "insufficient_credits",
    "all_providers_failed",
    "fatal_failure",
    "cancelled",
    "duplicate_request",
}

# Attempt statuses recorded per candidate while walking a chain
ATTEMPT_STATUSES = {"success", "pending", "retryable_failure", "fatal_failure", "skipped_for_cost", "cancelled"}


@dataclass(frozen=True)
class AttemptRecord:
    order: int
    provider: str
    model: str
    credit_cost: int
    status: str
    reason: str | None = None
    latency_ms: int = 0

    def __post_init__(self):
        if self.status not in ATTEMPT_STATUSES:
            raise ValueError(f"Unknown attempt status: {self.status}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "order": self.order,
            "provider": self.provider,
            "model": self.model,
            "credit_cost": self.credit_cost,
            "status": self.status,
            "reason": self.reason,
            "latency_ms": self.latency_ms,
        }


@dataclass(frozen=True)
class GenerationError:
    code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.code not in FAILURE_CODES:
            raise ValueError(f"Unknown generation failure code: {self.code}")


@dataclass(frozen=True)
class GenerationResult:
    request_id: str
    status: GenerationStatus
    modality: str
    tier: str
    payload: Any = None
    provider: str | None = None
    model: str | None = None
    job_id: str | None = None
    eta_seconds: int | None = None
    credits_charged: int = 0
    balance_after: int | None = None
    attempts: list[AttemptRecord] = field(default_factory=list)
    error: GenerationError | None = None
    provider_meta: dict[str, Any] = field(default_factory=dict)
    latency_ms: int = 0
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    )

    @property
    def is_success(self) -> bool:
        return self.status == "success"

    @property
    def is_pending(self) -> bool:
        return self.status == "pending"

    @property
    def is_failure(self) -> bool:
        return self.status == "failure"

    @property
    def provider_used(self) -> str | None:
        if self.provider and self.model:
            return f"{self.provider}/{self.model}"
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "status": self.status,
            "modality": self.modality,
            "tier": self.tier,
            "payload": self.payload,
            "provider": self.provider,
            "model": self.model,
            "job_id": self.job_id,
            "eta_seconds": self.eta_seconds,
            "credits_charged": self.credits_charged,
            "balance_after": self.balance_after,
            "attempts": [a.to_dict() for a in self.attempts],
            "error": (
                {"code": self.error.code, "message": self.error.message, "details": self.error.details}
                if self.error
                else None
            ),
            "latency_ms": self.latency_ms,
            "timestamp": self.timestamp,
        }
