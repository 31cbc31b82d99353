"""Pydantic response models (DTOs) for FastAPI endpoints."""

from typing import Any

from pydantic import BaseModel, Field


class ErrorDTO(BaseModel):
    code: str
    message: str
    provider: str | None = None
    retryable: bool = False
    details: dict[str, Any] = Field(default_factory=dict)


class AttemptDTO(BaseModel):
    order: int
    provider: str
    model: str
    credit_cost: int
    status: str
    reason: str | None = None
    latency_ms: int = 0


class GenerateResponseDTO(BaseModel):
    request_id: str
    status: str
    modality: str
    tier: str
    payload: Any = None
    provider: str | None = None
    model: str | None = None
    job_id: str | None = None
    eta_seconds: int | None = None
    credits_charged: int = 0
    balance_after: int | None = None
    attempts: list[AttemptDTO] = Field(default_factory=list)
    error: ErrorDTO | None = None
    latency_ms: int
    timestamp: str

    @classmethod
    def from_generation_result(cls, result):
        """Convert GenerationResult to DTO."""
        return cls(
            request_id=result.request_id,
            status=result.status,
            modality=result.modality,
            tier=result.tier,
            payload=result.payload,
            provider=result.provider,
            model=result.model,
            job_id=result.job_id,
            eta_seconds=result.eta_seconds,
            credits_charged=result.credits_charged,
            balance_after=result.balance_after,
            attempts=[AttemptDTO(**a.to_dict()) for a in result.attempts],
            error=(
                ErrorDTO(code=result.error.code, message=result.error.message, details=result.error.details)
                if result.error
                else None
            ),
            latency_ms=result.latency_ms,
            timestamp=result.timestamp,
        )


class JobStatusDTO(BaseModel):
    job_id: str
    status: str
    provider: str
    model: str
    payload: Any = None
    eta_seconds: int | None = None
    error: ErrorDTO | None = None
    latency_ms: int = 0
    timestamp: str

    @classmethod
    def from_outcome(cls, job_id: str, outcome):
        """Convert a polled InvocationOutcome to DTO."""
        return cls(
            job_id=outcome.job_id or job_id,
            status=outcome.kind.value,
            provider=outcome.provider,
            model=outcome.model,
            payload=outcome.payload,
            eta_seconds=outcome.eta_seconds,
            error=(
                ErrorDTO(
                    code=outcome.error.code,
                    message=outcome.error.message,
                    provider=outcome.error.provider,
                    retryable=outcome.error.retryable,
                    details=outcome.error.details,
                )
                if outcome.error
                else None
            ),
            latency_ms=outcome.latency_ms,
            timestamp=outcome.timestamp,
        )


class LedgerEntryDTO(BaseModel):
    id: str | None = None
    kind: str
    amount: int
    balance_after: int
    reference_id: str
    reason: str | None = None
    description: str | None = None
    created_at: str | None = None

    @classmethod
    def from_entry(cls, entry):
        return cls(
            id=entry.id,
            kind=entry.kind.value,
            amount=entry.amount,
            balance_after=entry.balance_after,
            reference_id=entry.reference_id,
            reason=entry.reason,
            description=entry.description,
            created_at=entry.created_at.isoformat().replace("+00:00", "Z") if entry.created_at else None,
        )


class CreditBalanceDTO(BaseModel):
    account_id: str
    balance: int
    reserved: int
    available: int
    monthly_allowance: int
    used_this_month: int
    recent_transactions: list[LedgerEntryDTO] = Field(default_factory=list)

    @classmethod
    def from_account(cls, account, entries=()):
        return cls(
            account_id=account.account_id,
            balance=account.balance,
            reserved=account.reserved,
            available=account.available,
            monthly_allowance=account.monthly_allowance,
            used_this_month=account.used_this_month,
            recent_transactions=[LedgerEntryDTO.from_entry(e) for e in entries],
        )


class ChainEntryDTO(BaseModel):
    id: str | None = None
    tier: str
    modality: str
    priority: int
    provider_id: str
    model_id: str

    @classmethod
    def from_entry(cls, entry):
        return cls(
            id=entry.id,
            tier=entry.tier.value,
            modality=entry.modality.value,
            priority=entry.priority,
            provider_id=entry.provider_id,
            model_id=entry.model_id,
        )


class ChainListDTO(BaseModel):
    chains: dict[str, dict[str, list[ChainEntryDTO]]]


class AdminAckDTO(BaseModel):
    ok: bool = True
    changed: int = 1


class HealthResponseDTO(BaseModel):
    status: str
    timestamp: str
    version: str = "1.0.0"
    storage: str | None = None
