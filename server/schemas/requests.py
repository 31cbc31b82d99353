"""Pydantic request models for FastAPI endpoints."""

from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from dispatch.routing_types import LedgerEntryKind, Modality, Tier


class GenerateRequest(BaseModel):
    tier: Tier
    modality: Modality
    account_id: str = Field(..., min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    request_id: str = Field(..., min_length=1, max_length=128)
    timeout_s: Optional[float] = Field(None, gt=0, le=600)

    @field_validator("tier")
    @classmethod
    def tier_must_be_concrete(cls, value: Tier) -> Tier:
        if value == Tier.ALL:
            raise ValueError("tier 'all' is a chain scope, not an account tier")
        return value


class ChainEntryRequest(BaseModel):
    tier: Tier
    modality: Modality
    priority: int = Field(..., ge=1)
    provider_id: str = Field(..., min_length=1)
    model_id: str = Field(..., min_length=1)


class ChainModelRef(BaseModel):
    provider_id: str = Field(..., min_length=1)
    model_id: str = Field(..., min_length=1)


class ReplaceChainRequest(BaseModel):
    tier: Tier
    modality: Modality
    models: list[ChainModelRef] = Field(default_factory=list)


class ReorderChainRequest(BaseModel):
    tier: Tier
    modality: Modality
    priorities: dict[str, int] = Field(..., min_length=1)


class DefaultModelRequest(BaseModel):
    modality: Modality
    provider_id: str = Field(..., min_length=1)
    model_id: str = Field(..., min_length=1)


class ModelActiveRequest(BaseModel):
    provider_id: str = Field(..., min_length=1)
    model_id: str = Field(..., min_length=1)
    is_active: bool
    modality: Optional[Modality] = None


class GrantCreditsRequest(BaseModel):
    amount: int
    kind: LedgerEntryKind = LedgerEntryKind.PURCHASE
    reference_id: str = Field(..., min_length=1)
    description: Optional[str] = None
