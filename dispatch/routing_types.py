from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Tier(str, Enum):
    ALL = "all"
    TRIAL = "trial"
    CREATOR = "creator"
    STUDIO = "studio"
    ENTERPRISE = "enterprise"


class Modality(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"


class LedgerEntryKind(str, Enum):
    SUBSCRIPTION_CREDIT = "subscription_credit"
    PURCHASE = "purchase"
    USAGE = "usage"
    REFUND = "refund"
    BONUS = "bonus"
    ADJUSTMENT = "adjustment"


def model_key(provider_id: str, model_id: str) -> str:
    return f"{provider_id}/{model_id}"


@dataclass(frozen=True)
class ModelDescriptor:
    provider_id: str
    model_id: str
    modality: Modality
    credit_cost: int
    is_active: bool = True
    is_default: bool = False
    display_name: str | None = None

    def __post_init__(self):
        if self.credit_cost < 0:
            raise ValueError(f"credit_cost must be non-negative, got {self.credit_cost}")
        if not isinstance(self.modality, Modality):
            object.__setattr__(self, "modality", Modality(self.modality))

    @property
    def key(self) -> str:
        return model_key(self.provider_id, self.model_id)

    @property
    def is_free(self) -> bool:
        return self.credit_cost == 0


@dataclass(frozen=True)
class FallbackChainEntry:
    tier: Tier
    modality: Modality
    priority: int
    provider_id: str
    model_id: str
    id: str | None = None
    is_active: bool = True

    def __post_init__(self):
        if self.priority < 1:
            raise ValueError(f"priority must be >= 1, got {self.priority}")
        if not isinstance(self.tier, Tier):
            object.__setattr__(self, "tier", Tier(self.tier))
        if not isinstance(self.modality, Modality):
            object.__setattr__(self, "modality", Modality(self.modality))

    @property
    def model_key(self) -> str:
        return model_key(self.provider_id, self.model_id)


@dataclass(frozen=True)
class CreditAccount:
    account_id: str
    balance: int = 0
    monthly_allowance: int = 0
    used_this_month: int = 0
    reserved: int = 0

    @property
    def available(self) -> int:
        return self.balance - self.reserved


@dataclass(frozen=True)
class LedgerEntry:
    account_id: str
    kind: LedgerEntryKind
    amount: int  # positive for credit, negative for debit
    balance_after: int
    reference_id: str
    reason: str | None = None
    description: str | None = None
    id: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class OwnProviderConfig:
    """Bring-your-own-key model an account supplies for one modality."""

    model: ModelDescriptor
    credential: str


@dataclass(frozen=True)
class GenerationLogRecord:
    account_id: str
    request_id: str
    tier: Tier
    modality: Modality
    status: str
    model_key: str | None
    credit_cost: int
    latency_ms: int
    attempts: int
    error_message: str | None = None
    extra: dict = field(default_factory=dict)


class NextAction(str, Enum):
    ACCEPT = "accept"
    ADVANCE = "advance"
    SKIP_FOR_COST = "skip_for_cost"
    STOP_FATAL = "stop_fatal"
    STOP_INSUFFICIENT = "stop_insufficient"


@dataclass(frozen=True)
class FallbackDecision:
    action: NextAction
    reason: str
    backoff_seconds: float = 0.0


class LedgerWriteStatus(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    INSUFFICIENT = "insufficient"
    NO_ACCOUNT = "no_account"


@dataclass(frozen=True)
class LedgerWrite:
    status: LedgerWriteStatus
    entry: LedgerEntry | None = None
    account: CreditAccount | None = None
