"""
Repository contracts consumed by the dispatch core, plus thread-safe in-memory
implementations used for development mode and tests.

SQL-backed implementations live in db/stores.py.
"""

from __future__ import annotations

import itertools
import os
import threading
import uuid
from collections import defaultdict
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

import yaml

from dispatch.routing_types import (
    CreditAccount,
    FallbackChainEntry,
    GenerationLogRecord,
    LedgerEntry,
    LedgerEntryKind,
    LedgerWrite,
    LedgerWriteStatus,
    Modality,
    ModelDescriptor,
    OwnProviderConfig,
    Tier,
)
from utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_CATALOG_PATH = Path(__file__).resolve().parent.parent / "config" / "model_catalog.yaml"


class CatalogRepository(Protocol):
    def list_models(self, modality: Modality) -> list[ModelDescriptor]: ...

    def get_model(self, modality: Modality, provider_id: str, model_id: str) -> ModelDescriptor | None: ...

    def find_models(self, provider_id: str, model_id: str) -> list[ModelDescriptor]: ...

    def set_default(self, modality: Modality, provider_id: str, model_id: str) -> None: ...

    def set_active(self, modality: Modality, provider_id: str, model_id: str, is_active: bool) -> None: ...


class ChainRepository(Protocol):
    def list_entries(self, tier: Tier, modality: Modality) -> list[FallbackChainEntry]: ...

    def list_all(self) -> list[FallbackChainEntry]: ...

    def get_entry(self, entry_id: str) -> FallbackChainEntry | None: ...

    def upsert_entry(
        self, tier: Tier, modality: Modality, priority: int, provider_id: str, model_id: str
    ) -> FallbackChainEntry: ...

    def replace_chain(
        self, tier: Tier, modality: Modality, models: list[tuple[str, str]]
    ) -> list[FallbackChainEntry]: ...

    def set_priorities(self, priorities: dict[str, int]) -> None: ...

    def deactivate(self, entry_id: str) -> bool: ...


class LedgerRepository(Protocol):
    def get_account(self, account_id: str) -> CreditAccount | None: ...

    def try_reserve(self, account_id: str, amount: int) -> bool: ...

    def release(self, account_id: str, amount: int) -> None: ...

    def apply_debit(
        self,
        account_id: str,
        amount: int,
        *,
        held: int,
        reference_id: str,
        reason: str | None,
        description: str | None = None,
    ) -> LedgerWrite: ...

    def apply_credit(
        self,
        account_id: str,
        amount: int,
        *,
        kind: LedgerEntryKind,
        reference_id: str,
        description: str | None = None,
        reset_usage: bool = False,
    ) -> LedgerWrite: ...

    def get_entry(self, account_id: str, kind: LedgerEntryKind, reference_id: str) -> LedgerEntry | None: ...

    def list_entries(self, account_id: str, limit: int = 50) -> list[LedgerEntry]: ...


class CredentialStore(Protocol):
    def get_active_credential(self, provider_id: str) -> str | None: ...


class OwnProviderRepository(Protocol):
    def get_own_provider(self, account_id: str, modality: Modality) -> OwnProviderConfig | None: ...


class GenerationLogRepository(Protocol):
    def record(self, record: GenerationLogRecord) -> None: ...


# ============================================================================
# CATALOG SEED (YAML)
# ============================================================================


def load_catalog_seed(path: str | None = None) -> tuple[list[ModelDescriptor], list[FallbackChainEntry]]:
    """
    Read models and fallback chains from the development catalog YAML.

    Raises:
        ValueError: file missing or malformed
    """
    catalog_path = Path(path) if path else Path(os.getenv("MODEL_CATALOG_PATH") or DEFAULT_CATALOG_PATH)
    if not catalog_path.exists():
        raise ValueError(f"Model catalog not found at {catalog_path}")

    data = yaml.safe_load(catalog_path.read_text(encoding="utf-8"))
    if not data or "models" not in data:
        raise ValueError("Invalid model catalog: missing models")

    models: list[ModelDescriptor] = []
    for raw in data["models"]:
        required = ["provider", "model", "modality", "credit_cost"]
        if any(key not in raw for key in required):
            raise ValueError(f"Missing required fields in catalog model: {raw}")
        models.append(
            ModelDescriptor(
                provider_id=raw["provider"],
                model_id=raw["model"],
                modality=Modality(raw["modality"]),
                credit_cost=int(raw["credit_cost"]),
                is_active=bool(raw.get("active", True)),
                is_default=bool(raw.get("default", False)),
                display_name=raw.get("name"),
            )
        )

    entries: list[FallbackChainEntry] = []
    for tier_name, by_modality in (data.get("fallback_chains") or {}).items():
        tier = Tier(tier_name)
        if not isinstance(by_modality, dict):
            raise ValueError(f"Invalid fallback chain block for tier {tier_name}")
        for modality_name, keys in by_modality.items():
            modality = Modality(modality_name)
            for priority, key in enumerate(keys or [], start=1):
                provider_id, _, model_id = str(key).partition("/")
                if not model_id:
                    raise ValueError(f"Chain entry must be 'provider/model', got {key!r}")
                entries.append(
                    FallbackChainEntry(
                        tier=tier,
                        modality=modality,
                        priority=priority,
                        provider_id=provider_id,
                        model_id=model_id,
                        id=str(uuid.uuid4()),
                    )
                )

    return models, entries


# ============================================================================
# IN-MEMORY IMPLEMENTATIONS
# ============================================================================


class InMemoryCatalogRepository:
    def __init__(self, models: list[ModelDescriptor] | None = None):
        self._lock = threading.Lock()
        self._models: dict[tuple[Modality, str, str], ModelDescriptor] = {}
        for model in models or []:
            self.add(model)

    def add(self, model: ModelDescriptor) -> None:
        with self._lock:
            self._models[(model.modality, model.provider_id, model.model_id)] = model

    def list_models(self, modality: Modality) -> list[ModelDescriptor]:
        with self._lock:
            return [m for (mod, _, _), m in self._models.items() if mod == modality]

    def get_model(self, modality: Modality, provider_id: str, model_id: str) -> ModelDescriptor | None:
        with self._lock:
            return self._models.get((Modality(modality), provider_id, model_id))

    def find_models(self, provider_id: str, model_id: str) -> list[ModelDescriptor]:
        with self._lock:
            return [m for m in self._models.values() if m.provider_id == provider_id and m.model_id == model_id]

    def set_default(self, modality: Modality, provider_id: str, model_id: str) -> None:
        with self._lock:
            for key, model in list(self._models.items()):
                if key[0] != modality:
                    continue
                is_target = key[1] == provider_id and key[2] == model_id
                if model.is_default != is_target:
                    self._models[key] = replace(model, is_default=is_target)

    def set_active(self, modality: Modality, provider_id: str, model_id: str, is_active: bool) -> None:
        with self._lock:
            key = (modality, provider_id, model_id)
            if key in self._models:
                self._models[key] = replace(self._models[key], is_active=is_active)


class InMemoryChainRepository:
    def __init__(self, entries: list[FallbackChainEntry] | None = None):
        self._lock = threading.Lock()
        self._entries: dict[str, FallbackChainEntry] = {}
        for entry in entries or []:
            entry_id = entry.id or str(uuid.uuid4())
            self._entries[entry_id] = replace(entry, id=entry_id)

    def list_entries(self, tier: Tier, modality: Modality) -> list[FallbackChainEntry]:
        with self._lock:
            return [
                e
                for e in self._entries.values()
                if e.is_active and e.tier == tier and e.modality == modality
            ]

    def list_all(self) -> list[FallbackChainEntry]:
        with self._lock:
            return [e for e in self._entries.values() if e.is_active]

    def get_entry(self, entry_id: str) -> FallbackChainEntry | None:
        with self._lock:
            return self._entries.get(entry_id)

    def upsert_entry(
        self, tier: Tier, modality: Modality, priority: int, provider_id: str, model_id: str
    ) -> FallbackChainEntry:
        with self._lock:
            for entry_id, entry in self._entries.items():
                if entry.is_active and entry.tier == tier and entry.modality == modality and entry.priority == priority:
                    updated = replace(entry, provider_id=provider_id, model_id=model_id)
                    self._entries[entry_id] = updated
                    return updated
            created = FallbackChainEntry(
                tier=tier,
                modality=modality,
                priority=priority,
                provider_id=provider_id,
                model_id=model_id,
                id=str(uuid.uuid4()),
            )
            self._entries[created.id] = created
            return created

    def replace_chain(
        self, tier: Tier, modality: Modality, models: list[tuple[str, str]]
    ) -> list[FallbackChainEntry]:
        with self._lock:
            for entry_id, entry in list(self._entries.items()):
                if entry.tier == tier and entry.modality == modality:
                    del self._entries[entry_id]
            created = []
            for priority, (provider_id, model_id) in enumerate(models, start=1):
                entry = FallbackChainEntry(
                    tier=tier,
                    modality=modality,
                    priority=priority,
                    provider_id=provider_id,
                    model_id=model_id,
                    id=str(uuid.uuid4()),
                )
                self._entries[entry.id] = entry
                created.append(entry)
            return created

    def set_priorities(self, priorities: dict[str, int]) -> None:
        with self._lock:
            for entry_id, priority in priorities.items():
                if entry_id in self._entries:
                    self._entries[entry_id] = replace(self._entries[entry_id], priority=priority)

    def deactivate(self, entry_id: str) -> bool:
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None or not entry.is_active:
                return False
            self._entries[entry_id] = replace(entry, is_active=False)
            return True


class InMemoryLedgerRepository:
    """
    Balances and audit entries guarded by a single lock.

    Every mutation re-checks its precondition while holding the lock, which
    gives the same guarantee as a conditional UPDATE in the SQL store.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._accounts: dict[str, CreditAccount] = {}
        self._entries: list[LedgerEntry] = []
        self._references: dict[tuple[str, str, str], LedgerEntry] = {}

    def open_account(self, account_id: str, balance: int = 0, monthly_allowance: int = 0) -> CreditAccount:
        if balance < 0 or monthly_allowance < 0:
            raise ValueError("balance and monthly_allowance must be non-negative")
        account = CreditAccount(account_id=account_id, balance=balance, monthly_allowance=monthly_allowance)
        with self._lock:
            self._accounts[account_id] = account
        return account

    def get_account(self, account_id: str) -> CreditAccount | None:
        with self._lock:
            return self._accounts.get(account_id)

    def try_reserve(self, account_id: str, amount: int) -> bool:
        with self._lock:
            account = self._accounts.get(account_id)
            if account is None or account.balance - account.reserved < amount:
                return False
            self._accounts[account_id] = replace(account, reserved=account.reserved + amount)
            return True

    def release(self, account_id: str, amount: int) -> None:
        with self._lock:
            account = self._accounts.get(account_id)
            if account is None:
                return
            self._accounts[account_id] = replace(account, reserved=max(account.reserved - amount, 0))

    def apply_debit(
        self,
        account_id: str,
        amount: int,
        *,
        held: int,
        reference_id: str,
        reason: str | None,
        description: str | None = None,
    ) -> LedgerWrite:
        ref_key = (account_id, LedgerEntryKind.USAGE.value, reference_id)
        with self._lock:
            account = self._accounts.get(account_id)
            if account is None:
                return LedgerWrite(status=LedgerWriteStatus.NO_ACCOUNT)

            existing = self._references.get(ref_key)
            if existing is not None:
                account = replace(account, reserved=max(account.reserved - held, 0))
                self._accounts[account_id] = account
                return LedgerWrite(status=LedgerWriteStatus.DUPLICATE, entry=existing, account=account)

            if account.balance - account.reserved + held < amount:
                return LedgerWrite(status=LedgerWriteStatus.INSUFFICIENT, account=account)

            account = replace(
                account,
                balance=account.balance - amount,
                reserved=max(account.reserved - held, 0),
                used_this_month=account.used_this_month + amount,
            )
            self._accounts[account_id] = account
            entry = self._append(
                account,
                kind=LedgerEntryKind.USAGE,
                amount=-amount,
                reference_id=reference_id,
                reason=reason,
                description=description,
            )
            self._references[ref_key] = entry
            return LedgerWrite(status=LedgerWriteStatus.APPLIED, entry=entry, account=account)

    def apply_credit(
        self,
        account_id: str,
        amount: int,
        *,
        kind: LedgerEntryKind,
        reference_id: str,
        description: str | None = None,
        reset_usage: bool = False,
    ) -> LedgerWrite:
        ref_key = (account_id, kind.value, reference_id)
        with self._lock:
            account = self._accounts.get(account_id)
            if account is None:
                return LedgerWrite(status=LedgerWriteStatus.NO_ACCOUNT)

            existing = self._references.get(ref_key)
            if existing is not None:
                return LedgerWrite(status=LedgerWriteStatus.DUPLICATE, entry=existing, account=account)

            # Adjustments may be negative but never overdraw
            if account.balance + amount < 0:
                return LedgerWrite(status=LedgerWriteStatus.INSUFFICIENT, account=account)

            account = replace(
                account,
                balance=account.balance + amount,
                used_this_month=0 if reset_usage else account.used_this_month,
            )
            self._accounts[account_id] = account
            entry = self._append(
                account,
                kind=kind,
                amount=amount,
                reference_id=reference_id,
                reason=kind.value,
                description=description,
            )
            self._references[ref_key] = entry
            return LedgerWrite(status=LedgerWriteStatus.APPLIED, entry=entry, account=account)

    def get_entry(self, account_id: str, kind: LedgerEntryKind, reference_id: str) -> LedgerEntry | None:
        with self._lock:
            return self._references.get((account_id, LedgerEntryKind(kind).value, reference_id))

    def list_entries(self, account_id: str, limit: int = 50) -> list[LedgerEntry]:
        with self._lock:
            entries = [e for e in self._entries if e.account_id == account_id]
        return list(reversed(entries))[:limit]

    def _append(self, account: CreditAccount, **fields: Any) -> LedgerEntry:
        entry = LedgerEntry(
            account_id=account.account_id,
            balance_after=account.balance,
            id=str(uuid.uuid4()),
            created_at=datetime.now(timezone.utc),
            **fields,
        )
        self._entries.append(entry)
        return entry


class InMemoryCredentialStore:
    """
    Round-robin over the keys configured for each provider.
    """

    def __init__(self, keys: dict[str, list[str]] | None = None):
        self._lock = threading.Lock()
        self._cycles: dict[str, Any] = {}
        self._keys: dict[str, list[str]] = {}
        for provider_id, provider_keys in (keys or {}).items():
            self.set_keys(provider_id, provider_keys)

    @classmethod
    def from_env(cls, provider_ids: list[str]) -> "InMemoryCredentialStore":
        """
        Build from <PROVIDER>_API_KEY variables; comma-separated values rotate.
        """
        keys: dict[str, list[str]] = {}
        for provider_id in provider_ids:
            raw = os.getenv(f"{provider_id.upper()}_API_KEY", "")
            values = [k.strip() for k in raw.split(",") if k.strip()]
            if values:
                keys[provider_id] = values
        return cls(keys)

    def set_keys(self, provider_id: str, keys: list[str]) -> None:
        with self._lock:
            self._keys[provider_id] = list(keys)
            self._cycles[provider_id] = itertools.cycle(self._keys[provider_id]) if keys else None

    def get_active_credential(self, provider_id: str) -> str | None:
        with self._lock:
            cycle = self._cycles.get(provider_id)
            if cycle is None:
                return None
            return next(cycle)


class InMemoryOwnProviderRepository:
    def __init__(self):
        self._lock = threading.Lock()
        self._configs: dict[tuple[str, Modality], OwnProviderConfig] = {}

    def set_own_provider(self, account_id: str, config: OwnProviderConfig) -> None:
        with self._lock:
            self._configs[(account_id, config.model.modality)] = config

    def get_own_provider(self, account_id: str, modality: Modality) -> OwnProviderConfig | None:
        with self._lock:
            return self._configs.get((account_id, Modality(modality)))


class InMemoryGenerationLogRepository:
    def __init__(self):
        self._lock = threading.Lock()
        self._records: dict[str, list[GenerationLogRecord]] = defaultdict(list)

    def record(self, record: GenerationLogRecord) -> None:
        with self._lock:
            self._records[record.account_id].append(record)

    def list_for_account(self, account_id: str) -> list[GenerationLogRecord]:
        with self._lock:
            return list(self._records.get(account_id, []))
