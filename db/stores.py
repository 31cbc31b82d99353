"""
SQL-backed implementations of the dispatch repository contracts.

Each method is one transaction opened through db.session.transaction, so the
stores can be shared across request threads.
"""

from collections.abc import Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from db import repository as repo
from db.session import SessionLocal, transaction
from dispatch.errors import ChainConfigError
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

SessionFactory = Callable[[], Session]


def _model(row: dict) -> ModelDescriptor:
    return ModelDescriptor(
        provider_id=row["provider_id"],
        model_id=row["model_id"],
        modality=Modality(row["modality"]),
        credit_cost=int(row["credit_cost"]),
        is_active=bool(row["is_active"]),
        is_default=bool(row["is_default"]),
        display_name=row.get("display_name"),
    )


def _entry(row: dict) -> FallbackChainEntry:
    return FallbackChainEntry(
        tier=Tier(row["tier"]),
        modality=Modality(row["modality"]),
        priority=int(row["priority"]),
        provider_id=row["provider_id"],
        model_id=row["model_id"],
        id=str(row["id"]),
        is_active=bool(row["is_active"]),
    )


def _account(row: dict) -> CreditAccount:
    return CreditAccount(
        account_id=row["account_id"],
        balance=int(row["balance"]),
        monthly_allowance=int(row["monthly_allowance"]),
        used_this_month=int(row["used_this_month"]),
        reserved=int(row["reserved"]),
    )


def _ledger_entry(row: dict) -> LedgerEntry:
    return LedgerEntry(
        account_id=row["account_id"],
        kind=LedgerEntryKind(row["kind"]),
        amount=int(row["amount"]),
        balance_after=int(row["balance_after"]),
        reference_id=row["reference_id"],
        reason=row.get("reason"),
        description=row.get("description"),
        id=str(row["id"]),
        created_at=row.get("created_at"),
    )


class SqlCatalogRepository:
    def __init__(self, session_factory: SessionFactory = SessionLocal):
        self._session_factory = session_factory

    def list_models(self, modality: Modality) -> list[ModelDescriptor]:
        with transaction(self._session_factory) as db:
            return [_model(row) for row in repo.list_ai_models(db, Modality(modality).value)]

    def get_model(self, modality: Modality, provider_id: str, model_id: str) -> ModelDescriptor | None:
        with transaction(self._session_factory) as db:
            row = repo.get_ai_model(db, Modality(modality).value, provider_id, model_id)
        return _model(row) if row else None

    def find_models(self, provider_id: str, model_id: str) -> list[ModelDescriptor]:
        with transaction(self._session_factory) as db:
            return [_model(row) for row in repo.find_ai_models(db, provider_id, model_id)]

    def set_default(self, modality: Modality, provider_id: str, model_id: str) -> None:
        with transaction(self._session_factory) as db:
            repo.set_default_ai_model(db, Modality(modality).value, provider_id, model_id)

    def set_active(self, modality: Modality, provider_id: str, model_id: str, is_active: bool) -> None:
        with transaction(self._session_factory) as db:
            repo.set_ai_model_active(db, Modality(modality).value, provider_id, model_id, is_active)


class SqlChainRepository:
    def __init__(self, session_factory: SessionFactory = SessionLocal):
        self._session_factory = session_factory

    def list_entries(self, tier: Tier, modality: Modality) -> list[FallbackChainEntry]:
        with transaction(self._session_factory) as db:
            rows = repo.list_fallback_entries(db, Tier(tier).value, Modality(modality).value)
        return [_entry(row) for row in rows]

    def list_all(self) -> list[FallbackChainEntry]:
        with transaction(self._session_factory) as db:
            return [_entry(row) for row in repo.list_fallback_entries(db)]

    def get_entry(self, entry_id: str) -> FallbackChainEntry | None:
        with transaction(self._session_factory) as db:
            row = repo.get_fallback_entry(db, entry_id)
        return _entry(row) if row else None

    def upsert_entry(
        self, tier: Tier, modality: Modality, priority: int, provider_id: str, model_id: str
    ) -> FallbackChainEntry:
        try:
            with transaction(self._session_factory) as db:
                row = repo.upsert_fallback_entry(
                    db, Tier(tier).value, Modality(modality).value, priority, provider_id, model_id
                )
        except IntegrityError as e:
            raise ChainConfigError(f"Priority {priority} was taken concurrently; retry the update") from e
        return _entry(row)

    def replace_chain(
        self, tier: Tier, modality: Modality, models: list[tuple[str, str]]
    ) -> list[FallbackChainEntry]:
        try:
            with transaction(self._session_factory) as db:
                rows = repo.replace_fallback_chain(db, Tier(tier).value, Modality(modality).value, models)
        except IntegrityError as e:
            raise ChainConfigError("Chain was changed concurrently; retry the replacement") from e
        return [_entry(row) for row in rows]

    def set_priorities(self, priorities: dict[str, int]) -> None:
        try:
            with transaction(self._session_factory) as db:
                repo.set_fallback_priorities(db, priorities)
        except IntegrityError as e:
            raise ChainConfigError("Duplicate priorities in reordered chain") from e

    def deactivate(self, entry_id: str) -> bool:
        with transaction(self._session_factory) as db:
            return repo.deactivate_fallback_entry(db, entry_id)


class SqlLedgerRepository:
    """
    Ledger over credit_balances and credit_transactions.

    The balance change and its transaction row are written in one database
    transaction. A unique (account_id, kind, reference_id) index makes a
    concurrent duplicate fail on insert; that transaction rolls back and the
    write is reported as a duplicate.
    """

    def __init__(self, session_factory: SessionFactory = SessionLocal):
        self._session_factory = session_factory

    def open_account(self, account_id: str, balance: int = 0, monthly_allowance: int = 0) -> CreditAccount:
        with transaction(self._session_factory) as db:
            repo.create_credit_balance(db, account_id, balance, monthly_allowance)
            return _account(repo.get_credit_balance(db, account_id))

    def get_account(self, account_id: str) -> CreditAccount | None:
        with transaction(self._session_factory) as db:
            row = repo.get_credit_balance(db, account_id)
        return _account(row) if row else None

    def try_reserve(self, account_id: str, amount: int) -> bool:
        with transaction(self._session_factory) as db:
            return repo.reserve_credits(db, account_id, amount)

    def release(self, account_id: str, amount: int) -> None:
        with transaction(self._session_factory) as db:
            repo.release_credits(db, account_id, amount)

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
        kind = LedgerEntryKind.USAGE.value
        try:
            with transaction(self._session_factory) as db:
                row = repo.get_credit_balance(db, account_id)
                if row is None:
                    return LedgerWrite(status=LedgerWriteStatus.NO_ACCOUNT)

                existing = repo.get_credit_transaction(db, account_id, kind, reference_id)
                if existing is not None:
                    repo.release_credits(db, account_id, held)
                    return LedgerWrite(
                        status=LedgerWriteStatus.DUPLICATE,
                        entry=_ledger_entry(existing),
                        account=_account(repo.get_credit_balance(db, account_id)),
                    )

                if not repo.debit_credits(db, account_id, amount, held):
                    return LedgerWrite(status=LedgerWriteStatus.INSUFFICIENT, account=_account(row))

                account = _account(repo.get_credit_balance(db, account_id))
                entry = repo.create_credit_transaction(
                    db,
                    account_id=account_id,
                    kind=kind,
                    amount=-amount,
                    balance_after=account.balance,
                    reference_id=reference_id,
                    reason=reason,
                    description=description,
                )
                return LedgerWrite(status=LedgerWriteStatus.APPLIED, entry=_ledger_entry(entry), account=account)
        except IntegrityError:
            logger.info(
                "Concurrent duplicate debit rolled back",
                extra={"extra_fields": {"account_id": account_id, "reference_id": reference_id}},
            )
            self.release(account_id, held)
            return self._duplicate(account_id, kind, reference_id)

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
        try:
            with transaction(self._session_factory) as db:
                row = repo.get_credit_balance(db, account_id)
                if row is None:
                    return LedgerWrite(status=LedgerWriteStatus.NO_ACCOUNT)

                existing = repo.get_credit_transaction(db, account_id, kind.value, reference_id)
                if existing is not None:
                    return LedgerWrite(
                        status=LedgerWriteStatus.DUPLICATE, entry=_ledger_entry(existing), account=_account(row)
                    )

                if not repo.add_credits(db, account_id, amount, reset_usage=reset_usage):
                    return LedgerWrite(status=LedgerWriteStatus.INSUFFICIENT, account=_account(row))

                account = _account(repo.get_credit_balance(db, account_id))
                entry = repo.create_credit_transaction(
                    db,
                    account_id=account_id,
                    kind=kind.value,
                    amount=amount,
                    balance_after=account.balance,
                    reference_id=reference_id,
                    reason=kind.value,
                    description=description,
                )
                return LedgerWrite(status=LedgerWriteStatus.APPLIED, entry=_ledger_entry(entry), account=account)
        except IntegrityError:
            return self._duplicate(account_id, kind.value, reference_id)

    def get_entry(self, account_id: str, kind: LedgerEntryKind, reference_id: str) -> LedgerEntry | None:
        with transaction(self._session_factory) as db:
            row = repo.get_credit_transaction(db, account_id, LedgerEntryKind(kind).value, reference_id)
        return _ledger_entry(row) if row else None

    def list_entries(self, account_id: str, limit: int = 50) -> list[LedgerEntry]:
        with transaction(self._session_factory) as db:
            rows = repo.list_credit_transactions(db, account_id, limit)
        return [_ledger_entry(row) for row in rows]

    def _duplicate(self, account_id: str, kind: str, reference_id: str) -> LedgerWrite:
        with transaction(self._session_factory) as db:
            existing = repo.get_credit_transaction(db, account_id, kind, reference_id)
            row = repo.get_credit_balance(db, account_id)
        return LedgerWrite(
            status=LedgerWriteStatus.DUPLICATE,
            entry=_ledger_entry(existing) if existing else None,
            account=_account(row) if row else None,
        )


class SqlCredentialStore:
    def __init__(self, session_factory: SessionFactory = SessionLocal):
        self._session_factory = session_factory

    def get_active_credential(self, provider_id: str) -> str | None:
        with transaction(self._session_factory) as db:
            return repo.acquire_platform_api_key(db, provider_id)


class SqlOwnProviderRepository:
    def __init__(self, session_factory: SessionFactory = SessionLocal):
        self._session_factory = session_factory

    def get_own_provider(self, account_id: str, modality: Modality) -> OwnProviderConfig | None:
        with transaction(self._session_factory) as db:
            row = repo.get_user_api_key(db, account_id, Modality(modality).value)
        if row is None:
            return None
        model = ModelDescriptor(
            provider_id=row["provider_id"],
            model_id=row["model_id"],
            modality=Modality(row["modality"]),
            credit_cost=0,
            display_name=row.get("label"),
        )
        return OwnProviderConfig(model=model, credential=row["api_key"])


class SqlGenerationLogRepository:
    def __init__(self, session_factory: SessionFactory = SessionLocal):
        self._session_factory = session_factory

    def record(self, record: GenerationLogRecord) -> None:
        with transaction(self._session_factory) as db:
            repo.create_generation_log(
                db,
                account_id=record.account_id,
                request_id=record.request_id,
                tier=Tier(record.tier).value,
                modality=Modality(record.modality).value,
                status=record.status,
                model_key=record.model_key,
                credit_cost=record.credit_cost,
                latency_ms=record.latency_ms,
                attempts=record.attempts,
                error_message=record.error_message,
                details=record.extra,
            )
