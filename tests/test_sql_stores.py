"""
SQL stores against an in-memory SQLite database.

Tables mirror db/schema.sql closely enough for the Core queries in
db/repository.py; db.tables.get_table is monkeypatched to return them, the
same way the reflected PostgreSQL tables are looked up in production.
"""

from uuid import uuid4

import pytest
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    insert,
    select,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from db import repository as repo
from db.stores import (
    SqlCatalogRepository,
    SqlChainRepository,
    SqlCredentialStore,
    SqlGenerationLogRepository,
    SqlLedgerRepository,
    SqlOwnProviderRepository,
)
from dispatch.catalog import ModelCatalog
from dispatch.chain_resolver import FallbackChainResolver
from dispatch.credit_ledger import CreditLedger, Deducted
from dispatch.engine import DispatchEngine
from dispatch.errors import ChainConfigError
from dispatch.provider_invoker import ProviderInvoker
from dispatch.routing_types import (
    GenerationLogRecord,
    LedgerEntryKind,
    LedgerWriteStatus,
    Modality,
    Tier,
)
from dispatch.settings import DispatchSettings
from models.outcome import InvocationOutcome
from providers.base_provider import BaseProvider


def _id_column():
    return Column("id", String, primary_key=True, default=lambda: str(uuid4()))


def _build_tables(metadata):
    tables = {
        "ai_models": Table(
            "ai_models",
            metadata,
            _id_column(),
            Column("provider_id", String, nullable=False),
            Column("model_id", String, nullable=False),
            Column("modality", String, nullable=False),
            Column("credit_cost", Integer, nullable=False),
            Column("is_active", Boolean, nullable=False, default=True),
            Column("is_default", Boolean, nullable=False, default=False),
            Column("display_name", String),
            Column("created_at", DateTime(timezone=True)),
            Column("updated_at", DateTime(timezone=True)),
            UniqueConstraint("provider_id", "model_id", "modality"),
        ),
        "ai_fallback_configs": Table(
            "ai_fallback_configs",
            metadata,
            _id_column(),
            Column("tier", String, nullable=False),
            Column("modality", String, nullable=False),
            Column("priority", Integer, nullable=False),
            Column("provider_id", String, nullable=False),
            Column("model_id", String, nullable=False),
            Column("is_active", Boolean, nullable=False, default=True),
            Column("created_at", DateTime(timezone=True)),
            Column("updated_at", DateTime(timezone=True)),
        ),
        "credit_balances": Table(
            "credit_balances",
            metadata,
            Column("account_id", String, primary_key=True),
            Column("balance", Integer, nullable=False, default=0),
            Column("reserved", Integer, nullable=False, default=0),
            Column("monthly_allowance", Integer, nullable=False, default=0),
            Column("used_this_month", Integer, nullable=False, default=0),
            Column("updated_at", DateTime(timezone=True)),
        ),
        "credit_transactions": Table(
            "credit_transactions",
            metadata,
            _id_column(),
            Column("account_id", String, nullable=False),
            Column("kind", String, nullable=False),
            Column("amount", Integer, nullable=False),
            Column("balance_after", Integer, nullable=False),
            Column("reference_id", String, nullable=False),
            Column("reason", String),
            Column("description", String),
            Column("created_at", DateTime(timezone=True)),
            UniqueConstraint("account_id", "kind", "reference_id"),
        ),
        "platform_api_keys": Table(
            "platform_api_keys",
            metadata,
            _id_column(),
            Column("provider_id", String, nullable=False),
            Column("api_key", String, nullable=False),
            Column("is_active", Boolean, nullable=False, default=True),
            Column("usage_count", Integer, nullable=False, default=0),
            Column("last_used_at", DateTime(timezone=True)),
        ),
        "user_api_keys": Table(
            "user_api_keys",
            metadata,
            _id_column(),
            Column("account_id", String, nullable=False),
            Column("provider_id", String, nullable=False),
            Column("model_id", String, nullable=False),
            Column("modality", String, nullable=False),
            Column("api_key", String, nullable=False),
            Column("label", String),
            Column("is_active", Boolean, nullable=False, default=True),
            Column("created_at", DateTime(timezone=True)),
        ),
        "ai_generation_logs": Table(
            "ai_generation_logs",
            metadata,
            _id_column(),
            Column("account_id", String, nullable=False),
            Column("request_id", String, nullable=False),
            Column("tier", String, nullable=False),
            Column("modality", String, nullable=False),
            Column("status", String, nullable=False),
            Column("model_key", String),
            Column("credit_cost", Integer, nullable=False, default=0),
            Column("latency_ms", Integer, nullable=False, default=0),
            Column("attempts", Integer, nullable=False, default=0),
            Column("error_message", String),
            Column("details", JSON),
            Column("created_at", DateTime(timezone=True)),
        ),
    }
    chains = tables["ai_fallback_configs"]
    Index(
        "ai_fallback_configs_slot",
        chains.c.tier,
        chains.c.modality,
        chains.c.priority,
        unique=True,
        sqlite_where=chains.c.is_active.is_(True),
    )
    return tables


@pytest.fixture
def sql(monkeypatch):
    """Session factory over a shared in-memory SQLite database plus its tables."""
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    metadata = MetaData()
    tables = _build_tables(metadata)
    metadata.create_all(engine)

    import db.tables as db_tables

    def _fake_get_table(name: str):
        if name in tables:
            return tables[name]
        raise ValueError(name)

    monkeypatch.setattr(db_tables, "get_table", _fake_get_table)

    session_factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    yield session_factory, tables
    engine.dispose()


def _insert(session_factory, table, **values):
    with session_factory() as db:
        db.execute(insert(table).values(**values))
        db.commit()


def _add_model(sql, provider_id, model_id, cost, modality="image", is_default=False, is_active=True):
    session_factory, tables = sql
    _insert(
        session_factory,
        tables["ai_models"],
        id=str(uuid4()),
        provider_id=provider_id,
        model_id=model_id,
        modality=modality,
        credit_cost=cost,
        is_active=is_active,
        is_default=is_default,
    )


# ============================================================================
# Catalog and chains
# ============================================================================


@pytest.mark.unit
def test_catalog_reads_and_default_switch(sql):
    session_factory, _ = sql
    _add_model(sql, "fal", "flux-dev", 5, is_default=True)
    _add_model(sql, "stability", "sdxl", 4)
    _add_model(sql, "openai", "gpt-4o", 5, modality="text")
    catalog = SqlCatalogRepository(session_factory)

    assert {m.key for m in catalog.list_models(Modality.IMAGE)} == {"fal/flux-dev", "stability/sdxl"}
    assert catalog.get_model(Modality.IMAGE, "stability", "sdxl").credit_cost == 4
    assert catalog.get_model(Modality.TEXT, "stability", "sdxl") is None

    catalog.set_default(Modality.IMAGE, "stability", "sdxl")

    defaults = [m.key for m in catalog.list_models(Modality.IMAGE) if m.is_default]
    assert defaults == ["stability/sdxl"]
    assert catalog.get_model(Modality.TEXT, "openai", "gpt-4o").is_default is False


@pytest.mark.unit
def test_catalog_set_active(sql):
    session_factory, _ = sql
    _add_model(sql, "fal", "flux-dev", 5)
    catalog = SqlCatalogRepository(session_factory)

    catalog.set_active(Modality.IMAGE, "fal", "flux-dev", False)

    assert catalog.find_models("fal", "flux-dev")[0].is_active is False


@pytest.mark.unit
def test_chain_upsert_replace_reorder_and_deactivate(sql):
    session_factory, _ = sql
    chains = SqlChainRepository(session_factory)

    first = chains.upsert_entry(Tier.CREATOR, Modality.IMAGE, 1, "fal", "flux-dev")
    same_slot = chains.upsert_entry(Tier.CREATOR, Modality.IMAGE, 1, "stability", "sdxl")
    assert same_slot.id == first.id
    assert same_slot.model_key == "stability/sdxl"

    second = chains.upsert_entry(Tier.CREATOR, Modality.IMAGE, 2, "fal", "flux-dev")
    chains.set_priorities({first.id: 2, second.id: 1})
    assert [e.model_key for e in chains.list_entries(Tier.CREATOR, Modality.IMAGE)] == [
        "fal/flux-dev",
        "stability/sdxl",
    ]

    replaced = chains.replace_chain(Tier.CREATOR, Modality.IMAGE, [("openai", "dall-e-3")])
    assert [(e.priority, e.model_key) for e in replaced] == [(1, "openai/dall-e-3")]
    assert chains.get_entry(first.id).is_active is False

    assert chains.deactivate(replaced[0].id) is True
    assert chains.deactivate(replaced[0].id) is False
    assert chains.list_all() == []


@pytest.mark.unit
def test_chain_priority_collision_is_rejected_by_the_database(sql):
    session_factory, tables = sql
    chains = SqlChainRepository(session_factory)
    first = chains.upsert_entry(Tier.CREATOR, Modality.IMAGE, 1, "fal", "flux-dev")
    chains.upsert_entry(Tier.CREATOR, Modality.IMAGE, 2, "stability", "sdxl")

    with pytest.raises(ChainConfigError):
        chains.set_priorities({first.id: 2})

    assert [(e.priority, e.model_key) for e in chains.list_entries(Tier.CREATOR, Modality.IMAGE)] == [
        (1, "fal/flux-dev"),
        (2, "stability/sdxl"),
    ]
    with pytest.raises(IntegrityError):
        _insert(
            session_factory,
            tables["ai_fallback_configs"],
            id="racer",
            tier="creator",
            modality="image",
            priority=1,
            provider_id="openai",
            model_id="dall-e-3",
            is_active=True,
        )


@pytest.mark.unit
def test_resolver_over_sql_stores(sql):
    session_factory, _ = sql
    _add_model(sql, "fal", "flux-dev", 5, is_default=True)
    _add_model(sql, "stability", "sdxl", 4)
    chains = SqlChainRepository(session_factory)
    chains.upsert_entry(Tier.ALL, Modality.IMAGE, 1, "fal", "flux-dev")
    chains.upsert_entry(Tier.STUDIO, Modality.IMAGE, 1, "stability", "sdxl")
    chains.upsert_entry(Tier.STUDIO, Modality.IMAGE, 2, "fal", "flux-dev")

    resolver = FallbackChainResolver(ModelCatalog(SqlCatalogRepository(session_factory)), chains, cache_ttl_seconds=0)

    assert [m.key for m in resolver.resolve(Tier.STUDIO, Modality.IMAGE)] == ["stability/sdxl", "fal/flux-dev"]
    assert [m.key for m in resolver.resolve(Tier.TRIAL, Modality.IMAGE)] == ["fal/flux-dev"]


# ============================================================================
# Ledger
# ============================================================================


@pytest.mark.unit
def test_ledger_reserve_release_and_debit(sql):
    session_factory, _ = sql
    ledger_repo = SqlLedgerRepository(session_factory)
    ledger_repo.open_account("acct-1", balance=20, monthly_allowance=100)

    assert ledger_repo.try_reserve("acct-1", 15) is True
    assert ledger_repo.try_reserve("acct-1", 10) is False
    ledger_repo.release("acct-1", 100)
    assert ledger_repo.get_account("acct-1").reserved == 0

    assert ledger_repo.try_reserve("acct-1", 8) is True
    write = ledger_repo.apply_debit("acct-1", 8, held=8, reference_id="req-1", reason="image")

    assert write.status == LedgerWriteStatus.APPLIED
    assert write.entry.amount == -8
    assert write.entry.balance_after == 12
    account = ledger_repo.get_account("acct-1")
    assert (account.balance, account.reserved, account.used_this_month) == (12, 0, 8)


@pytest.mark.unit
def test_ledger_debit_outcomes(sql):
    session_factory, _ = sql
    ledger_repo = SqlLedgerRepository(session_factory)
    ledger_repo.open_account("acct-1", balance=10)
    ledger_repo.apply_debit("acct-1", 4, held=0, reference_id="req-1", reason="image")

    duplicate = ledger_repo.apply_debit("acct-1", 4, held=0, reference_id="req-1", reason="image")
    short = ledger_repo.apply_debit("acct-1", 7, held=0, reference_id="req-2", reason="image")
    missing = ledger_repo.apply_debit("ghost", 1, held=0, reference_id="req-3", reason="image")

    assert duplicate.status == LedgerWriteStatus.DUPLICATE
    assert short.status == LedgerWriteStatus.INSUFFICIENT
    assert missing.status == LedgerWriteStatus.NO_ACCOUNT
    assert ledger_repo.get_account("acct-1").balance == 6
    assert len(ledger_repo.list_entries("acct-1")) == 1


@pytest.mark.unit
def test_ledger_entry_lookup_by_reference(sql):
    session_factory, _ = sql
    ledger_repo = SqlLedgerRepository(session_factory)
    ledger_repo.open_account("acct-1", balance=10)
    ledger_repo.apply_debit("acct-1", 4, held=0, reference_id="req-1", reason="image")

    entry = ledger_repo.get_entry("acct-1", LedgerEntryKind.USAGE, "req-1")

    assert entry.amount == -4
    assert entry.reference_id == "req-1"
    assert ledger_repo.get_entry("acct-1", LedgerEntryKind.PURCHASE, "req-1") is None
    assert ledger_repo.get_entry("acct-1", LedgerEntryKind.USAGE, "req-2") is None


@pytest.mark.unit
def test_ledger_duplicate_detected_by_unique_constraint(sql, monkeypatch):
    session_factory, _ = sql
    ledger_repo = SqlLedgerRepository(session_factory)
    ledger_repo.open_account("acct-1", balance=10)
    ledger_repo.apply_debit("acct-1", 4, held=0, reference_id="req-1", reason="image")

    # Simulate a concurrent writer that inserted between the check and the insert
    real_lookup = repo.get_credit_transaction
    calls = []

    def _stale_lookup(db, account_id, kind, reference_id):
        calls.append(reference_id)
        if len(calls) == 1:
            return None
        return real_lookup(db, account_id, kind, reference_id)

    monkeypatch.setattr(repo, "get_credit_transaction", _stale_lookup)
    assert ledger_repo.try_reserve("acct-1", 4) is True

    write = ledger_repo.apply_debit("acct-1", 4, held=4, reference_id="req-1", reason="image")

    assert write.status == LedgerWriteStatus.DUPLICATE
    account = ledger_repo.get_account("acct-1")
    assert account.balance == 6
    assert account.reserved == 0


@pytest.mark.unit
def test_credit_ledger_over_sql_repository(sql):
    session_factory, _ = sql
    ledger_repo = SqlLedgerRepository(session_factory)
    ledger_repo.open_account("acct-1", balance=5, monthly_allowance=50)
    ledger = CreditLedger(ledger_repo)

    reservation = ledger.check_and_reserve("acct-1", 5)
    charge = ledger.deduct("acct-1", 5, reason="video", reference_id="req-1", reservation=reservation)
    assert isinstance(charge, Deducted)
    assert charge.balance_after == 0

    ledger.grant("acct-1", 10, kind=LedgerEntryKind.BONUS, reference_id="promo-1")
    ledger.grant("acct-1", 10, kind=LedgerEntryKind.BONUS, reference_id="promo-1")
    with pytest.raises(ValueError):
        ledger.grant("acct-1", -11, kind=LedgerEntryKind.ADJUSTMENT, reference_id="fix-1")
    renewal = ledger.renew_monthly("acct-1", reference_id="2026-10")

    assert renewal.balance_after == 60
    account = ledger.balance("acct-1")
    assert account.balance == 60
    assert account.used_this_month == 0
    assert {e.reference_id for e in ledger.history("acct-1")} == {"req-1", "promo-1", "2026-10"}


# ============================================================================
# Credentials, own providers, generation logs
# ============================================================================


@pytest.mark.unit
def test_platform_keys_rotate_least_recently_used(sql):
    session_factory, tables = sql
    keys = tables["platform_api_keys"]
    _insert(session_factory, keys, id="k1", provider_id="fal", api_key="fal-a", is_active=True, usage_count=0)
    _insert(session_factory, keys, id="k2", provider_id="fal", api_key="fal-b", is_active=True, usage_count=0)
    _insert(session_factory, keys, id="k3", provider_id="fal", api_key="fal-off", is_active=False, usage_count=0)
    store = SqlCredentialStore(session_factory)

    picked = [store.get_active_credential("fal") for _ in range(4)]

    assert sorted(picked[:2]) == ["fal-a", "fal-b"]
    assert picked[2] == picked[0]
    assert picked[3] == picked[1]
    assert "fal-off" not in picked
    assert store.get_active_credential("replicate") is None

    with session_factory() as db:
        counts = dict(db.execute(select(keys.c.id, keys.c.usage_count)).all())
    assert counts == {"k1": 2, "k2": 2, "k3": 0}


@pytest.mark.unit
def test_own_provider_row_becomes_free_model(sql):
    session_factory, tables = sql
    _insert(
        session_factory,
        tables["user_api_keys"],
        id="u1",
        account_id="acct-1",
        provider_id="openai",
        model_id="dall-e-3",
        modality="image",
        api_key="sk-customer",
        label="Studio key",
        is_active=True,
    )
    own = SqlOwnProviderRepository(session_factory)

    config = own.get_own_provider("acct-1", Modality.IMAGE)

    assert config.credential == "sk-customer"
    assert config.model.key == "openai/dall-e-3"
    assert config.model.credit_cost == 0
    assert own.get_own_provider("acct-1", Modality.VIDEO) is None


@pytest.mark.unit
def test_generation_log_row(sql):
    session_factory, tables = sql
    SqlGenerationLogRepository(session_factory).record(
        GenerationLogRecord(
            account_id="acct-1",
            request_id="req-1",
            tier=Tier.CREATOR,
            modality=Modality.IMAGE,
            status="failure",
            model_key=None,
            credit_cost=0,
            latency_ms=12,
            attempts=2,
            error_message="All providers failed",
            extra={"error_code": "all_providers_failed"},
        )
    )

    with session_factory() as db:
        row = db.execute(select(tables["ai_generation_logs"])).mappings().one()
    assert row["tier"] == "creator"
    assert row["attempts"] == 2
    assert row["details"] == {"error_code": "all_providers_failed"}


# ============================================================================
# End to end
# ============================================================================


class _FlakyFirstProvider(BaseProvider):
    """Fails the first model it sees, succeeds on anything else."""

    provider_id = "fal"

    def __init__(self, failing_model_id):
        self._failing_model_id = failing_model_id

    def invoke(self, model, payload, credential, timeout_s=None):
        if model.model_id == self._failing_model_id:
            return InvocationOutcome.retryable(
                provider=self.provider_id, model=model.model_id, code="provider_error", message="503"
            )
        return InvocationOutcome.success(
            provider=self.provider_id, model=model.model_id, payload={"image_url": "https://fal/x.png"}
        )


@pytest.mark.unit
def test_engine_over_sql_stores(sql):
    session_factory, tables = sql
    _add_model(sql, "fal", "flux-dev", 5)
    _add_model(sql, "fal", "flux-schnell", 3)
    _insert(session_factory, tables["platform_api_keys"], id="k1", provider_id="fal", api_key="fal-a")
    chains = SqlChainRepository(session_factory)
    chains.replace_chain(Tier.CREATOR, Modality.IMAGE, [("fal", "flux-dev"), ("fal", "flux-schnell")])
    ledger_repo = SqlLedgerRepository(session_factory)
    ledger_repo.open_account("acct-1", balance=10)
    catalog = ModelCatalog(SqlCatalogRepository(session_factory))
    invoker = ProviderInvoker({"fal": _FlakyFirstProvider("flux-dev")}, max_workers=2)
    engine = DispatchEngine(
        catalog=catalog,
        resolver=FallbackChainResolver(catalog, chains, cache_ttl_seconds=0),
        ledger=CreditLedger(ledger_repo),
        invoker=invoker,
        credentials=SqlCredentialStore(session_factory),
        settings=DispatchSettings(tier_delays={}, rate_limit_backoff_seconds=0.0),
        generation_log=SqlGenerationLogRepository(session_factory),
    )

    try:
        result = engine.generate(Tier.CREATOR, Modality.IMAGE, "acct-1", {"prompt": "fox"}, "req-e2e")
        repeat = engine.generate(Tier.CREATOR, Modality.IMAGE, "acct-1", {"prompt": "fox"}, "req-e2e")
    finally:
        invoker.shutdown()

    assert result.provider_used == "fal/flux-schnell"
    assert result.credits_charged == 3
    account = ledger_repo.get_account("acct-1")
    assert (account.balance, account.reserved) == (7, 0)
    assert repeat.error.code == "duplicate_request"
    assert repeat.attempts == []
    with session_factory() as db:
        logs = db.execute(select(tables["ai_generation_logs"])).mappings().all()
    by_status = {log["status"]: log for log in logs}
    assert set(by_status) == {"success", "failure"}
    assert by_status["success"]["model_key"] == "fal/flux-schnell"
