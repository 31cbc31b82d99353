import threading

import pytest
from dotenv import load_dotenv

from dispatch.catalog import ModelCatalog
from dispatch.chain_resolver import FallbackChainResolver
from dispatch.credit_ledger import CreditLedger
from dispatch.engine import DispatchEngine
from dispatch.provider_invoker import ProviderInvoker
from dispatch.repositories import (
    InMemoryCatalogRepository,
    InMemoryChainRepository,
    InMemoryCredentialStore,
    InMemoryGenerationLogRepository,
    InMemoryLedgerRepository,
    InMemoryOwnProviderRepository,
)
from dispatch.routing_types import FallbackChainEntry, Modality, ModelDescriptor, Tier
from dispatch.settings import DispatchSettings
from models.outcome import InvocationOutcome
from providers.base_provider import BaseProvider

# Load environment variables from .env file for tests
load_dotenv()


class ScriptedProvider(BaseProvider):
    """
    Adapter whose answer per model_id is scripted by the test.

    A script step is either an InvocationOutcome factory taking the model, or
    a threading.Event the call blocks on before returning a success.
    """

    def __init__(self, provider_id: str, call_log: list):
        self.provider_id = provider_id
        self.script: dict = {}
        self.poll_script: dict = {}
        self.credentials: list[str] = []
        self._call_log = call_log

    def invoke(self, model, payload, credential, timeout_s=None):
        self._call_log.append(model.key)
        self.credentials.append(credential)
        step = self.script.get(model.model_id, DispatchHarness.success())
        if isinstance(step, threading.Event):
            step.wait(5)
            return DispatchHarness.success()(model)
        return step(model)

    def poll(self, model, job_id, credential, timeout_s=None):
        step = self.poll_script.get(job_id)
        if step is None:
            return super().poll(model, job_id, credential, timeout_s)
        return step(model)


class DispatchHarness:
    """In-memory repositories and scripted providers wired into a DispatchEngine."""

    def __init__(self):
        self.catalog_repo = InMemoryCatalogRepository()
        self.chain_repo = InMemoryChainRepository()
        self.ledger_repo = InMemoryLedgerRepository()
        self.credentials = InMemoryCredentialStore()
        self.own_providers = InMemoryOwnProviderRepository()
        self.generation_log = InMemoryGenerationLogRepository()
        self.calls: list[str] = []
        self.providers: dict[str, ScriptedProvider] = {}
        self.settings = DispatchSettings(tier_delays={}, rate_limit_backoff_seconds=0.0)
        self._invokers: list[ProviderInvoker] = []

    # -- outcome factories ---------------------------------------------

    @staticmethod
    def success(payload=None):
        return lambda model: InvocationOutcome.success(
            provider=model.provider_id, model=model.model_id, payload=payload or {"image_url": "https://cdn/x.png"}
        )

    @staticmethod
    def retryable(code="provider_error", message="upstream 503"):
        return lambda model: InvocationOutcome.retryable(
            provider=model.provider_id, model=model.model_id, code=code, message=message
        )

    @staticmethod
    def fatal(message="prompt rejected"):
        return lambda model: InvocationOutcome.fatal(provider=model.provider_id, model=model.model_id, message=message)

    @staticmethod
    def pending(job_id="job-1", eta_seconds=60):
        return lambda model: InvocationOutcome.pending(
            provider=model.provider_id, model=model.model_id, job_id=job_id, eta_seconds=eta_seconds
        )

    # -- setup ---------------------------------------------------------

    def provider(self, provider_id: str) -> ScriptedProvider:
        if provider_id not in self.providers:
            self.providers[provider_id] = ScriptedProvider(provider_id, self.calls)
            self.credentials.set_keys(provider_id, [f"{provider_id}-key"])
        return self.providers[provider_id]

    def add_model(
        self,
        provider_id: str,
        model_id: str,
        credit_cost: int,
        modality: Modality = Modality.IMAGE,
        *,
        is_active: bool = True,
        is_default: bool = False,
        outcome=None,
    ) -> ModelDescriptor:
        model = ModelDescriptor(
            provider_id=provider_id,
            model_id=model_id,
            modality=modality,
            credit_cost=credit_cost,
            is_active=is_active,
            is_default=is_default,
        )
        self.catalog_repo.add(model)
        adapter = self.provider(provider_id)
        if outcome is not None:
            adapter.script[model_id] = outcome
        return model

    def chain(self, tier: Tier, *models: ModelDescriptor, modality: Modality = Modality.IMAGE) -> None:
        self.chain_repo.replace_chain(tier, modality, [(m.provider_id, m.model_id) for m in models])

    def add_entry(self, tier: Tier, priority: int, model: ModelDescriptor) -> FallbackChainEntry:
        return self.chain_repo.upsert_entry(tier, model.modality, priority, model.provider_id, model.model_id)

    def open_account(self, account_id: str = "acct-1", balance: int = 0, monthly_allowance: int = 0):
        return self.ledger_repo.open_account(account_id, balance=balance, monthly_allowance=monthly_allowance)

    # -- wiring --------------------------------------------------------

    def resolver(self, cache_ttl_seconds: float = 0) -> FallbackChainResolver:
        return FallbackChainResolver(
            ModelCatalog(self.catalog_repo), self.chain_repo, cache_ttl_seconds=cache_ttl_seconds
        )

    def ledger(self) -> CreditLedger:
        return CreditLedger(self.ledger_repo)

    def engine(self, settings: DispatchSettings | None = None) -> DispatchEngine:
        invoker = ProviderInvoker(dict(self.providers), max_workers=4)
        self._invokers.append(invoker)
        return DispatchEngine(
            catalog=ModelCatalog(self.catalog_repo),
            resolver=self.resolver(),
            ledger=self.ledger(),
            invoker=invoker,
            credentials=self.credentials,
            settings=settings or self.settings,
            own_providers=self.own_providers,
            generation_log=self.generation_log,
        )

    def balance(self, account_id: str = "acct-1") -> int:
        return self.ledger_repo.get_account(account_id).balance

    def reserved(self, account_id: str = "acct-1") -> int:
        return self.ledger_repo.get_account(account_id).reserved

    def close(self) -> None:
        for invoker in self._invokers:
            invoker.shutdown()


@pytest.fixture
def harness():
    """Fresh in-memory dispatch stack; providers are scripted per test."""
    h = DispatchHarness()
    yield h
    h.close()
