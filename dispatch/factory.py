"""
Wires the dispatch engine from configuration.

With DATABASE_URL set every repository is SQL-backed; otherwise the catalog
and chains are seeded from model_catalog.yaml into in-memory repositories and
provider keys come from <PROVIDER>_API_KEY variables.
"""

from dataclasses import dataclass

from config.config import Config
from dispatch.admin import CatalogAdmin
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
    load_catalog_seed,
)
from dispatch.settings import DispatchSettings
from providers import build_default_providers
from utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class DispatchServices:
    engine: DispatchEngine
    admin: CatalogAdmin
    ledger: CreditLedger
    invoker: ProviderInvoker

    def shutdown(self) -> None:
        self.invoker.shutdown()


def build_services(config: Config | None = None) -> DispatchServices:
    config = config or Config()
    settings = DispatchSettings.from_yaml(config.DISPATCH_SETTINGS_PATH)
    providers = build_default_providers()

    if config.uses_database:
        from db.stores import (
            SqlCatalogRepository,
            SqlChainRepository,
            SqlCredentialStore,
            SqlGenerationLogRepository,
            SqlLedgerRepository,
            SqlOwnProviderRepository,
        )

        catalog_repo = SqlCatalogRepository()
        chain_repo = SqlChainRepository()
        ledger_repo = SqlLedgerRepository()
        credentials = SqlCredentialStore()
        own_providers = SqlOwnProviderRepository()
        generation_log = SqlGenerationLogRepository()
    else:
        models, entries = load_catalog_seed(config.MODEL_CATALOG_PATH)
        catalog_repo = InMemoryCatalogRepository(models)
        chain_repo = InMemoryChainRepository(entries)
        ledger_repo = InMemoryLedgerRepository()
        if config.DEV_ACCOUNT_ID:
            ledger_repo.open_account(config.DEV_ACCOUNT_ID, balance=config.DEV_ACCOUNT_CREDITS)
        credentials = InMemoryCredentialStore.from_env(sorted(providers))
        own_providers = InMemoryOwnProviderRepository()
        generation_log = InMemoryGenerationLogRepository()

    catalog = ModelCatalog(catalog_repo)
    resolver = FallbackChainResolver(catalog, chain_repo, cache_ttl_seconds=config.CHAIN_CACHE_TTL_SECONDS)
    ledger = CreditLedger(ledger_repo)
    invoker = ProviderInvoker(providers, max_workers=config.PROVIDER_MAX_WORKERS)

    engine = DispatchEngine(
        catalog=catalog,
        resolver=resolver,
        ledger=ledger,
        invoker=invoker,
        credentials=credentials,
        settings=settings,
        own_providers=own_providers,
        generation_log=generation_log,
    )

    logger.info(
        "Dispatch engine ready",
        extra={
            "extra_fields": {
                "storage": config.get_storage_info(),
                "providers": sorted(providers),
                "chain_cache_ttl_seconds": config.CHAIN_CACHE_TTL_SECONDS,
            }
        },
    )
    return DispatchServices(
        engine=engine,
        admin=CatalogAdmin(catalog_repo, chain_repo, resolver),
        ledger=ledger,
        invoker=invoker,
    )
