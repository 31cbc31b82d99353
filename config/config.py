import os
from pathlib import Path

from dotenv import load_dotenv

CONFIG_DIR = Path(__file__).parent


def _split_keys(raw: str | None) -> set[str]:
    return {k.strip() for k in (raw or '').split(',') if k.strip()}


class Config:
    """Configuration management for the dispatch service."""

    def __init__(self):
        """Initialize configuration with environment variables."""
        # Load environment variables from .env file if it exists
        env_path = Path(__file__).parent.parent / '.env'
        if env_path.exists():
            load_dotenv(dotenv_path=env_path)

        # Storage
        self.DATABASE_URL = os.getenv('DATABASE_URL')
        self.MODEL_CATALOG_PATH = os.getenv('MODEL_CATALOG_PATH') or str(CONFIG_DIR / 'model_catalog.yaml')
        self.DISPATCH_SETTINGS_PATH = os.getenv('DISPATCH_SETTINGS_PATH') or str(CONFIG_DIR / 'dispatch.yaml')

        # API access
        self.API_KEYS = _split_keys(os.getenv('API_KEYS'))
        self.ADMIN_API_KEYS = _split_keys(os.getenv('ADMIN_API_KEYS'))

        # Dispatch
        self.CHAIN_CACHE_TTL_SECONDS = float(os.getenv('CHAIN_CACHE_TTL_SECONDS', '5'))
        self.PROVIDER_MAX_WORKERS = int(os.getenv('PROVIDER_MAX_WORKERS', '16'))
        # In-memory mode only: account opened at startup for local testing
        self.DEV_ACCOUNT_ID = os.getenv('DEV_ACCOUNT_ID')
        self.DEV_ACCOUNT_CREDITS = int(os.getenv('DEV_ACCOUNT_CREDITS', '100'))

    @property
    def uses_database(self) -> bool:
        return bool(self.DATABASE_URL)

    def validate(self) -> list[str]:
        """
        Check the configuration for problems that would break startup.

        Returns:
            list[str]: Human-readable problems; empty when valid
        """
        problems = []
        if not self.API_KEYS:
            problems.append('API_KEYS is not set; every /v1 request will be rejected.')
        if self.CHAIN_CACHE_TTL_SECONDS < 0:
            problems.append('CHAIN_CACHE_TTL_SECONDS must be non-negative.')
        if self.PROVIDER_MAX_WORKERS < 1:
            problems.append('PROVIDER_MAX_WORKERS must be at least 1.')
        if not self.uses_database and not Path(self.MODEL_CATALOG_PATH).exists():
            problems.append(f'Model catalog not found at {self.MODEL_CATALOG_PATH}.')
        return problems

    def get_storage_info(self) -> str:
        if self.uses_database:
            return 'PostgreSQL (DATABASE_URL)'
        return f'in-memory (seeded from {self.MODEL_CATALOG_PATH})'
