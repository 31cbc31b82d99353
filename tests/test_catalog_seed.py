from collections import Counter

import pytest

from config.config import Config
from dispatch.factory import build_services
from dispatch.repositories import load_catalog_seed
from dispatch.routing_types import Modality, Tier


@pytest.mark.unit
def test_every_chain_entry_points_at_a_catalog_model():
    models, entries = load_catalog_seed()
    catalog = {(m.modality, m.provider_id, m.model_id) for m in models}

    missing = [e.model_key for e in entries if (e.modality, e.provider_id, e.model_id) not in catalog]

    assert missing == []


@pytest.mark.unit
def test_every_modality_has_exactly_one_default():
    models, _ = load_catalog_seed()

    defaults = Counter(m.modality for m in models if m.is_default)

    assert defaults == {modality: 1 for modality in Modality}


@pytest.mark.unit
def test_chain_priorities_are_unique():
    _, entries = load_catalog_seed()

    slots = Counter((e.tier, e.modality, e.priority) for e in entries)

    assert all(count == 1 for count in slots.values())


@pytest.mark.unit
def test_seed_rejects_malformed_files(tmp_path):
    no_models = tmp_path / "empty.yaml"
    no_models.write_text("fallback_chains: {}\n", encoding="utf-8")
    bad_key = tmp_path / "bad_key.yaml"
    bad_key.write_text(
        "models:\n"
        "  - {provider: fal, model: flux, modality: image, credit_cost: 1}\n"
        "fallback_chains:\n"
        "  all:\n"
        "    image: [flux]\n",
        encoding="utf-8",
    )
    missing_cost = tmp_path / "missing_cost.yaml"
    missing_cost.write_text("models:\n  - {provider: fal, model: flux, modality: image}\n", encoding="utf-8")

    for path in (no_models, bad_key, missing_cost, tmp_path / "absent.yaml"):
        with pytest.raises(ValueError):
            load_catalog_seed(str(path))


@pytest.mark.unit
def test_in_memory_services_from_environment(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("MODEL_CATALOG_PATH", raising=False)
    monkeypatch.delenv("DISPATCH_SETTINGS_PATH", raising=False)
    monkeypatch.setenv("DEV_ACCOUNT_ID", "dev-account")
    monkeypatch.setenv("DEV_ACCOUNT_CREDITS", "42")
    monkeypatch.setenv("CHAIN_CACHE_TTL_SECONDS", "0")

    services = build_services(Config())
    try:
        assert services.ledger.balance("dev-account").balance == 42
        studio_text = services.engine.resolver.resolve(Tier.STUDIO, Modality.TEXT)
        assert [m.key for m in studio_text][:2] == ["openai/gpt-4o", "openai/gpt-4o-mini"]
        assert "google/gemini-2.5-flash" in [m.key for m in studio_text]
    finally:
        services.shutdown()


@pytest.mark.unit
def test_config_validation_reports_problems(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("API_KEYS", raising=False)
    monkeypatch.setenv("PROVIDER_MAX_WORKERS", "0")
    monkeypatch.setenv("MODEL_CATALOG_PATH", "/nonexistent/catalog.yaml")

    problems = Config().validate()

    assert any("API_KEYS" in p for p in problems)
    assert any("PROVIDER_MAX_WORKERS" in p for p in problems)
    assert any("catalog" in p for p in problems)
