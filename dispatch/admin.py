from collections import defaultdict

from dispatch.chain_resolver import FallbackChainResolver
from dispatch.errors import ChainConfigError, ModelNotFoundError
from dispatch.repositories import CatalogRepository, ChainRepository
from dispatch.routing_types import FallbackChainEntry, Modality, Tier
from utils.logger import get_logger

logger = get_logger(__name__)


class CatalogAdmin:
    """
    Administrative mutations of the model catalog and fallback chains.

    Every successful mutation invalidates the resolver cache so the next
    request sees the change.
    """

    def __init__(self, catalog: CatalogRepository, chains: ChainRepository, resolver: FallbackChainResolver):
        self._catalog = catalog
        self._chains = chains
        self._resolver = resolver

    def list_chains(
        self, tier: Tier | None = None, modality: Modality | None = None
    ) -> dict[str, dict[str, list[FallbackChainEntry]]]:
        """Active entries grouped tier -> modality, each list ordered by priority."""
        grouped: dict[str, dict[str, list[FallbackChainEntry]]] = defaultdict(lambda: defaultdict(list))
        for entry in self._chains.list_all():
            if tier is not None and entry.tier != Tier(tier):
                continue
            if modality is not None and entry.modality != Modality(modality):
                continue
            grouped[entry.tier.value][entry.modality.value].append(entry)
        return {
            tier_name: {mod: sorted(entries, key=lambda e: e.priority) for mod, entries in by_modality.items()}
            for tier_name, by_modality in grouped.items()
        }

    def upsert_chain_entry(
        self, tier: Tier, modality: Modality, priority: int, provider_id: str, model_id: str
    ) -> FallbackChainEntry:
        tier, modality = Tier(tier), Modality(modality)
        if priority < 1:
            raise ChainConfigError(f"priority must be >= 1, got {priority}")
        self._require_model(modality, provider_id, model_id)

        entry = self._chains.upsert_entry(tier, modality, priority, provider_id, model_id)
        self._changed("upsert_chain_entry", tier=tier.value, modality=modality.value, priority=priority)
        return entry

    def replace_chain(
        self, tier: Tier, modality: Modality, models: list[tuple[str, str]]
    ) -> list[FallbackChainEntry]:
        """Replace the whole chain; list order becomes priority 1..n."""
        tier, modality = Tier(tier), Modality(modality)
        seen = set()
        for provider_id, model_id in models:
            if (provider_id, model_id) in seen:
                raise ChainConfigError(f"Duplicate model in chain: {provider_id}/{model_id}")
            seen.add((provider_id, model_id))
            self._require_model(modality, provider_id, model_id)

        entries = self._chains.replace_chain(tier, modality, list(models))
        self._changed("replace_chain", tier=tier.value, modality=modality.value, size=len(entries))
        return entries

    def reorder_chain(self, tier: Tier, modality: Modality, priorities: dict[str, int]) -> list[FallbackChainEntry]:
        """
        Assign new priorities by entry id. The resulting chain must keep
        priorities unique within (tier, modality).
        """
        tier, modality = Tier(tier), Modality(modality)
        current = {e.id: e for e in self._chains.list_entries(tier, modality)}

        unknown = [entry_id for entry_id in priorities if entry_id not in current]
        if unknown:
            raise ChainConfigError(f"Entries not in {tier.value}/{modality.value} chain: {', '.join(unknown)}")
        if any(p < 1 for p in priorities.values()):
            raise ChainConfigError("priority must be >= 1")

        final = {entry_id: priorities.get(entry_id, entry.priority) for entry_id, entry in current.items()}
        if len(set(final.values())) != len(final):
            raise ChainConfigError("Duplicate priorities in reordered chain")

        self._chains.set_priorities(priorities)
        self._changed("reorder_chain", tier=tier.value, modality=modality.value, size=len(priorities))
        return sorted(self._chains.list_entries(tier, modality), key=lambda e: e.priority)

    def remove_chain_entry(self, entry_id: str) -> bool:
        removed = self._chains.deactivate(entry_id)
        if removed:
            self._changed("remove_chain_entry", entry_id=entry_id)
        return removed

    def set_default_model(self, modality: Modality, provider_id: str, model_id: str) -> None:
        modality = Modality(modality)
        model = self._require_model(modality, provider_id, model_id)
        if not model.is_active:
            raise ChainConfigError(f"Cannot make inactive model {model.key} the default")
        self._catalog.set_default(modality, provider_id, model_id)
        self._changed("set_default_model", modality=modality.value, model_key=model.key)

    def set_model_active(
        self, provider_id: str, model_id: str, is_active: bool, modality: Modality | None = None
    ) -> int:
        """Toggle a model; without a modality every modality entry of the pair changes."""
        targets = self._catalog.find_models(provider_id, model_id)
        if modality is not None:
            targets = [m for m in targets if m.modality == Modality(modality)]
        if not targets:
            raise ModelNotFoundError(f"Unknown model {provider_id}/{model_id}", model_key=f"{provider_id}/{model_id}")

        for model in targets:
            self._catalog.set_active(model.modality, provider_id, model_id, is_active)
        self._changed("set_model_active", model_key=f"{provider_id}/{model_id}", is_active=is_active)
        return len(targets)

    def _require_model(self, modality: Modality, provider_id: str, model_id: str):
        model = self._catalog.get_model(modality, provider_id, model_id)
        if model is None:
            raise ModelNotFoundError(
                f"Unknown {modality.value} model {provider_id}/{model_id}",
                modality=modality.value,
                model_key=f"{provider_id}/{model_id}",
            )
        return model

    def _changed(self, operation: str, **fields) -> None:
        self._resolver.invalidate()
        logger.info(f"Catalog updated: {operation}", extra={"extra_fields": {"operation": operation, **fields}})
