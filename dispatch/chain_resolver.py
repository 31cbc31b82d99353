from dispatch.cache import InMemoryTTLCache
from dispatch.catalog import ModelCatalog
from dispatch.errors import ModelNotFoundError
from dispatch.repositories import ChainRepository
from dispatch.routing_types import FallbackChainEntry, Modality, ModelDescriptor, Tier
from utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 5


class FallbackChainResolver:
    """
    Builds the ordered candidate list for a (tier, modality) request.

    Tier-specific entries come first as a block, then the "all" tier block;
    within each block entries are ordered by ascending priority. A model
    already listed by the tier block is not repeated from the "all" block.
    Entries pointing at inactive or unknown models are dropped. When nothing
    remains, the catalog default for the modality is used; when there is no
    default either, the result is empty.
    """

    def __init__(
        self,
        catalog: ModelCatalog,
        chains: ChainRepository,
        cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
    ):
        self._catalog = catalog
        self._chains = chains
        self._cache = InMemoryTTLCache(ttl_seconds=cache_ttl_seconds)

    def resolve(self, tier: Tier, modality: Modality) -> list[ModelDescriptor]:
        tier = Tier(tier)
        modality = Modality(modality)
        cache_key = (tier, modality)

        cached = self._cache.get(cache_key)
        if cached is not None:
            return list(cached)

        candidates = self._build(tier, modality)
        self._cache.set(cache_key, tuple(candidates))
        return candidates

    def invalidate(self) -> None:
        """Called after any catalog or chain mutation."""
        self._cache.invalidate()

    def _build(self, tier: Tier, modality: Modality) -> list[ModelDescriptor]:
        blocks: list[list[FallbackChainEntry]] = []
        if tier != Tier.ALL:
            blocks.append(self._sorted_entries(tier, modality))
        blocks.append(self._sorted_entries(Tier.ALL, modality))

        seen: set[str] = set()
        candidates: list[ModelDescriptor] = []
        for block in blocks:
            for entry in block:
                if entry.model_key in seen:
                    continue
                seen.add(entry.model_key)

                model = self._catalog.get_model(modality, entry.provider_id, entry.model_id)
                if model is None or not model.is_active:
                    logger.debug(
                        "Skipping chain entry with unavailable model",
                        extra={
                            "extra_fields": {
                                "tier": tier.value,
                                "modality": modality.value,
                                "model_key": entry.model_key,
                                "priority": entry.priority,
                            }
                        },
                    )
                    continue
                candidates.append(model)

        if candidates:
            return candidates

        try:
            default = self._catalog.get_default_model(modality)
        except ModelNotFoundError:
            logger.warning(
                "No fallback chain or default model configured",
                extra={"extra_fields": {"tier": tier.value, "modality": modality.value}},
            )
            return []
        return [default]

    def _sorted_entries(self, tier: Tier, modality: Modality) -> list[FallbackChainEntry]:
        entries = [e for e in self._chains.list_entries(tier, modality) if e.is_active]
        return sorted(entries, key=lambda e: e.priority)
