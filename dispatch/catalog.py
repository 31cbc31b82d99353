from dispatch.errors import ModelNotFoundError
from dispatch.repositories import CatalogRepository
from dispatch.routing_types import Modality, ModelDescriptor


class ModelCatalog:
    """
    Read path over the catalog repository.
    """

    def __init__(self, repository: CatalogRepository):
        self._repository = repository

    def list_active_models(self, modality: Modality) -> set[ModelDescriptor]:
        modality = Modality(modality)
        return {m for m in self._repository.list_models(modality) if m.is_active}

    def get_default_model(self, modality: Modality) -> ModelDescriptor:
        modality = Modality(modality)
        defaults = [m for m in self._repository.list_models(modality) if m.is_default and m.is_active]
        if not defaults:
            raise ModelNotFoundError(f"No active default model for modality {modality.value}", modality=modality.value)
        return defaults[0]

    def get_model(self, modality: Modality, provider_id: str, model_id: str) -> ModelDescriptor | None:
        return self._repository.get_model(Modality(modality), provider_id, model_id)

    def find_model(self, provider_id: str, model_id: str) -> ModelDescriptor | None:
        matches = self._repository.find_models(provider_id, model_id)
        return matches[0] if matches else None
