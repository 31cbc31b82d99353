"""Domain exceptions raised by catalog lookups and administrative operations.

The dispatch path itself never raises these to callers; it reports failures
through GenerationResult.
"""


class DispatchError(Exception):
    """Base class for dispatch-layer errors."""


class ModelNotFoundError(DispatchError):
    def __init__(self, message: str, *, modality: str | None = None, model_key: str | None = None):
        super().__init__(message)
        self.modality = modality
        self.model_key = model_key


class ChainConfigError(DispatchError):
    """Invalid fallback chain configuration (duplicate priority, unknown model, ...)."""


class AccountNotFoundError(DispatchError):
    def __init__(self, account_id: str):
        super().__init__(f"Credit account not found: {account_id}")
        self.account_id = account_id


class InvocationCancelled(DispatchError):
    """The caller cancelled while a provider call was in flight."""
