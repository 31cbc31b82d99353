import time
from abc import ABC, abstractmethod
from typing import Any

from dispatch.routing_types import ModelDescriptor
from models.outcome import InvocationOutcome, NormalizedError


class InvalidPayloadError(ValueError):
    """The caller's payload cannot be sent to this provider."""


class BaseProvider(ABC):
    """
    Abstract base class for provider adapters.

    An adapter turns (model, payload, credential) into one call against the
    provider's API and normalizes whatever comes back into an
    InvocationOutcome. Adapters never raise from invoke() or poll(); every
    exception is converted with _normalize_error().

    Subclasses may override the status tables below to match how their
    provider signals validation problems.
    """

    provider_id: str = ""

    # HTTP statuses meaning "this request is malformed for this contract"
    FATAL_STATUS_CODES: frozenset[int] = frozenset({400, 404, 413, 422})
    AUTH_STATUS_CODES: frozenset[int] = frozenset({401, 403})
    RATE_LIMIT_STATUS_CODES: frozenset[int] = frozenset({429})
    TIMEOUT_STATUS_CODES: frozenset[int] = frozenset({408, 504})

    supports_polling: bool = False

    @abstractmethod
    def invoke(
        self,
        model: ModelDescriptor,
        payload: dict[str, Any],
        credential: str,
        timeout_s: float | None = None,
    ) -> InvocationOutcome:
        """
        Run one generation attempt.

        Args:
            model: Catalog entry selected by the engine
            payload: Opaque request body from the caller (prompt, options)
            credential: API key resolved by the credential store
            timeout_s: Upper bound for the network call

        Returns:
            InvocationOutcome: success, pending, retryable or fatal failure
        """

    def poll(
        self,
        model: ModelDescriptor,
        job_id: str,
        credential: str,
        timeout_s: float | None = None,
    ) -> InvocationOutcome:
        """
        Check a job previously returned as pending.

        Providers without async jobs report a fatal failure.
        """
        return InvocationOutcome.fatal(
            provider=self.provider_id,
            model=model.model_id,
            message=f"{self.provider_id} does not support job polling",
        )

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _measure_latency(start_time: float) -> int:
        return int((time.time() - start_time) * 1000)

    @staticmethod
    def _normalize_input(prompt: str | None = None, messages: list | None = None) -> list[dict[str, str]]:
        """
        Convert a prompt or message list to chat messages.

        Raises:
            InvalidPayloadError: neither prompt nor messages given, or malformed messages
        """
        if messages:
            normalized = []
            for message in messages:
                if not isinstance(message, dict) or "role" not in message or "content" not in message:
                    raise InvalidPayloadError("Each message must be a dict with 'role' and 'content'")
                normalized.append({"role": str(message["role"]), "content": str(message["content"])})
            return normalized
        if prompt:
            return [{"role": "user", "content": prompt}]
        raise InvalidPayloadError("Either prompt or messages is required")

    @staticmethod
    def _extract_status_code(exc: Exception) -> int | None:
        for attr in ("status_code", "code", "status"):
            value = getattr(exc, attr, None)
            if isinstance(value, int) and 100 <= value <= 599:
                return value
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
        if isinstance(status, int):
            return status
        return None

    def _normalize_error(self, exc: Exception, provider: str | None = None) -> NormalizedError:
        provider = provider or self.provider_id
        message = str(exc) or type(exc).__name__
        details = {"exception_type": type(exc).__name__}

        if isinstance(exc, TimeoutError) or "timeout" in type(exc).__name__.lower():
            return NormalizedError(code="timeout", message=message, provider=provider, retryable=True, details=details)

        if isinstance(exc, InvalidPayloadError):
            return NormalizedError(
                code="bad_request", message=message, provider=provider, retryable=False, details=details
            )

        # Undecodable or truncated response bodies (json.JSONDecodeError is a ValueError)
        if isinstance(exc, ValueError):
            return NormalizedError(
                code="provider_error", message=message, provider=provider, retryable=True, details=details
            )

        status = self._extract_status_code(exc)
        if status is not None:
            details["status_code"] = status
            return self._error_for_status(status, message, provider, details)

        if "connection" in type(exc).__name__.lower():
            return NormalizedError(
                code="provider_error", message=message, provider=provider, retryable=True, details=details
            )

        return NormalizedError(code="unknown", message=message, provider=provider, retryable=True, details=details)

    def _error_for_status(
        self, status: int, message: str, provider: str | None = None, details: dict | None = None
    ) -> NormalizedError:
        provider = provider or self.provider_id
        details = dict(details or {})
        details.setdefault("status_code", status)

        if status in self.FATAL_STATUS_CODES:
            code, retryable = "bad_request", False
        elif status in self.AUTH_STATUS_CODES:
            code, retryable = "auth", True
        elif status in self.RATE_LIMIT_STATUS_CODES:
            code, retryable = "rate_limit", True
        elif status in self.TIMEOUT_STATUS_CODES:
            code, retryable = "timeout", True
        elif status >= 500:
            code, retryable = "provider_error", True
        else:
            code, retryable = "unknown", True

        return NormalizedError(code=code, message=message, provider=provider, retryable=retryable, details=details)

    def _failure(self, model: ModelDescriptor, error: NormalizedError, latency_ms: int = 0) -> InvocationOutcome:
        return InvocationOutcome.failure(model=model.model_id, error=error, latency_ms=latency_ms)

    def _exception_outcome(self, model: ModelDescriptor, exc: Exception, start_time: float) -> InvocationOutcome:
        return self._failure(model, self._normalize_error(exc), self._measure_latency(start_time))
