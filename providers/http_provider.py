from typing import Any

import requests

from dispatch.routing_types import ModelDescriptor
from models.outcome import InvocationOutcome, NormalizedError
from utils.logger import get_logger

from .base_provider import BaseProvider

logger = get_logger(__name__)

DEFAULT_HTTP_TIMEOUT_S = 60
ERROR_BODY_LIMIT = 200


class HttpProvider(BaseProvider):
    """
    Base for providers reached with plain JSON-over-HTTPS calls.
    """

    base_url: str = ""

    def __init__(self, session: requests.Session | None = None, base_url: str | None = None):
        self._session = session or requests.Session()
        if base_url:
            self.base_url = base_url.rstrip("/")

    def _headers(self, credential: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {credential}", "Content-Type": "application/json"}

    def _post(self, url: str, body: dict[str, Any], headers: dict[str, str], timeout_s: float | None):
        return self._session.post(url, json=body, headers=headers, timeout=timeout_s or DEFAULT_HTTP_TIMEOUT_S)

    def _get(self, url: str, headers: dict[str, str], timeout_s: float | None):
        return self._session.get(url, headers=headers, timeout=timeout_s or DEFAULT_HTTP_TIMEOUT_S)

    def _http_error(self, response) -> NormalizedError:
        body = (response.text or "")[:ERROR_BODY_LIMIT]
        return self._error_for_status(
            response.status_code,
            f"API error {response.status_code}: {body}",
            details={"body": body},
        )

    @staticmethod
    def _json(response) -> dict[str, Any]:
        data = response.json()
        if not isinstance(data, dict):
            raise RuntimeError(f"Unexpected response format: {str(data)[:ERROR_BODY_LIMIT]}")
        return data

    def _log_failure(self, model: ModelDescriptor, outcome: InvocationOutcome) -> InvocationOutcome:
        if outcome.error is not None:
            logger.warning(
                f"{self.provider_id} call failed: {outcome.error.code}",
                extra={
                    "extra_fields": {
                        "provider": self.provider_id,
                        "model": model.model_id,
                        "error_code": outcome.error.code,
                        "retryable": outcome.error.retryable,
                        "status_code": outcome.error.details.get("status_code"),
                    }
                },
            )
        return outcome

    def _unexpected(self, model: ModelDescriptor, data: dict[str, Any], start_time: float) -> InvocationOutcome:
        return InvocationOutcome.retryable(
            provider=self.provider_id,
            model=model.model_id,
            code="provider_error",
            message=f"Unexpected response format: {str(data)[:ERROR_BODY_LIMIT]}",
            latency_ms=self._measure_latency(start_time),
        )
