import time
from typing import Any

from google import genai

from dispatch.routing_types import Modality, ModelDescriptor
from models.outcome import InvocationOutcome
from utils.logger import get_logger

from .base_provider import BaseProvider

logger = get_logger(__name__)


class GeminiProvider(BaseProvider):
    """
    Google Gemini text generation via the google-genai SDK.
    """

    provider_id = "google"

    def __init__(self, client_factory=None):
        self._client_factory = client_factory or genai.Client

    def invoke(
        self,
        model: ModelDescriptor,
        payload: dict[str, Any],
        credential: str,
        timeout_s: float | None = None,
    ) -> InvocationOutcome:
        start_time = time.time()

        if model.modality != Modality.TEXT:
            return InvocationOutcome.fatal(
                provider=self.provider_id,
                model=model.model_id,
                message=f"google adapter does not support {model.modality.value}",
            )

        try:
            messages = self._normalize_input(prompt=payload.get("prompt"), messages=payload.get("messages"))
            # Gemini takes a flat transcript here; roles are kept as prefixes
            if len(messages) == 1:
                contents = messages[0]["content"]
            else:
                contents = "\n\n".join(f"{m['role']}: {m['content']}" for m in messages)

            client = self._client_factory(api_key=credential)
            response = client.models.generate_content(
                model=model.model_id,
                contents=contents,
                config={
                    "temperature": payload.get("temperature", 0.7),
                    "max_output_tokens": payload.get("max_tokens", 2048),
                },
            )

            text = getattr(response, "text", None)
            if not text:
                return InvocationOutcome.retryable(
                    provider=self.provider_id,
                    model=model.model_id,
                    code="provider_error",
                    message="Empty response from provider",
                    latency_ms=self._measure_latency(start_time),
                )

            usage = None
            usage_metadata = getattr(response, "usage_metadata", None)
            if usage_metadata is not None:
                usage = {
                    "prompt_tokens": getattr(usage_metadata, "prompt_token_count", 0) or 0,
                    "completion_tokens": getattr(usage_metadata, "candidates_token_count", 0) or 0,
                    "total_tokens": getattr(usage_metadata, "total_token_count", 0) or 0,
                }

            return InvocationOutcome.success(
                provider=self.provider_id,
                model=model.model_id,
                payload={"text": text},
                provider_meta={"usage": usage},
                latency_ms=self._measure_latency(start_time),
            )

        except Exception as e:
            outcome = self._exception_outcome(model, e, start_time)
            logger.warning(
                f"Gemini call failed: {outcome.error.code}",
                extra={
                    "extra_fields": {
                        "model": model.model_id,
                        "error_code": outcome.error.code,
                        "retryable": outcome.error.retryable,
                    }
                },
            )
            return outcome
