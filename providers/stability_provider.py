import time
from typing import Any

from dispatch.routing_types import Modality, ModelDescriptor
from models.outcome import InvocationOutcome

from .base_provider import InvalidPayloadError
from .http_provider import HttpProvider


class StabilityProvider(HttpProvider):
    """
    Stability AI text-to-image. Synchronous; the image comes back base64 encoded.
    """

    provider_id = "stability"
    base_url = "https://api.stability.ai/v1"

    def _headers(self, credential: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {credential}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def invoke(
        self,
        model: ModelDescriptor,
        payload: dict[str, Any],
        credential: str,
        timeout_s: float | None = None,
    ) -> InvocationOutcome:
        start_time = time.time()
        if model.modality != Modality.IMAGE:
            return InvocationOutcome.fatal(
                provider=self.provider_id,
                model=model.model_id,
                message=f"stability does not support {model.modality.value}",
            )

        try:
            prompt = payload.get("prompt")
            if not prompt:
                raise InvalidPayloadError("prompt is required")
            options = payload.get("options") or {}
            text_prompts = [{"text": prompt, "weight": 1}]
            if payload.get("negative_prompt"):
                text_prompts.append({"text": payload["negative_prompt"], "weight": -1})
            body = {
                "text_prompts": text_prompts,
                "cfg_scale": options.get("cfg_scale", 7),
                "height": options.get("height", 1024),
                "width": options.get("width", 1024),
                "samples": 1,
                "steps": options.get("steps", 30),
            }

            response = self._post(
                f"{self.base_url}/generation/{model.model_id}/text-to-image",
                body,
                self._headers(credential),
                timeout_s,
            )
            if response.status_code >= 400:
                return self._log_failure(
                    model, self._failure(model, self._http_error(response), self._measure_latency(start_time))
                )

            data = self._json(response)
            artifacts = data.get("artifacts") or []
            encoded = artifacts[0].get("base64") if artifacts else None
            if not encoded:
                return self._log_failure(model, self._unexpected(model, data, start_time))
            return InvocationOutcome.success(
                provider=self.provider_id,
                model=model.model_id,
                payload={"image_url": f"data:image/png;base64,{encoded}"},
                provider_meta={"finish_reason": artifacts[0].get("finishReason")},
                latency_ms=self._measure_latency(start_time),
            )
        except Exception as e:
            return self._log_failure(model, self._exception_outcome(model, e, start_time))
