import time
from typing import Any

from dispatch.routing_types import Modality, ModelDescriptor
from models.outcome import InvocationOutcome

from .base_provider import InvalidPayloadError
from .http_provider import HttpProvider

DEFAULT_ETA_SECONDS = 60

# Prediction states: starting/processing are in flight, canceled counts as failed
PENDING_STATES = {"starting", "processing"}
FAILED_STATES = {"failed", "canceled"}


class ReplicateProvider(HttpProvider):
    """
    Replicate predictions API. model_id holds the model version hash.
    """

    provider_id = "replicate"
    base_url = "https://api.replicate.com/v1"
    supports_polling = True

    def _build_request(self, model: ModelDescriptor, payload: dict[str, Any]) -> dict[str, Any]:
        prompt = payload.get("prompt")
        if not prompt:
            raise InvalidPayloadError("prompt is required")
        options = payload.get("options") or {}
        if model.modality == Modality.VIDEO:
            model_input = {"prompt": prompt, "num_frames": options.get("frames", 25)}
        else:
            model_input = {
                "prompt": prompt,
                "width": options.get("width", 1024),
                "height": options.get("height", 1024),
                "num_outputs": 1,
            }
            if payload.get("negative_prompt"):
                model_input["negative_prompt"] = payload["negative_prompt"]
        return {"version": model.model_id, "input": model_input}

    def _outcome(self, model: ModelDescriptor, data: dict[str, Any], start_time: float) -> InvocationOutcome:
        status = str(data.get("status", "")).lower()
        output = data.get("output")

        if status == "succeeded" and output:
            url = output[0] if isinstance(output, list) else output
            key = "video_url" if model.modality == Modality.VIDEO else "image_url"
            return InvocationOutcome.success(
                provider=self.provider_id,
                model=model.model_id,
                payload={key: url},
                provider_meta={"prediction_id": data.get("id")},
                latency_ms=self._measure_latency(start_time),
            )
        if status in PENDING_STATES and data.get("id"):
            return InvocationOutcome.pending(
                provider=self.provider_id,
                model=model.model_id,
                job_id=data["id"],
                eta_seconds=DEFAULT_ETA_SECONDS,
                latency_ms=self._measure_latency(start_time),
            )
        if status in FAILED_STATES:
            return InvocationOutcome.retryable(
                provider=self.provider_id,
                model=model.model_id,
                code="provider_error",
                message=str(data.get("error") or f"Prediction {status}"),
                latency_ms=self._measure_latency(start_time),
            )
        return self._unexpected(model, data, start_time)

    def invoke(
        self,
        model: ModelDescriptor,
        payload: dict[str, Any],
        credential: str,
        timeout_s: float | None = None,
    ) -> InvocationOutcome:
        start_time = time.time()
        try:
            body = self._build_request(model, payload)
            response = self._post(f"{self.base_url}/predictions", body, self._headers(credential), timeout_s)
            if response.status_code >= 400:
                outcome = self._failure(model, self._http_error(response), self._measure_latency(start_time))
            else:
                outcome = self._outcome(model, self._json(response), start_time)
        except Exception as e:
            outcome = self._exception_outcome(model, e, start_time)
        return self._log_failure(model, outcome)

    def poll(
        self,
        model: ModelDescriptor,
        job_id: str,
        credential: str,
        timeout_s: float | None = None,
    ) -> InvocationOutcome:
        start_time = time.time()
        try:
            response = self._get(f"{self.base_url}/predictions/{job_id}", self._headers(credential), timeout_s)
            if response.status_code >= 400:
                return self._failure(model, self._http_error(response), self._measure_latency(start_time))
            return self._outcome(model, self._json(response), start_time)
        except Exception as e:
            return self._exception_outcome(model, e, start_time)
