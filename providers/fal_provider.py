import time
from typing import Any

from dispatch.routing_types import Modality, ModelDescriptor
from models.outcome import InvocationOutcome

from .base_provider import InvalidPayloadError
from .http_provider import HttpProvider

DEFAULT_ETA_SECONDS = 30

# Queue states reported by /requests/{id}/status
PENDING_STATES = {"IN_QUEUE", "IN_PROGRESS"}
COMPLETED_STATES = {"COMPLETED"}
FAILED_STATES = {"FAILED", "ERROR"}


class FalProvider(HttpProvider):
    """
    Fal.ai queue API (FLUX images, video models).

    Submitting returns a request_id; the job is reported as pending and
    completed later through poll().
    """

    provider_id = "fal"
    base_url = "https://queue.fal.run"
    supports_polling = True

    def _headers(self, credential: str) -> dict[str, str]:
        return {"Authorization": f"Key {credential}", "Content-Type": "application/json"}

    def _build_request(self, model: ModelDescriptor, payload: dict[str, Any]) -> dict[str, Any]:
        prompt = payload.get("prompt")
        if not prompt:
            raise InvalidPayloadError("prompt is required")
        options = payload.get("options") or {}
        if model.modality == Modality.VIDEO:
            body = {
                "prompt": prompt,
                "num_frames": options.get("frames", 49),
                "fps": options.get("fps", 8),
                "guidance_scale": options.get("guidance", 6),
            }
            if payload.get("image_url"):
                body["image_url"] = payload["image_url"]
            return body
        body = {
            "prompt": prompt,
            "image_size": options.get("image_size", "landscape_16_9"),
            "num_inference_steps": options.get("steps", 28),
            "guidance_scale": options.get("guidance", 3.5),
            "num_images": 1,
            "enable_safety_checker": True,
        }
        if payload.get("negative_prompt"):
            body["negative_prompt"] = payload["negative_prompt"]
        return body

    def _parse_result(self, model: ModelDescriptor, data: dict[str, Any]) -> dict[str, Any] | None:
        if model.modality == Modality.VIDEO:
            url = (data.get("video") or {}).get("url")
            return {"video_url": url} if url else None
        images = data.get("images") or []
        url = images[0].get("url") if images else (data.get("image") or {}).get("url")
        return {"image_url": url} if url else None

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
            response = self._post(f"{self.base_url}/{model.model_id}", body, self._headers(credential), timeout_s)
            if response.status_code >= 400:
                return self._log_failure(
                    model, self._failure(model, self._http_error(response), self._measure_latency(start_time))
                )

            data = self._json(response)
            result = self._parse_result(model, data)
            if result:
                return InvocationOutcome.success(
                    provider=self.provider_id,
                    model=model.model_id,
                    payload=result,
                    latency_ms=self._measure_latency(start_time),
                )
            if data.get("request_id"):
                return InvocationOutcome.pending(
                    provider=self.provider_id,
                    model=model.model_id,
                    job_id=data["request_id"],
                    eta_seconds=DEFAULT_ETA_SECONDS,
                    provider_meta={"status_url": data.get("status_url"), "response_url": data.get("response_url")},
                    latency_ms=self._measure_latency(start_time),
                )
            return self._log_failure(model, self._unexpected(model, data, start_time))
        except Exception as e:
            return self._log_failure(model, self._exception_outcome(model, e, start_time))

    def poll(
        self,
        model: ModelDescriptor,
        job_id: str,
        credential: str,
        timeout_s: float | None = None,
    ) -> InvocationOutcome:
        start_time = time.time()
        request_url = f"{self.base_url}/{model.model_id}/requests/{job_id}"
        headers = self._headers(credential)
        try:
            response = self._get(f"{request_url}/status", headers, timeout_s)
            if response.status_code >= 400:
                return self._failure(model, self._http_error(response), self._measure_latency(start_time))

            status = str(self._json(response).get("status", "")).upper()
            if status in PENDING_STATES:
                return InvocationOutcome.pending(
                    provider=self.provider_id,
                    model=model.model_id,
                    job_id=job_id,
                    eta_seconds=DEFAULT_ETA_SECONDS,
                    latency_ms=self._measure_latency(start_time),
                )
            if status in FAILED_STATES:
                return InvocationOutcome.retryable(
                    provider=self.provider_id,
                    model=model.model_id,
                    code="provider_error",
                    message="Generation failed",
                    latency_ms=self._measure_latency(start_time),
                )
            if status not in COMPLETED_STATES:
                return self._unexpected(model, {"status": status}, start_time)

            result_response = self._get(request_url, headers, timeout_s)
            if result_response.status_code >= 400:
                return self._failure(model, self._http_error(result_response), self._measure_latency(start_time))
            data = self._json(result_response)
            result = self._parse_result(model, data)
            if not result:
                return self._unexpected(model, data, start_time)
            return InvocationOutcome.success(
                provider=self.provider_id,
                model=model.model_id,
                payload=result,
                latency_ms=self._measure_latency(start_time),
            )
        except Exception as e:
            return self._exception_outcome(model, e, start_time)
