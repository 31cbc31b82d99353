import time
from typing import Any

from dispatch.routing_types import Modality, ModelDescriptor
from models.outcome import InvocationOutcome

from .base_provider import InvalidPayloadError
from .http_provider import HttpProvider

API_ROOT = "https://modelslab.com/api/v7"

ENDPOINTS = {
    "image-to-video": f"{API_ROOT}/video-fusion/image-to-video",
    "text-to-video": f"{API_ROOT}/video-fusion/text-to-video",
    "text-to-image": f"{API_ROOT}/images/text-to-image",
}
FETCH_ENDPOINTS = {
    Modality.VIDEO: f"{API_ROOT}/video-fusion/fetch",
    Modality.IMAGE: f"{API_ROOT}/images/fetch",
}

FUTURE_LINK_ETA_SECONDS = 60
PROCESSING_ETA_SECONDS = 120

PENDING_STATUSES = {"processing", "queued"}
ERROR_STATUSES = {"error", "failed"}

# ModelsLab reports most failures as HTTP 200 with status=error; the message
# text is the only signal. Checked in order, first match wins.
ERROR_MESSAGE_TABLE: list[tuple[tuple[str, ...], str, bool]] = [
    (("rate limit", "too many requests", "queue is full"), "rate_limit", True),
    (("invalid api key", "api key", "unauthorized", "subscription"), "auth", True),
    (("timeout", "timed out"), "timeout", True),
    (("invalid", "required", "validation", "not supported", "unsupported", "nsfw"), "bad_request", False),
]

NEGATIVE_PROMPT = "blurry, distorted, ugly, deformed, low quality, text, watermark"


class ModelsLabProvider(HttpProvider):
    """
    ModelsLab image and video generation.

    The key travels in the JSON body, not a header. A response can be:
    - immediate: `output` holds result URLs
    - deferred: `future_links` or status processing/queued, with an `eta`
    - failed: status error, classified by message text
    """

    provider_id = "modelslab"
    supports_polling = True

    def _headers(self, credential: str) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    def _endpoint(self, model: ModelDescriptor, payload: dict[str, Any]) -> str:
        if model.modality == Modality.VIDEO:
            return ENDPOINTS["image-to-video" if payload.get("image_url") else "text-to-video"]
        if model.modality == Modality.IMAGE:
            return ENDPOINTS["text-to-image"]
        raise InvalidPayloadError(f"modelslab does not support {model.modality.value}")

    def _build_request(self, model: ModelDescriptor, payload: dict[str, Any], credential: str) -> dict[str, Any]:
        prompt = payload.get("prompt")
        if not prompt:
            raise InvalidPayloadError("prompt is required")
        options = payload.get("options") or {}
        body: dict[str, Any] = {
            "key": credential,
            "model_id": model.model_id,
            "prompt": prompt,
            "negative_prompt": payload.get("negative_prompt") or NEGATIVE_PROMPT,
        }
        if model.modality == Modality.VIDEO:
            body.update(
                {
                    "resolution": options.get("resolution", "1920x1080"),
                    "duration": str(options.get("duration", 6)),
                    "fps": str(options.get("fps", 25)),
                    "generate_audio": False,
                    "temp": "yes",
                }
            )
            if payload.get("image_url"):
                body["init_image"] = payload["image_url"]
        else:
            body.update({"width": options.get("width", 1024), "height": options.get("height", 1024), "samples": 1})
        if payload.get("track_id"):
            body["track_id"] = payload["track_id"]
        return body

    def _classify_error_message(self, message: str) -> tuple[str, bool]:
        lowered = message.lower()
        for needles, code, retryable in ERROR_MESSAGE_TABLE:
            if any(needle in lowered for needle in needles):
                return code, retryable
        return "provider_error", True

    def _outcome(self, model: ModelDescriptor, data: dict[str, Any], start_time: float) -> InvocationOutcome:
        latency_ms = self._measure_latency(start_time)
        status = str(data.get("status", "")).lower()
        output = data.get("output") or []
        job_id = data.get("id") or data.get("request_id")

        if output and status not in ERROR_STATUSES:
            key = "video_url" if model.modality == Modality.VIDEO else "image_url"
            return InvocationOutcome.success(
                provider=self.provider_id,
                model=model.model_id,
                payload={key: output[0], "outputs": list(output)},
                provider_meta={"job_id": str(job_id) if job_id else None},
                latency_ms=latency_ms,
            )

        future_links = data.get("future_links") or []
        if future_links and job_id:
            return InvocationOutcome.pending(
                provider=self.provider_id,
                model=model.model_id,
                job_id=str(job_id),
                eta_seconds=int(data.get("eta") or FUTURE_LINK_ETA_SECONDS),
                provider_meta={"future_links": list(future_links)},
                latency_ms=latency_ms,
            )

        if status in PENDING_STATUSES and job_id:
            return InvocationOutcome.pending(
                provider=self.provider_id,
                model=model.model_id,
                job_id=str(job_id),
                eta_seconds=int(data.get("eta") or PROCESSING_ETA_SECONDS),
                latency_ms=latency_ms,
            )

        if status in ERROR_STATUSES or data.get("error"):
            message = str(data.get("error") or data.get("message") or "ModelsLab API error")
            code, retryable = self._classify_error_message(message)
            if retryable:
                return InvocationOutcome.retryable(
                    provider=self.provider_id, model=model.model_id, code=code, message=message, latency_ms=latency_ms
                )
            return InvocationOutcome.fatal(
                provider=self.provider_id, model=model.model_id, message=message, latency_ms=latency_ms
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
            url = self._endpoint(model, payload)
            body = self._build_request(model, payload, credential)
            response = self._post(url, body, self._headers(credential), timeout_s)
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
            url = FETCH_ENDPOINTS.get(model.modality)
            if url is None:
                raise InvalidPayloadError(f"modelslab does not support {model.modality.value}")
            response = self._post(url, {"key": credential, "request_id": job_id}, self._headers(credential), timeout_s)
            if response.status_code >= 400:
                return self._failure(model, self._http_error(response), self._measure_latency(start_time))
            data = self._json(response)
            # Status bodies from the fetch endpoint may omit the id
            data.setdefault("id", job_id)
            return self._outcome(model, data, start_time)
        except Exception as e:
            return self._exception_outcome(model, e, start_time)
