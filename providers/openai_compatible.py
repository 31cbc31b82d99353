import base64
import time
from typing import Any

import openai

from dispatch.routing_types import Modality, ModelDescriptor
from models.outcome import InvocationOutcome
from utils.logger import get_logger

from .base_provider import BaseProvider, InvalidPayloadError

logger = get_logger(__name__)

# Providers that speak the OpenAI chat completions protocol
BASE_URLS: dict[str, str | None] = {
    "openai": None,
    "deepseek": "https://api.deepseek.com/v1",
    "xai": "https://api.x.ai/v1",
    "mistral": "https://api.mistral.ai/v1",
    "qwen": "https://dashscope.aliyuncs.com/compatible-mode/v1",
    "zhipu": "https://open.bigmodel.cn/api/paas/v4",
    "routeway": "https://api.routeway.ai/v1",
}


class OpenAICompatibleProvider(BaseProvider):
    """
    Text generation for every OpenAI-compatible provider, plus image and
    speech generation for OpenAI itself.

    The SDK's own retries are disabled: the dispatch engine decides whether to
    move on to another candidate.
    """

    def __init__(self, provider_id: str, base_url: str | None = None, client_factory=None):
        if base_url is None and provider_id not in BASE_URLS:
            raise ValueError(f"Unknown OpenAI-compatible provider: {provider_id}")
        self.provider_id = provider_id
        self.base_url = base_url if base_url is not None else BASE_URLS.get(provider_id)
        self._client_factory = client_factory or openai.OpenAI

    def _client(self, credential: str, timeout_s: float | None):
        kwargs: dict[str, Any] = {"api_key": credential, "max_retries": 0}
        if self.base_url:
            kwargs["base_url"] = self.base_url
        if timeout_s:
            kwargs["timeout"] = timeout_s
        return self._client_factory(**kwargs)

    def invoke(
        self,
        model: ModelDescriptor,
        payload: dict[str, Any],
        credential: str,
        timeout_s: float | None = None,
    ) -> InvocationOutcome:
        start_time = time.time()
        try:
            client = self._client(credential, timeout_s)
            if model.modality == Modality.TEXT:
                return self._chat(client, model, payload, start_time)
            if model.modality == Modality.IMAGE and self.provider_id == "openai":
                return self._image(client, model, payload, start_time)
            if model.modality == Modality.AUDIO and self.provider_id == "openai":
                return self._speech(client, model, payload, start_time)
            return InvocationOutcome.fatal(
                provider=self.provider_id,
                model=model.model_id,
                message=f"{self.provider_id} does not support {model.modality.value}",
            )
        except Exception as e:
            outcome = self._exception_outcome(model, e, start_time)
            logger.warning(
                f"{self.provider_id} call failed: {outcome.error.code}",
                extra={
                    "extra_fields": {
                        "provider": self.provider_id,
                        "model": model.model_id,
                        "error_code": outcome.error.code,
                        "retryable": outcome.error.retryable,
                    }
                },
            )
            return outcome

    def _chat(self, client, model: ModelDescriptor, payload: dict[str, Any], start_time: float) -> InvocationOutcome:
        messages = self._normalize_input(prompt=payload.get("prompt"), messages=payload.get("messages"))
        if payload.get("system"):
            messages = [{"role": "system", "content": str(payload["system"])}] + messages

        response = client.chat.completions.create(
            model=model.model_id,
            messages=messages,
            temperature=payload.get("temperature", 0.7),
            max_tokens=payload.get("max_tokens", 2048),
        )

        text = response.choices[0].message.content if response.choices else None
        if not text:
            # Empty completions are treated as a provider hiccup
            return InvocationOutcome.retryable(
                provider=self.provider_id,
                model=model.model_id,
                code="provider_error",
                message="Empty response from provider",
                latency_ms=self._measure_latency(start_time),
            )

        usage = getattr(response, "usage", None)
        return InvocationOutcome.success(
            provider=self.provider_id,
            model=model.model_id,
            payload={"text": text},
            provider_meta={
                "response_id": getattr(response, "id", None),
                "finish_reason": response.choices[0].finish_reason,
                "usage": (
                    {
                        "prompt_tokens": usage.prompt_tokens,
                        "completion_tokens": usage.completion_tokens,
                        "total_tokens": usage.total_tokens,
                    }
                    if usage
                    else None
                ),
            },
            latency_ms=self._measure_latency(start_time),
        )

    def _image(self, client, model: ModelDescriptor, payload: dict[str, Any], start_time: float) -> InvocationOutcome:
        prompt = payload.get("prompt")
        if not prompt:
            raise InvalidPayloadError("prompt is required for image generation")

        response = client.images.generate(
            model=model.model_id,
            prompt=prompt,
            size=payload.get("size", "1024x1024"),
            n=1,
        )
        images = [
            {"url": getattr(item, "url", None), "b64_json": getattr(item, "b64_json", None)}
            for item in (response.data or [])
        ]
        if not images:
            return InvocationOutcome.retryable(
                provider=self.provider_id,
                model=model.model_id,
                code="provider_error",
                message="No image returned",
                latency_ms=self._measure_latency(start_time),
            )
        return InvocationOutcome.success(
            provider=self.provider_id,
            model=model.model_id,
            payload={"images": images},
            latency_ms=self._measure_latency(start_time),
        )

    def _speech(self, client, model: ModelDescriptor, payload: dict[str, Any], start_time: float) -> InvocationOutcome:
        text = payload.get("text") or payload.get("prompt")
        if not text:
            raise InvalidPayloadError("text is required for speech generation")

        response = client.audio.speech.create(
            model=model.model_id,
            voice=payload.get("voice", "alloy"),
            input=text,
        )
        audio = base64.b64encode(response.content).decode("ascii")
        return InvocationOutcome.success(
            provider=self.provider_id,
            model=model.model_id,
            payload={"audio": f"data:audio/mpeg;base64,{audio}"},
            latency_ms=self._measure_latency(start_time),
        )
