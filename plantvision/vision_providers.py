from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from .config import AppConfig

logger = logging.getLogger(__name__)


class VisionProviderError(RuntimeError):
    pass


@dataclass
class VisionProviderResult:
    text: str
    raw_response: Any
    model_used: str
    request_metadata: dict[str, Any]


class _BaseVisionProvider:
    """One upstream vision model: a prompt and an inline image in, raw reply text out."""

    route_id: str = ""
    label: str = ""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str,
        default_model: str,
        timeout_seconds: float,
        max_output_tokens: int = 1000,
        temperature: float = 0.2,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.api_key = api_key.strip()
        self.base_url = base_url.strip().rstrip("/")
        self.default_model = default_model.strip()
        self.timeout_seconds = timeout_seconds
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature
        self.http_client = http_client

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        http_client: httpx.Client | None = None,
    ) -> "_BaseVisionProvider":
        raise NotImplementedError

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.default_model)

    def availability(self) -> dict[str, Any]:
        return {
            "id": self.route_id,
            "label": self.label,
            "configured": bool(self.configured),
            "default_model": self.default_model,
        }

    def analyze(
        self,
        *,
        prompt: str,
        image_base64: str,
        media_type: str = "image/jpeg",
    ) -> VisionProviderResult:
        raise NotImplementedError

    def _require_ready(self, image_base64: str) -> None:
        if not image_base64:
            raise VisionProviderError(f"An image is required for {self.label} vision analysis.")
        if not self.api_key:
            raise VisionProviderError(f"{self.label} API key not configured")
        if not self.default_model:
            raise VisionProviderError(f"{self.label} provider is not configured (missing model).")
        if not self.base_url.startswith("http"):
            raise VisionProviderError(f"Invalid {self.label} base URL.")

    def _post_json(
        self,
        *,
        url: str,
        headers: dict[str, str],
        request_payload: dict[str, Any],
        params: dict[str, str] | None = None,
    ) -> httpx.Response:
        normalized_headers = dict(headers)
        normalized_headers.setdefault("Accept", "application/json")
        normalized_headers.setdefault("User-Agent", "PlantVision/1.0")
        try:
            if self.http_client is not None:
                return self.http_client.post(
                    url,
                    headers=normalized_headers,
                    params=params,
                    json=request_payload,
                    timeout=self.timeout_seconds,
                )
            return httpx.post(
                url,
                headers=normalized_headers,
                params=params,
                json=request_payload,
                timeout=self.timeout_seconds,
            )
        except httpx.HTTPError as exc:
            raise VisionProviderError(f"HTTP request failed: {exc}") from exc

    def _decode_response(self, response: httpx.Response) -> Any:
        if response.status_code >= 400:
            detail = _extract_error_detail(response)
            logger.error("%s API error (%s): %s", self.label, response.status_code, detail)
            raise VisionProviderError(
                f"{self.label} request failed ({response.status_code}): {detail}"
            )
        try:
            return response.json()
        except ValueError as exc:
            raise VisionProviderError(f"{self.label} response was not valid JSON: {exc}") from exc


class GeminiVisionProvider(_BaseVisionProvider):
    route_id = "gemini"
    label = "Gemini"

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        http_client: httpx.Client | None = None,
    ) -> "GeminiVisionProvider":
        return cls(
            api_key=config.gemini_api_key,
            base_url=config.gemini_base_url,
            default_model=config.gemini_model,
            timeout_seconds=config.request_timeout_seconds,
            max_output_tokens=config.max_output_tokens,
            temperature=config.temperature,
            http_client=http_client,
        )

    def analyze(
        self,
        *,
        prompt: str,
        image_base64: str,
        media_type: str = "image/jpeg",
    ) -> VisionProviderResult:
        self._require_ready(image_base64)

        url = f"{self.base_url}/models/{self.default_model}:generateContent"
        request_payload = {
            "contents": [
                {
                    "parts": [
                        {"text": prompt},
                        {
                            "inline_data": {
                                "mime_type": media_type,
                                "data": image_base64,
                            }
                        },
                    ]
                }
            ],
            "generationConfig": {
                "maxOutputTokens": self.max_output_tokens,
                "temperature": self.temperature,
            },
        }
        response = self._post_json(
            url=url,
            headers={"Content-Type": "application/json"},
            params={"key": self.api_key},
            request_payload=request_payload,
        )
        payload = self._decode_response(response)
        return VisionProviderResult(
            text=_extract_gemini_text(payload),
            raw_response=payload,
            model_used=self.default_model,
            request_metadata={
                "provider": self.route_id,
                "endpoint": url,
                "model": self.default_model,
            },
        )


class OpenAIVisionProvider(_BaseVisionProvider):
    route_id = "openai"
    label = "OpenAI"

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        http_client: httpx.Client | None = None,
    ) -> "OpenAIVisionProvider":
        return cls(
            api_key=config.openai_api_key,
            base_url=config.openai_base_url,
            default_model=config.openai_model,
            timeout_seconds=config.request_timeout_seconds,
            max_output_tokens=config.max_output_tokens,
            temperature=config.temperature,
            http_client=http_client,
        )

    def analyze(
        self,
        *,
        prompt: str,
        image_base64: str,
        media_type: str = "image/jpeg",
    ) -> VisionProviderResult:
        self._require_ready(image_base64)

        request_payload = {
            "model": self.default_model,
            "messages": [
                {"role": "system", "content": prompt},
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "text",
                            "text": "Please analyze this plant image for diseases or health issues.",
                        },
                        {
                            "type": "image_url",
                            "image_url": {"url": f"data:{media_type};base64,{image_base64}"},
                        },
                    ],
                },
            ],
            "max_tokens": self.max_output_tokens,
            "temperature": self.temperature,
        }

        url = _build_chat_completions_url(self.base_url)
        response = self._post_json(
            url=url,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            request_payload=request_payload,
        )
        payload = self._decode_response(response)
        return VisionProviderResult(
            text=_extract_openai_text(payload),
            raw_response=payload,
            model_used=self.default_model,
            request_metadata={
                "provider": self.route_id,
                "endpoint": url,
                "model": self.default_model,
            },
        )


PROVIDER_CLASSES: dict[str, type[_BaseVisionProvider]] = {
    GeminiVisionProvider.route_id: GeminiVisionProvider,
    OpenAIVisionProvider.route_id: OpenAIVisionProvider,
}


def build_default_providers(
    config: AppConfig,
    *,
    http_client: httpx.Client | None = None,
) -> dict[str, _BaseVisionProvider]:
    return {
        route_id: provider_cls.from_config(config, http_client=http_client)
        for route_id, provider_cls in PROVIDER_CLASSES.items()
    }


def build_provider(
    config: AppConfig,
    *,
    http_client: httpx.Client | None = None,
) -> _BaseVisionProvider:
    provider_cls = PROVIDER_CLASSES.get(config.vision_provider)
    if provider_cls is None:
        raise VisionProviderError(
            f"VISION_PROVIDER must be one of: {', '.join(sorted(PROVIDER_CLASSES))}"
        )
    return provider_cls.from_config(config, http_client=http_client)


def _extract_gemini_text(payload: Any) -> str:
    if not isinstance(payload, dict):
        raise VisionProviderError("Invalid Gemini response payload.")
    candidates = payload.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        raise VisionProviderError("Gemini response does not contain candidates.")
    content = candidates[0].get("content") if isinstance(candidates[0], dict) else None
    parts = content.get("parts") if isinstance(content, dict) else None
    if not isinstance(parts, list):
        raise VisionProviderError("Gemini response missing content parts.")

    chunks: list[str] = []
    for part in parts:
        if isinstance(part, dict) and isinstance(part.get("text"), str):
            chunks.append(part["text"])
    if not chunks:
        raise VisionProviderError("Gemini response did not include text content.")
    return "\n".join(chunks)


def _extract_openai_text(payload: Any) -> str:
    if not isinstance(payload, dict):
        raise VisionProviderError("Invalid OpenAI response payload.")
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        raise VisionProviderError("OpenAI response does not contain choices.")
    message = choices[0].get("message") if isinstance(choices[0], dict) else None
    if not isinstance(message, dict):
        raise VisionProviderError("OpenAI response missing message payload.")

    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        chunks: list[str] = []
        for item in content:
            if isinstance(item, dict) and item.get("type") == "text" and isinstance(item.get("text"), str):
                chunks.append(item["text"])
        if chunks:
            return "\n".join(chunks)
    raise VisionProviderError("OpenAI response did not include text content.")


def _extract_error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            message = error.get("message")
            if isinstance(message, str) and message:
                return message
        detail = payload.get("detail")
        if isinstance(detail, str) and detail:
            return detail
    body = response.text.strip()
    return body[:300] if body else "Unknown provider error"


def _build_chat_completions_url(base_url: str) -> str:
    normalized = base_url.strip().rstrip("/")
    if normalized.endswith("/chat/completions"):
        return normalized
    return f"{normalized}/chat/completions"
