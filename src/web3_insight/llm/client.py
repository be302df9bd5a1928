"""Text generation clients for local Ollama and OpenAI-compatible endpoints."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from web3_insight.config import LlmSettings

logger = logging.getLogger(__name__)


class LlmError(RuntimeError):
    """LLM endpoint unreachable or returned an unusable response."""


@dataclass(slots=True)
class LlmResponse:
    text: str
    model: str


class LlmClient(Protocol):
    """Single-shot prompt completion."""

    model: str

    def generate(self, prompt: str, *, temperature: float, max_tokens: int) -> LlmResponse:
        raise NotImplementedError


class _HttpLlmClient:
    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        timeout_seconds: float,
        headers: dict[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.model = model
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers=headers or {},
            transport=transport,
        )

    def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        try:
            response = self._client.post(path, json=body)
            response.raise_for_status()
            document = response.json()
        except httpx.HTTPError as exc:
            raise LlmError(f"{self.model}: request to {path} failed: {exc}") from exc
        except ValueError as exc:
            raise LlmError(f"{self.model}: response from {path} is not JSON") from exc
        if not isinstance(document, dict):
            raise LlmError(f"{self.model}: response from {path} is not an object")
        return document

    def close(self) -> None:
        self._client.close()


class OllamaClient(_HttpLlmClient):
    """Ollama ``/api/generate`` without streaming."""

    def generate(self, prompt: str, *, temperature: float, max_tokens: int) -> LlmResponse:
        document = self._post(
            "/api/generate",
            {
                "model": self.model,
                "prompt": prompt,
                "stream": False,
                "options": {"temperature": temperature, "num_predict": max_tokens},
            },
        )
        text = document.get("response")
        if not isinstance(text, str):
            raise LlmError(f"{self.model}: response field missing")
        return LlmResponse(text=text, model=self.model)


class OpenAICompatibleClient(_HttpLlmClient):
    """Any endpoint implementing ``/v1/chat/completions``."""

    def generate(self, prompt: str, *, temperature: float, max_tokens: int) -> LlmResponse:
        document = self._post(
            "/v1/chat/completions",
            {
                "model": self.model,
                "messages": [{"role": "user", "content": prompt}],
                "temperature": temperature,
                "max_tokens": max_tokens,
            },
        )
        try:
            text = document["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise LlmError(f"{self.model}: unexpected completion shape") from exc
        if not isinstance(text, str):
            raise LlmError(f"{self.model}: completion content is not text")
        return LlmResponse(text=text, model=str(document.get("model") or self.model))


def build_llm_client(settings: LlmSettings) -> LlmClient:
    if settings.provider == "ollama":
        return OllamaClient(
            base_url=settings.base_url,
            model=settings.model,
            timeout_seconds=settings.timeout_seconds,
        )
    if settings.provider == "openai":
        headers = {"Authorization": f"Bearer {settings.api_key}"} if settings.api_key else None
        return OpenAICompatibleClient(
            base_url=settings.base_url,
            model=settings.model,
            timeout_seconds=settings.timeout_seconds,
            headers=headers,
        )
    raise ValueError(f"Unsupported LLM provider: {settings.provider}")
