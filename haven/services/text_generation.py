"""
Text generation client for Haven insights.

Talks to an OpenAI-compatible chat-completions endpoint. Used only to
re-phrase insight texts the engine already computed from templates, so
every failure (missing key, HTTP error, timeout, open circuit) surfaces
as ExternalServiceUnavailable and the caller keeps its template text.

Only aggregate numbers and trigger names are sent. Prompts pass through
sanitize_for_llm() before they leave the device.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from haven.config.settings import Settings, get_settings
from haven.lib.circuit_breaker import CircuitBreaker
from haven.lib.exceptions import ExternalServiceUnavailable
from haven.lib.security import sanitize_for_llm

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a compassionate mental health AI assistant. Provide supportive, "
    "evidence-based insights while being clear that you are not a replacement "
    "for professional care. Always include disclaimers about seeking professional "
    "help when appropriate. Be encouraging and non-judgmental."
)

DEFAULT_MAX_TOKENS = 500
TEMPERATURE = 0.7


class TextGenerationClient:
    """
    Chat-completions client guarded by a circuit breaker.

    Args:
        settings: Provides the API key, base URL, model and timeout
        http_client: Optional pre-built httpx.AsyncClient (tests pass one
            with a MockTransport)
        breaker: Optional circuit breaker; a fresh one per client by default
    """

    def __init__(
        self,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._client = http_client
        self._owns_client = http_client is None
        self._breaker = breaker or CircuitBreaker(name="text_generation")

    @property
    def enabled(self) -> bool:
        return self._settings.text_generation_enabled

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._settings.llm_timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def complete(self, prompt: str, max_tokens: int = DEFAULT_MAX_TOKENS) -> str:
        """
        Return the first choice's message content for `prompt`.

        Raises:
            ExternalServiceUnavailable: Not configured, circuit open, HTTP or
                transport failure, or a response without content
        """
        if not self.enabled:
            raise ExternalServiceUnavailable("Text generation is not configured")

        payload: dict[str, Any] = {
            "model": self._settings.llm_model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": sanitize_for_llm(prompt)},
            ],
            "max_tokens": max_tokens,
            "temperature": TEMPERATURE,
        }
        headers = {"Authorization": f"Bearer {self._settings.llm_api_key}"}
        url = f"{self._settings.llm_base_url}/chat/completions"

        async with self._breaker:
            try:
                response = await self._http().post(url, json=payload, headers=headers)
                response.raise_for_status()
                data = response.json()
            except httpx.HTTPStatusError as e:
                logger.warning(
                    "text_generation_http_error",
                    extra={"status_code": e.response.status_code},
                )
                raise ExternalServiceUnavailable(f"Text generation returned {e.response.status_code}") from e
            except (httpx.HTTPError, ValueError) as e:
                logger.warning("text_generation_request_failed", extra={"error": type(e).__name__})
                raise ExternalServiceUnavailable("Text generation request failed") from e

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            content = None
        if not content or not str(content).strip():
            raise ExternalServiceUnavailable("Text generation returned no content")
        return str(content).strip()


__all__ = ["SYSTEM_PROMPT", "TextGenerationClient"]
