"""
Tests for TextGenerationClient (haven/services/text_generation.py).

The HTTP side is replaced with httpx.MockTransport.
"""

from __future__ import annotations

import dataclasses
import json

import httpx
import pytest

from haven.lib.circuit_breaker import CircuitBreaker, CircuitOpenError, CircuitState
from haven.lib.exceptions import ExternalServiceUnavailable
from haven.services.text_generation import SYSTEM_PROMPT, TextGenerationClient


@pytest.fixture()
def llm_settings(settings):
    return dataclasses.replace(settings, llm_api_key="sk-test", llm_base_url="https://llm.test/v1")


def _completion(content):
    return httpx.Response(200, json={"choices": [{"message": {"role": "assistant", "content": content}}]})


def _client(llm_settings, handler, breaker=None):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TextGenerationClient(llm_settings, http_client=http, breaker=breaker)


class TestComplete:
    @pytest.mark.asyncio
    async def test_success(self, llm_settings):
        requests = []

        def handler(request):
            requests.append(request)
            return _completion("  You're doing well.  ")

        client = _client(llm_settings, handler)

        assert await client.complete("Recent average mood: 7.0/10", max_tokens=200) == "You're doing well."

        [request] = requests
        assert str(request.url) == "https://llm.test/v1/chat/completions"
        assert request.headers["Authorization"] == "Bearer sk-test"
        body = json.loads(request.content)
        assert body["max_tokens"] == 200
        assert body["messages"][0] == {"role": "system", "content": SYSTEM_PROMPT}
        assert body["messages"][1]["content"] == "Recent average mood: 7.0/10"

    @pytest.mark.asyncio
    async def test_prompt_is_sanitized(self, llm_settings):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return _completion("ok")

        await _client(llm_settings, handler).complete("mood\x00 7")

        assert bodies[0]["messages"][1]["content"] == "mood 7"

    @pytest.mark.asyncio
    async def test_disabled_without_api_key(self, settings):
        client = TextGenerationClient(settings)
        assert client.enabled is False
        with pytest.raises(ExternalServiceUnavailable):
            await client.complete("x")

    @pytest.mark.asyncio
    async def test_http_error(self, llm_settings):
        client = _client(llm_settings, lambda request: httpx.Response(500, text="boom"))
        with pytest.raises(ExternalServiceUnavailable):
            await client.complete("x")

    @pytest.mark.asyncio
    async def test_transport_error(self, llm_settings):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        with pytest.raises(ExternalServiceUnavailable):
            await _client(llm_settings, handler).complete("x")

    @pytest.mark.asyncio
    async def test_empty_content(self, llm_settings):
        client = _client(llm_settings, lambda request: _completion("   "))
        with pytest.raises(ExternalServiceUnavailable):
            await client.complete("x")

    @pytest.mark.asyncio
    async def test_malformed_body(self, llm_settings):
        client = _client(llm_settings, lambda request: httpx.Response(200, json={"choices": []}))
        with pytest.raises(ExternalServiceUnavailable):
            await client.complete("x")


class TestBreaker:
    @pytest.mark.asyncio
    async def test_opens_after_repeated_failures(self, llm_settings):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503)

        breaker = CircuitBreaker("llm-test", failure_threshold=2, recovery_timeout=60)
        client = _client(llm_settings, handler, breaker=breaker)

        for _ in range(2):
            with pytest.raises(ExternalServiceUnavailable):
                await client.complete("x")

        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            await client.complete("x")
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_success_keeps_circuit_closed(self, llm_settings):
        client = _client(llm_settings, lambda request: _completion("ok"))
        await client.complete("x")
        assert client.breaker.state == CircuitState.CLOSED
        assert client.breaker.failure_count == 0
