"""Tests for completion and embedding providers and the resilience helpers."""

import asyncio
import json

import httpx
import pytest

from journalq.embeddings import (
    DisabledEmbeddingService,
    OpenAIEmbeddingClient,
    TitanEmbeddingClient,
    create_embedding_service,
)
from journalq.exceptions import EmbeddingUnavailable
from journalq.llm import ClaudeClient, DisabledClient, LLMConfig, OpenAIClient, create_llm_client
from journalq.llm.providers import _RestClient
from journalq.utils.resilience import CircuitBreaker, CircuitState, Deadline, retry_with_backoff


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestCompletionProviders:
    """REST providers through a mocked transport."""

    @pytest.mark.asyncio
    async def test_openai_request_and_response(self):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={
                "choices": [{"message": {"content": '{"answerText": "ok"}'}}],
                "usage": {"total_tokens": 42},
            })

        client = OpenAIClient(LLMConfig(provider="openai", api_key="sk-test"))
        await client.close()
        client._http_client = mock_client(handler)

        response = await client.complete("system rules", "user question", max_tokens=300)

        assert response.success
        assert response.text == '{"answerText": "ok"}'
        assert response.usage == {"total_tokens": 42}
        assert seen[0]["messages"][0] == {"role": "system", "content": "system rules"}
        assert seen[0]["max_tokens"] == 300
        assert seen[0]["model"] == "gpt-4o-mini"
        await client.close()

    @pytest.mark.asyncio
    async def test_claude_system_prompt_is_top_level(self):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={"content": [{"text": "hello"}]})

        client = ClaudeClient(LLMConfig(provider="claude", api_key="key"))
        await client.close()
        client._http_client = mock_client(handler)

        response = await client.complete("be brief", "question", max_tokens=100)

        assert response.text == "hello"
        assert seen[0]["system"] == "be brief"
        assert seen[0]["messages"] == [{"role": "user", "content": "question"}]
        await client.close()

    @pytest.mark.asyncio
    async def test_http_error_becomes_failed_response(self):
        client = OpenAIClient(LLMConfig(provider="openai", api_key="sk-test"))
        await client.close()
        client._http_client = mock_client(lambda request: httpx.Response(429, json={}))

        response = await client.complete("s", "u", max_tokens=10)

        assert not response.success
        assert "429" in response.error
        await client.close()

    @pytest.mark.asyncio
    async def test_missing_key_is_unavailable(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        client = OpenAIClient(LLMConfig(provider="openai"))
        assert not client.available
        response = await client.complete("s", "u", max_tokens=10)
        assert response.error == "OpenAI not available"

    @pytest.mark.asyncio
    async def test_disabled_client(self):
        client = create_llm_client("disabled")
        assert isinstance(client, DisabledClient)
        response = await client.complete("s", "u", max_tokens=10)
        assert not response.success
        assert response.provider == "disabled"

    def test_unknown_provider_falls_back_to_disabled(self):
        assert isinstance(create_llm_client("carrier-pigeon"), DisabledClient)

    def test_rest_base_requires_a_request_method(self):
        with pytest.raises(TypeError):
            _RestClient(LLMConfig(provider="openai", api_key="sk-test"))


class TestEmbeddings:
    """Embedding clients and the unavailable contract."""

    @pytest.mark.asyncio
    async def test_disabled_service_raises(self):
        service = create_embedding_service("disabled")
        assert isinstance(service, DisabledEmbeddingService)
        with pytest.raises(EmbeddingUnavailable):
            await service.embed("text")

    @pytest.mark.parametrize("requested,used", [(512, 512), (256, 256), (1536, 1024)])
    def test_titan_dimensions_follow_configuration(self, requested, used):
        service = create_embedding_service("titan", dimensions=requested)
        assert isinstance(service, TitanEmbeddingClient)
        assert service.dimensions == used

    @pytest.mark.asyncio
    async def test_openai_without_key(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        service = OpenAIEmbeddingClient()
        assert not service.available
        with pytest.raises(EmbeddingUnavailable):
            await service.embed("text")

    @pytest.mark.asyncio
    async def test_openai_embedding(self):
        def handler(request):
            assert json.loads(request.content)["input"] == "two lines"
            return httpx.Response(200, json={"data": [{"embedding": [0.1, 0.2, 0.3]}]})

        service = OpenAIEmbeddingClient(api_key="sk-test", dimensions=3)
        await service.close()
        service._http_client = mock_client(handler)

        assert await service.embed("two\nlines") == [0.1, 0.2, 0.3]
        await service.close()

    @pytest.mark.asyncio
    async def test_rejected_key_disables_service(self):
        service = OpenAIEmbeddingClient(api_key="sk-bad")
        await service.close()
        service._http_client = mock_client(lambda request: httpx.Response(401, json={}))

        with pytest.raises(EmbeddingUnavailable):
            await service.embed("text")
        assert not service.available
        await service.close()


class TestResilience:
    """Circuit breaker, retry and deadline."""

    def test_circuit_opens_and_recovers(self):
        breaker = CircuitBreaker(name="test", threshold=2, reset_timeout=0)
        breaker.record_failure()
        assert breaker.is_available()
        breaker.record_failure()
        assert breaker.get_state()["state"] == CircuitState.OPEN.value

        # reset_timeout=0: next check moves to half-open
        assert breaker.is_available()
        breaker.record_success()
        breaker.record_success()
        assert breaker.get_state()["state"] == CircuitState.CLOSED.value

    def test_circuit_stays_open_until_timeout(self):
        breaker = CircuitBreaker(name="test", threshold=1, reset_timeout=60)
        breaker.record_failure()
        assert not breaker.is_available()

    @pytest.mark.asyncio
    async def test_retry_then_succeed(self):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 2:
                raise ConnectionError("reset")
            return "ok"

        assert await retry_with_backoff(flaky, backoff_base=0) == "ok"
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_retry_gives_up(self):
        async def broken():
            raise ConnectionError("down")

        with pytest.raises(ConnectionError):
            await retry_with_backoff(broken, max_retries=1, backoff_base=0)

    @pytest.mark.asyncio
    async def test_non_retryable_raises_immediately(self):
        calls = []

        async def wrong():
            calls.append(1)
            raise ValueError("bad input")

        with pytest.raises(ValueError):
            await retry_with_backoff(wrong, backoff_base=0)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_deadline_bounds_calls(self):
        deadline = Deadline(20)
        with pytest.raises(asyncio.TimeoutError):
            await deadline.run(asyncio.sleep(1))
        assert deadline.expired()

    @pytest.mark.asyncio
    async def test_spent_deadline_never_starts_the_call(self):
        started = []

        async def call():
            started.append(1)

        with pytest.raises(asyncio.TimeoutError):
            await Deadline(0).run(call())
        assert started == []

    @pytest.mark.asyncio
    async def test_deadline_passes_results_through(self):
        async def value():
            return 7

        assert await Deadline(1000).run(value()) == 7
