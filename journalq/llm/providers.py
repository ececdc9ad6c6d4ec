"""
LLM Provider Implementations.

OpenAI and Anthropic are called over REST with httpx; Bedrock through
boto3's converse API in a worker thread. Every provider converts errors
into LLMResponse(success=False) instead of raising.
"""

import asyncio
import logging
import os
import time
from abc import abstractmethod
from typing import Optional

import boto3
import httpx
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError, NoCredentialsError

from journalq.utils.resilience import CircuitBreaker, retry_with_backoff

from .base import BaseLLMClient, LLMConfig, LLMResponse

logger = logging.getLogger(__name__)

BOTO_CONFIG = BotoConfig(
    read_timeout=120,
    connect_timeout=30,
    retries={"max_attempts": 2},
)


class _RestClient(BaseLLMClient):
    """Shared plumbing for REST providers: http client, breaker, retry."""

    PROVIDER = "rest"
    ENV_KEY = ""
    DEFAULT_MODEL = "default"

    def __init__(self, config: Optional[LLMConfig] = None):
        super().__init__(config)
        self._provider_name = self.PROVIDER
        self._http_client = None
        self._breaker = CircuitBreaker(name=self._provider_name)

        api_key = self.config.api_key or os.environ.get(self.ENV_KEY)
        if not api_key:
            logger.info(f"{self.label}: No API key - client disabled")
            return

        self.config.api_key = api_key
        if not self.config.model or self.config.model == "default":
            self.config.model = self.DEFAULT_MODEL

        self._http_client = httpx.AsyncClient(timeout=self.config.timeout)
        self.available = True
        logger.info(f"{self.label}: Connected via REST ({self.config.model})")

    @property
    def label(self) -> str:
        return self._provider_name.capitalize()

    async def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        max_tokens: Optional[int] = None,
    ) -> LLMResponse:
        if not self.available:
            return LLMResponse(success=False, error=f"{self.label} not available", provider=self._provider_name)
        if not self._breaker.is_available():
            return LLMResponse(success=False, error=f"{self.label} circuit open", provider=self._provider_name)

        start = time.time()
        try:
            result = await retry_with_backoff(
                self._generate_rest,
                prompt,
                system_prompt,
                max_tokens or self.config.max_tokens,
                retryable_exceptions=(httpx.TransportError,),
            )
            self._breaker.record_success()
            result.latency_ms = int((time.time() - start) * 1000)
            return result
        except Exception as e:
            self._breaker.record_failure()
            logger.error(f"{self.label} generation failed: {e}")
            return LLMResponse(
                success=False,
                error=str(e),
                provider=self._provider_name,
                latency_ms=int((time.time() - start) * 1000),
            )

    @abstractmethod
    async def _generate_rest(self, prompt: str, system_prompt: Optional[str], max_tokens: int) -> LLMResponse:
        """Make one provider request."""
        pass

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()


class OpenAIClient(_RestClient):
    """OpenAI GPT client over the chat completions REST API."""

    PROVIDER = "openai"
    ENV_KEY = "OPENAI_API_KEY"
    DEFAULT_MODEL = "gpt-4o-mini"

    @property
    def label(self) -> str:
        return "OpenAI"

    async def _generate_rest(self, prompt: str, system_prompt: Optional[str], max_tokens: int) -> LLMResponse:
        url = self.config.base_url or "https://api.openai.com/v1/chat/completions"

        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        payload = {
            "model": self.config.model,
            "messages": messages,
            "temperature": self.config.temperature,
            "max_tokens": max_tokens,
        }
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.config.api_key}",
        }

        response = await self._http_client.post(url, json=payload, headers=headers)
        response.raise_for_status()
        result = response.json()

        text = result.get("choices", [{}])[0].get("message", {}).get("content", "") or ""
        return LLMResponse(
            success=True,
            text=text,
            usage=result.get("usage", {}),
            provider=self._provider_name,
            model=self.config.model,
        )


class ClaudeClient(_RestClient):
    """Anthropic Claude client over the messages REST API."""

    PROVIDER = "claude"
    ENV_KEY = "ANTHROPIC_API_KEY"
    DEFAULT_MODEL = "claude-3-5-haiku-latest"

    async def _generate_rest(self, prompt: str, system_prompt: Optional[str], max_tokens: int) -> LLMResponse:
        url = self.config.base_url or "https://api.anthropic.com/v1/messages"

        payload = {
            "model": self.config.model,
            "max_tokens": max_tokens,
            "temperature": self.config.temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system_prompt:
            payload["system"] = system_prompt

        headers = {
            "Content-Type": "application/json",
            "x-api-key": self.config.api_key,
            "anthropic-version": "2023-06-01",
        }

        response = await self._http_client.post(url, json=payload, headers=headers)
        response.raise_for_status()
        result = response.json()

        text = ""
        if result.get("content"):
            text = result["content"][0].get("text", "")

        return LLMResponse(
            success=True,
            text=text,
            usage=result.get("usage", {}),
            provider=self._provider_name,
            model=self.config.model,
        )


class BedrockClient(BaseLLMClient):
    """
    Amazon Bedrock client using the converse API.
    Gracefully handles missing AWS credentials.
    """

    def __init__(self, config: Optional[LLMConfig] = None):
        super().__init__(config)
        self._provider_name = "bedrock"
        self._client = None
        self._breaker = CircuitBreaker(name="bedrock")

        if not self.config.model or self.config.model == "default":
            self.config.model = "us.amazon.nova-lite-v1:0"

        # Supports the default credential chain (env, profile, instance role)
        try:
            if boto3.Session().get_credentials() is None:
                logger.info("Bedrock: No AWS credentials - client disabled")
                return
            self._client = boto3.client("bedrock-runtime", region_name=self.config.region, config=BOTO_CONFIG)
            self.available = True
            logger.info(f"Bedrock: Connected ({self.config.model})")
        except NoCredentialsError:
            logger.warning("Bedrock: AWS credentials not found")
        except Exception as e:
            logger.warning(f"Bedrock: Init failed - {e}")

    async def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        max_tokens: Optional[int] = None,
    ) -> LLMResponse:
        if not self.available:
            return LLMResponse(success=False, error="Bedrock not available", provider=self._provider_name)
        if not self._breaker.is_available():
            return LLMResponse(success=False, error="Bedrock circuit open", provider=self._provider_name)

        start = time.time()
        loop = asyncio.get_running_loop()
        try:
            result = await loop.run_in_executor(
                None, self._converse, prompt, system_prompt, max_tokens or self.config.max_tokens
            )
            self._breaker.record_success()
            result.latency_ms = int((time.time() - start) * 1000)
            return result
        except ClientError as e:
            self._breaker.record_failure()
            error_code = e.response.get("Error", {}).get("Code", "")
            logger.error(f"Bedrock generation failed ({error_code}): {e}")
            return LLMResponse(
                success=False,
                error=f"{error_code}: {e}",
                provider=self._provider_name,
                latency_ms=int((time.time() - start) * 1000),
            )
        except Exception as e:
            self._breaker.record_failure()
            logger.error(f"Bedrock generation failed: {e}")
            return LLMResponse(
                success=False,
                error=str(e),
                provider=self._provider_name,
                latency_ms=int((time.time() - start) * 1000),
            )

    def _converse(self, prompt: str, system_prompt: Optional[str], max_tokens: int) -> LLMResponse:
        kwargs = {
            "modelId": self.config.model,
            "messages": [{"role": "user", "content": [{"text": prompt}]}],
            "inferenceConfig": {"maxTokens": max_tokens, "temperature": self.config.temperature},
        }
        if system_prompt:
            kwargs["system"] = [{"text": system_prompt}]

        response = self._client.converse(**kwargs)

        text = ""
        for block in response["output"]["message"]["content"]:
            if "text" in block:
                text = block["text"]
                break

        usage = response.get("usage", {})
        return LLMResponse(
            success=True,
            text=text,
            usage={
                "prompt_tokens": usage.get("inputTokens", 0),
                "completion_tokens": usage.get("outputTokens", 0),
            },
            provider=self._provider_name,
            model=self.config.model,
        )


class DisabledClient(BaseLLMClient):
    """
    Disabled/fallback client.

    Used when no provider is available. Always fails, so the consolidator
    falls back to its deterministic answer.
    """

    def __init__(self, config: Optional[LLMConfig] = None):
        super().__init__(config)
        self._provider_name = "disabled"
        self.available = False
        logger.info("LLM: No provider available - answers use the deterministic fallback")

    async def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        max_tokens: Optional[int] = None,
    ) -> LLMResponse:
        """Return disabled response."""
        return LLMResponse(
            success=False,
            error="No LLM provider configured",
            provider=self._provider_name,
        )
