"""Embedding clients for semantic retrieval.

OpenAI (text-embedding-3-small over REST) and Amazon Titan (Bedrock) are
supported. A client without credentials stays constructed but raises
EmbeddingUnavailable from embed(); callers treat that as an empty result.
"""

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from typing import Any

import boto3
import httpx
from botocore.exceptions import ClientError, NoCredentialsError

from journalq.exceptions import EmbeddingUnavailable
from journalq.utils.resilience import CircuitBreaker, retry_with_backoff

logger = logging.getLogger(__name__)


class EmbeddingService(ABC):
    """Text -> fixed-length vector."""

    def __init__(self, model: str, dimensions: int):
        self.model = model
        self.dimensions = dimensions
        self.available = False
        self._provider_name = "base"

    @property
    def provider(self) -> str:
        return self._provider_name

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        """Embed text.

        Raises:
            EmbeddingUnavailable: no credential, or the provider refused access.
        """
        pass

    async def close(self) -> None:
        pass

    def get_info(self) -> dict[str, Any]:
        return {
            "provider": self._provider_name,
            "available": self.available,
            "model": self.model,
            "dimensions": self.dimensions,
        }


class OpenAIEmbeddingClient(EmbeddingService):
    """OpenAI embeddings over REST."""

    URL = "https://api.openai.com/v1/embeddings"

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "text-embedding-3-small",
        dimensions: int = 1536,
        timeout: int = 30,
    ):
        super().__init__(model, dimensions)
        self._provider_name = "openai"
        self._http_client = None
        self._breaker = CircuitBreaker(name="openai-embeddings")
        self._api_key = api_key or os.environ.get("OPENAI_API_KEY", "")

        if not self._api_key:
            logger.info("Embeddings: No OpenAI API key - semantic search disabled (LITE MODE)")
            return

        self._http_client = httpx.AsyncClient(timeout=timeout)
        self.available = True
        logger.info(f"Embeddings: OpenAI connected ({model})")

    async def embed(self, text: str) -> list[float]:
        if not self.available:
            raise EmbeddingUnavailable("OpenAI embeddings not configured")
        if not self._breaker.is_available():
            raise EmbeddingUnavailable("OpenAI embeddings circuit open")

        try:
            vector = await retry_with_backoff(
                self._request,
                text,
                retryable_exceptions=(httpx.TransportError,),
            )
        except httpx.HTTPStatusError as e:
            self._breaker.record_failure()
            if e.response.status_code in (401, 403):
                logger.warning("Embeddings: OpenAI rejected the API key")
                self.available = False
                raise EmbeddingUnavailable("OpenAI embeddings access denied") from e
            raise
        except httpx.TransportError:
            self._breaker.record_failure()
            raise

        self._breaker.record_success()
        return vector

    async def _request(self, text: str) -> list[float]:
        response = await self._http_client.post(
            self.URL,
            json={"model": self.model, "input": text.replace("\n", " ")},
            headers={"Authorization": f"Bearer {self._api_key}"},
        )
        response.raise_for_status()
        return response.json()["data"][0]["embedding"]

    async def close(self) -> None:
        if self._http_client:
            await self._http_client.aclose()


class TitanEmbeddingClient(EmbeddingService):
    """
    Titan Embedding client for Bedrock.
    Gracefully handles missing AWS credentials.
    """

    SUPPORTED_DIMENSIONS = (256, 512, 1024)

    def __init__(self, region: str, model: str = "amazon.titan-embed-text-v2:0", dimensions: int = 1024):
        if dimensions not in self.SUPPORTED_DIMENSIONS:
            logger.warning(f"Embeddings: Titan does not support {dimensions} dimensions, using 1024")
            dimensions = 1024
        super().__init__(model, dimensions)
        self._provider_name = "titan"
        self.client = None

        try:
            if boto3.Session().get_credentials() is None:
                logger.info("Embeddings: No AWS credentials - Titan disabled (LITE MODE)")
                return
            self.client = boto3.client("bedrock-runtime", region_name=region)
            self.available = True
            logger.info(f"Embeddings: Titan connected ({model})")
        except NoCredentialsError:
            logger.info("Embeddings: AWS credentials not found - Titan disabled")
        except Exception as e:
            logger.warning(f"Embeddings: Titan init failed - {e}")

    async def embed(self, text: str) -> list[float]:
        if not self.available or not self.client:
            raise EmbeddingUnavailable("Titan embeddings not configured")

        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self._invoke, text)
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "")
            if error_code in ("AccessDeniedException", "UnrecognizedClientException"):
                logger.warning("Embeddings: AWS access denied - check IAM permissions")
                self.available = False
                raise EmbeddingUnavailable("Titan access denied") from e
            raise

    def _invoke(self, text: str) -> list[float]:
        resp = self.client.invoke_model(
            modelId=self.model,
            body=json.dumps({"inputText": text, "dimensions": self.dimensions, "normalize": True}),
        )
        return json.loads(resp["body"].read())["embedding"]


class DisabledEmbeddingService(EmbeddingService):
    """Used when no provider is configured. Every call is unavailable."""

    def __init__(self, dimensions: int = 1536):
        super().__init__("none", dimensions)
        self._provider_name = "disabled"

    async def embed(self, text: str) -> list[float]:
        raise EmbeddingUnavailable("No embedding provider configured")


def create_embedding_service(
    provider: str = "auto",
    openai_api_key: str = "",
    openai_model: str = "text-embedding-3-small",
    dimensions: int = 1536,
    aws_region: str = "us-east-1",
    titan_model: str = "amazon.titan-embed-text-v2:0",
) -> EmbeddingService:
    """Create the configured embedding service; auto prefers OpenAI, then Titan."""
    match provider:
        case "disabled":
            return DisabledEmbeddingService(dimensions)
        case "openai":
            return OpenAIEmbeddingClient(openai_api_key or None, openai_model, dimensions)
        case "titan":
            return TitanEmbeddingClient(aws_region, titan_model, dimensions)

    if openai_api_key or os.environ.get("OPENAI_API_KEY"):
        client = OpenAIEmbeddingClient(openai_api_key or None, openai_model, dimensions)
        if client.available:
            return client
    titan = TitanEmbeddingClient(aws_region, titan_model, dimensions)
    if titan.available:
        return titan
    return DisabledEmbeddingService(dimensions)
