"""
Completion Service Package.

Provides a provider-agnostic completion client for the consolidator.
Supports OpenAI, Anthropic Claude, and Amazon Bedrock.

Usage:
    from journalq.llm import create_llm_client

    client = create_llm_client()  # Auto-detects from env vars
    response = await client.complete(system_prompt, user_prompt, max_tokens=1500)
"""

from .base import BaseLLMClient, LLMConfig, LLMResponse
from .factory import create_llm_client, create_llm_client_from_config, get_available_providers
from .providers import BedrockClient, ClaudeClient, DisabledClient, OpenAIClient

__all__ = [
    # Base
    "BaseLLMClient",
    "LLMConfig",
    "LLMResponse",
    # Factory
    "create_llm_client",
    "create_llm_client_from_config",
    "get_available_providers",
    # Providers
    "OpenAIClient",
    "ClaudeClient",
    "BedrockClient",
    "DisabledClient",
]
