"""
LLM Provider Factory.

Auto-detects available providers from environment variables
and creates the appropriate client.
"""

import logging
import os
from typing import Optional

import boto3

from .base import BaseLLMClient, LLMConfig
from .providers import (
    BedrockClient,
    ClaudeClient,
    DisabledClient,
    OpenAIClient,
)

logger = logging.getLogger(__name__)

# Provider priority order (first available wins)
PROVIDER_PRIORITY = ["openai", "claude", "bedrock"]

# Environment variable mapping (bedrock uses the AWS credential chain)
PROVIDER_ENV_KEYS = {
    "openai": "OPENAI_API_KEY",
    "claude": "ANTHROPIC_API_KEY",
}

# Client class mapping
PROVIDER_CLIENTS = {
    "openai": OpenAIClient,
    "claude": ClaudeClient,
    "bedrock": BedrockClient,
}


def _aws_credentials_present() -> bool:
    try:
        return boto3.Session().get_credentials() is not None
    except Exception:
        return False


def get_available_providers() -> list[str]:
    """
    Get list of available providers based on environment variables.

    Returns:
        List of provider names with usable credentials
    """
    available = [p for p, env_key in PROVIDER_ENV_KEYS.items() if os.environ.get(env_key)]
    if _aws_credentials_present():
        available.append("bedrock")
    return available


def create_llm_client(
    provider: str = "auto",
    api_key: Optional[str] = None,
    model: Optional[str] = None,
    **kwargs,
) -> BaseLLMClient:
    """
    Create an LLM client with auto-detection or explicit provider.

    Args:
        provider: Provider name, "auto" for auto-detection, or "disabled"
        api_key: Optional explicit API key
        model: Optional model override
        **kwargs: Additional config options

    Returns:
        Configured BaseLLMClient instance

    Example:
        # Auto-detect (uses first available)
        client = create_llm_client()

        # Explicit provider
        client = create_llm_client("claude", model="claude-3-5-sonnet-latest")
    """
    config = LLMConfig(
        provider=provider,
        api_key=api_key,
        model=model,
        **kwargs,
    )

    if provider == "disabled":
        return DisabledClient(config)

    if provider == "auto":
        return _create_auto_client(config)

    # Explicit provider
    if provider in PROVIDER_CLIENTS:
        client = PROVIDER_CLIENTS[provider](config)
        if client.available:
            return client
        logger.warning(f"LLM: {provider} requested but not available")
    else:
        logger.warning(f"LLM: unknown provider '{provider}'")

    # Fallback to disabled
    return DisabledClient(config)


def _create_auto_client(config: LLMConfig) -> BaseLLMClient:
    """
    Auto-detect and create the best available client.

    Tries providers in priority order:
    1. OpenAI
    2. Claude
    3. Bedrock (AWS credential chain)
    """
    available = get_available_providers()

    if not available:
        logger.info("LLM: No provider credentials found - deterministic answers only")
        return DisabledClient(config)

    logger.info(f"LLM: Available providers: {', '.join(available)}")

    for provider in PROVIDER_PRIORITY:
        if provider not in available:
            continue
        provider_config = LLMConfig(
            provider=provider,
            # An explicit key only makes sense for the first keyed provider
            api_key=config.api_key if provider in PROVIDER_ENV_KEYS else None,
            model=config.model if config.model != "default" else None,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            timeout=config.timeout,
            base_url=config.base_url,
            region=config.region,
        )
        client = PROVIDER_CLIENTS[provider](provider_config)
        if client.available:
            logger.info(f"LLM: Using {provider} ({client.config.model})")
            return client

    return DisabledClient(config)


def create_llm_client_from_config(cfg) -> BaseLLMClient:
    """
    Create the completion client from a journalq Config.

    Args:
        cfg: journalq.config.Config

    Returns:
        Configured LLM client
    """
    provider = cfg.llm_provider
    match provider:
        case "openai":
            api_key = cfg.openai_api_key
        case "claude":
            api_key = cfg.anthropic_api_key
        case _:
            api_key = None
    model = cfg.llm_model if provider != "bedrock" else (cfg.llm_model or cfg.bedrock_model)

    return create_llm_client(
        provider=provider,
        api_key=api_key or None,
        model=model or None,
        temperature=cfg.llm_temperature,
        max_tokens=cfg.consolidator_max_tokens,
        timeout=cfg.llm_timeout,
        region=cfg.aws_region,
    )
