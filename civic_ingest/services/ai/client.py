"""AI client interface and provider abstraction."""

import os
from abc import ABC, abstractmethod
from enum import Enum

DEFAULT_TIMEOUT_SECONDS = 60.0


class AIProvider(str, Enum):
    """Supported AI providers."""

    ANTHROPIC = "anthropic"
    OPENAI = "openai"


def strip_code_fence(raw_response: str) -> str:
    """Remove a markdown code block wrapped around a JSON answer."""
    json_str = raw_response.strip()
    if json_str.startswith("```json"):
        json_str = json_str[7:]
    if json_str.startswith("```"):
        json_str = json_str[3:]
    if json_str.endswith("```"):
        json_str = json_str[:-3]
    return json_str.strip()


class AIClient(ABC):
    """Abstract base class for text-understanding providers."""

    provider: AIProvider
    model: str

    @abstractmethod
    async def complete_json(self, system_prompt: str, text: str) -> str:
        """
        Send one request and return the raw JSON answer.

        Args:
            system_prompt: Instructions describing the expected JSON output.
            text: The user content to process.

        Returns:
            The response text with any code fence removed.

        Raises:
            AIServiceError: If the provider could not be reached or
                returned an empty answer.
        """
        pass


def get_ai_client(
    provider: AIProvider | str,
    api_key: str,
    model: str | None = None,
) -> AIClient:
    """
    Factory function to get an AI client for the specified provider.

    Args:
        provider: The AI provider to use.
        api_key: The API key for the provider.
        model: Optional model name override.

    Returns:
        An AIClient instance for the specified provider.

    Raises:
        ValueError: If the provider is not supported.
    """
    if isinstance(provider, str):
        provider = AIProvider(provider.lower())

    if provider == AIProvider.ANTHROPIC:
        from civic_ingest.services.ai.providers.anthropic import AnthropicClient

        return AnthropicClient(api_key=api_key, model=model)
    elif provider == AIProvider.OPENAI:
        from civic_ingest.services.ai.providers.openai import OpenAIClient

        return OpenAIClient(api_key=api_key, model=model)
    else:
        raise ValueError(f"Unsupported AI provider: {provider}")


def create_client_from_env(
    provider: str | None = None,
    model: str | None = None,
) -> AIClient:
    """
    Build a client from AI_PROVIDER, AI_MODEL and the provider's API key.

    Raises:
        ValueError: If no API key is configured for the provider.
    """
    provider_name = (provider or os.environ.get("AI_PROVIDER") or AIProvider.ANTHROPIC.value).lower()
    key_var = "OPENAI_API_KEY" if provider_name == AIProvider.OPENAI.value else "ANTHROPIC_API_KEY"
    api_key = os.environ.get(key_var)
    if not api_key:
        raise ValueError(f"{key_var} environment variable is not set")
    return get_ai_client(provider_name, api_key=api_key, model=model or os.environ.get("AI_MODEL"))
