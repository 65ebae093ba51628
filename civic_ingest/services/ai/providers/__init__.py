"""AI provider implementations."""

from civic_ingest.services.ai.providers.anthropic import AnthropicClient
from civic_ingest.services.ai.providers.openai import OpenAIClient

__all__ = ["AnthropicClient", "OpenAIClient"]
