"""Anthropic (Claude) AI provider implementation."""

import logging

import anthropic

from civic_ingest.ingestion.errors import AIServiceError
from civic_ingest.services.ai.client import (
    DEFAULT_TIMEOUT_SECONDS,
    AIClient,
    AIProvider,
    strip_code_fence,
)

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-20250514"
MAX_TOKENS = 8192


class AnthropicClient(AIClient):
    """Anthropic Claude AI client."""

    provider = AIProvider.ANTHROPIC

    def __init__(self, api_key: str, model: str | None = None):
        """
        Initialize the Anthropic client.

        Args:
            api_key: Anthropic API key.
            model: Model name (defaults to claude-sonnet-4-20250514).
        """
        self.client = anthropic.AsyncAnthropic(api_key=api_key, timeout=DEFAULT_TIMEOUT_SECONDS)
        self.model = model or DEFAULT_MODEL

    async def complete_json(self, system_prompt: str, text: str) -> str:
        try:
            response = await self.client.messages.create(
                model=self.model,
                max_tokens=MAX_TOKENS,
                system=system_prompt,
                messages=[{"role": "user", "content": text}],
            )
        except anthropic.APIError as e:
            logger.error(f"Anthropic API error: {e}")
            raise AIServiceError(f"Error calling Anthropic API: {e}") from e

        raw_response = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        logger.debug(f"Raw AI response: {raw_response[:1000]}...")
        if not raw_response.strip():
            raise AIServiceError("Anthropic API returned an empty response")
        return strip_code_fence(raw_response)
