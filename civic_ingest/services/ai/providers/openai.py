"""OpenAI (GPT) AI provider implementation."""

import logging

import openai

from civic_ingest.ingestion.errors import AIServiceError
from civic_ingest.services.ai.client import (
    DEFAULT_TIMEOUT_SECONDS,
    AIClient,
    AIProvider,
    strip_code_fence,
)

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o"
MAX_TOKENS = 8192


class OpenAIClient(AIClient):
    """OpenAI GPT AI client."""

    provider = AIProvider.OPENAI

    def __init__(self, api_key: str, model: str | None = None):
        """
        Initialize the OpenAI client.

        Args:
            api_key: OpenAI API key.
            model: Model name (defaults to gpt-4o).
        """
        self.client = openai.AsyncOpenAI(api_key=api_key, timeout=DEFAULT_TIMEOUT_SECONDS)
        self.model = model or DEFAULT_MODEL

    async def complete_json(self, system_prompt: str, text: str) -> str:
        # json_object mode only allows objects, so array answers are
        # requested as plain text and parsed downstream.
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                max_tokens=MAX_TOKENS,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": text},
                ],
            )
        except openai.OpenAIError as e:
            logger.error(f"OpenAI API error: {e}")
            raise AIServiceError(f"Error calling OpenAI API: {e}") from e

        raw_response = response.choices[0].message.content or ""
        logger.debug(f"Raw AI response: {raw_response[:500]}...")
        if not raw_response.strip():
            raise AIServiceError("OpenAI API returned an empty response")
        return strip_code_fence(raw_response)
