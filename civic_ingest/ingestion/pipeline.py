"""
Text Processing Pipeline Module
===============================

Runs the three AI stages over one announcement:

1. Filter & split - break the raw text into discrete messages
2. Categorize - one call per split message
3. Extract locations - for relevant, categorized messages only

Every response is parsed and validated against a strict pydantic model.
A response that fails validation aborts the whole source document.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from civic_ingest.core.schema import (
    CategorizationResult,
    ExtractedLocations,
    FilteredMessage,
    FilterSplitResponse,
    ProcessStep,
)
from civic_ingest.ingestion.errors import AIValidationError, truncate_payload
from civic_ingest.ingestion.registry import IngestSettings
from civic_ingest.services.ai.client import AIClient
from civic_ingest.services.ai.prompts import (
    CATEGORIZE_PROMPT,
    EXTRACT_LOCATIONS_PROMPT,
    FILTER_SPLIT_PROMPT,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

STEP_FILTER_SPLIT = "filter_split"
STEP_CATEGORIZE = "categorize"
STEP_EXTRACT_LOCATIONS = "extract_locations"


def sanitize_for_extraction(text: str) -> str:
    """Flatten text to a single line for the extraction prompt."""
    return text.replace("\r\n", " ").replace("\n", " ").replace("\r", " ").strip()


@dataclass
class ProcessedEntry:
    """One split message with the results of the later stages."""

    index: int
    filtered: FilteredMessage
    categorization: CategorizationResult | None = None
    locations: ExtractedLocations | None = None
    steps: list[ProcessStep] = field(default_factory=list)

    @property
    def is_relevant(self) -> bool:
        """Relevant only if both filter & split and categorize say so."""
        if not self.filtered.is_relevant:
            return False
        return self.categorization is not None and self.categorization.is_relevant

    @property
    def has_categories(self) -> bool:
        return bool(self.categorization and self.categorization.categories)

    @property
    def text(self) -> str:
        return self.filtered.plain_text

    @property
    def extraction_input(self) -> str:
        """Normalized text from categorize, falling back to the plain text."""
        if self.categorization and self.categorization.normalized_text:
            return self.categorization.normalized_text
        return self.filtered.plain_text


@dataclass
class PipelineResult:
    """All entries produced for one source document."""

    entries: list[ProcessedEntry] = field(default_factory=list)

    @property
    def relevant(self) -> list[ProcessedEntry]:
        return [entry for entry in self.entries if entry.is_relevant]

    @property
    def total_categorized(self) -> int:
        return sum(1 for entry in self.entries if entry.categorization is not None)

    @property
    def total_relevant(self) -> int:
        return len(self.relevant)

    @property
    def total_irrelevant(self) -> int:
        return len(self.entries) - self.total_relevant

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": len(self.entries),
            "total_categorized": self.total_categorized,
            "total_relevant": self.total_relevant,
            "total_irrelevant": self.total_irrelevant,
        }


class TextProcessingPipeline:
    """Runs filter & split, categorize and extract locations in order."""

    def __init__(self, ai_client: AIClient, settings: IngestSettings | None = None):
        """
        Initialize the pipeline.

        Args:
            ai_client: Text-understanding client used for every stage.
            settings: Input length limits; defaults when omitted.
        """
        self.ai_client = ai_client
        self.settings = settings or IngestSettings()

    @staticmethod
    def _validate(stage: str, raw_response: str, model: type[ModelT]) -> ModelT:
        """
        Parse and validate one stage response.

        Raises:
            AIValidationError: On malformed JSON or schema violations.
        """
        summary, _ = truncate_payload(raw_response)
        try:
            data = json.loads(raw_response)
        except json.JSONDecodeError as e:
            raise AIValidationError(stage, f"invalid JSON: {e}", summary) from e
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise AIValidationError(stage, str(e), summary) from e

    async def filter_split(self, raw_text: str) -> FilterSplitResponse:
        """
        Split an announcement into discrete messages.

        Raises:
            AIValidationError: If the response is invalid or empty.
            AIServiceError: If the service call failed.
        """
        raw_response = await self.ai_client.complete_json(FILTER_SPLIT_PROMPT, raw_text)
        response = self._validate(STEP_FILTER_SPLIT, raw_response, FilterSplitResponse)
        if len(response) == 0:
            summary, _ = truncate_payload(raw_response)
            raise AIValidationError(STEP_FILTER_SPLIT, "Message filter & split failed", summary)
        return response

    async def categorize(self, text: str) -> CategorizationResult:
        """
        Categorize one split message.

        Raises:
            AIValidationError: If the input is too long or the response invalid.
            AIServiceError: If the service call failed.
        """
        if len(text) > self.settings.categorize_max_length:
            raise AIValidationError(
                STEP_CATEGORIZE,
                f"input of {len(text)} characters exceeds {self.settings.categorize_max_length}",
            )
        raw_response = await self.ai_client.complete_json(CATEGORIZE_PROMPT, text)
        return self._validate(STEP_CATEGORIZE, raw_response, CategorizationResult)

    async def extract_locations(self, text: str) -> ExtractedLocations:
        """
        Extract pins, streets, parcels and bus stops from one message.

        Raises:
            AIValidationError: If the input is too long or the response invalid.
            AIServiceError: If the service call failed.
        """
        sanitized = sanitize_for_extraction(text)
        if len(sanitized) > self.settings.extract_max_length:
            raise AIValidationError(
                STEP_EXTRACT_LOCATIONS,
                f"input of {len(sanitized)} characters exceeds {self.settings.extract_max_length}",
            )
        raw_response = await self.ai_client.complete_json(EXTRACT_LOCATIONS_PROMPT, sanitized)
        return self._validate(STEP_EXTRACT_LOCATIONS, raw_response, ExtractedLocations)

    async def process(self, raw_text: str) -> PipelineResult:
        """
        Run every stage for every split message.

        Nothing is persisted here; the caller decides what to store once
        all stages have succeeded.
        """
        split = await self.filter_split(raw_text)
        logger.info(f"Filter & split produced {len(split)} messages")

        result = PipelineResult()
        for index, filtered in enumerate(split):
            entry = ProcessedEntry(index=index, filtered=filtered)
            entry.steps.append(
                ProcessStep(
                    step=STEP_FILTER_SPLIT,
                    summary={
                        "is_relevant": filtered.is_relevant,
                        "is_one_of_many": filtered.is_one_of_many,
                        "responsible_entity": filtered.responsible_entity,
                        "text_length": len(filtered.plain_text),
                    },
                )
            )
            if filtered.is_relevant and not filtered.plain_text.strip():
                raise AIValidationError(
                    STEP_FILTER_SPLIT, f"message {index} is relevant but has no plain text"
                )

            entry.categorization = await self.categorize(filtered.plain_text)
            entry.steps.append(
                ProcessStep(
                    step=STEP_CATEGORIZE,
                    summary={
                        "categories_count": len(entry.categorization.categories),
                        "categories": [c.value for c in entry.categorization.categories],
                    },
                )
            )
            result.entries.append(entry)

        for entry in result.entries:
            if not entry.is_relevant:
                logger.info(f"Message {entry.index} is not relevant, skipping extraction")
                continue
            if not entry.has_categories:
                logger.info(f"Message {entry.index} has no categories, skipping extraction")
                continue

            entry.locations = await self.extract_locations(entry.extraction_input)
            locations = entry.locations
            entry.steps.append(
                ProcessStep(
                    step=STEP_EXTRACT_LOCATIONS,
                    summary={
                        "success": True,
                        "pins": len(locations.pins),
                        "streets": len(locations.streets),
                        "cadastral": len(locations.cadastral_properties),
                        "bus_stops": len(locations.bus_stops),
                        "city_wide": bool(locations.city_wide),
                    },
                )
            )

        logger.info(
            f"Pipeline done: {result.total_relevant} relevant, "
            f"{result.total_irrelevant} irrelevant of {len(result.entries)}"
        )
        return result
