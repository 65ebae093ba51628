"""
Ingestion Errors Module
=======================

Exception types raised while ingesting a source document, and the
collector that gathers user-facing diagnostics attached to messages.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from civic_ingest.core.enums import IngestErrorType
from civic_ingest.core.schema import IngestError

logger = logging.getLogger(__name__)

MAX_PAYLOAD_LENGTH = 1000


class IngestionError(Exception):
    """Base class for failures that abort ingestion of one source document."""


class MissingLocalityError(IngestionError):
    """The source document carries no locality."""


class AIServiceError(IngestionError):
    """The text-understanding service could not be reached or returned nothing."""


class AIValidationError(IngestionError):
    """A stage response failed JSON parsing or schema validation."""

    def __init__(self, stage: str, message: str, raw_response: str = "") -> None:
        super().__init__(f"{stage} response failed validation: {message}")
        self.stage = stage
        self.raw_response = raw_response


class MessageFilteredError(IngestionError):
    """Every message in the source was judged irrelevant."""

    def __init__(self, message: str = "Message filtering failed") -> None:
        super().__init__(message)


class OutsideBoundariesError(IngestionError):
    """No geocoded feature lies inside the configured boundaries."""

    def __init__(self, message: str = "No features within specified boundaries") -> None:
        super().__init__(message)


class GeocodingFailedError(IngestionError):
    """None of the extracted locations could be geocoded."""


class SlugGenerationError(IngestionError):
    """No free slug was found after the maximum number of attempts."""


def format_error_text(error: BaseException | Any) -> str:
    """Render an exception or value as a single diagnostic line."""
    text = str(error)
    if isinstance(error, BaseException) and not text:
        return type(error).__name__
    return text


def truncate_payload(text: str, max_length: int = MAX_PAYLOAD_LENGTH) -> tuple[str, int]:
    """
    Shorten a payload before attaching it to a diagnostic.

    Returns:
        Tuple of (summary, original_length). Truncated summaries end with "…".
    """
    original_length = len(text)
    if original_length <= max_length:
        return text, original_length
    return f"{text[:max_length]}…", original_length


@dataclass
class IngestErrorCollector:
    """
    Gathers diagnostics for one message while also logging them.

    Nothing is raised: the collected entries are persisted on the message
    so operators can see why a record is incomplete.
    """

    entries: list[IngestError] = field(default_factory=list)

    def record(self, error_type: IngestErrorType, text: str) -> None:
        """Append an entry without logging."""
        self.entries.append(IngestError(text=text, type=error_type))

    def warn(self, text: str) -> None:
        logger.warning(text)
        self.record(IngestErrorType.WARNING, text)

    def error(self, text: str) -> None:
        logger.error(text)
        self.record(IngestErrorType.ERROR, text)

    def exception(self, text: str) -> None:
        logger.error(f"[exception] {text}")
        self.record(IngestErrorType.EXCEPTION, text)

    def __len__(self) -> int:
        return len(self.entries)

    def as_field(self) -> dict[str, Any]:
        """
        Build the ingest_errors update for a message.

        Returns an empty dict when nothing was collected so that empty
        lists are never written.
        """
        if not self.entries:
            return {}
        return {"ingest_errors": [entry.to_storage() for entry in self.entries]}
