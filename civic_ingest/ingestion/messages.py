"""
Message Ingest Module
=====================

Turns one source document into stored, finalized messages.

Sources carrying precomputed geometry skip the AI stages and become a
single message. All other sources run through the text processing
pipeline; once every stage has succeeded for every split message, each
relevant one is stored, geocoded and boundary-filtered. Slugs are
assigned and messages finalized only after every entry got that far.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.orm import Session

from civic_ingest.core.schema import ExtractedLocations, Message, SourceDocument
from civic_ingest.db.repositories import IngestStateRepository, MessageRepository
from civic_ingest.ingestion.errors import (
    GeocodingFailedError,
    IngestErrorCollector,
    IngestionError,
    MessageFilteredError,
    MissingLocalityError,
    OutsideBoundariesError,
)
from civic_ingest.ingestion.filters import BoundaryFilter
from civic_ingest.ingestion.geocoding.orchestrator import GeocodingOrchestrator
from civic_ingest.ingestion.normalizer import FieldNormalizer
from civic_ingest.ingestion.pipeline import ProcessedEntry, TextProcessingPipeline
from civic_ingest.ingestion.registry import IngestRegistry, LocalityConfig, get_default_registry
from civic_ingest.ingestion.slugs import SlugAssigner
from civic_ingest.ingestion.timespans import ensure_aware, extract_timespan_range, validate_and_fallback

logger = logging.getLogger(__name__)


@dataclass
class PendingMessage:
    """A stored message waiting for its slug and finalization."""

    message_id: str
    errors: IngestErrorCollector
    geometry: dict[str, Any] | None = None


@dataclass
class MessageIngestResult:
    """Messages produced from one source document."""

    messages: list[Message] = field(default_factory=list)
    total_categorized: int = 0
    total_relevant: int = 0
    total_irrelevant: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "messages": [message.id for message in self.messages],
            "total_categorized": self.total_categorized,
            "total_relevant": self.total_relevant,
            "total_irrelevant": self.total_irrelevant,
        }


class MessageIngestor:
    """Processes one source document at a time."""

    def __init__(
        self,
        session: Session,
        pipeline: TextProcessingPipeline | None = None,
        geocoder: GeocodingOrchestrator | None = None,
        boundary_filter: BoundaryFilter | None = None,
        registry: IngestRegistry | None = None,
        normalizer: FieldNormalizer | None = None,
    ):
        """
        Initialize the ingestor.

        Args:
            session: Database session used for every write.
            pipeline: AI stages; required for sources without precomputed geometry.
            geocoder: Geocoding orchestrator; required when locations are extracted.
            boundary_filter: Optional service-area filter applied to geometry.
            registry: Locality lookup; the default registry when omitted.
            normalizer: Field normalizer shared with the message repository.
        """
        self.session = session
        self.pipeline = pipeline
        self.geocoder = geocoder
        self.boundary_filter = boundary_filter
        self.registry = registry or get_default_registry()
        self.messages = MessageRepository(session, normalizer)
        self.states = IngestStateRepository(session)
        self.slugs = SlugAssigner(session)

    def _locality(self, source: SourceDocument) -> LocalityConfig:
        if not source.locality:
            raise MissingLocalityError(f"Source {source.url} has no locality")
        locality = self.registry.get_locality(source.locality)
        if locality is None:
            raise MissingLocalityError(f"Unknown locality '{source.locality}' for {source.url}")
        return locality

    def _base_fields(self, source: SourceDocument, locality: LocalityConfig) -> dict[str, Any]:
        state = self.states.get(source.document_id)
        return {
            "source_document_id": source.document_id,
            "source": source.source_type,
            "source_url": source.user_facing_url,
            "locality": locality.code,
            "retry_count": (state.retry_count or 0) if state else 0,
        }

    def _finalize(
        self,
        message_id: str,
        errors: IngestErrorCollector,
        geometry: dict[str, Any] | None = None,
    ) -> Message:
        """Store the geometry and diagnostics, attach the slug, then finalize."""
        fields: dict[str, Any] = {**errors.as_field()}
        if geometry is not None:
            fields["geometry"] = geometry
        self.messages.update(message_id, fields)

        self.slugs.assign_slug(message_id)
        self.messages.update(message_id, {"finalized_at": datetime.now(UTC)})
        self.session.flush()
        self.session.expire_all()

        message = self.messages.get_by_id(message_id)
        assert message is not None
        logger.info(f"Finalized message {message_id} with slug {message.slug}")
        return message

    async def ingest(self, source: SourceDocument) -> MessageIngestResult:
        """
        Ingest one source document.

        Raises:
            MissingLocalityError: If the source has no known locality.
            MessageFilteredError: If every split message is irrelevant.
            OutsideBoundariesError: If no geometry is left inside the boundaries.
            GeocodingFailedError: If nothing could be geocoded.
            AIValidationError, AIServiceError: On AI stage failures.
        """
        locality = self._locality(source)
        if source.precomputed_geometry:
            return await self.ingest_precomputed(source, locality)
        return await self.ingest_with_pipeline(source, locality)

    def _precomputed_geometry(self, source: SourceDocument, errors: IngestErrorCollector) -> dict[str, Any] | None:
        """
        Decode and boundary-filter a source's precomputed geometry.

        Geometry that cannot be decoded is dropped and geometry that is not a
        FeatureCollection is kept unfiltered; both leave a warning.

        Raises:
            OutsideBoundariesError: If no feature lies inside the boundaries.
        """
        try:
            geometry = source.parsed_geometry()
        except (json.JSONDecodeError, TypeError) as e:
            errors.warn(f"Invalid precomputed geometry for {source.url}: {e}")
            return None

        if not isinstance(geometry, dict) or not isinstance(geometry.get("features"), list):
            errors.warn(f"Precomputed geometry for {source.url} is not a FeatureCollection, keeping it unfiltered")
            return geometry if isinstance(geometry, dict) else None

        if self.boundary_filter is None:
            return geometry
        filtered = self.boundary_filter.filter_geometry(geometry)
        if filtered is None:
            raise OutsideBoundariesError()
        return filtered

    async def ingest_precomputed(self, source: SourceDocument, locality: LocalityConfig) -> MessageIngestResult:
        """Store a source that arrives with geometry, skipping the AI stages."""
        errors = IngestErrorCollector()
        geometry = self._precomputed_geometry(source, errors)

        crawled_at = ensure_aware(source.crawled_at)
        start, end = validate_and_fallback(source.timespan_start, source.timespan_end, crawled_at)

        message_id = self.messages.create(
            {
                **self._base_fields(source, locality),
                "text": source.raw_text,
                "plain_text": source.raw_text,
                "markdown_text": source.markdown_text,
                "categories": source.precomputed_categories or [],
                "is_relevant": True if source.is_relevant is None else source.is_relevant,
                "city_wide": bool(source.city_wide),
                "timespan_start": start,
                "timespan_end": end,
            }
        )
        logger.info(f"Stored precomputed message {message_id} for {source.url}")

        message = self._finalize(message_id, errors, geometry)
        return MessageIngestResult(messages=[message], total_categorized=1, total_relevant=1)

    async def ingest_with_pipeline(self, source: SourceDocument, locality: LocalityConfig) -> MessageIngestResult:
        """Run the AI stages, then store and geocode each relevant message."""
        if self.pipeline is None:
            raise IngestionError("No text processing pipeline configured")

        result = await self.pipeline.process(source.raw_text)
        if result.total_relevant == 0:
            logger.info(f"All {len(result.entries)} messages from {source.url} are irrelevant")
            raise MessageFilteredError()

        pending = []
        for entry in result.relevant:
            pending.append(await self._store_entry(source, locality, entry))

        messages = [self._finalize(item.message_id, item.errors, item.geometry) for item in pending]

        return MessageIngestResult(
            messages=messages,
            total_categorized=result.total_categorized,
            total_relevant=result.total_relevant,
            total_irrelevant=result.total_irrelevant,
        )

    async def _store_entry(
        self, source: SourceDocument, locality: LocalityConfig, entry: ProcessedEntry
    ) -> PendingMessage:
        """Store, enrich and geocode one relevant entry without finalizing it."""
        categorization = entry.categorization
        assert categorization is not None
        filtered = entry.filtered
        errors = IngestErrorCollector()

        message_id = self.messages.create(
            {
                **self._base_fields(source, locality),
                "text": filtered.plain_text,
                "plain_text": filtered.plain_text,
                "markdown_text": filtered.markdown_text or None,
                "is_relevant": True,
                "responsible_entity": filtered.responsible_entity,
                "is_one_of_many": filtered.is_one_of_many,
                "is_informative": filtered.is_informative,
                "categories": categorization.categories,
                "relations": categorization.relations,
                "categorize": categorization.to_storage(),
                "process": [step.to_storage() for step in entry.steps],
            }
        )
        logger.info(f"Stored message {message_id} ({entry.index + 1}) for {source.url}")

        locations = entry.locations
        if locations is None:
            logger.info(f"Message {message_id} has zero categories")
            return PendingMessage(message_id, errors)

        crawled_at = ensure_aware(source.crawled_at)
        start, end = extract_timespan_range(locations, crawled_at, locality.timezone)
        self.messages.update(
            message_id,
            {
                "extracted_data": locations.to_storage(),
                "pins": locations.pins,
                "streets": locations.streets,
                "cadastral_properties": locations.cadastral_properties,
                "bus_stops": locations.bus_stops,
                "city_wide": bool(locations.city_wide or categorization.city_wide),
                "timespan_start": start,
                "timespan_end": end,
            },
        )

        if locations.is_empty and not categorization.bus_stops:
            logger.info(f"Message {message_id} has no locations to geocode")
            return PendingMessage(message_id, errors)

        geometry = await self._geocode(message_id, locations, categorization.bus_stops, locality, errors)
        return PendingMessage(message_id, errors, geometry)

    async def _geocode(
        self,
        message_id: str,
        locations: ExtractedLocations,
        bus_stop_codes: list[str],
        locality: LocalityConfig,
        errors: IngestErrorCollector,
    ) -> dict[str, Any] | None:
        """
        Geocode, store the enriched locations and apply the boundary filter.

        Raises:
            OutsideBoundariesError: If nothing is left inside the boundaries,
                including when nothing could be geocoded at all.
            GeocodingFailedError: If nothing could be geocoded and no
                boundary filter is configured.
        """
        if self.geocoder is None:
            raise IngestionError("No geocoder configured")
        if self.geocoder.locality.code != locality.code:
            raise IngestionError(f"No geocoder configured for locality {locality.code}")

        try:
            geocoded = await self.geocoder.geocode(locations, errors, bus_stop_codes=bus_stop_codes)
        except GeocodingFailedError as e:
            if self.boundary_filter is not None:
                self.messages.update(message_id, errors.as_field())
                raise OutsideBoundariesError() from e
            errors.exception(f"Ingestion exception: {e}")
            self.messages.update(message_id, errors.as_field())
            raise

        self.messages.update(
            message_id,
            {
                "pins": locations.pins,
                "streets": locations.streets,
                "bus_stops": locations.bus_stops,
                "addresses": geocoded.addresses,
            },
        )
        logger.info(f"Geocoded message {message_id}: {geocoded.to_dict()}")

        geometry = geocoded.geometry
        if geometry is not None and self.boundary_filter is not None:
            geometry = self.boundary_filter.filter_geometry(geometry)
            if geometry is None:
                self.messages.update(message_id, errors.as_field())
                raise OutsideBoundariesError()
        return geometry
