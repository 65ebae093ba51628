"""
Ingest Run Module
=================

Drives one ingestion run over the crawled source documents:

1. Load sources (optionally by type, optionally limited)
2. Drop sources that are too old
3. Drop sources whose precomputed geometry lies outside the boundaries
4. Skip sources already ingested or out of retries
5. Ingest the rest one at a time and record the outcome

Sources are processed sequentially; a failure in one source is recorded
and the run moves on to the next.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from civic_ingest.core.enums import IngestStatus
from civic_ingest.core.schema import SourceDocument
from civic_ingest.db.repositories import IngestStateRepository, MessageRepository, SourceDocumentRepository
from civic_ingest.ingestion.dedup import DeduplicationGate
from civic_ingest.ingestion.errors import (
    IngestErrorCollector,
    MessageFilteredError,
    OutsideBoundariesError,
    format_error_text,
)
from civic_ingest.ingestion.filters import AgeFilter, BoundaryFilter
from civic_ingest.ingestion.geocoding import (
    CadastreProvider,
    GeocodingOrchestrator,
    GoogleGeocoder,
    GtfsStopProvider,
    NominatimProvider,
    OverpassProvider,
)
from civic_ingest.ingestion.messages import MessageIngestor
from civic_ingest.ingestion.pipeline import TextProcessingPipeline
from civic_ingest.ingestion.registry import IngestRegistry, LocalityConfig, get_default_registry
from civic_ingest.services.ai.client import AIClient, create_client_from_env

logger = logging.getLogger(__name__)


@dataclass
class IngestOptions:
    """Options of one ingest run."""

    boundaries_path: Path | str | None = None
    dry_run: bool = False
    source_type: str | None = None
    limit: int | None = None


@dataclass
class RunSummary:
    """Counters aggregated over one ingest run."""

    total: int = 0
    too_old: int = 0
    within_bounds: int = 0
    outside_bounds: int = 0
    ingested: int = 0
    already_ingested: int = 0
    max_retries_reached: int = 0
    filtered: int = 0
    failed: int = 0
    messages_created: int = 0
    dry_run: bool = False
    errors: list[dict[str, str]] = field(default_factory=list)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def would_ingest(self) -> int:
        """Sources a real run would attempt."""
        return max(self.within_bounds - self.already_ingested, 0)

    @property
    def filter_percentage(self) -> float:
        """Share of in-bounds sources judged irrelevant, in percent."""
        if self.within_bounds == 0:
            return 0.0
        return round(self.filtered / self.within_bounds * 100, 1)

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        data: dict[str, Any] = {
            "total": self.total,
            "too_old": self.too_old,
            "within_bounds": self.within_bounds,
            "outside_bounds": self.outside_bounds,
            "already_ingested": self.already_ingested,
            "max_retries_reached": self.max_retries_reached,
            "dry_run": self.dry_run,
        }
        if self.dry_run:
            data["would_ingest"] = self.would_ingest
        else:
            data.update(
                {
                    "ingested": self.ingested,
                    "filtered": self.filtered,
                    "failed": self.failed,
                    "messages_created": self.messages_created,
                    "filter_percentage": self.filter_percentage,
                    "errors": self.errors,
                }
            )
        data["duration_seconds"] = self.duration_seconds
        return data


def log_summary(summary: RunSummary) -> None:
    """Write the run summary to the log."""
    logger.info(f"Total sources: {summary.total}")
    logger.info(f"Too old: {summary.too_old}")
    logger.info(f"Within bounds: {summary.within_bounds}, outside bounds: {summary.outside_bounds}")
    logger.info(f"Already ingested: {summary.already_ingested}")
    logger.info(f"Max retries reached: {summary.max_retries_reached}")
    if summary.dry_run:
        logger.info(f"Would ingest: {summary.would_ingest}")
        return
    logger.info(f"Ingested: {summary.ingested} ({summary.messages_created} messages)")
    logger.info(f"Filtered as irrelevant: {summary.filtered} ({summary.filter_percentage}%)")
    logger.info(f"Failed: {summary.failed}")
    for error in summary.errors:
        logger.info(f"  {error['url']}: {error['error']}")


def build_geocoder(
    locality: LocalityConfig,
    session: Session,
    registry: IngestRegistry,
    google_api_key: str | None = None,
) -> GeocodingOrchestrator:
    """
    Build the geocoding orchestrator of one locality from the registry.

    Raises:
        ValueError: If no Google Maps API key is available.
    """
    api_key = google_api_key or os.environ.get("GOOGLE_MAPS_API_KEY")
    if not api_key:
        raise ValueError("GOOGLE_MAPS_API_KEY environment variable is not set")

    config = registry.geocoding
    retry_options = {"max_retries": config.max_retries, "retry_backoff": config.retry_backoff}
    return GeocodingOrchestrator(
        locality=locality,
        address_geocoder=GoogleGeocoder(
            api_key, locality, url=config.google_url, request_delay=config.google_delay, **retry_options
        ),
        overpass=OverpassProvider(
            locality,
            instances=config.overpass_instances,
            timeout=config.overpass_timeout,
            request_delay=config.overpass_delay,
            **retry_options,
        ),
        nominatim=NominatimProvider(
            locality, url=config.nominatim_url, user_agent=config.user_agent, **retry_options
        ),
        cadastre=CadastreProvider(config.cadastre_url, request_delay=config.cadastre_delay, **retry_options),
        gtfs=GtfsStopProvider(session),
        street_buffer_meters=config.street_buffer_meters,
    )


class IngestOrchestrator:
    """Runs the filters, the deduplication gate and per-source ingestion."""

    def __init__(
        self,
        session: Session,
        registry: IngestRegistry | None = None,
        pipeline: TextProcessingPipeline | None = None,
        ai_client_factory: Callable[[], AIClient] | None = None,
        geocoder_factory: Callable[[LocalityConfig], GeocodingOrchestrator] | None = None,
        age_filter: AgeFilter | None = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            session: Database session shared by every stage.
            registry: Settings and localities; the default registry when omitted.
            pipeline: Text processing pipeline; built lazily from ai_client_factory.
            ai_client_factory: Builds the AI client; reads the environment by default.
            geocoder_factory: Builds the geocoder of a locality; uses the registry by default.
            age_filter: Age cutoff; built from the registry when omitted.
        """
        self.session = session
        self.registry = registry or get_default_registry()
        self._pipeline = pipeline
        self._ai_client_factory = ai_client_factory or self._client_from_env
        self._geocoder_factory = geocoder_factory or self._geocoder_from_registry
        self._geocoders: dict[str, GeocodingOrchestrator] = {}
        self.age_filter = age_filter or AgeFilter(self.registry.ingest.max_age_days)
        self.sources = SourceDocumentRepository(session)
        self.states = IngestStateRepository(session)
        self.messages = MessageRepository(session)
        self.gate = DeduplicationGate(session, self.registry.ingest.max_retry_attempts)

    def _client_from_env(self) -> AIClient:
        return create_client_from_env(self.registry.ai.provider, self.registry.ai.model)

    def _geocoder_from_registry(self, locality: LocalityConfig) -> GeocodingOrchestrator:
        return build_geocoder(locality, self.session, self.registry)

    @property
    def pipeline(self) -> TextProcessingPipeline:
        if self._pipeline is None:
            self._pipeline = TextProcessingPipeline(self._ai_client_factory(), self.registry.ingest)
        return self._pipeline

    def _geocoder_for(self, source: SourceDocument) -> GeocodingOrchestrator | None:
        if not source.locality or source.precomputed_geometry:
            return None
        locality = self.registry.get_locality(source.locality)
        if locality is None:
            return None
        if locality.code not in self._geocoders:
            self._geocoders[locality.code] = self._geocoder_factory(locality)
        return self._geocoders[locality.code]

    async def aclose(self) -> None:
        """Close the HTTP clients of every geocoder built during the run."""
        for geocoder in self._geocoders.values():
            await geocoder.aclose()
        self._geocoders.clear()

    async def run(self, options: IngestOptions | None = None) -> RunSummary:
        """
        Run one ingestion pass.

        Args:
            options: Boundaries file, dry-run flag, source type and limit.

        Returns:
            RunSummary with the outcome counters.
        """
        options = options or IngestOptions()
        summary = RunSummary(dry_run=options.dry_run, started_at=datetime.now(UTC))

        sources = self.sources.list_sources(source_type=options.source_type, limit=options.limit)
        summary.total = len(sources)
        logger.info(f"Loaded {summary.total} source documents")

        recent, too_old = self.age_filter.split(sources)
        summary.too_old = len(too_old)

        boundary_filter = None
        if options.boundaries_path:
            boundary_filter = BoundaryFilter.from_file(options.boundaries_path)
            within, outside = boundary_filter.split(recent)
        else:
            within, outside = recent, []
        summary.within_bounds = len(within)
        summary.outside_bounds = len(outside)

        snapshot = self.gate.snapshot(source.document_id for source in within)
        summary.already_ingested = sum(1 for s in within if snapshot.is_already_ingested(s.document_id))
        summary.max_retries_reached = sum(1 for s in within if snapshot.has_reached_max_retries(s.document_id))

        if options.dry_run:
            logger.info(f"Dry run: would ingest {summary.would_ingest} sources")
            summary.completed_at = datetime.now(UTC)
            return summary

        pending = [source for source in within if not snapshot.should_skip(source.document_id)]
        logger.info(f"Ingesting {len(pending)} sources")

        try:
            self._prepare(pending)
            for index, source in enumerate(pending, start=1):
                logger.info(f"[{index}/{len(pending)}] Ingesting {source.url}")
                await self._ingest_source(source, boundary_filter, summary)
        finally:
            await self.aclose()
            summary.completed_at = datetime.now(UTC)

        return summary

    def _prepare(self, sources: list[SourceDocument]) -> None:
        """
        Build the AI pipeline and the geocoders the pending sources need.

        Configuration errors such as a missing API key propagate before
        any source is marked.
        """
        text_sources = [source for source in sources if not source.precomputed_geometry]
        if not text_sources:
            return
        logger.info(f"Processing {len(text_sources)} text sources with {type(self.pipeline.ai_client).__name__}")
        for source in text_sources:
            self._geocoder_for(source)

    def _recover(self, error: Exception) -> None:
        """Discard the failed transaction; other partial writes are kept for inspection."""
        if isinstance(error, SQLAlchemyError) or not self.session.is_active:
            self.session.rollback()

    async def _ingest_source(
        self,
        source: SourceDocument,
        boundary_filter: BoundaryFilter | None,
        summary: RunSummary,
    ) -> None:
        """Ingest one source and record its outcome; never raises for the source's own failures."""
        self.gate.mark_processing(source.document_id, source.url)
        self.session.commit()

        try:
            ingestor = MessageIngestor(
                self.session,
                pipeline=None if source.precomputed_geometry else self.pipeline,
                geocoder=self._geocoder_for(source),
                boundary_filter=boundary_filter,
                registry=self.registry,
            )
            result = await ingestor.ingest(source)
        except MessageFilteredError as e:
            self._recover(e)
            logger.info(f"Filtered {source.url}: {e}")
            self.states.set_status(source.document_id, IngestStatus.FILTERED, source.url, str(e))
            summary.filtered += 1
        except OutsideBoundariesError as e:
            self._recover(e)
            logger.info(f"Outside boundaries {source.url}: {e}")
            self.states.set_status(source.document_id, IngestStatus.OUTSIDE_BOUNDS, source.url, str(e))
            summary.outside_bounds += 1
        except Exception as e:
            self._recover(e)
            logger.exception(f"Failed to ingest {source.url}")
            error_text = format_error_text(e)
            summary.failed += 1
            summary.errors.append({"url": source.url, "error": error_text})

            collector = IngestErrorCollector()
            collector.exception(f"{type(e).__name__}: {error_text}")
            retry_count = self.states.record_failure(
                source.document_id, error_text, source.url, collector.entries
            )
            self.messages.set_retry_count(source.document_id, retry_count)
            logger.warning(f"Retry count for {source.url} is now {retry_count}")
        else:
            self.states.set_status(source.document_id, IngestStatus.FINALIZED, source.url)
            summary.ingested += 1
            summary.messages_created += len(result.messages)
            logger.info(f"Ingested {source.url}: {result.to_dict()}")

        self.session.commit()
