"""Repository classes for database operations."""

import json
from collections.abc import Iterable, Iterator, Sequence
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from civic_ingest.core.enums import IngestStatus
from civic_ingest.core.schema import (
    Address,
    CadastralProperty,
    IngestError,
    Message,
    Pin,
    ProcessStep,
    SourceDocument,
    StreetSection,
    encode_document_id,
)
from civic_ingest.db.models import GtfsStopDB, IngestStateDB, MessageDB, SourceDocumentDB
from civic_ingest.ingestion.normalizer import FieldNormalizer, normalize_categories

# Upper bound on ids per "IN" query, matching the document store's limit.
BATCH_QUERY_LIMIT = 30


def _utc_now() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(UTC)


def _as_utc(value: datetime | None) -> datetime | None:
    """SQLite drops tzinfo on read; treat stored values as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def chunked(items: Sequence[str], size: int = BATCH_QUERY_LIMIT) -> Iterator[list[str]]:
    """Split ids into groups no larger than the batch query limit."""
    for start in range(0, len(items), size):
        yield list(items[start : start + size])


class SourceDocumentRepository:
    """Repository for crawled source documents."""

    def __init__(self, session: Session):
        self.session = session

    def add(self, source: SourceDocument) -> SourceDocument:
        """
        Store a source document.

        Args:
            source: The SourceDocument to store.

        Returns:
            The stored SourceDocument.
        """
        geometry = source.precomputed_geometry
        categories = source.precomputed_categories
        db_source = SourceDocumentDB(
            id=source.document_id,
            url=source.url,
            title=source.title,
            raw_text=source.raw_text,
            source_type=source.source_type,
            published_at=source.published_at,
            crawled_at=source.crawled_at,
            locality=source.locality,
            geometry_json=geometry if isinstance(geometry, str) or geometry is None else json.dumps(geometry),
            categories_json=categories if isinstance(categories, str) or categories is None else json.dumps(categories),
            markdown_text=source.markdown_text,
            is_relevant=source.is_relevant,
            timespan_start=source.timespan_start,
            timespan_end=source.timespan_end,
            city_wide=source.city_wide,
            deep_link_url=source.deep_link_url,
        )
        self.session.add(db_source)
        self.session.flush()
        return self._to_domain(db_source)

    def list_sources(
        self,
        source_type: str | None = None,
        limit: int | None = None,
    ) -> list[SourceDocument]:
        """
        List source documents, newest first.

        Args:
            source_type: Only return sources of this type.
            limit: Maximum number of sources to return.

        Returns:
            List of SourceDocument domain models.
        """
        stmt = select(SourceDocumentDB).order_by(SourceDocumentDB.published_at.desc())
        if source_type:
            stmt = stmt.where(SourceDocumentDB.source_type == source_type)
        if limit:
            stmt = stmt.limit(limit)
        result = self.session.execute(stmt).scalars().all()
        return [self._to_domain(row) for row in result]

    def get_by_url(self, url: str) -> SourceDocument | None:
        """Get a source document by its URL."""
        stmt = select(SourceDocumentDB).where(SourceDocumentDB.id == encode_document_id(url))
        row = self.session.execute(stmt).scalar_one_or_none()
        return self._to_domain(row) if row else None

    def _to_domain(self, db_source: SourceDocumentDB) -> SourceDocument:
        """Convert database model to domain model."""
        return SourceDocument(
            url=db_source.url,
            title=db_source.title or "",
            raw_text=db_source.raw_text,
            source_type=db_source.source_type,
            published_at=_as_utc(db_source.published_at),
            crawled_at=_as_utc(db_source.crawled_at),
            locality=db_source.locality,
            precomputed_geometry=db_source.geometry_json,
            precomputed_categories=db_source.categories_json,
            markdown_text=db_source.markdown_text,
            is_relevant=db_source.is_relevant,
            timespan_start=_as_utc(db_source.timespan_start),
            timespan_end=_as_utc(db_source.timespan_end),
            city_wide=db_source.city_wide,
            deep_link_url=db_source.deep_link_url,
        )


class MessageRepository:
    """
    Repository for messages.

    Every write goes through the FieldNormalizer so values reach the
    store in the form its storage table prescribes.
    """

    def __init__(self, session: Session, normalizer: FieldNormalizer | None = None):
        self.session = session
        self.normalizer = normalizer or FieldNormalizer()

    @staticmethod
    def _columns(fields: dict[str, Any]) -> dict[str, Any]:
        columns = MessageDB.__table__.columns.keys()
        return {name: value for name, value in fields.items() if name in columns}

    def create(self, fields: dict[str, Any]) -> str:
        """
        Insert a new message.

        Args:
            fields: Message fields in their in-memory form. Must contain
                text, source_document_id and locality.

        Returns:
            The id of the new message.
        """
        fields = dict(fields)
        fields.setdefault("id", str(uuid4()))
        normalized = self._columns(self.normalizer.normalize(fields))
        db_message = MessageDB(**{k: v for k, v in normalized.items() if k != "created_at"})
        self.session.add(db_message)
        self.session.flush()
        return db_message.id

    def update(self, message_id: str, fields: dict[str, Any]) -> None:
        """Apply a partial update to one message."""
        normalized = self._columns(self.normalizer.normalize(fields))
        if not normalized:
            return
        stmt = update(MessageDB).where(MessageDB.id == message_id).values(**normalized)
        self.session.execute(stmt)

    def get_by_id(self, message_id: str) -> Message | None:
        """
        Get a message by ID.

        Args:
            message_id: The message id.

        Returns:
            The Message if found, None otherwise.
        """
        db_message = self.session.get(MessageDB, message_id)
        return self._to_domain(db_message) if db_message else None

    def list_by_source_document_id(self, source_document_id: str) -> list[Message]:
        """List every message derived from one source document."""
        stmt = (
            select(MessageDB)
            .where(MessageDB.source_document_id == source_document_id)
            .order_by(MessageDB.created_at)
        )
        return [self._to_domain(row) for row in self.session.execute(stmt).scalars().all()]

    def find_by_source_document_ids(
        self,
        source_document_ids: Iterable[str],
        fields: Sequence[str] = ("source_document_id",),
    ) -> list[dict[str, Any]]:
        """
        Batched lookup restricted to a projection.

        Issues one grouped query per BATCH_QUERY_LIMIT ids instead of one
        query per source.

        Args:
            source_document_ids: Ids to look up.
            fields: Columns to return for each matching message.

        Returns:
            One dict per matching message with only the requested fields.
        """
        ids = list(dict.fromkeys(source_document_ids))
        if not ids:
            return []

        columns = [getattr(MessageDB, name) for name in fields]
        rows: list[dict[str, Any]] = []
        for batch in chunked(ids):
            stmt = select(*columns).where(MessageDB.source_document_id.in_(batch))
            for row in self.session.execute(stmt):
                rows.append(dict(zip(fields, row, strict=True)))
        return rows

    def slug_exists(self, slug: str) -> bool:
        """Check whether any message already uses a slug."""
        stmt = select(func.count()).select_from(MessageDB).where(MessageDB.slug == slug)
        return bool(self.session.execute(stmt).scalar_one())

    def set_retry_count(self, source_document_id: str, retry_count: int) -> None:
        """Mirror the source's retry counter onto its messages."""
        stmt = (
            update(MessageDB)
            .where(MessageDB.source_document_id == source_document_id)
            .where(or_(MessageDB.retry_count.is_(None), MessageDB.retry_count < retry_count))
            .values(retry_count=retry_count)
        )
        self.session.execute(stmt)

    def _to_domain(self, db_message: MessageDB) -> Message:
        """Convert database model to domain model."""
        blobs = self.normalizer.denormalize(
            {
                "geometry": db_message.geometry,
                "relations": db_message.relations,
            }
        )
        return Message(
            id=db_message.id,
            text=db_message.text,
            plain_text=db_message.plain_text or "",
            markdown_text=db_message.markdown_text,
            categories=normalize_categories(db_message.categories),
            relations=blobs["relations"],
            is_relevant=db_message.is_relevant,
            slug=db_message.slug,
            source_document_id=db_message.source_document_id,
            source=db_message.source or "",
            source_url=db_message.source_url,
            locality=db_message.locality,
            timespan_start=_as_utc(db_message.timespan_start),
            timespan_end=_as_utc(db_message.timespan_end),
            city_wide=bool(db_message.city_wide),
            geometry=blobs["geometry"],
            responsible_entity=db_message.responsible_entity or "",
            pins=[Pin.model_validate(item) for item in db_message.pins or []],
            streets=[StreetSection.model_validate(item) for item in db_message.streets or []],
            bus_stops=list(db_message.bus_stops or []),
            cadastral_properties=[
                CadastralProperty.model_validate(item) for item in db_message.cadastral_properties or []
            ],
            addresses=[Address.model_validate(item) for item in db_message.addresses or []],
            ingest_errors=[IngestError.model_validate(item) for item in db_message.ingest_errors or []],
            process=[ProcessStep.model_validate(item) for item in db_message.process or []],
            is_one_of_many=bool(db_message.is_one_of_many),
            is_informative=bool(db_message.is_informative),
            retry_count=db_message.retry_count or 0,
            finalized_at=_as_utc(db_message.finalized_at),
            created_at=_as_utc(db_message.created_at) or _utc_now(),
        )


class IngestStateRepository:
    """Repository for per-source ingestion bookkeeping."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, source_document_id: str) -> IngestStateDB | None:
        """Get the state row of one source document."""
        return self.session.get(IngestStateDB, source_document_id)

    def find_by_ids(self, source_document_ids: Iterable[str]) -> list[IngestStateDB]:
        """Batched lookup of state rows."""
        ids = list(dict.fromkeys(source_document_ids))
        rows: list[IngestStateDB] = []
        for batch in chunked(ids):
            stmt = select(IngestStateDB).where(IngestStateDB.source_document_id.in_(batch))
            rows.extend(self.session.execute(stmt).scalars().all())
        return rows

    def _get_or_create(self, source_document_id: str, source_url: str = "") -> IngestStateDB:
        state = self.get(source_document_id)
        if state is None:
            state = IngestStateDB(
                source_document_id=source_document_id,
                source_url=source_url,
                status=IngestStatus.NEW.value,
                retry_count=0,
                ingest_errors=[],
            )
            self.session.add(state)
        elif source_url and not state.source_url:
            state.source_url = source_url
        return state

    def set_status(
        self,
        source_document_id: str,
        status: IngestStatus,
        source_url: str = "",
        reason: str | None = None,
    ) -> IngestStateDB:
        """Move a source to a new state without touching the retry counter."""
        state = self._get_or_create(source_document_id, source_url)
        state.status = status.value
        state.updated_at = _utc_now()
        if reason is not None:
            state.last_error = reason
        if status == IngestStatus.FINALIZED and state.finalized_at is None:
            state.finalized_at = _utc_now()
        self.session.flush()
        return state

    def record_failure(
        self,
        source_document_id: str,
        error: str,
        source_url: str = "",
        ingest_errors: list[IngestError] | None = None,
    ) -> int:
        """
        Record a failed attempt and bump the retry counter.

        Returns:
            The new retry count.
        """
        state = self._get_or_create(source_document_id, source_url)
        state.retry_count = (state.retry_count or 0) + 1
        state.status = IngestStatus.RETRYABLE.value
        state.last_error = error
        state.updated_at = _utc_now()
        if ingest_errors:
            state.ingest_errors = [entry.to_storage() for entry in ingest_errors]
        self.session.flush()
        return state.retry_count


class GtfsStopRepository:
    """Repository for GTFS stop lookups."""

    def __init__(self, session: Session):
        self.session = session

    def add(self, stop_code: str, stop_name: str, lat: float, lng: float) -> None:
        """Store or replace a stop."""
        self.session.merge(GtfsStopDB(stop_code=stop_code, stop_name=stop_name, lat=lat, lng=lng))
        self.session.flush()

    def get_by_code(self, stop_code: str) -> GtfsStopDB | None:
        """Get a stop by its public code."""
        return self.session.get(GtfsStopDB, stop_code.strip())
