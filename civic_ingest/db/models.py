"""SQLAlchemy ORM models for the ingestion document store."""

from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, Boolean, DateTime, Float, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utc_now() -> datetime:
    """Return current UTC datetime (timezone-aware)."""
    return datetime.now(UTC)


def _generate_uuid() -> str:
    """Generate a UUID string."""
    return str(uuid4())


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class SourceDocumentDB(Base):
    """
    Database model for crawled source documents.

    Rows are written by the crawlers; ingestion only reads them.
    """

    __tablename__ = "sources"

    id: Mapped[str] = mapped_column(String(1024), primary_key=True)  # encoded url
    url: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    title: Mapped[str] = mapped_column(Text, default="")
    raw_text: Mapped[str] = mapped_column(Text, nullable=False)
    source_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    published_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    crawled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    locality: Mapped[str | None] = mapped_column(String(50), nullable=True)
    geometry_json: Mapped[str | None] = mapped_column(Text, nullable=True)  # GeoJSON string
    categories_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    markdown_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_relevant: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    timespan_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    timespan_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    city_wide: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    deep_link_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<SourceDocumentDB(type={self.source_type}, title='{self.title[:40]}')>"


class MessageDB(Base):
    """
    Database model for messages.

    Columns declared as JSON hold native structured values that can be
    filtered on; the geometry, extracted_data, categorize and relations
    Text columns hold serialized payloads. The mapping
    from field to storage form lives in civic_ingest.ingestion.normalizer.
    """

    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    plain_text: Mapped[str] = mapped_column(Text, default="")
    markdown_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    categories: Mapped[list[str]] = mapped_column(JSON, default=list)
    relations: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_relevant: Mapped[bool] = mapped_column(Boolean, default=True)
    slug: Mapped[str | None] = mapped_column(String(16), nullable=True, index=True)
    source_document_id: Mapped[str] = mapped_column(String(1024), nullable=False, index=True)
    source: Mapped[str] = mapped_column(String(100), default="")
    source_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    locality: Mapped[str] = mapped_column(String(50), nullable=False)
    timespan_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    timespan_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    city_wide: Mapped[bool] = mapped_column(Boolean, default=False)
    geometry: Mapped[str | None] = mapped_column(Text, nullable=True)
    extracted_data: Mapped[str | None] = mapped_column(Text, nullable=True)
    categorize: Mapped[str | None] = mapped_column(Text, nullable=True)
    responsible_entity: Mapped[Any] = mapped_column(JSON, nullable=True)
    pins: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    streets: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    bus_stops: Mapped[list[str]] = mapped_column(JSON, default=list)
    cadastral_properties: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    addresses: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    ingest_errors: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    process: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    is_one_of_many: Mapped[bool] = mapped_column(Boolean, default=False)
    is_informative: Mapped[bool] = mapped_column(Boolean, default=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    finalized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<MessageDB(id={self.id}, slug={self.slug}, finalized={self.finalized_at is not None})>"


class IngestStateDB(Base):
    """
    Database model for per-source ingestion bookkeeping.

    One row per source document, keyed by the encoded source URL. Tracks
    the state machine (processing, finalized, retryable, ...) and the
    retry counter that drives the permanent-skip ceiling.
    """

    __tablename__ = "ingest_states"

    source_document_id: Mapped[str] = mapped_column(String(1024), primary_key=True)
    source_url: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(String(20), default="new", index=True)
    retry_count: Mapped[int | None] = mapped_column(Integer, nullable=True, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    ingest_errors: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    finalized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, onupdate=_utc_now)

    def __repr__(self) -> str:
        return f"<IngestStateDB(status={self.status}, retries={self.retry_count})>"


class GtfsStopDB(Base):
    """Database model for public transport stops imported from GTFS feeds."""

    __tablename__ = "gtfs_stops"

    stop_code: Mapped[str] = mapped_column(String(20), primary_key=True)
    stop_name: Mapped[str] = mapped_column(String(255), nullable=False)
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    lng: Mapped[float] = mapped_column(Float, nullable=False)

    def __repr__(self) -> str:
        return f"<GtfsStopDB(code={self.stop_code}, name='{self.stop_name}')>"
