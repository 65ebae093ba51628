"""Pydantic v2 models for source documents, messages and AI stage outputs."""

import base64
import json
import re
from datetime import UTC, datetime
from typing import Annotated, Any
from uuid import uuid4

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    RootModel,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from civic_ingest.core.enums import Category, IngestErrorType


def _utc_now() -> datetime:
    """Return current UTC datetime (timezone-aware)."""
    return datetime.now(UTC)


COORDINATE_PATTERN = re.compile(r"^-?\d+\.\d+,\s*-?\d+\.\d+$")


def encode_document_id(url: str) -> str:
    """
    Encode a source URL into the id shared by all records derived from it.

    Standard base64 with the characters that are unsafe in document ids
    ("/", "+", "=") replaced by underscores.
    """
    encoded = base64.b64encode(url.encode("utf-8")).decode("ascii")
    return encoded.replace("/", "_").replace("+", "_").replace("=", "_")


class CamelModel(BaseModel):
    """Base for structures exchanged with the AI service and stored as JSON."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_storage(self) -> dict[str, Any]:
        """Dump using the camelCase field names of the stored representation."""
        return self.model_dump(mode="json", by_alias=True)


class Coordinates(CamelModel):
    """A WGS84 point."""

    lat: float
    lng: float

    @classmethod
    def from_string(cls, value: str) -> "Coordinates":
        """Parse a "lat, lng" string."""
        if not COORDINATE_PATTERN.match(value.strip()):
            raise ValueError(f"Invalid coordinate string: {value!r}")
        lat, lng = (float(part) for part in value.split(","))
        return cls(lat=lat, lng=lng)

    def as_lng_lat(self) -> list[float]:
        """Return GeoJSON position order."""
        return [self.lng, self.lat]


class Timespan(CamelModel):
    """Display strings for when a disruption is active ("DD.MM.YYYY HH:MM")."""

    start: str = ""
    end: str = ""


def _none_to_list(value: Any) -> Any:
    return [] if value is None else value


TimespanList = Annotated[list[Timespan], BeforeValidator(_none_to_list)]


class Pin(CamelModel):
    """A point-like location reference."""

    address: str
    coordinates: Coordinates | None = None
    timespans: TimespanList = Field(default_factory=list)


class StreetSection(CamelModel):
    """A from/to segment of a named street."""

    street: str
    from_: str = Field(alias="from")
    from_coordinates: Coordinates | None = None
    to: str
    to_coordinates: Coordinates | None = None
    timespans: TimespanList = Field(default_factory=list)


class CadastralProperty(CamelModel):
    """A parcel identified by its cadastral registry code."""

    identifier: str
    timespans: TimespanList = Field(default_factory=list)


class Address(CamelModel):
    """A geocoded piece of text."""

    original_text: str
    formatted_address: str
    coordinates: Coordinates


class IngestError(CamelModel):
    """A user-facing-safe diagnostic attached to a message."""

    text: str
    type: IngestErrorType


class ProcessStep(CamelModel):
    """Audit record of one pipeline stage."""

    step: str
    timestamp: datetime = Field(default_factory=_utc_now)
    summary: dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# AI stage outputs
# =============================================================================


class FilteredMessage(CamelModel):
    """One entry produced by the filter & split stage."""

    plain_text: str = ""
    markdown_text: str = ""
    is_one_of_many: bool = False
    is_informative: bool = True
    is_relevant: bool
    responsible_entity: str = ""

    @field_validator("plain_text", "markdown_text", "responsible_entity", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value


class FilterSplitResponse(RootModel[list[FilteredMessage]]):
    """Ordered list of discrete messages found in one announcement."""

    def __iter__(self):  # type: ignore[override]
        return iter(self.root)

    def __len__(self) -> int:
        return len(self.root)


class CategorizationResult(CamelModel):
    """Output of the categorize stage for one split message."""

    categories: list[Category]
    relations: list[str] | None = None
    with_specific_address: bool = False
    specific_addresses: list[str] = Field(default_factory=list)
    coordinates: list[str] = Field(default_factory=list)
    bus_stops: list[str] = Field(default_factory=list)
    cadastral_properties: list[str] = Field(default_factory=list)
    city_wide: bool = False
    is_relevant: bool = True
    normalized_text: str = ""

    @model_validator(mode="before")
    @classmethod
    def _unwrap_single_item_list(cls, data: Any) -> Any:
        if isinstance(data, list):
            if len(data) != 1:
                raise ValueError(
                    f"Expected a single categorization object, got a list of {len(data)}"
                )
            return data[0]
        return data

    @field_validator("coordinates")
    @classmethod
    def _validate_coordinates(cls, value: list[str]) -> list[str]:
        for item in value:
            if not COORDINATE_PATTERN.match(item):
                raise ValueError(
                    f"Invalid coordinate format {item!r}. Expected 'latitude, longitude'"
                )
        return value


class ExtractedLocations(CamelModel):
    """Output of the extract locations stage."""

    with_specific_address: bool | None = None
    bus_stops: Annotated[list[str], BeforeValidator(_none_to_list)] = Field(default_factory=list)
    city_wide: bool | None = None
    pins: Annotated[list[Pin], BeforeValidator(_none_to_list)] = Field(default_factory=list)
    streets: Annotated[list[StreetSection], BeforeValidator(_none_to_list)] = Field(
        default_factory=list
    )
    cadastral_properties: Annotated[
        list[CadastralProperty], BeforeValidator(_none_to_list)
    ] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        """True when there is nothing to geocode."""
        return not (self.pins or self.streets or self.cadastral_properties or self.bus_stops)


# =============================================================================
# Source documents and messages
# =============================================================================


class SourceDocument(BaseModel):
    """A crawled announcement, read-only from the ingestion side."""

    url: str
    title: str = ""
    raw_text: str
    source_type: str
    published_at: datetime
    crawled_at: datetime | None = None
    locality: str | None = None
    precomputed_geometry: dict[str, Any] | str | None = None
    precomputed_categories: list[str] | str | None = None
    markdown_text: str | None = None
    is_relevant: bool | None = None
    timespan_start: datetime | None = None
    timespan_end: datetime | None = None
    city_wide: bool | None = None
    deep_link_url: str | None = None

    @property
    def document_id(self) -> str:
        """Id shared by every message derived from this source."""
        return encode_document_id(self.url)

    @property
    def user_facing_url(self) -> str | None:
        """
        URL shown to users.

        An explicit deep link wins, with an empty deep link meaning the
        source has no public link at all.
        """
        if self.deep_link_url is not None:
            return self.deep_link_url or None
        return self.url

    def parsed_geometry(self) -> Any:
        """Return the precomputed geometry, decoding it when stored as text."""
        if isinstance(self.precomputed_geometry, str):
            return json.loads(self.precomputed_geometry)
        return self.precomputed_geometry


class Message(BaseModel):
    """The unit of public output."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    text: str
    plain_text: str = ""
    markdown_text: str | None = None
    categories: list[Category] = Field(default_factory=list)
    relations: list[str] | None = None
    is_relevant: bool = True
    slug: str | None = None
    source_document_id: str
    source: str = ""
    source_url: str | None = None
    locality: str
    timespan_start: datetime | None = None
    timespan_end: datetime | None = None
    city_wide: bool = False
    geometry: dict[str, Any] | None = None
    responsible_entity: str = ""
    pins: list[Pin] = Field(default_factory=list)
    streets: list[StreetSection] = Field(default_factory=list)
    bus_stops: list[str] = Field(default_factory=list)
    cadastral_properties: list[CadastralProperty] = Field(default_factory=list)
    addresses: list[Address] = Field(default_factory=list)
    ingest_errors: list[IngestError] = Field(default_factory=list)
    process: list[ProcessStep] = Field(default_factory=list)
    is_one_of_many: bool = False
    is_informative: bool = True
    retry_count: int = 0
    finalized_at: datetime | None = None
    created_at: datetime = Field(default_factory=_utc_now)

    @property
    def is_finalized(self) -> bool:
        """Check whether the message reached its terminal success state."""
        return self.finalized_at is not None
