"""
Field Normalizer Module
=======================

Maps message fields to their storage representation. The policy is an
explicit table (FIELD_STORAGE) rather than something inferred from the
runtime type of each value, so every column's storage form can be
reviewed in one place.
"""

from __future__ import annotations

import json
from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel
from sqlalchemy import func

from civic_ingest.core.enums import UNCATEGORIZED, Category

_KNOWN_CATEGORIES = {category.value for category in Category}


class StorageKind(str, Enum):
    """How a field is written to the document store."""

    SERVER_TIMESTAMP = "server_timestamp"  # replaced by the store's write time
    LITERAL_DATE = "literal_date"  # kept as given, needed for range queries
    CATEGORY_LIST = "category_list"  # native list, coerced from strings
    NATIVE = "native"  # native structured value
    BLOB = "blob"  # serialized to a single JSON text value
    PASSTHROUGH = "passthrough"  # primitives stored as-is


FIELD_STORAGE: dict[str, StorageKind] = {
    # Timestamps
    "created_at": StorageKind.SERVER_TIMESTAMP,
    "updated_at": StorageKind.SERVER_TIMESTAMP,
    "finalized_at": StorageKind.SERVER_TIMESTAMP,
    "crawled_at": StorageKind.SERVER_TIMESTAMP,
    "timespan_start": StorageKind.LITERAL_DATE,
    "timespan_end": StorageKind.LITERAL_DATE,
    # Queryable collections
    "categories": StorageKind.CATEGORY_LIST,
    "pins": StorageKind.NATIVE,
    "streets": StorageKind.NATIVE,
    "bus_stops": StorageKind.NATIVE,
    "cadastral_properties": StorageKind.NATIVE,
    "ingest_errors": StorageKind.NATIVE,
    "responsible_entity": StorageKind.NATIVE,
    "addresses": StorageKind.NATIVE,
    "process": StorageKind.NATIVE,
    # Opaque payloads
    "geometry": StorageKind.BLOB,
    "extracted_data": StorageKind.BLOB,
    "categorize": StorageKind.BLOB,
    "metadata": StorageKind.BLOB,
    "relations": StorageKind.BLOB,
    # Scalars
    "id": StorageKind.PASSTHROUGH,
    "text": StorageKind.PASSTHROUGH,
    "plain_text": StorageKind.PASSTHROUGH,
    "markdown_text": StorageKind.PASSTHROUGH,
    "is_relevant": StorageKind.PASSTHROUGH,
    "slug": StorageKind.PASSTHROUGH,
    "source_document_id": StorageKind.PASSTHROUGH,
    "source": StorageKind.PASSTHROUGH,
    "source_url": StorageKind.PASSTHROUGH,
    "locality": StorageKind.PASSTHROUGH,
    "city_wide": StorageKind.PASSTHROUGH,
    "is_one_of_many": StorageKind.PASSTHROUGH,
    "is_informative": StorageKind.PASSTHROUGH,
    "retry_count": StorageKind.PASSTHROUGH,
}


def server_timestamp() -> Any:
    """Marker resolved by the store to its own write time."""
    return func.now()


def _to_plain(value: Any) -> Any:
    """Convert models, enums and dates into JSON-compatible values."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: _to_plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_plain(item) for item in value]
    return value


def normalize_categories(value: Any) -> list[str]:
    """
    Coerce category input to a list of known category values.

    Accepts a list, a JSON array string or a comma-separated string.
    Unknown values and the UI-only "uncategorized" marker are dropped;
    order and duplicates of known values are preserved.
    """
    if value is None:
        return []

    items: list[Any]
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return []
        if stripped.startswith("["):
            try:
                parsed = json.loads(stripped)
            except json.JSONDecodeError:
                parsed = stripped.strip("[]").split(",")
            items = parsed if isinstance(parsed, list) else [parsed]
        else:
            items = stripped.split(",")
    elif isinstance(value, (list, tuple)):
        items = list(value)
    else:
        items = [value]

    result = []
    for item in items:
        text = _to_plain(item)
        if not isinstance(text, str):
            continue
        text = text.strip().strip('"').strip("'")
        if text == UNCATEGORIZED or text not in _KNOWN_CATEGORIES:
            continue
        result.append(text)
    return result


class FieldNormalizer:
    """
    Converts an in-memory field mapping into its storage representation.

    Fields missing from FIELD_STORAGE follow the default rule: dicts and
    lists become blobs, everything else passes through.
    """

    def __init__(self, table: dict[str, StorageKind] | None = None) -> None:
        self.table = table if table is not None else FIELD_STORAGE

    def storage_kind(self, name: str, value: Any) -> StorageKind:
        """Resolve the storage kind for one field."""
        kind = self.table.get(name)
        if kind is not None:
            return kind
        if isinstance(value, (dict, list, tuple, BaseModel)):
            return StorageKind.BLOB
        return StorageKind.PASSTHROUGH

    def normalize_value(self, name: str, value: Any) -> Any:
        """Normalize a single field value."""
        if value is None:
            return None

        kind = self.storage_kind(name, value)

        if kind == StorageKind.SERVER_TIMESTAMP:
            return server_timestamp()
        if kind == StorageKind.LITERAL_DATE:
            return value
        if kind == StorageKind.CATEGORY_LIST:
            return normalize_categories(value)
        if kind == StorageKind.NATIVE:
            return _to_plain(value)
        if kind == StorageKind.BLOB:
            if isinstance(value, str):
                return value
            return json.dumps(_to_plain(value), ensure_ascii=False)
        return _to_plain(value)

    def normalize(self, fields: dict[str, Any]) -> dict[str, Any]:
        """
        Normalize a mapping of fields for writing.

        Args:
            fields: Field name to in-memory value.

        Returns:
            New dict with each value in its storage form.
        """
        return {name: self.normalize_value(name, value) for name, value in fields.items()}

    def denormalize(self, fields: dict[str, Any]) -> dict[str, Any]:
        """Reconstitute blob fields read back from the store."""
        result = dict(fields)
        for name, value in fields.items():
            if self.table.get(name) == StorageKind.BLOB and isinstance(value, str):
                try:
                    result[name] = json.loads(value)
                except json.JSONDecodeError:
                    result[name] = value
        return result
