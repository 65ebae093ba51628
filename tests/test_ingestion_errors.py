"""Tests for ingestion errors and the diagnostics collector."""

import logging

import pytest

from civic_ingest.core.enums import IngestErrorType
from civic_ingest.ingestion.errors import (
    AIValidationError,
    GeocodingFailedError,
    IngestErrorCollector,
    IngestionError,
    MessageFilteredError,
    OutsideBoundariesError,
    format_error_text,
    truncate_payload,
)


class TestExceptions:
    """Tests for the exception hierarchy."""

    def test_default_messages(self) -> None:
        assert str(MessageFilteredError()) == "Message filtering failed"
        assert str(OutsideBoundariesError()) == "No features within specified boundaries"

    def test_hierarchy(self) -> None:
        for error in (MessageFilteredError(), OutsideBoundariesError(), GeocodingFailedError("x")):
            assert isinstance(error, IngestionError)

    def test_validation_error_keeps_context(self) -> None:
        error = AIValidationError("categorize", "bad shape", '{"x": 1}')
        assert error.stage == "categorize"
        assert error.raw_response == '{"x": 1}'
        assert "categorize" in str(error)


class TestHelpers:
    """Tests for format_error_text and truncate_payload."""

    def test_format_error_text(self) -> None:
        assert format_error_text(ValueError("bad")) == "bad"
        assert format_error_text(KeyError()) == "KeyError"
        assert format_error_text(42) == "42"

    def test_truncate_short(self) -> None:
        assert truncate_payload("abc", max_length=10) == ("abc", 3)

    def test_truncate_long(self) -> None:
        summary, length = truncate_payload("a" * 20, max_length=10)
        assert summary == "a" * 10 + "…"
        assert length == 20


class TestIngestErrorCollector:
    """Tests for IngestErrorCollector."""

    def test_collects_in_order(self) -> None:
        collector = IngestErrorCollector()
        collector.warn("w")
        collector.error("e")
        collector.exception("x")

        assert len(collector) == 3
        assert [entry.type for entry in collector.entries] == [
            IngestErrorType.WARNING,
            IngestErrorType.ERROR,
            IngestErrorType.EXCEPTION,
        ]

    def test_logs_entries(self, caplog: pytest.LogCaptureFixture) -> None:
        collector = IngestErrorCollector()
        with caplog.at_level(logging.WARNING, logger="civic_ingest.ingestion.errors"):
            collector.warn("Partial geocoding")
        assert "Partial geocoding" in caplog.text

    def test_as_field_empty(self) -> None:
        """Test that empty collections are never written."""
        assert IngestErrorCollector().as_field() == {}

    def test_as_field(self) -> None:
        collector = IngestErrorCollector()
        collector.record(IngestErrorType.WARNING, "w")
        assert collector.as_field() == {"ingest_errors": [{"text": "w", "type": "warning"}]}
