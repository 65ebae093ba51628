"""
Deduplication Gate Module
=========================

Decides, once per run and in batches, which sources were already ingested
and which have exhausted their retries.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from sqlalchemy.orm import Session

from civic_ingest.core.enums import TERMINAL_STATUSES, IngestStatus
from civic_ingest.db.repositories import IngestStateRepository, MessageRepository

logger = logging.getLogger(__name__)

MAX_RETRY_ATTEMPTS = 3

_TERMINAL_VALUES = {status.value for status in TERMINAL_STATUSES}


@dataclass(frozen=True)
class IngestedSnapshot:
    """Read-only view of the gate's decisions for one run."""

    already_ingested: frozenset[str] = frozenset()
    max_retries_reached: frozenset[str] = frozenset()

    def is_already_ingested(self, source_document_id: str) -> bool:
        return source_document_id in self.already_ingested

    def has_reached_max_retries(self, source_document_id: str) -> bool:
        return source_document_id in self.max_retries_reached

    def should_skip(self, source_document_id: str) -> bool:
        """Check whether a source must not be processed this run."""
        return self.is_already_ingested(source_document_id) or self.has_reached_max_retries(
            source_document_id
        )


class DeduplicationGate:
    """Builds the per-run IngestedSnapshot from ingest states and messages."""

    def __init__(self, session: Session, max_retry_attempts: int = MAX_RETRY_ATTEMPTS):
        self.state_repo = IngestStateRepository(session)
        self.message_repo = MessageRepository(session)
        self.max_retry_attempts = max_retry_attempts

    def snapshot(self, source_document_ids: Iterable[str]) -> IngestedSnapshot:
        """
        Compute the already-ingested and retry-exhausted id sets.

        A source is already ingested when its state is terminal or any of
        its messages is finalized. It has reached the retry ceiling when
        its retry count (missing counts as 0) is at least the maximum.
        """
        ids = list(dict.fromkeys(source_document_ids))
        if not ids:
            return IngestedSnapshot()

        states = self.state_repo.find_by_ids(ids)
        messages = self.message_repo.find_by_source_document_ids(
            ids, fields=("source_document_id", "finalized_at", "retry_count")
        )

        already_ingested = {
            state.source_document_id for state in states if state.status in _TERMINAL_VALUES
        }
        already_ingested.update(
            row["source_document_id"] for row in messages if row["finalized_at"] is not None
        )

        max_retries = {
            state.source_document_id
            for state in states
            if (state.retry_count or 0) >= self.max_retry_attempts
        }
        max_retries.update(
            row["source_document_id"]
            for row in messages
            if (row["retry_count"] or 0) >= self.max_retry_attempts
        )
        max_retries -= already_ingested

        logger.info(
            f"Dedup snapshot: {len(already_ingested)} already ingested, "
            f"{len(max_retries)} at max retries (of {len(ids)} candidates)"
        )
        return IngestedSnapshot(
            already_ingested=frozenset(already_ingested),
            max_retries_reached=frozenset(max_retries),
        )

    def mark_processing(self, source_document_id: str, source_url: str = "") -> None:
        """Record that the pipeline is about to run for a source."""
        self.state_repo.set_status(source_document_id, IngestStatus.PROCESSING, source_url)
