"""Tests for slug generation and assignment."""

import tempfile
from itertools import cycle
from pathlib import Path

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from civic_ingest.db.models import Base
from civic_ingest.db.repositories import MessageRepository
from civic_ingest.ingestion.errors import SlugGenerationError
from civic_ingest.ingestion.slugs import (
    MAX_SLUG_ATTEMPTS,
    SLUG_CHARS,
    SLUG_LENGTH,
    SlugAssigner,
    generate_slug,
    is_valid_slug,
)


@pytest.fixture
def engine():
    """Create a test database engine."""
    with tempfile.TemporaryDirectory() as tmpdir:
        engine = create_engine(f"sqlite:///{Path(tmpdir) / 'test.db'}", echo=False)
        Base.metadata.create_all(engine)
        yield engine
        engine.dispose()


@pytest.fixture
def session(engine):
    """Create a database session for testing."""
    SessionLocal = sessionmaker(bind=engine, autoflush=False)
    session = SessionLocal()
    yield session
    session.close()


def create_message(session: Session, **fields) -> str:
    message_id = MessageRepository(session).create(
        {"text": "Ремонт", "source_document_id": "doc-1", "locality": "bg.sofia", **fields}
    )
    session.commit()
    return message_id


class TestGenerateSlug:
    """Tests for generate_slug and is_valid_slug."""

    def test_shape(self) -> None:
        for _ in range(50):
            slug = generate_slug()
            assert len(slug) == SLUG_LENGTH
            assert all(char in SLUG_CHARS for char in slug)
            assert is_valid_slug(slug)

    def test_alphabet(self) -> None:
        assert len(SLUG_CHARS) == 62

    def test_is_valid_slug(self) -> None:
        assert is_valid_slug("aB3dE6gH")
        assert not is_valid_slug("aB3dE6g")
        assert not is_valid_slug("aB3dE6g-")
        assert not is_valid_slug("")
        assert not is_valid_slug(None)


class TestSlugAssigner:
    """Tests for SlugAssigner."""

    def test_assigns_slug(self, session: Session) -> None:
        message_id = create_message(session)
        slug = SlugAssigner(session).assign_slug(message_id)

        session.expire_all()
        assert is_valid_slug(slug)
        assert MessageRepository(session).get_by_id(message_id).slug == slug

    def test_idempotent_without_second_write(self, session: Session, engine) -> None:
        """Test that a second assignment returns the same slug and writes nothing."""
        message_id = create_message(session)
        assigner = SlugAssigner(session)
        first = assigner.assign_slug(message_id)

        updates: list[str] = []

        def count_updates(conn, cursor, statement, parameters, context, executemany):
            if statement.lstrip().upper().startswith("UPDATE"):
                updates.append(statement)

        event.listen(engine, "before_cursor_execute", count_updates)
        try:
            second = assigner.assign_slug(message_id)
        finally:
            event.remove(engine, "before_cursor_execute", count_updates)

        assert second == first
        assert updates == []

    def test_keeps_existing_slug(self, session: Session) -> None:
        message_id = create_message(session, slug="Existing")
        assert SlugAssigner(session).assign_slug(message_id) == "Existing"

    def test_commits_pending_work_first(self, session: Session) -> None:
        repo = MessageRepository(session)
        message_id = repo.create({"text": "x", "source_document_id": "doc-2", "locality": "bg.sofia"})
        assert session.in_transaction()

        slug = SlugAssigner(session).assign_slug(message_id)
        session.expire_all()
        assert repo.get_by_id(message_id).slug == slug

    def test_missing_message(self, session: Session) -> None:
        with pytest.raises(ValueError, match="Message not found"):
            SlugAssigner(session).assign_slug("missing")

    def test_retries_on_collision(self, session: Session) -> None:
        create_message(session, slug="AAAAAAAA")
        candidates = iter(["AAAAAAAA", "AAAAAAAA", "BBBBBBBB"])
        assigner = SlugAssigner(session, generator=lambda: next(candidates))
        assert assigner.generate_unique_slug() == "BBBBBBBB"

    def test_exhausted_attempts(self, session: Session) -> None:
        create_message(session, slug="AAAAAAAA")
        attempts = []

        def generator() -> str:
            attempts.append(1)
            return "AAAAAAAA"

        assigner = SlugAssigner(session, generator=generator)
        with pytest.raises(SlugGenerationError, match="Failed to generate unique slug after 10 attempts"):
            assigner.generate_unique_slug()
        assert len(attempts) == MAX_SLUG_ATTEMPTS

    def test_distinct_messages_get_distinct_slugs(self, session: Session) -> None:
        first_id = create_message(session)
        second_id = create_message(session)
        candidates = cycle(["CCCCCCCC", "DDDDDDDD"])
        assigner = SlugAssigner(session, generator=lambda: next(candidates))

        first = assigner.assign_slug(first_id)
        second = assigner.assign_slug(second_id)
        assert {first, second} == {"CCCCCCCC", "DDDDDDDD"}
