"""
Slug Module
===========

Generates the short public identifier of a message and attaches it
exactly once.

Assignment is a read-modify-write transaction scoped to the one message
row: an existing slug is returned untouched, otherwise a fresh one is
written. Two different messages racing for the same freshly generated
candidate are not prevented from colliding; with 62^8 possible slugs this
is accepted.
"""

import logging
import re
import secrets
import string
from collections.abc import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from civic_ingest.db.models import MessageDB
from civic_ingest.db.repositories import MessageRepository
from civic_ingest.ingestion.errors import SlugGenerationError

logger = logging.getLogger(__name__)

SLUG_CHARS = string.digits + string.ascii_uppercase + string.ascii_lowercase
SLUG_LENGTH = 8
MAX_SLUG_ATTEMPTS = 10

_SLUG_PATTERN = re.compile(rf"^[0-9A-Za-z]{{{SLUG_LENGTH}}}$")


def generate_slug(length: int = SLUG_LENGTH) -> str:
    """Draw a slug uniformly from the alphanumeric alphabet."""
    return "".join(secrets.choice(SLUG_CHARS) for _ in range(length))


def is_valid_slug(value: str | None) -> bool:
    """Check that a value has the shape of a slug."""
    return bool(value) and bool(_SLUG_PATTERN.match(value))


class SlugAssigner:
    """Generates and assigns message slugs."""

    def __init__(
        self,
        session: Session,
        max_attempts: int = MAX_SLUG_ATTEMPTS,
        generator: Callable[[], str] = generate_slug,
    ):
        self.session = session
        self.max_attempts = max_attempts
        self.generator = generator
        self.repo = MessageRepository(session)

    def generate_unique_slug(self) -> str:
        """
        Generate a slug no message uses yet.

        Raises:
            SlugGenerationError: If every attempt collided.
        """
        for attempt in range(self.max_attempts):
            candidate = self.generator()
            if not self.repo.slug_exists(candidate):
                return candidate
            logger.warning(f"Slug collision on attempt {attempt + 1}: {candidate}")

        raise SlugGenerationError(
            f"Failed to generate unique slug after {self.max_attempts} attempts"
        )

    def assign_slug(self, message_id: str) -> str:
        """
        Give a message its slug, or return the one it already has.

        Pending work in the session is committed first so the row lock
        covers only this message.

        Raises:
            ValueError: If the message does not exist.
            SlugGenerationError: If no unique slug could be generated.
        """
        if self.session.in_transaction():
            self.session.commit()

        with self.session.begin():
            stmt = select(MessageDB).where(MessageDB.id == message_id).with_for_update()
            db_message = self.session.execute(stmt).scalar_one_or_none()
            if db_message is None:
                raise ValueError(f"Message not found: {message_id}")

            if db_message.slug:
                logger.debug(f"Message {message_id} already has slug {db_message.slug}")
                return db_message.slug

            slug = self.generate_unique_slug()
            db_message.slug = slug

        logger.info(f"Assigned slug {slug} to message {message_id}")
        return slug
