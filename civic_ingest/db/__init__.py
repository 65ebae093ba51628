"""Document store for sources, messages and ingestion state."""

from civic_ingest.db.engine import (
    create_db_engine,
    get_database_url,
    get_engine,
    get_session,
    get_session_factory,
    init_db,
    reset_engine,
    session_scope,
)
from civic_ingest.db.models import (
    Base,
    GtfsStopDB,
    IngestStateDB,
    MessageDB,
    SourceDocumentDB,
)
from civic_ingest.db.repositories import (
    GtfsStopRepository,
    IngestStateRepository,
    MessageRepository,
    SourceDocumentRepository,
)

__all__ = [
    # Engine
    "create_db_engine",
    "get_database_url",
    "get_engine",
    "get_session",
    "get_session_factory",
    "init_db",
    "reset_engine",
    "session_scope",
    # Models
    "Base",
    "SourceDocumentDB",
    "MessageDB",
    "IngestStateDB",
    "GtfsStopDB",
    # Repositories
    "SourceDocumentRepository",
    "MessageRepository",
    "IngestStateRepository",
    "GtfsStopRepository",
]
