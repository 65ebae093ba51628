"""Text-understanding services for civic ingestion."""

from civic_ingest.services.ai.client import (
    AIClient,
    AIProvider,
    create_client_from_env,
    get_ai_client,
)

__all__ = [
    "AIClient",
    "AIProvider",
    "create_client_from_env",
    "get_ai_client",
]
