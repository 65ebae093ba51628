"""Service layer for civic ingestion."""
