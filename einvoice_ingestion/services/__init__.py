"""Ingestion services (database-backed)."""

from einvoice_ingestion.services.ingestor import BatchIngestor, default_adapters

__all__ = ["BatchIngestor", "default_adapters"]
