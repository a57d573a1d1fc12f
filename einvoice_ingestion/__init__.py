"""Bulk invoice file ingestion: source adapters, row normalisation, BatchIngestor."""
