"""
einvoice_batch -- bulk invoice uploads.

A batch is one uploaded file.  Its rows are ingested (einvoice_ingestion),
validated, and submitted in parallel through the kernel's invoice
submission state machine.  ``einvoice_batch.orchestrator.BatchOrchestrator``
is the entry point.

Architecture:
    einvoice_batch/ is a top-level package.  Nothing in einvoice_kernel/
    imports from it, except create_tables, which imports its models.
"""
