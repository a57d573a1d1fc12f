"""Batch services: validation passes and parallel submission."""

from einvoice_batch.services.validator import BatchValidator, load_references
from einvoice_batch.services.worker_pool import (
    AuthBreaker,
    BatchSubmissionWorkerPool,
    RateLimitedGateway,
    RateLimiter,
)

__all__ = [
    "AuthBreaker",
    "BatchSubmissionWorkerPool",
    "BatchValidator",
    "RateLimitedGateway",
    "RateLimiter",
    "load_references",
]
