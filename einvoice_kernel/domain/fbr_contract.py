"""
FBR gateway contract -- what the submission state machine needs from the
tax authority, independent of how the call is made.

Failures are reported by raising exactly one of three exception types:

    FbrValidationError  payload rejected; do not retry without changes
    FbrTransientError   timeout, 5xx, rate limit; retry with backoff
    FbrAuthError        token invalid or expired; operator must act

A response the authority returns normally is an FbrResult, which may still
say ``accepted=False`` when the invoice itself was refused.
"""

from dataclasses import dataclass, field
from typing import Any, Protocol

from einvoice_kernel.domain.dtos import FieldError
from einvoice_kernel.domain.invoice_lifecycle import IntegrationMode


@dataclass(frozen=True)
class FbrResult:
    accepted: bool
    transmission_id: str | None = None
    acknowledgment_number: str | None = None
    invoice_number: str | None = None
    status_code: str | None = None
    errors: tuple[FieldError, ...] = field(default_factory=tuple)
    raw_response: Any = None
    http_status: int | None = None


class FbrGateway(Protocol):
    """Anything that can deliver an invoice payload to the authority."""

    def submit(
        self,
        mode: IntegrationMode,
        token: str | None,
        payload: dict[str, Any],
        idempotency_key: str,
    ) -> FbrResult:
        ...
