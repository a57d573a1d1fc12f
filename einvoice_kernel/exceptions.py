"""
Typed Exception Hierarchy for the E-Invoicing Core.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Every caller of the FBR integration branches on the KIND of failure: fix the
data, wait and retry, or ask an operator to re-authenticate.  Branching on
message text is fragile, so:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Every exception exposes its ErrorKind, which is what gets persisted on
     invoices and batch rows
  4. Exceptions carry structured DATA (not just a message string)

Example:
    try:
        result = client.submit(mode, token, payload, idempotency_key)
    except FbrTransientError as e:
        policy.wait(attempt, e.retry_after)  # retry
    except FbrAuthError as e:
        hold_business(e.mode)                  # operator intervention
    except FbrValidationError as e:
        record_field_errors(e.errors)          # user must fix the invoice

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    EInvoiceError (base)
    |
    +-- ValidationError                 kind=VALIDATION
    |   +-- InvoiceValidationError
    |   +-- FbrValidationError
    |
    +-- TransientError                  kind=TRANSIENT
    |   +-- FbrTransientError
    |
    +-- AuthError                       kind=AUTH
    |   +-- FbrAuthError
    |   +-- AuthHoldError
    |
    +-- SequenceError                   kind=SEQUENCE
    |
    +-- StateConflictError              kind=STATE_CONFLICT
    |   +-- InvalidInvoiceTransitionError
    |   +-- InvalidRowStageError
    |   +-- BatchStateError
    |
    +-- ConcurrencyError
    |   +-- SubmissionInProgressError
    |
    +-- NotFoundError
    |   +-- BusinessNotFoundError
    |   +-- InvoiceNotFoundError
    |   +-- BatchNotFoundError
    |
    +-- ImmutabilityViolationError
    +-- ProductionNotAllowedError
    +-- RetryNotAllowedError
    +-- MalformedSourceError            kind=STRUCTURAL
    +-- ConfigurationError
"""

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Persisted classification of a failure."""

    VALIDATION = "validation"
    TRANSIENT = "transient"
    AUTH = "auth"
    SEQUENCE = "sequence"
    STATE_CONFLICT = "state_conflict"
    STRUCTURAL = "structural"
    UNEXPECTED = "unexpected"


class EInvoiceError(Exception):
    """
    Base exception for all e-invoicing errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "EINVOICE_ERROR"
    kind: ErrorKind = ErrorKind.UNEXPECTED


# Validation errors -- user-correctable, never retried automatically


class ValidationError(EInvoiceError):
    """Base exception for payload or shape defects."""

    code: str = "VALIDATION_ERROR"
    kind: ErrorKind = ErrorKind.VALIDATION


class InvoiceValidationError(ValidationError):
    """Invoice failed local checks at finalize time and stays in DRAFT."""

    code: str = "INVOICE_VALIDATION_FAILED"

    def __init__(self, invoice_id: str, errors: list[Any]):
        self.invoice_id = invoice_id
        self.errors = list(errors)
        codes = ", ".join(getattr(e, "code", str(e)) for e in self.errors)
        super().__init__(f"Invoice {invoice_id} failed validation: {codes}")


class FbrValidationError(ValidationError):
    """The authority rejected the payload; retrying without changes is pointless."""

    code: str = "FBR_VALIDATION_FAILED"

    def __init__(
        self,
        message: str,
        errors: list[Any] | None = None,
        raw_response: Any = None,
        status_code: int | None = None,
    ):
        self.errors = list(errors or [])
        self.raw_response = raw_response
        self.status_code = status_code
        super().__init__(message)


# Transient errors -- retried with bounded exponential backoff


class TransientError(EInvoiceError):
    """Base exception for failures that may succeed on retry."""

    code: str = "TRANSIENT_ERROR"
    kind: ErrorKind = ErrorKind.TRANSIENT


class FbrTransientError(TransientError):
    """Timeout, connection failure, rate limit, or 5xx from the authority."""

    code: str = "FBR_TRANSIENT"

    def __init__(
        self,
        reason: str,
        raw_response: Any = None,
        status_code: int | None = None,
        retry_after: float | None = None,
    ):
        self.reason = reason
        self.raw_response = raw_response
        self.status_code = status_code
        self.retry_after = retry_after
        super().__init__(f"Transient FBR failure: {reason}")


# Auth errors -- need operator intervention


class AuthError(EInvoiceError):
    """Base exception for token problems."""

    code: str = "AUTH_ERROR"
    kind: ErrorKind = ErrorKind.AUTH


class FbrAuthError(AuthError):
    """Token for the given integration mode is invalid, expired or missing."""

    code: str = "FBR_AUTH_FAILED"

    def __init__(
        self,
        mode: str,
        raw_response: Any = None,
        status_code: int | None = None,
    ):
        self.mode = mode
        self.raw_response = raw_response
        self.status_code = status_code
        super().__init__(f"FBR rejected the {mode} token (status={status_code})")


class AuthHoldError(AuthError):
    """Submissions for this business and mode are halted until the token is replaced."""

    code: str = "AUTH_HOLD"

    def __init__(self, business_id: str, mode: str):
        self.business_id = business_id
        self.mode = mode
        super().__init__(
            f"Business {business_id} is on hold for {mode} re-authentication"
        )


# Sequence errors


class SequenceError(EInvoiceError):
    """Sequence allocation failed after the allowed retries."""

    code: str = "SEQUENCE_ERROR"
    kind: ErrorKind = ErrorKind.SEQUENCE

    def __init__(self, business_id: str, attempts: int, reason: str = ""):
        self.business_id = business_id
        self.attempts = attempts
        super().__init__(
            f"Sequence allocation for business {business_id} failed "
            f"after {attempts} attempt(s): {reason}"
        )


# State conflicts -- programming-invariant violations


class StateConflictError(EInvoiceError):
    """Attempted transition from a state that does not permit it."""

    code: str = "STATE_CONFLICT"
    kind: ErrorKind = ErrorKind.STATE_CONFLICT

    def __init__(self, entity: str, from_status: str, to_status: str):
        self.entity = entity
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid {entity} transition: {from_status} -> {to_status}"
        )


class InvalidInvoiceTransitionError(StateConflictError):
    """Invoice status change not allowed by the transition table."""

    code: str = "INVALID_INVOICE_TRANSITION"

    def __init__(self, from_status: str, to_status: str):
        super().__init__("invoice", from_status, to_status)


class InvalidRowStageError(StateConflictError):
    """Batch row stage may only move forward, or to FAILED."""

    code: str = "INVALID_ROW_STAGE"

    def __init__(self, from_stage: str, to_stage: str):
        super().__init__("batch row", from_stage, to_stage)


class BatchStateError(StateConflictError):
    """Batch processing status change not allowed."""

    code: str = "BATCH_STATE_CONFLICT"

    def __init__(self, batch_id: str, from_status: str, to_status: str):
        self.batch_id = batch_id
        super().__init__("batch", from_status, to_status)


# Concurrency


class ConcurrencyError(EInvoiceError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class SubmissionInProgressError(ConcurrencyError):
    """Another worker holds the submission lease for this invoice."""

    code: str = "SUBMISSION_IN_PROGRESS"
    kind: ErrorKind = ErrorKind.STATE_CONFLICT

    def __init__(self, invoice_id: str):
        self.invoice_id = invoice_id
        super().__init__(f"Invoice {invoice_id} is already being submitted")


# Lookups


class NotFoundError(EInvoiceError):
    """Base exception for missing entities."""

    code: str = "NOT_FOUND"


class InvoiceNotFoundError(NotFoundError):
    code: str = "INVOICE_NOT_FOUND"

    def __init__(self, invoice_id: str):
        self.invoice_id = invoice_id
        super().__init__(f"Invoice not found: {invoice_id}")


class BusinessNotFoundError(NotFoundError):
    """Business (tenant) does not exist."""

    code: str = "BUSINESS_NOT_FOUND"

    def __init__(self, business_id: str):
        self.business_id = business_id
        super().__init__(f"Business not found: {business_id}")


class BatchNotFoundError(NotFoundError):
    code: str = "BATCH_NOT_FOUND"

    def __init__(self, batch_id: str):
        self.batch_id = batch_id
        super().__init__(f"Batch not found: {batch_id}")


class ImmutabilityViolationError(EInvoiceError):
    """Attempted change to a record that is frozen."""

    code: str = "IMMUTABILITY_VIOLATION"
    kind: ErrorKind = ErrorKind.STATE_CONFLICT

    def __init__(self, entity: str, entity_id: str, reason: str):
        self.entity = entity
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(f"{entity} {entity_id} is immutable: {reason}")


# Tenant rules, retries, batch abort, configuration


class ProductionNotAllowedError(EInvoiceError):
    """Production cannot be enabled or selected for this business yet."""

    code: str = "PRODUCTION_NOT_ALLOWED"
    kind: ErrorKind = ErrorKind.VALIDATION

    def __init__(self, business_id: str, reason: str):
        self.business_id = business_id
        self.reason = reason
        super().__init__(f"Production not allowed for {business_id}: {reason}")


class RetryNotAllowedError(EInvoiceError):
    """Scheduled retry refused: wrong failure kind or retries exhausted."""

    code: str = "RETRY_NOT_ALLOWED"

    def __init__(self, invoice_id: str, reason: str):
        self.invoice_id = invoice_id
        self.reason = reason
        super().__init__(f"Retry not allowed for invoice {invoice_id}: {reason}")


class ConfigurationError(EInvoiceError):
    """Settings file or environment override is invalid."""

    code: str = "CONFIGURATION_ERROR"

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Invalid setting {key}: {reason}")


class MalformedSourceError(EInvoiceError):
    """The uploaded file as a whole cannot be read (bad format, not a row list)."""

    code: str = "MALFORMED_SOURCE"
    kind: ErrorKind = ErrorKind.STRUCTURAL

    def __init__(self, source_format: str, reason: str):
        self.source_format = source_format
        self.reason = reason
        super().__init__(f"Cannot read {source_format} source: {reason}")
