"""
Invoice lifecycle -- the submission state machine as data.

Responsibility:
    Declares invoice statuses, integration modes, the legal transition
    table, and the named events that drive an invoice between statuses.
    Every status change in the system goes through ``validate_transition``
    (directly, or via the guarded ``Invoice.status`` attribute).

Architecture position:
    Kernel > Domain -- pure, zero I/O.

State machine:
    DRAFT --submit--> PENDING --transmit--> SUBMITTED --accept--> VALIDATED
      |                 |   \\                   \\--reject--> FAILED
      |                 |    \\--fail--> FAILED
      +--cancel--> CANCELLED <--cancel--+
    FAILED --resubmit--> PENDING

    VALIDATED and CANCELLED admit no further transitions.  FAILED only
    admits resubmission, which keeps the already-allocated sequence.
"""

from enum import Enum

from einvoice_kernel.exceptions import InvalidInvoiceTransitionError


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    PENDING = "pending"
    SUBMITTED = "submitted"
    VALIDATED = "validated"
    FAILED = "failed"
    CANCELLED = "cancelled"


class IntegrationMode(str, Enum):
    """Where submissions for a business go."""

    LOCAL = "local"
    SANDBOX = "sandbox"
    PRODUCTION = "production"


class InvoiceEvent(str, Enum):
    SUBMIT = "submit"
    TRANSMIT = "transmit"
    ACCEPT = "accept"
    REJECT = "reject"
    FAIL = "fail"
    CANCEL = "cancel"
    RESUBMIT = "resubmit"


VALID_TRANSITIONS: dict[InvoiceStatus, frozenset[InvoiceStatus]] = {
    InvoiceStatus.DRAFT: frozenset({InvoiceStatus.PENDING, InvoiceStatus.CANCELLED}),
    InvoiceStatus.PENDING: frozenset({
        InvoiceStatus.SUBMITTED,
        InvoiceStatus.FAILED,
        InvoiceStatus.CANCELLED,
    }),
    InvoiceStatus.SUBMITTED: frozenset({InvoiceStatus.VALIDATED, InvoiceStatus.FAILED}),
    InvoiceStatus.FAILED: frozenset({InvoiceStatus.PENDING}),
    InvoiceStatus.VALIDATED: frozenset(),
    InvoiceStatus.CANCELLED: frozenset(),
}

EVENT_TRANSITIONS: dict[InvoiceEvent, dict[InvoiceStatus, InvoiceStatus]] = {
    InvoiceEvent.SUBMIT: {InvoiceStatus.DRAFT: InvoiceStatus.PENDING},
    InvoiceEvent.RESUBMIT: {InvoiceStatus.FAILED: InvoiceStatus.PENDING},
    InvoiceEvent.TRANSMIT: {InvoiceStatus.PENDING: InvoiceStatus.SUBMITTED},
    InvoiceEvent.ACCEPT: {InvoiceStatus.SUBMITTED: InvoiceStatus.VALIDATED},
    InvoiceEvent.REJECT: {InvoiceStatus.SUBMITTED: InvoiceStatus.FAILED},
    InvoiceEvent.FAIL: {InvoiceStatus.PENDING: InvoiceStatus.FAILED},
    InvoiceEvent.CANCEL: {
        InvoiceStatus.DRAFT: InvoiceStatus.CANCELLED,
        InvoiceStatus.PENDING: InvoiceStatus.CANCELLED,
    },
}

TERMINAL_STATUSES: frozenset[InvoiceStatus] = frozenset({
    InvoiceStatus.VALIDATED,
    InvoiceStatus.CANCELLED,
})


def status_enum(value: InvoiceStatus | str) -> InvoiceStatus:
    """Normalise a stored string or enum to InvoiceStatus."""
    return value if isinstance(value, InvoiceStatus) else InvoiceStatus(value)


def can_transition(from_status: InvoiceStatus | str, to_status: InvoiceStatus | str) -> bool:
    return status_enum(to_status) in VALID_TRANSITIONS[status_enum(from_status)]


def validate_transition(
    from_status: InvoiceStatus | str,
    to_status: InvoiceStatus | str,
) -> None:
    """
    Raise InvalidInvoiceTransitionError unless the table allows the move.
    """
    src = status_enum(from_status)
    dst = status_enum(to_status)
    if dst not in VALID_TRANSITIONS[src]:
        raise InvalidInvoiceTransitionError(src.value, dst.value)


def apply_event(status: InvoiceStatus | str, event: InvoiceEvent) -> InvoiceStatus:
    """
    Return the status an invoice moves to when ``event`` happens in ``status``.

    Raises:
        InvalidInvoiceTransitionError: the event is not legal in this status.
    """
    src = status_enum(status)
    target = EVENT_TRANSITIONS[event].get(src)
    if target is None:
        raise InvalidInvoiceTransitionError(src.value, f"<{event.value}>")
    validate_transition(src, target)
    return target
