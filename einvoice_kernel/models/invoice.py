"""
Module: einvoice_kernel.models.invoice
Responsibility: ORM persistence for invoices, their line items, and the
    log of every external submission attempt.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ only.

Invariants enforced:
    - invoice_sequence is unique within a business (uq_invoice_business_sequence)
      and, once set, never changes.
    - status only moves along VALID_TRANSITIONS: the attribute is guarded,
      so an illegal assignment raises InvalidInvoiceTransitionError before
      anything reaches the database.
    - Line items are immutable once the invoice is SUBMITTED or later
      (db/immutability.py).

Failure modes:
    - IntegrityError on duplicate (business_id, invoice_sequence).
    - InvalidInvoiceTransitionError on illegal status assignment.

Audit relevance:
    fbr_response keeps the last authority response verbatim.
    SubmissionAttempt keeps one row per external call, including transient
    failures, so retries can be reconstructed.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    inspect,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from einvoice_kernel.db.base import Base, TrackedBase, UUIDString
from einvoice_kernel.domain.amounts import InvoiceAmounts, LineAmounts
from einvoice_kernel.domain.invoice_lifecycle import (
    IntegrationMode,
    InvoiceStatus,
    status_enum,
    validate_transition,
)
from einvoice_kernel.exceptions import InvalidInvoiceTransitionError


class Invoice(TrackedBase):
    """
    A tax invoice owned by exactly one business.

    Contract:
        Created in DRAFT by the tenant application.  Every later status
        change is made by the submission state machine.

    Guarantees:
        - invoice_sequence is allocated at most once.
        - fbr_* identifiers are only set when the authority accepted the
          invoice.
    """

    __tablename__ = "invoices"

    __table_args__ = (
        UniqueConstraint(
            "business_id", "invoice_sequence", name="uq_invoice_business_sequence"
        ),
        Index("idx_invoice_business_status", "business_id", "status"),
        Index("idx_invoice_retry_due", "status", "last_error_kind", "next_retry_at"),
    )

    business_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("businesses.id", ondelete="CASCADE"),
        nullable=False,
    )

    # Weak reference: lookup only, no relationship back to the customer
    customer_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("customers.id", ondelete="SET NULL"),
        nullable=True,
    )

    # Buyer snapshot at invoice time
    buyer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    buyer_ntn_cnic: Mapped[str | None] = mapped_column(String(13), nullable=True)
    buyer_province: Mapped[str | None] = mapped_column(String(50), nullable=True)
    buyer_address: Mapped[str | None] = mapped_column(String(500), nullable=True)
    buyer_registration_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default="Unregistered"
    )

    invoice_sequence: Mapped[int | None] = mapped_column(nullable=True)
    invoice_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    invoice_date: Mapped[date] = mapped_column(nullable=False)
    invoice_type: Mapped[str] = mapped_column(String(30), nullable=False, default="Sale Invoice")

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=InvoiceStatus.DRAFT.value,
    )
    mode: Mapped[str | None] = mapped_column(String(20), nullable=True)

    subtotal: Mapped[Decimal] = mapped_column(nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(nullable=False)
    discount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    total_amount: Mapped[Decimal] = mapped_column(nullable=False)

    fbr_transmission_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    fbr_acknowledgment_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    fbr_invoice_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    fbr_submitted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    fbr_validated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    fbr_response: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    fbr_errors: Mapped[list[dict[str, Any]] | None] = mapped_column(JSON, nullable=True)

    last_error_kind: Mapped[str | None] = mapped_column(String(20), nullable=True)
    last_error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    needs_reauth: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    qr_payload: Mapped[str | None] = mapped_column(Text, nullable=True)

    submission_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    validated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Submission lease (single-flight per invoice)
    lease_owner: Mapped[str | None] = mapped_column(String(64), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    items: Mapped[list["InvoiceItem"]] = relationship(
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceItem.line_number",
        lazy="selectin",
    )

    @validates("status")
    def _guard_status(self, key, value):
        target = status_enum(value)
        state = inspect(self)
        if state.transient or state.pending:
            current = self.__dict__.get("status")
            if current is None:
                if target is not InvoiceStatus.DRAFT:
                    raise InvalidInvoiceTransitionError("<new>", target.value)
                return target.value
        else:
            current = getattr(self, key)
        validate_transition(current, target)
        return target.value

    @validates("invoice_sequence")
    def _guard_sequence(self, key, value):
        state = inspect(self)
        current = self.__dict__.get(key) if state.transient or state.pending else getattr(self, key)
        if current is not None and value != current:
            raise ValueError(
                f"invoice_sequence is immutable once allocated ({current} -> {value})"
            )
        return value

    @property
    def status_enum(self) -> InvoiceStatus:
        return status_enum(self.status)

    @property
    def integration_mode(self) -> IntegrationMode | None:
        return IntegrationMode(self.mode) if self.mode else None

    @property
    def idempotency_key(self) -> str:
        """Sent with every external call for this invoice; stable across retries."""
        if self.invoice_sequence is None:
            raise ValueError("idempotency key requires an allocated sequence")
        return f"{self.business_id}:{self.invoice_sequence}"

    def amounts(self) -> InvoiceAmounts:
        return InvoiceAmounts(
            subtotal=self.subtotal,
            tax_amount=self.tax_amount,
            discount=self.discount,
            total_amount=self.total_amount,
            lines=tuple(item.amounts() for item in self.items),
        )

    def __repr__(self) -> str:
        return f"<Invoice {self.invoice_number or self.id} {self.status}>"


class InvoiceItem(TrackedBase):
    """One line of an invoice; frozen once the invoice has been submitted."""

    __tablename__ = "invoice_items"

    __table_args__ = (
        UniqueConstraint("invoice_id", "line_number", name="uq_invoice_item_line"),
    )

    invoice_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False,
    )
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)
    product_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("products.id", ondelete="SET NULL"),
        nullable=True,
    )
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    hs_code: Mapped[str] = mapped_column(String(20), nullable=False)
    uom: Mapped[str] = mapped_column(String(50), nullable=False, default="Numbers, pieces, units")
    quantity: Mapped[Decimal] = mapped_column(nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(nullable=False)
    total_value: Mapped[Decimal] = mapped_column(nullable=False)
    tax_rate: Mapped[Decimal] = mapped_column(nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(nullable=False)

    invoice: Mapped["Invoice"] = relationship(back_populates="items")

    def amounts(self) -> LineAmounts:
        return LineAmounts(
            quantity=self.quantity,
            unit_price=self.unit_price,
            total_value=self.total_value,
            tax_rate=self.tax_rate,
            tax_amount=self.tax_amount,
        )


class AttemptOutcome(str, Enum):
    """What a single external call produced."""

    ACCEPTED = "accepted"
    REJECTED = "rejected"
    TRANSIENT = "transient"
    AUTH = "auth"
    VALIDATION = "validation"


class SubmissionAttempt(Base):
    """
    One external call made for an invoice.

    Append-only: rows are inserted by the state machine and never updated.
    """

    __tablename__ = "submission_attempts"

    __table_args__ = (
        UniqueConstraint("invoice_id", "attempt_number", name="uq_attempt_invoice_number"),
        Index("idx_attempt_invoice", "invoice_id"),
    )

    invoice_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False,
    )
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    mode: Mapped[str] = mapped_column(String(20), nullable=False)
    invoice_sequence: Mapped[int] = mapped_column(nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(100), nullable=False)
    outcome: Mapped[str] = mapped_column(String(20), nullable=False)
    error_kind: Mapped[str | None] = mapped_column(String(20), nullable=True)
    http_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_response: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    attempted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
