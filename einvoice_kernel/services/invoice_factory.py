"""
InvoiceFactory -- creates DRAFT invoices with their line items.

Responsibility:
    The tenant application's entry point for new invoices.  Missing line
    values and totals are derived from quantity, unit price and tax rate;
    supplied values are stored as given and checked later, at DRAFT ->
    PENDING, by the submission state machine.

Architecture position:
    Kernel > Services.  Works on a caller-owned session; never commits.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from uuid import UUID

from einvoice_kernel.domain.amounts import LineAmounts, compute_totals, line_tax, money
from einvoice_kernel.domain.invoice_lifecycle import IntegrationMode, InvoiceStatus
from einvoice_kernel.exceptions import BusinessNotFoundError
from einvoice_kernel.logging_config import get_logger
from einvoice_kernel.models.invoice import Invoice, InvoiceItem
from einvoice_kernel.models.tenant import Business, Customer

logger = get_logger("services.invoice_factory")


@dataclass(frozen=True)
class LineSpec:
    """One requested invoice line.  total_value/tax_amount default to derived values."""

    description: str
    hs_code: str
    quantity: Decimal
    unit_price: Decimal
    tax_rate: Decimal
    total_value: Decimal | None = None
    tax_amount: Decimal | None = None
    uom: str = "Numbers, pieces, units"
    product_id: UUID | None = None

    def resolved(self) -> LineAmounts:
        total_value = self.total_value if self.total_value is not None else money(
            self.quantity * self.unit_price
        )
        tax_amount = self.tax_amount if self.tax_amount is not None else line_tax(
            total_value, self.tax_rate
        )
        return LineAmounts(
            quantity=self.quantity,
            unit_price=self.unit_price,
            total_value=total_value,
            tax_rate=self.tax_rate,
            tax_amount=tax_amount,
        )


class InvoiceFactory:
    def __init__(self, session):
        self._session = session

    def create_draft(
        self,
        business_id: UUID,
        *,
        invoice_date: date,
        lines: list[LineSpec],
        actor_id: UUID,
        customer_id: UUID | None = None,
        discount: Decimal = Decimal("0"),
        subtotal: Decimal | None = None,
        tax_amount: Decimal | None = None,
        total_amount: Decimal | None = None,
        mode: IntegrationMode | None = None,
        buyer_name: str | None = None,
        buyer_ntn_cnic: str | None = None,
        buyer_province: str | None = None,
        buyer_address: str | None = None,
        buyer_registration_type: str | None = None,
    ) -> Invoice:
        """
        Create and flush a DRAFT invoice.

        ``mode`` pins the submission target; when omitted the business's
        integration mode at submit time is used.  Buyer fields default to
        the referenced customer's.
        """
        if self._session.get(Business, business_id) is None:
            raise BusinessNotFoundError(str(business_id))

        resolved = [spec.resolved() for spec in lines]
        derived_subtotal, derived_tax, _ = compute_totals(resolved, discount)
        subtotal = derived_subtotal if subtotal is None else subtotal
        tax_amount = derived_tax if tax_amount is None else tax_amount
        if total_amount is None:
            total_amount = money(subtotal + tax_amount - discount)

        customer = self._session.get(Customer, customer_id) if customer_id else None

        invoice = Invoice(
            business_id=business_id,
            customer_id=customer_id,
            status=InvoiceStatus.DRAFT.value,
            mode=mode.value if mode else None,
            invoice_date=invoice_date,
            subtotal=subtotal,
            tax_amount=tax_amount,
            discount=discount,
            total_amount=total_amount,
            buyer_name=buyer_name or (customer.name if customer else None),
            buyer_ntn_cnic=buyer_ntn_cnic or (customer.ntn_cnic if customer else None),
            buyer_province=buyer_province or (customer.province if customer else None),
            buyer_address=buyer_address or (customer.address if customer else None),
            buyer_registration_type=(
                buyer_registration_type
                or (customer.registration_type if customer else "Unregistered")
            ),
            created_by_id=actor_id,
        )
        for number, (spec, amounts) in enumerate(zip(lines, resolved), start=1):
            invoice.items.append(InvoiceItem(
                line_number=number,
                product_id=spec.product_id,
                description=spec.description,
                hs_code=spec.hs_code,
                uom=spec.uom,
                quantity=amounts.quantity,
                unit_price=amounts.unit_price,
                total_value=amounts.total_value,
                tax_rate=amounts.tax_rate,
                tax_amount=amounts.tax_amount,
                created_by_id=actor_id,
            ))

        self._session.add(invoice)
        self._session.flush()

        logger.info(
            "invoice_draft_created",
            extra={
                "invoice_id": str(invoice.id),
                "business_id": str(business_id),
                "line_count": len(lines),
                "total_amount": str(total_amount),
            },
        )
        return invoice
