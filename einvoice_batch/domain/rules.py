"""
Row rules -- pure checks and resolution of one row's ``invoice_data``.

ZERO I/O.  The reference data a row may point at (customer and product
codes of the business) is passed in as a ReferenceIndex snapshot, so the
same functions serve validation and invoice creation:

    resolve_row(data, refs)   -> (ResolvedInvoice | None, errors)
    validate_row(data, refs)  -> (valid, errors)

Checks, all collected (never first-error-only):
    required fields     invoice_date, items, and per item a description or
                        product_code, quantity, unit_price, tax_rate, hs_code
    formats             date YYYY-MM-DD, buyer NTN 7/13 digits, HS code,
                        province name
    references          customer_code and product_code resolvable
    ranges              every number below amounts.MAX_MAGNITUDE
    arithmetic          the same invariants the submission state machine
                        enforces (einvoice_kernel.domain.amounts)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Mapping
from uuid import UUID

from einvoice_kernel.domain.amounts import (
    InvoiceAmounts,
    LineAmounts,
    check_invoice_amounts,
    compute_totals,
    in_range,
    line_tax,
    money,
    out_of_range,
    parse_decimal,
)
from einvoice_kernel.domain.dtos import FieldError
from einvoice_kernel.domain.formats import (
    is_valid_hs_code,
    is_valid_ntn,
    is_valid_province,
    parse_invoice_date,
)

DEFAULT_UOM = "Numbers, pieces, units"


@dataclass(frozen=True)
class CustomerRef:
    customer_id: UUID
    name: str
    ntn_cnic: str | None = None
    province: str | None = None
    address: str | None = None
    registration_type: str = "Unregistered"


@dataclass(frozen=True)
class ProductRef:
    product_id: UUID
    description: str
    hs_code: str
    uom: str
    unit_price: Decimal
    tax_rate: Decimal


@dataclass(frozen=True)
class ReferenceIndex:
    """Customer and product codes of one business, prefetched."""

    customers: Mapping[str, CustomerRef] = field(default_factory=dict)
    products: Mapping[str, ProductRef] = field(default_factory=dict)


@dataclass(frozen=True)
class ResolvedLine:
    description: str
    hs_code: str
    uom: str
    quantity: Decimal
    unit_price: Decimal
    tax_rate: Decimal
    total_value: Decimal
    tax_amount: Decimal
    product_id: UUID | None = None

    def amounts(self) -> LineAmounts:
        return LineAmounts(
            quantity=self.quantity,
            unit_price=self.unit_price,
            total_value=self.total_value,
            tax_rate=self.tax_rate,
            tax_amount=self.tax_amount,
        )


@dataclass(frozen=True)
class ResolvedInvoice:
    """A row's invoice with references resolved and missing totals derived."""

    invoice_date: date
    lines: tuple[ResolvedLine, ...]
    discount: Decimal
    subtotal: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    customer_id: UUID | None = None
    buyer_name: str | None = None
    buyer_ntn_cnic: str | None = None
    buyer_province: str | None = None
    buyer_address: str | None = None
    buyer_registration_type: str | None = None

    def amounts(self) -> InvoiceAmounts:
        return InvoiceAmounts(
            subtotal=self.subtotal,
            tax_amount=self.tax_amount,
            discount=self.discount,
            total_amount=self.total_amount,
            lines=tuple(line.amounts() for line in self.lines),
        )


def _missing(path: str) -> FieldError:
    return FieldError(code="MISSING_FIELD", message=f"{path} is required", field=path)


def _number(
    raw: Any,
    path: str,
    errors: list[FieldError],
    default: Decimal | None = None,
    required: bool = True,
) -> Decimal | None:
    if raw in (None, ""):
        if default is None and required:
            errors.append(_missing(path))
        return default
    value = parse_decimal(raw)
    if value is None:
        errors.append(FieldError(
            code="INVALID_NUMBER", message=f"{path} is not a number: {raw!r}", field=path
        ))
    elif not in_range(value):
        errors.append(out_of_range(path, value))
        return None
    return value


def _resolve_line(
    raw: Mapping[str, Any],
    index: int,
    refs: ReferenceIndex,
    errors: list[FieldError],
) -> ResolvedLine | None:
    prefix = f"items[{index}]"
    before = len(errors)

    product = None
    code = raw.get("product_code")
    if code:
        product = refs.products.get(code)
        if product is None:
            errors.append(FieldError(
                code="UNKNOWN_PRODUCT",
                message=f"No product with code {code!r} in this business",
                field=f"{prefix}.product_code",
            ))

    description = raw.get("description") or (product.description if product else None)
    if not description:
        errors.append(FieldError(
            code="MISSING_FIELD",
            message=f"{prefix} needs a description or a product_code",
            field=f"{prefix}.description",
        ))

    hs_code = raw.get("hs_code") or (product.hs_code if product else None)
    if not hs_code:
        errors.append(_missing(f"{prefix}.hs_code"))
    elif not is_valid_hs_code(hs_code):
        errors.append(FieldError(
            code="INVALID_HS_CODE",
            message=f"HS code {hs_code!r} is not in dddd[.dd] form",
            field=f"{prefix}.hs_code",
        ))

    quantity = _number(raw.get("quantity"), f"{prefix}.quantity", errors)
    unit_price = _number(
        raw.get("unit_price"), f"{prefix}.unit_price", errors,
        default=product.unit_price if product else None,
    )
    tax_rate = _number(
        raw.get("tax_rate"), f"{prefix}.tax_rate", errors,
        default=product.tax_rate if product else None,
    )
    total_value = _number(raw.get("total_value"), f"{prefix}.total_value", errors, required=False)
    tax_amount = _number(raw.get("tax_amount"), f"{prefix}.tax_amount", errors, required=False)

    if len(errors) > before:
        return None

    if total_value is None:
        total_value = money(quantity * unit_price)
    if tax_amount is None:
        tax_amount = line_tax(total_value, tax_rate)

    return ResolvedLine(
        description=str(description),
        hs_code=str(hs_code),
        uom=raw.get("uom") or (product.uom if product else DEFAULT_UOM),
        quantity=quantity,
        unit_price=unit_price,
        tax_rate=tax_rate,
        total_value=total_value,
        tax_amount=tax_amount,
        product_id=product.product_id if product else None,
    )


def resolve_row(
    invoice_data: Mapping[str, Any],
    refs: ReferenceIndex,
) -> tuple[ResolvedInvoice | None, list[FieldError]]:
    """
    Resolve references and derive missing totals.

    Returns (None, errors) when a field is missing, malformed or
    unresolvable.  Arithmetic is NOT checked here; see validate_row.
    """
    errors: list[FieldError] = []

    invoice_date = None
    raw_date = invoice_data.get("invoice_date")
    if not raw_date:
        errors.append(_missing("invoice_date"))
    else:
        invoice_date = parse_invoice_date(raw_date)
        if invoice_date is None:
            errors.append(FieldError(
                code="INVALID_DATE",
                message=f"invoice_date {raw_date!r} is not a YYYY-MM-DD date",
                field="invoice_date",
            ))

    customer = None
    customer_code = invoice_data.get("customer_code")
    if customer_code:
        customer = refs.customers.get(customer_code)
        if customer is None:
            errors.append(FieldError(
                code="UNKNOWN_CUSTOMER",
                message=f"No customer with code {customer_code!r} in this business",
                field="customer_code",
            ))

    buyer_ntn = invoice_data.get("buyer_ntn_cnic") or (customer.ntn_cnic if customer else None)
    if buyer_ntn and not is_valid_ntn(buyer_ntn):
        errors.append(FieldError(
            code="INVALID_NTN",
            message=f"Buyer NTN/CNIC {buyer_ntn!r} must be 7 or 13 digits",
            field="buyer_ntn_cnic",
        ))

    buyer_province = invoice_data.get("buyer_province") or (customer.province if customer else None)
    if buyer_province and not is_valid_province(buyer_province):
        errors.append(FieldError(
            code="INVALID_PROVINCE",
            message=f"Unknown province {buyer_province!r}",
            field="buyer_province",
        ))

    discount = _number(invoice_data.get("discount"), "discount", errors, default=Decimal("0"))
    subtotal = _number(invoice_data.get("subtotal"), "subtotal", errors, required=False)
    tax_amount = _number(invoice_data.get("tax_amount"), "tax_amount", errors, required=False)
    total_amount = _number(invoice_data.get("total_amount"), "total_amount", errors, required=False)

    raw_items = invoice_data.get("items")
    if not isinstance(raw_items, list) or not raw_items:
        errors.append(FieldError(
            code="NO_LINE_ITEMS", message="Invoice must have at least one line item", field="items"
        ))
        raw_items = []

    lines = []
    for index, raw in enumerate(raw_items):
        if not isinstance(raw, Mapping):
            errors.append(FieldError(
                code="ITEM_NOT_OBJECT", message=f"items[{index}] is not an object", field=f"items[{index}]"
            ))
            continue
        line = _resolve_line(raw, index, refs, errors)
        if line is not None:
            lines.append(line)

    if errors:
        return None, errors

    derived_subtotal, derived_tax, _ = compute_totals([line.amounts() for line in lines], discount)
    subtotal = derived_subtotal if subtotal is None else subtotal
    tax_amount = derived_tax if tax_amount is None else tax_amount
    if total_amount is None:
        total_amount = money(subtotal + tax_amount - discount)

    return ResolvedInvoice(
        invoice_date=invoice_date,
        lines=tuple(lines),
        discount=discount,
        subtotal=subtotal,
        tax_amount=tax_amount,
        total_amount=total_amount,
        customer_id=customer.customer_id if customer else None,
        buyer_name=invoice_data.get("buyer_name") or (customer.name if customer else None),
        buyer_ntn_cnic=buyer_ntn.replace("-", "").strip() if buyer_ntn else None,
        buyer_province=buyer_province.strip().upper() if buyer_province else None,
        buyer_address=invoice_data.get("buyer_address") or (customer.address if customer else None),
        buyer_registration_type=(
            invoice_data.get("buyer_registration_type")
            or (customer.registration_type if customer else None)
        ),
    ), []


def validate_row(
    invoice_data: Mapping[str, Any],
    refs: ReferenceIndex,
) -> tuple[bool, list[FieldError]]:
    """Every check a row must pass before it may be submitted."""
    resolved, errors = resolve_row(invoice_data, refs)
    if resolved is None:
        return False, errors
    errors = check_invoice_amounts(resolved.amounts())
    return not errors, errors
