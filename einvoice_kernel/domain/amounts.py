"""
Invoice amount invariants.

Responsibility:
    The arithmetic rules an invoice must satisfy before it leaves DRAFT,
    shared by the submission state machine (on ORM invoices) and the batch
    validator (on raw row payloads):

        quantity x unit_price        == total_value      (per line)
        total_value x tax_rate / 100 == tax_amount       (per line)
        subtotal                     == sum(total_value)
        tax_amount                   == sum(line tax_amount)
        total_amount                 == subtotal + tax_amount - discount

    All comparisons are made after rounding both sides to whole paisa
    (0.01, ROUND_HALF_UP).  Every quantity, price, rate and amount must be
    smaller in magnitude than MAX_MAGNITUDE; out-of-range values are
    reported as AMOUNT_OUT_OF_RANGE and the arithmetic is not attempted.

Architecture position:
    Kernel > Domain -- pure, zero I/O.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Context, Decimal, InvalidOperation
from typing import Any, Sequence

from einvoice_kernel.domain.dtos import FieldError

CENT = Decimal("0.01")
HUNDRED = Decimal("100")

# Accepted magnitude for any quantity, price, rate or amount; well inside
# the 29 integer digits of Numeric(38, 9).
MAX_MAGNITUDE = Decimal("1e15")

# Wide enough that rounding a product of two in-range values never overflows.
_MONEY_CONTEXT = Context(prec=60)


def money(value: Decimal) -> Decimal:
    """Round to two decimal places, half up."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP, context=_MONEY_CONTEXT)


def in_range(value: Decimal) -> bool:
    return abs(value) < MAX_MAGNITUDE


def out_of_range(path: str, value: Decimal) -> FieldError:
    return FieldError(
        code="AMOUNT_OUT_OF_RANGE",
        message=f"{path} = {value} is outside the accepted range (below {MAX_MAGNITUDE:,f})",
        field=path,
    )


def parse_decimal(value: Any) -> Decimal | None:
    """Parse ints, strings and Decimals; None for blanks or garbage. Floats go through str."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    text = str(value).strip().replace(",", "")
    if not text:
        return None
    try:
        parsed = Decimal(text)
    except InvalidOperation:
        return None
    return parsed if parsed.is_finite() else None


@dataclass(frozen=True)
class LineAmounts:
    quantity: Decimal
    unit_price: Decimal
    total_value: Decimal
    tax_rate: Decimal
    tax_amount: Decimal


@dataclass(frozen=True)
class InvoiceAmounts:
    subtotal: Decimal
    tax_amount: Decimal
    discount: Decimal
    total_amount: Decimal
    lines: tuple[LineAmounts, ...]


def line_tax(total_value: Decimal, tax_rate: Decimal) -> Decimal:
    return money(total_value * tax_rate / HUNDRED)


def compute_totals(
    lines: Sequence[LineAmounts],
    discount: Decimal = Decimal("0"),
) -> tuple[Decimal, Decimal, Decimal]:
    """Return (subtotal, tax_amount, total_amount) implied by the lines."""
    subtotal = money(sum((money(line.total_value) for line in lines), Decimal("0")))
    tax = money(sum((money(line.tax_amount) for line in lines), Decimal("0")))
    return subtotal, tax, money(subtotal + tax - money(discount))


def check_line(line: LineAmounts, index: int) -> list[FieldError]:
    errors: list[FieldError] = []
    prefix = f"items[{index}]"

    if line.quantity <= 0:
        errors.append(FieldError(
            code="NON_POSITIVE_QUANTITY",
            message=f"Quantity must be positive, got {line.quantity}",
            field=f"{prefix}.quantity",
        ))
    if line.unit_price < 0:
        errors.append(FieldError(
            code="NEGATIVE_UNIT_PRICE",
            message=f"Unit price must not be negative, got {line.unit_price}",
            field=f"{prefix}.unit_price",
        ))

    expected_value = money(line.quantity * line.unit_price)
    if expected_value != money(line.total_value):
        errors.append(FieldError(
            code="LINE_VALUE_MISMATCH",
            message=(
                f"quantity x unit_price = {expected_value} "
                f"but total_value = {money(line.total_value)}"
            ),
            field=f"{prefix}.total_value",
            details={"expected": str(expected_value), "actual": str(line.total_value)},
        ))

    expected_tax = line_tax(line.total_value, line.tax_rate)
    if expected_tax != money(line.tax_amount):
        errors.append(FieldError(
            code="LINE_TAX_MISMATCH",
            message=(
                f"total_value x tax_rate / 100 = {expected_tax} "
                f"but tax_amount = {money(line.tax_amount)}"
            ),
            field=f"{prefix}.tax_amount",
            details={"expected": str(expected_tax), "actual": str(line.tax_amount)},
        ))
    return errors


def check_invoice_amounts(amounts: InvoiceAmounts) -> list[FieldError]:
    """
    Check every amount invariant, collecting all violations.

    Values outside MAX_MAGNITUDE are reported on their own; the arithmetic
    checks only run once every value is in range.

    Returns:
        Empty list when the invoice is arithmetically consistent.
    """
    errors: list[FieldError] = []

    if not amounts.lines:
        errors.append(FieldError(
            code="NO_LINE_ITEMS",
            message="Invoice must have at least one line item",
            field="items",
        ))

    range_errors = _range_errors(amounts)
    if range_errors:
        return errors + range_errors

    for index, line in enumerate(amounts.lines):
        errors.extend(check_line(line, index))

    if amounts.discount < 0:
        errors.append(FieldError(
            code="NEGATIVE_DISCOUNT",
            message=f"Discount must not be negative, got {amounts.discount}",
            field="discount",
        ))

    if amounts.lines:
        subtotal, tax, _ = compute_totals(amounts.lines, amounts.discount)
        if subtotal != money(amounts.subtotal):
            errors.append(FieldError(
                code="SUBTOTAL_MISMATCH",
                message=f"Line values sum to {subtotal} but subtotal = {money(amounts.subtotal)}",
                field="subtotal",
                details={"expected": str(subtotal), "actual": str(amounts.subtotal)},
            ))
        if tax != money(amounts.tax_amount):
            errors.append(FieldError(
                code="TAX_TOTAL_MISMATCH",
                message=f"Line taxes sum to {tax} but tax_amount = {money(amounts.tax_amount)}",
                field="tax_amount",
                details={"expected": str(tax), "actual": str(amounts.tax_amount)},
            ))

    expected_total = money(amounts.subtotal + amounts.tax_amount - amounts.discount)
    if expected_total != money(amounts.total_amount):
        errors.append(FieldError(
            code="TOTAL_MISMATCH",
            message=(
                f"subtotal + tax_amount - discount = {expected_total} "
                f"but total_amount = {money(amounts.total_amount)}"
            ),
            field="total_amount",
            details={"expected": str(expected_total), "actual": str(amounts.total_amount)},
        ))

    return errors


def _range_errors(amounts: InvoiceAmounts) -> list[FieldError]:
    values = [
        (f"items[{index}].{name}", getattr(line, name))
        for index, line in enumerate(amounts.lines)
        for name in ("quantity", "unit_price", "total_value", "tax_rate", "tax_amount")
    ]
    values += [
        (name, getattr(amounts, name))
        for name in ("subtotal", "tax_amount", "discount", "total_amount")
    ]
    return [out_of_range(path, value) for path, value in values if not in_range(value)]
