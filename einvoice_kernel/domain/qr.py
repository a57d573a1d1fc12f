"""
QR payload -- the opaque string printed as a QR code on a validated invoice.

The payload is canonical JSON (sorted keys, no whitespace) of the
authority-assigned invoice number, the invoice date and the total amount
as a two-decimal string.  The same invoice always produces the same bytes,
so the payload can be regenerated and verified later.
"""

import json
from datetime import date
from decimal import Decimal
from typing import Any

from einvoice_kernel.domain.amounts import money

QR_FIELDS = ("invoiceDate", "invoiceNumber", "totalAmount")


def build_qr_payload(invoice_number: str, total_amount: Decimal, invoice_date: date) -> str:
    if not invoice_number:
        raise ValueError("invoice_number is required for a QR payload")
    data = {
        "invoiceNumber": invoice_number,
        "invoiceDate": invoice_date.isoformat(),
        "totalAmount": str(money(Decimal(total_amount))),
    }
    return json.dumps(data, sort_keys=True, separators=(",", ":"))


def parse_qr_payload(payload: str) -> dict[str, Any] | None:
    """Return the decoded payload, or None when it is not a QR payload we issued."""
    try:
        data = json.loads(payload)
    except (TypeError, ValueError):
        return None
    if not isinstance(data, dict) or any(k not in data for k in QR_FIELDS):
        return None
    return data


def verify_qr_payload(
    payload: str,
    invoice_number: str,
    total_amount: Decimal,
    invoice_date: date,
) -> bool:
    try:
        expected = build_qr_payload(invoice_number, total_amount, invoice_date)
    except ValueError:
        return False
    return payload == expected
