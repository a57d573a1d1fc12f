"""
FBR digital invoicing payload -- maps an invoice to the authority's JSON.

Works on any objects exposing the Invoice / InvoiceItem / Business
attributes, so it stays free of sessions and queries.  Amounts are sent as
JSON numbers rounded to two places; the tax rate is sent as "<n>%".
"""

from decimal import Decimal
from typing import Any

from einvoice_kernel.domain.amounts import money
from einvoice_kernel.domain.invoice_lifecycle import IntegrationMode


def _number(value: Decimal) -> float:
    return float(money(Decimal(value)))


def _rate(value: Decimal) -> str:
    normalized = Decimal(value).normalize()
    text = format(normalized, "f")
    return f"{text}%"


def build_item_payload(item: Any) -> dict[str, Any]:
    return {
        "hsCode": item.hs_code,
        "productDescription": item.description,
        "rate": _rate(item.tax_rate),
        "uoM": item.uom,
        "quantity": float(Decimal(item.quantity)),
        "totalValues": _number(Decimal(item.total_value) + Decimal(item.tax_amount)),
        "valueSalesExcludingST": _number(item.total_value),
        "fixedNotifiedValueOrRetailPrice": 0,
        "salesTaxApplicable": _number(item.tax_amount),
        "salesTaxWithheldAtSource": 0,
        "extraTax": 0,
        "furtherTax": 0,
        "sroScheduleNo": "",
        "fedPayable": 0,
        "discount": 0,
        "saleType": "Goods at standard rate (default)",
        "sroItemSerialNo": "",
    }


def build_invoice_payload(
    invoice: Any,
    business: Any,
    mode: IntegrationMode,
) -> dict[str, Any]:
    """
    Build the DI ``postinvoicedata`` request body.

    ``scenarioId`` is only sent to the sandbox, which requires it.
    """
    payload: dict[str, Any] = {
        "invoiceType": invoice.invoice_type,
        "invoiceDate": invoice.invoice_date.isoformat(),
        "sellerNTNCNIC": business.ntn,
        "sellerBusinessName": business.name,
        "sellerProvince": business.province,
        "sellerAddress": business.address,
        "buyerNTNCNIC": invoice.buyer_ntn_cnic or "",
        "buyerBusinessName": invoice.buyer_name or "",
        "buyerProvince": invoice.buyer_province or business.province,
        "buyerAddress": invoice.buyer_address or "",
        "buyerRegistrationType": invoice.buyer_registration_type,
        "invoiceRefNo": invoice.invoice_number or "",
        "items": [build_item_payload(item) for item in invoice.items],
    }
    if mode is IntegrationMode.SANDBOX:
        payload["scenarioId"] = business.scenario_id or "SN001"
    if invoice.discount:
        payload["totalDiscount"] = _number(invoice.discount)
    return payload
