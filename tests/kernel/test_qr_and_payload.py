"""
QR payloads, field formats and the FBR request body.

Validates:
- QR payload bytes are canonical and verifiable
- NTN / HS code / province / date formats
- Invoice -> DI payload mapping (sandbox scenario, tax rate text, discount)
"""

import json
from datetime import date, datetime
from decimal import Decimal
from types import SimpleNamespace

import pytest

from einvoice_kernel.domain.fbr_payload import build_invoice_payload
from einvoice_kernel.domain.formats import (
    is_valid_hs_code,
    is_valid_ntn,
    is_valid_province,
    parse_invoice_date,
)
from einvoice_kernel.domain.invoice_lifecycle import IntegrationMode
from einvoice_kernel.domain.qr import build_qr_payload, parse_qr_payload, verify_qr_payload


class TestQrPayload:
    def test_canonical_json(self):
        payload = build_qr_payload("FBR123", Decimal("236"), date(2025, 1, 15))
        assert payload == '{"invoiceDate":"2025-01-15","invoiceNumber":"FBR123","totalAmount":"236.00"}'

    def test_same_invoice_same_bytes(self):
        first = build_qr_payload("FBR123", Decimal("236.004"), date(2025, 1, 15))
        second = build_qr_payload("FBR123", Decimal("236.00"), date(2025, 1, 15))
        assert first == second

    def test_round_trip_and_verify(self):
        payload = build_qr_payload("FBR123", Decimal("10.5"), date(2025, 1, 15))
        assert parse_qr_payload(payload) == {
            "invoiceDate": "2025-01-15",
            "invoiceNumber": "FBR123",
            "totalAmount": "10.50",
        }
        assert verify_qr_payload(payload, "FBR123", Decimal("10.50"), date(2025, 1, 15))
        assert not verify_qr_payload(payload, "FBR124", Decimal("10.50"), date(2025, 1, 15))
        assert not verify_qr_payload(payload, "", Decimal("10.50"), date(2025, 1, 15))

    def test_invoice_number_required(self):
        with pytest.raises(ValueError):
            build_qr_payload("", Decimal("1"), date(2025, 1, 15))

    @pytest.mark.parametrize("payload", ["not json", "[]", '{"invoiceNumber":"X"}', None])
    def test_foreign_payloads_do_not_parse(self, payload):
        assert parse_qr_payload(payload) is None


class TestFormats:
    @pytest.mark.parametrize("value", ["1234567", "3520212345671", "35202-1234567-1"])
    def test_valid_ntn(self, value):
        assert is_valid_ntn(value)

    @pytest.mark.parametrize("value", ["123456", "12345678", "abcdefg", ""])
    def test_invalid_ntn(self, value):
        assert not is_valid_ntn(value)

    @pytest.mark.parametrize("value", ["0101", "0101.21", "5205.11.00", "8471.30.10.00"])
    def test_valid_hs_code(self, value):
        assert is_valid_hs_code(value)

    @pytest.mark.parametrize("value", ["101", "0101.2", "0101-21", "ABCD"])
    def test_invalid_hs_code(self, value):
        assert not is_valid_hs_code(value)

    def test_provinces_are_case_insensitive(self):
        assert is_valid_province("Punjab")
        assert is_valid_province(" sindh ")
        assert not is_valid_province("Atlantis")

    def test_dates(self):
        assert parse_invoice_date("2025-01-15") == date(2025, 1, 15)
        assert parse_invoice_date(date(2025, 1, 15)) == date(2025, 1, 15)
        assert parse_invoice_date(datetime(2025, 1, 15, 10, 30)) == date(2025, 1, 15)
        assert parse_invoice_date("2025-02-30") is None
        assert parse_invoice_date("15/01/2025") is None


def _business(scenario_id="SN002"):
    return SimpleNamespace(
        ntn="1234567",
        name="Lahore Textiles",
        province="PUNJAB",
        address="1 Mall Road, Lahore",
        scenario_id=scenario_id,
    )


def _invoice(discount=Decimal("0")):
    item = SimpleNamespace(
        hs_code="5205.11",
        description="Cotton yarn",
        tax_rate=Decimal("18.00"),
        uom="KG",
        quantity=Decimal("2"),
        total_value=Decimal("200.00"),
        tax_amount=Decimal("36.00"),
    )
    return SimpleNamespace(
        invoice_type="Sale Invoice",
        invoice_date=date(2025, 1, 15),
        buyer_ntn_cnic="7654321",
        buyer_name="Karachi Traders",
        buyer_province="SINDH",
        buyer_address="Saddar",
        buyer_registration_type="Registered",
        invoice_number="INV-000001",
        discount=discount,
        items=[item],
    )


class TestInvoicePayload:
    def test_sandbox_payload(self):
        payload = build_invoice_payload(_invoice(), _business(), IntegrationMode.SANDBOX)

        assert payload["scenarioId"] == "SN002"
        assert payload["invoiceRefNo"] == "INV-000001"
        assert payload["sellerNTNCNIC"] == "1234567"
        assert payload["buyerProvince"] == "SINDH"
        assert "totalDiscount" not in payload
        item = payload["items"][0]
        assert item["rate"] == "18%"
        assert item["valueSalesExcludingST"] == 200.0
        assert item["salesTaxApplicable"] == 36.0
        assert item["totalValues"] == 236.0
        assert item["productDescription"] == "Cotton yarn"
        json.dumps(payload)

    def test_production_payload_has_no_scenario(self):
        payload = build_invoice_payload(_invoice(), _business(), IntegrationMode.PRODUCTION)
        assert "scenarioId" not in payload

    def test_default_scenario(self):
        payload = build_invoice_payload(_invoice(), _business(scenario_id=None), IntegrationMode.SANDBOX)
        assert payload["scenarioId"] == "SN001"

    def test_discount_is_sent(self):
        payload = build_invoice_payload(_invoice(Decimal("6.00")), _business(), IntegrationMode.SANDBOX)
        assert payload["totalDiscount"] == 6.0

    def test_fractional_rate(self):
        invoice = _invoice()
        invoice.items[0].tax_rate = Decimal("17.50")
        payload = build_invoice_payload(invoice, _business(), IntegrationMode.SANDBOX)
        assert payload["items"][0]["rate"] == "17.5%"
