"""
Row normaliser -- maps a source record onto canonical ``invoice_data``.

ZERO I/O.  Accepts both shapes seen in uploads:

* flat rows (CSV / XLSX): invoice header columns plus one line item in the
  same row, or an ``items`` column holding a JSON list of line items;
* nested objects (JSON): header keys plus an ``items`` list.

Canonical form (all amounts as strings so the JSON column keeps them exact)::

    {
        "local_id": "INV-001" | None,
        "invoice_date": "2025-01-15",
        "customer_code": ..., "buyer_name": ..., "buyer_ntn_cnic": ...,
        "buyer_province": ..., "buyer_address": ..., "buyer_registration_type": ...,
        "discount": None, "subtotal": None, "tax_amount": None, "total_amount": None,
        "items": [{"product_code", "description", "hs_code", "uom",
                   "quantity", "unit_price", "tax_rate",
                   "total_value", "tax_amount"}, ...],
    }

Values are carried over as given; checking them is the validator's job.
Only shape problems (an ``items`` value that is neither a list nor JSON
text for one) raise RowShapeError.
"""

from __future__ import annotations

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any

HEADER_ALIASES: dict[str, tuple[str, ...]] = {
    "local_id": ("local_id", "invoice_ref", "invoice_ref_no", "reference", "invoice_no", "id"),
    "invoice_date": ("invoice_date", "date"),
    "customer_code": ("customer_code", "customer"),
    "buyer_name": ("buyer_name", "buyer_business_name"),
    "buyer_ntn_cnic": ("buyer_ntn_cnic", "buyer_ntn", "buyer_cnic"),
    "buyer_province": ("buyer_province",),
    "buyer_address": ("buyer_address",),
    "buyer_registration_type": ("buyer_registration_type", "registration_type"),
    "discount": ("discount", "total_discount"),
    "subtotal": ("subtotal",),
    "tax_amount": ("tax_amount", "sales_tax"),
    "total_amount": ("total_amount", "total"),
}

ITEM_ALIASES: dict[str, tuple[str, ...]] = {
    "product_code": ("product_code", "product", "sku"),
    "description": ("description", "product_description", "item_description"),
    "hs_code": ("hs_code", "hscode"),
    "uom": ("uom", "unit"),
    "quantity": ("quantity", "qty"),
    "unit_price": ("unit_price", "price", "rate_per_unit"),
    "tax_rate": ("tax_rate", "rate", "sales_tax_rate"),
    "total_value": ("total_value", "line_total", "value_excluding_st"),
    "tax_amount": ("line_tax_amount", "tax_amount", "sales_tax_applicable"),
}

# In a flat row "tax_amount" is the line's tax; the invoice total tax, if
# given at all, comes from its own column
FLAT_HEADER_ALIASES = dict(HEADER_ALIASES, tax_amount=("invoice_tax_amount",))

# Columns whose presence means a flat row carries a line item
_FLAT_ITEM_COLUMNS = frozenset(
    alias for key, aliases in ITEM_ALIASES.items() if key != "tax_amount" for alias in aliases
)


class RowShapeError(ValueError):
    """The row's structure cannot be mapped onto an invoice."""

    def __init__(self, code: str, message: str):
        self.code = code
        super().__init__(message)


def scalar(value: Any) -> str | None:
    """Text form of a cell: None for blanks, ISO dates, exact decimals."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, float):
        return str(Decimal(repr(value)))
    text = str(value).strip()
    return text or None


def _pick(row: dict[str, Any], aliases: tuple[str, ...]) -> Any:
    for alias in aliases:
        if alias in row and row[alias] not in (None, ""):
            return row[alias]
    return None


def _item(raw: Any, position: int) -> dict[str, Any]:
    if not isinstance(raw, dict):
        raise RowShapeError(
            "ITEM_NOT_OBJECT", f"items[{position}] is {type(raw).__name__}, expected an object"
        )
    keyed = {"_".join(str(k).strip().lower().split()): v for k, v in raw.items()}
    return {key: scalar(_pick(keyed, aliases)) for key, aliases in ITEM_ALIASES.items()}


def _items(row: dict[str, Any]) -> list[dict[str, Any]]:
    raw_items = row.get("items")
    if isinstance(raw_items, str) and raw_items.strip():
        try:
            raw_items = json.loads(raw_items)
        except json.JSONDecodeError as exc:
            raise RowShapeError("UNPARSEABLE_ITEMS", f"items column is not valid JSON: {exc.msg}") from exc
    if raw_items not in (None, ""):
        if not isinstance(raw_items, list):
            raise RowShapeError("UNPARSEABLE_ITEMS", "items must be a list of line items")
        return [_item(entry, i) for i, entry in enumerate(raw_items)]

    if not any(col in row and row[col] not in (None, "") for col in _FLAT_ITEM_COLUMNS):
        return []
    return [_item(row, 0)]


def normalize_row(row: dict[str, Any]) -> dict[str, Any]:
    """Map one source row onto canonical invoice_data."""
    nested = row.get("items") not in (None, "")
    aliases_for = HEADER_ALIASES if nested else FLAT_HEADER_ALIASES
    data: dict[str, Any] = {
        key: scalar(_pick(row, aliases)) for key, aliases in aliases_for.items()
    }
    data["items"] = _items(row)
    return data


def canonical_json(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def fallback_local_id(content: Any) -> str:
    """Stable key for rows without a caller-supplied id: ``row-<sha256[:16]>``."""
    text = content if isinstance(content, str) else canonical_json(content)
    return f"row-{hashlib.sha256(text.encode('utf-8')).hexdigest()[:16]}"
