"""
Field format rules for FBR digital invoicing data.

Pure predicates used by the batch validator and the tenant service.
"""

import re
from datetime import date, datetime

NTN_PATTERN = re.compile(r"^(\d{7}|\d{13})$")
STRN_PATTERN = re.compile(r"^(\d{13}|\d{2}-\d{2}-\d{4}-\d{3}-\d{2})$")
HS_CODE_PATTERN = re.compile(r"^\d{4}(\.\d{2}){0,3}$")
DATE_FORMAT = "%Y-%m-%d"

PROVINCES = frozenset({
    "PUNJAB",
    "SINDH",
    "KHYBER PAKHTUNKHWA",
    "BALOCHISTAN",
    "ISLAMABAD CAPITAL TERRITORY",
    "GILGIT BALTISTAN",
    "AZAD JAMMU & KASHMIR",
})


def is_valid_ntn(value: str) -> bool:
    """NTN is 7 digits; a CNIC used in its place is 13 digits."""
    return bool(NTN_PATTERN.match(value.replace("-", "").strip()))


def is_valid_strn(value: str) -> bool:
    return bool(STRN_PATTERN.match(value.strip()))


def is_valid_hs_code(value: str) -> bool:
    return bool(HS_CODE_PATTERN.match(value.strip()))


def is_valid_province(value: str) -> bool:
    return value.strip().upper() in PROVINCES


def parse_invoice_date(value: str | date) -> date | None:
    """Parse a YYYY-MM-DD date; None when the text is not a real date."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value).strip(), DATE_FORMAT).date()
    except ValueError:
        return None
