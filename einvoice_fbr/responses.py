"""
FBR response normalisation.

The DI API answers in camelCase in production and, on some sandbox
deployments, PascalCase.  Both are folded into one NormalizedResponse:

    validationResponse.statusCode == "00"  -> accepted
    validationResponse.statusCode == "01"  -> rejected, errors collected
    no validationResponse, invoiceNumber   -> accepted
    top-level "error"                      -> rejected

Item-level failures come from ``invoiceStatuses`` and are reported with the
field path ``items[<itemSNo - 1>]``.
"""

from dataclasses import dataclass, field
from typing import Any

from einvoice_kernel.domain.dtos import FieldError

STATUS_VALID = "00"
STATUS_INVALID = "01"


@dataclass(frozen=True)
class NormalizedResponse:
    accepted: bool
    status_code: str | None = None
    invoice_number: str | None = None
    transmission_id: str | None = None
    acknowledgment_number: str | None = None
    dated: str | None = None
    errors: tuple[FieldError, ...] = field(default_factory=tuple)


def _pick(data: dict[str, Any], key: str) -> Any:
    """Read ``key`` in camelCase, falling back to PascalCase."""
    if key in data and data[key] is not None:
        return data[key]
    return data.get(key[:1].upper() + key[1:])


def _text(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _item_field(item_sno: Any) -> str | None:
    try:
        return f"items[{int(item_sno) - 1}]"
    except (TypeError, ValueError):
        return None


def _item_errors(statuses: Any) -> list[FieldError]:
    errors: list[FieldError] = []
    if not isinstance(statuses, list):
        return errors
    for entry in statuses:
        if not isinstance(entry, dict):
            continue
        if _text(_pick(entry, "statusCode")) == STATUS_VALID:
            continue
        errors.append(FieldError(
            code=_text(_pick(entry, "errorCode")) or "FBR_ITEM_INVALID",
            message=_text(_pick(entry, "error")) or "Item rejected by FBR",
            field=_item_field(_pick(entry, "itemSNo")),
        ))
    return errors


def extract_errors(body: Any) -> list[FieldError]:
    """Every error the body reports, header first, then per item."""
    if not isinstance(body, dict):
        return []
    errors: list[FieldError] = []
    validation = _pick(body, "validationResponse")
    if isinstance(validation, dict):
        message = _text(_pick(validation, "error"))
        code = _text(_pick(validation, "errorCode"))
        if message or code:
            errors.append(FieldError(code=code or "FBR_INVALID", message=message or "Invalid invoice"))
        errors.extend(_item_errors(_pick(validation, "invoiceStatuses")))
    top_error = _text(_pick(body, "error")) or _text(_pick(body, "message"))
    if top_error and not errors:
        errors.append(FieldError(
            code=_text(_pick(body, "errorCode")) or "FBR_ERROR",
            message=top_error,
        ))
    return errors


def parse_fbr_response(body: dict[str, Any]) -> NormalizedResponse:
    validation = _pick(body, "validationResponse")
    status_code = None
    if isinstance(validation, dict):
        status_code = _text(_pick(validation, "statusCode"))

    invoice_number = _text(_pick(body, "invoiceNumber"))
    errors = extract_errors(body)

    if status_code is not None:
        accepted = status_code == STATUS_VALID
    else:
        accepted = invoice_number is not None and not errors

    return NormalizedResponse(
        accepted=accepted,
        status_code=status_code,
        invoice_number=invoice_number,
        transmission_id=_text(_pick(body, "transmissionId")),
        acknowledgment_number=_text(_pick(body, "acknowledgmentNumber")),
        dated=_text(_pick(body, "dated")),
        errors=tuple(errors),
    )
