"""
DTOs -- Immutable data shapes shared across the kernel, ingestion and batch
layers.

Architecture position:
    Kernel > Domain -- zero I/O, no ORM imports.
"""

from dataclasses import asdict, dataclass, field
from typing import Any


@dataclass(frozen=True)
class FieldError:
    """
    A single validation error.

    Contract:
        Carries a machine-readable code, human-readable message, optional
        field path (``items[2].quantity``), and optional details dict.

    Non-goals:
        - Does NOT raise exceptions -- it IS the error representation.
    """

    code: str
    message: str
    field: str | None = None
    details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FieldError":
        return cls(
            code=data["code"],
            message=data.get("message", ""),
            field=data.get("field"),
            details=data.get("details"),
        )


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of a validation pass: valid iff there are no errors."""

    errors: tuple[FieldError, ...] = field(default_factory=tuple)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @classmethod
    def of(cls, errors: list[FieldError]) -> "ValidationResult":
        return cls(errors=tuple(errors))
