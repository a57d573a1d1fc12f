"""
Module: einvoice_kernel.models.sequence
Responsibility: The durable per-business invoice counter row.

Invariants enforced:
    - Exactly one counter per business (uq_sequence_business).
    - current_value only ever grows, and only through
      SequenceAllocator's atomic UPDATE ... RETURNING.
"""

from uuid import UUID

from sqlalchemy import ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from einvoice_kernel.db.base import Base, UUIDString


class SequenceCounter(Base):
    """Last invoice sequence issued for one business (0 = none yet)."""

    __tablename__ = "sequence_counters"

    __table_args__ = (
        UniqueConstraint("business_id", name="uq_sequence_business"),
    )

    business_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("businesses.id", ondelete="CASCADE"),
        nullable=False,
    )
    current_value: Mapped[int] = mapped_column(nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<SequenceCounter {self.business_id}={self.current_value}>"
