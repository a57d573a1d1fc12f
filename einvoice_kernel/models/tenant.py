"""
Module: einvoice_kernel.models.tenant
Responsibility: ORM persistence for tenants (Business) and the reference
    data they own (Customer, Product).
Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ only.

Invariants enforced:
    - A business has exactly one active integration_mode at a time.
    - production_enabled may only be set once sandbox_validated is true,
      and PRODUCTION mode may only be selected once production_enabled is
      true (checked on assignment, see ``_guard_production``).
    - Customer and product codes are unique within their business.

Audit relevance:
    The per-mode auth hold flags record that the authority rejected a
    token.  While a hold is set, no submission is attempted in that mode.
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import Boolean, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, validates

from einvoice_kernel.db.base import TrackedBase, UUIDString
from einvoice_kernel.domain.invoice_lifecycle import IntegrationMode
from einvoice_kernel.exceptions import ProductionNotAllowedError


class Business(TrackedBase):
    """
    A registered business issuing invoices.

    Contract:
        Owns its invoices, customers and products.  The integration mode
        decides where every one of its submissions goes; the matching
        bearer token is selected by ``token_for``.
    """

    __tablename__ = "businesses"

    __table_args__ = (
        UniqueConstraint("ntn", name="uq_business_ntn"),
    )

    ntn: Mapped[str] = mapped_column(String(13), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    province: Mapped[str] = mapped_column(String(50), nullable=False)
    address: Mapped[str] = mapped_column(String(500), nullable=False, default="")

    integration_mode: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=IntegrationMode.LOCAL.value,
    )

    sandbox_token: Mapped[str | None] = mapped_column(String(500), nullable=True)
    production_token: Mapped[str | None] = mapped_column(String(500), nullable=True)

    sandbox_validated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    production_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    sandbox_auth_hold: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    production_auth_hold: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    invoice_prefix: Mapped[str] = mapped_column(String(10), nullable=False, default="INV")

    # Sandbox scenario code sent with sandbox submissions (e.g. SN001)
    scenario_id: Mapped[str | None] = mapped_column(String(10), nullable=True)

    @validates("production_enabled", "integration_mode")
    def _guard_production(self, key, value):
        if key == "production_enabled" and value and not self.sandbox_validated:
            raise ProductionNotAllowedError(
                str(self.id), "sandbox must be validated before production is enabled"
            )
        if key == "integration_mode":
            mode = IntegrationMode(value)
            if mode is IntegrationMode.PRODUCTION and not self.production_enabled:
                raise ProductionNotAllowedError(
                    str(self.id), "production is not enabled for this business"
                )
            return mode.value
        return value

    @property
    def mode(self) -> IntegrationMode:
        return IntegrationMode(self.integration_mode)

    def token_for(self, mode: IntegrationMode) -> str | None:
        if mode is IntegrationMode.SANDBOX:
            return self.sandbox_token
        if mode is IntegrationMode.PRODUCTION:
            return self.production_token
        return None

    def is_on_auth_hold(self, mode: IntegrationMode) -> bool:
        if mode is IntegrationMode.SANDBOX:
            return self.sandbox_auth_hold
        if mode is IntegrationMode.PRODUCTION:
            return self.production_auth_hold
        return False

    def set_auth_hold(self, mode: IntegrationMode, held: bool) -> None:
        if mode is IntegrationMode.SANDBOX:
            self.sandbox_auth_hold = held
        elif mode is IntegrationMode.PRODUCTION:
            self.production_auth_hold = held

    def __repr__(self) -> str:
        return f"<Business {self.ntn} {self.name} mode={self.integration_mode}>"


class Customer(TrackedBase):
    """Buyer owned by one business, resolvable by code within it."""

    __tablename__ = "customers"

    __table_args__ = (
        UniqueConstraint("business_id", "code", name="uq_customer_business_code"),
        Index("idx_customer_business", "business_id"),
    )

    business_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("businesses.id", ondelete="CASCADE"),
        nullable=False,
    )
    code: Mapped[str] = mapped_column(String(50), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    ntn_cnic: Mapped[str | None] = mapped_column(String(13), nullable=True)
    province: Mapped[str | None] = mapped_column(String(50), nullable=True)
    address: Mapped[str | None] = mapped_column(String(500), nullable=True)
    registration_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default="Unregistered"
    )


class Product(TrackedBase):
    """Catalogue item owned by one business, resolvable by code within it."""

    __tablename__ = "products"

    __table_args__ = (
        UniqueConstraint("business_id", "code", name="uq_product_business_code"),
        Index("idx_product_business", "business_id"),
    )

    business_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("businesses.id", ondelete="CASCADE"),
        nullable=False,
    )
    code: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    hs_code: Mapped[str] = mapped_column(String(20), nullable=False)
    uom: Mapped[str] = mapped_column(String(50), nullable=False, default="Numbers, pieces, units")
    unit_price: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    tax_rate: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("18"))
