"""
TenantService -- onboarding rules for businesses and their reference data.

Responsibility:
    Registers businesses (with their sequence counter), moves them through
    LOCAL -> SANDBOX -> PRODUCTION onboarding, rotates tokens, and adds the
    customers and products that batch rows refer to by code.

Architecture position:
    Kernel > Services.  Works on a caller-owned session; never commits.

Invariants enforced:
    - production_enabled requires sandbox_validated (ProductionNotAllowedError).
    - PRODUCTION mode requires production_enabled.
    - Replacing a token clears the auth hold for that mode, which is the
      only way an auth hold is lifted.
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from einvoice_kernel.domain.formats import is_valid_hs_code, is_valid_ntn, is_valid_province
from einvoice_kernel.domain.invoice_lifecycle import IntegrationMode
from einvoice_kernel.exceptions import (
    BusinessNotFoundError,
    ProductionNotAllowedError,
    ValidationError,
)
from einvoice_kernel.logging_config import get_logger
from einvoice_kernel.models.tenant import Business, Customer, Product
from einvoice_kernel.services.sequence_service import SequenceAllocator

logger = get_logger("services.tenant")


class TenantService:
    def __init__(self, session: Session):
        self._session = session

    def register_business(
        self,
        *,
        ntn: str,
        name: str,
        province: str,
        actor_id: UUID,
        address: str = "",
        integration_mode: IntegrationMode = IntegrationMode.LOCAL,
        sandbox_token: str | None = None,
        production_token: str | None = None,
        invoice_prefix: str = "INV",
        scenario_id: str | None = None,
    ) -> Business:
        if not is_valid_ntn(ntn):
            raise ValidationError(f"Invalid NTN {ntn!r}: expected 7 or 13 digits")
        if not is_valid_province(province):
            raise ValidationError(f"Unknown province {province!r}")
        if integration_mode is IntegrationMode.PRODUCTION:
            raise ProductionNotAllowedError(ntn, "a new business starts in LOCAL or SANDBOX")

        business = Business(
            ntn=ntn,
            name=name,
            province=province.strip().upper(),
            address=address,
            sandbox_token=sandbox_token,
            production_token=production_token,
            sandbox_validated=False,
            production_enabled=False,
            sandbox_auth_hold=False,
            production_auth_hold=False,
            integration_mode=integration_mode.value,
            invoice_prefix=invoice_prefix,
            scenario_id=scenario_id,
            created_by_id=actor_id,
        )
        self._session.add(business)
        self._session.flush()
        SequenceAllocator(self._session).ensure_counter(business.id)

        logger.info(
            "business_registered",
            extra={
                "business_id": str(business.id),
                "ntn": ntn,
                "integration_mode": integration_mode.value,
            },
        )
        return business

    def get_business(self, business_id: UUID) -> Business:
        business = self._session.get(Business, business_id)
        if business is None:
            raise BusinessNotFoundError(str(business_id))
        return business

    def mark_sandbox_validated(self, business_id: UUID, actor_id: UUID) -> Business:
        business = self.get_business(business_id)
        business.sandbox_validated = True
        business.updated_by_id = actor_id
        self._session.flush()
        logger.info("sandbox_validated", extra={"business_id": str(business_id)})
        return business

    def enable_production(self, business_id: UUID, actor_id: UUID) -> Business:
        business = self.get_business(business_id)
        if not business.production_token:
            raise ProductionNotAllowedError(str(business_id), "no production token configured")
        business.production_enabled = True
        business.updated_by_id = actor_id
        self._session.flush()
        logger.info("production_enabled", extra={"business_id": str(business_id)})
        return business

    def set_integration_mode(
        self,
        business_id: UUID,
        mode: IntegrationMode,
        actor_id: UUID,
    ) -> Business:
        business = self.get_business(business_id)
        previous = business.integration_mode
        business.integration_mode = mode.value
        business.updated_by_id = actor_id
        self._session.flush()
        logger.info(
            "integration_mode_changed",
            extra={
                "business_id": str(business_id),
                "from_mode": previous,
                "to_mode": mode.value,
            },
        )
        return business

    def update_token(
        self,
        business_id: UUID,
        mode: IntegrationMode,
        token: str,
        actor_id: UUID,
    ) -> Business:
        if mode is IntegrationMode.LOCAL:
            raise ValidationError("LOCAL mode has no token")
        business = self.get_business(business_id)
        if mode is IntegrationMode.SANDBOX:
            business.sandbox_token = token
        else:
            business.production_token = token
        was_held = business.is_on_auth_hold(mode)
        business.set_auth_hold(mode, False)
        business.updated_by_id = actor_id
        self._session.flush()
        logger.info(
            "token_updated",
            extra={
                "business_id": str(business_id),
                "mode": mode.value,
                "auth_hold_cleared": was_held,
            },
        )
        return business

    def add_customer(
        self,
        business_id: UUID,
        *,
        code: str,
        name: str,
        actor_id: UUID,
        ntn_cnic: str | None = None,
        province: str | None = None,
        address: str | None = None,
        registration_type: str = "Unregistered",
    ) -> Customer:
        self.get_business(business_id)
        if ntn_cnic and not is_valid_ntn(ntn_cnic):
            raise ValidationError(f"Invalid customer NTN/CNIC {ntn_cnic!r}")
        customer = Customer(
            business_id=business_id,
            code=code,
            name=name,
            ntn_cnic=ntn_cnic,
            province=province,
            address=address,
            registration_type=registration_type,
            created_by_id=actor_id,
        )
        self._session.add(customer)
        self._session.flush()
        return customer

    def add_product(
        self,
        business_id: UUID,
        *,
        code: str,
        description: str,
        hs_code: str,
        actor_id: UUID,
        unit_price: Decimal = Decimal("0"),
        tax_rate: Decimal = Decimal("18"),
        uom: str = "Numbers, pieces, units",
    ) -> Product:
        self.get_business(business_id)
        if not is_valid_hs_code(hs_code):
            raise ValidationError(f"Invalid HS code {hs_code!r}")
        product = Product(
            business_id=business_id,
            code=code,
            description=description,
            hs_code=hs_code,
            unit_price=unit_price,
            tax_rate=tax_rate,
            uom=uom,
            created_by_id=actor_id,
        )
        self._session.add(product)
        self._session.flush()
        return product

    def customer_by_code(self, business_id: UUID, code: str) -> Customer | None:
        return self._session.execute(
            select(Customer).where(Customer.business_id == business_id, Customer.code == code)
        ).scalar_one_or_none()

    def product_by_code(self, business_id: UUID, code: str) -> Product | None:
        return self._session.execute(
            select(Product).where(Product.business_id == business_id, Product.code == code)
        ).scalar_one_or_none()
