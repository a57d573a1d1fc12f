"""
Tenant onboarding rules.

Validates:
- Registration checks NTN and province and creates the sequence counter
- Production needs a validated sandbox and a production token
- Token replacement is what lifts an auth hold
- Customers and products are looked up by code per business
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from einvoice_kernel.db.engine import transaction
from einvoice_kernel.domain.invoice_lifecycle import IntegrationMode
from einvoice_kernel.exceptions import (
    BusinessNotFoundError,
    ProductionNotAllowedError,
    ValidationError,
)
from einvoice_kernel.models.sequence import SequenceCounter
from einvoice_kernel.services.tenant_service import TenantService


def _register(session, actor_id, **overrides):
    fields = dict(
        ntn="1234567",
        name="Lahore Textiles",
        province="punjab",
        actor_id=actor_id,
        integration_mode=IntegrationMode.SANDBOX,
        sandbox_token="sandbox-token",
        production_token="production-token",
    )
    fields.update(overrides)
    return TenantService(session).register_business(**fields)


class TestRegisterBusiness:
    def test_registers_with_counter(self, session_factory, actor_id):
        with transaction(session_factory) as session:
            business = _register(session, actor_id)
            counter = session.query(SequenceCounter).filter_by(business_id=business.id).one()

            assert business.province == "PUNJAB"
            assert business.mode is IntegrationMode.SANDBOX
            assert counter.current_value == 0
            assert not business.production_enabled

    @pytest.mark.parametrize("ntn", ["123", "abcdefg", "12345678"])
    def test_invalid_ntn(self, session_factory, actor_id, ntn):
        with pytest.raises(ValidationError):
            with transaction(session_factory) as session:
                _register(session, actor_id, ntn=ntn)

    def test_unknown_province(self, session_factory, actor_id):
        with pytest.raises(ValidationError):
            with transaction(session_factory) as session:
                _register(session, actor_id, province="Atlantis")

    def test_cannot_start_in_production(self, session_factory, actor_id):
        with pytest.raises(ProductionNotAllowedError):
            with transaction(session_factory) as session:
                _register(session, actor_id, integration_mode=IntegrationMode.PRODUCTION)


class TestProductionGate:
    def test_production_needs_validated_sandbox(self, session_factory, actor_id):
        with transaction(session_factory) as session:
            business_id = _register(session, actor_id).id

        with pytest.raises(ProductionNotAllowedError):
            with transaction(session_factory) as session:
                TenantService(session).enable_production(business_id, actor_id)

    def test_production_needs_a_token(self, session_factory, actor_id):
        with transaction(session_factory) as session:
            business_id = _register(session, actor_id, production_token=None).id
            TenantService(session).mark_sandbox_validated(business_id, actor_id)

        with pytest.raises(ProductionNotAllowedError):
            with transaction(session_factory) as session:
                TenantService(session).enable_production(business_id, actor_id)

    def test_production_mode_needs_production_enabled(self, session_factory, actor_id):
        with transaction(session_factory) as session:
            business_id = _register(session, actor_id).id

        with pytest.raises(ProductionNotAllowedError):
            with transaction(session_factory) as session:
                TenantService(session).set_integration_mode(
                    business_id, IntegrationMode.PRODUCTION, actor_id
                )

    def test_full_onboarding(self, session_factory, actor_id):
        with transaction(session_factory) as session:
            tenants = TenantService(session)
            business_id = _register(session, actor_id).id
            tenants.mark_sandbox_validated(business_id, actor_id)
            tenants.enable_production(business_id, actor_id)
            business = tenants.set_integration_mode(business_id, IntegrationMode.PRODUCTION, actor_id)

            assert business.mode is IntegrationMode.PRODUCTION
            assert business.token_for(IntegrationMode.PRODUCTION) == "production-token"
            assert business.token_for(IntegrationMode.LOCAL) is None


class TestTokens:
    def test_update_token_clears_hold(self, session_factory, actor_id, captured_logs):
        with transaction(session_factory) as session:
            business = _register(session, actor_id)
            business.set_auth_hold(IntegrationMode.SANDBOX, True)
            business.set_auth_hold(IntegrationMode.PRODUCTION, True)

            TenantService(session).update_token(business.id, IntegrationMode.SANDBOX, "new", actor_id)

            assert business.sandbox_token == "new"
            assert not business.is_on_auth_hold(IntegrationMode.SANDBOX)
            assert business.is_on_auth_hold(IntegrationMode.PRODUCTION)

        record = next(r for r in captured_logs() if r["message"] == "token_updated")
        assert record["auth_hold_cleared"] is True

    def test_local_mode_has_no_token(self, session_factory, actor_id):
        with transaction(session_factory) as session:
            business_id = _register(session, actor_id).id
            with pytest.raises(ValidationError):
                TenantService(session).update_token(business_id, IntegrationMode.LOCAL, "x", actor_id)

    def test_unknown_business(self, session_factory, actor_id):
        with transaction(session_factory) as session:
            with pytest.raises(BusinessNotFoundError):
                TenantService(session).update_token(uuid4(), IntegrationMode.SANDBOX, "x", actor_id)


class TestReferenceData:
    def test_lookup_by_code_is_per_business(self, session_factory, register_business):
        first = register_business()
        second = register_business()

        with transaction(session_factory) as session:
            tenants = TenantService(session)
            customer = tenants.customer_by_code(first, "C001")
            assert customer.name == "Karachi Traders"
            assert customer.business_id == first
            assert tenants.customer_by_code(second, "C001").business_id == second
            assert tenants.customer_by_code(first, "C999") is None

            product = tenants.product_by_code(first, "P001")
            assert product.hs_code == "5205.11"
            assert product.unit_price == Decimal("250.00")

    def test_invalid_customer_ntn(self, session_factory, business_id, actor_id):
        with transaction(session_factory) as session:
            with pytest.raises(ValidationError):
                TenantService(session).add_customer(
                    business_id, code="C002", name="Bad", actor_id=actor_id, ntn_cnic="12"
                )

    def test_invalid_hs_code(self, session_factory, business_id, actor_id):
        with transaction(session_factory) as session:
            with pytest.raises(ValidationError):
                TenantService(session).add_product(
                    business_id, code="P002", description="Bad", hs_code="12", actor_id=actor_id
                )
