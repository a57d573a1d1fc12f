"""
Pytest fixtures for the e-invoicing core test suite.

Provides:
- A file-backed SQLite database per test (cross-thread, BEGIN IMMEDIATE),
  so worker-pool and allocator tests run against real locking
- Businesses with customers and products, registered through TenantService
- A scripted FBR gateway that records every call
- Submission services and orchestrators wired with a recording sleep

Environment Variables:
- DATABASE_URL: run against another database (e.g. PostgreSQL) instead of
  the per-test SQLite file.  Tables are created and dropped per test.
"""

import io
import itertools
import json
import logging
import os
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from io import StringIO
from typing import Any, Callable
from uuid import UUID, uuid4

import pytest
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from einvoice_batch.models.batch import BulkInvoiceBatch, BulkInvoiceItem
from einvoice_batch.orchestrator import BatchOrchestrator
from einvoice_config import RetrySettings, Settings, WorkerSettings
from einvoice_kernel.db.engine import build_engine, create_tables, drop_tables, transaction
from einvoice_kernel.db.immutability import register_immutability_listeners
from einvoice_kernel.domain.clock import DeterministicClock
from einvoice_kernel.domain.dtos import FieldError
from einvoice_kernel.domain.fbr_contract import FbrResult
from einvoice_kernel.domain.invoice_lifecycle import IntegrationMode
from einvoice_kernel.domain.retry_policy import BackoffPolicy
from einvoice_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from einvoice_kernel.models.invoice import SubmissionAttempt
from einvoice_kernel.services.invoice_factory import InvoiceFactory, LineSpec
from einvoice_kernel.services.invoice_submission import InvoiceSubmissionService
from einvoice_kernel.services.tenant_service import TenantService

# Test actor ID for all test operations
TEST_ACTOR_ID = uuid4()

INVOICE_DATE = date(2025, 1, 15)


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture einvoice logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, submission):
            submission.submit(invoice_id, actor_id)
            logs = captured_logs()
            assert any(r["message"] == "invoice_transitioned" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("einvoice")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def engine(tmp_path):
    url = os.environ.get("DATABASE_URL") or f"sqlite:///{tmp_path / 'einvoice.db'}"
    eng = build_engine(url, pool_size=10, max_overflow=10)
    create_tables(eng)
    register_immutability_listeners()
    yield eng
    if not url.startswith("sqlite"):
        drop_tables(eng)
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def clock():
    return DeterministicClock(datetime(2025, 1, 15, 9, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def actor_id():
    return TEST_ACTOR_ID


@pytest.fixture
def sleeps():
    """Every backoff wait requested, in seconds; nothing actually sleeps."""
    return []


# =============================================================================
# FBR gateway double
# =============================================================================


@dataclass(frozen=True)
class GatewayCall:
    mode: IntegrationMode
    token: str | None
    payload: dict[str, Any]
    idempotency_key: str

    @property
    def description(self) -> str:
        return self.payload["items"][0]["productDescription"]


class ScriptedGateway:
    """
    FbrGateway double.

    Outcomes are scripted with ``script``: an FbrResult is returned, an
    exception instance is raised, and a callable is invoked with the
    GatewayCall and its return value used in the same way (None means
    accept).  Calls no rule answers are accepted with a fresh FBR invoice
    number.
    """

    def __init__(self):
        self.calls: list[GatewayCall] = []
        self.latency = 0.0
        self.max_in_flight = 0
        self._in_flight = 0
        self._issued = 0
        self._rules: list[tuple[Callable[[GatewayCall], bool], deque, bool]] = []
        self._lock = threading.Lock()

    def script(self, *outcomes: Any, when: Callable[[GatewayCall], bool] | None = None, always: bool = False):
        """Answer matching calls with ``outcomes`` in order (or the first one forever)."""
        with self._lock:
            self._rules.append((when or (lambda call: True), deque(outcomes), always))

    def reset_script(self) -> None:
        with self._lock:
            self._rules.clear()

    def calls_for(self, description: str) -> list[GatewayCall]:
        return [c for c in self.calls if c.description == description]

    def submit(self, mode, token, payload, idempotency_key):
        call = GatewayCall(mode, token, payload, idempotency_key)
        with self._lock:
            self.calls.append(call)
            self._issued += 1
            number = f"FBR{self._issued:08d}"
            outcome = self._next_outcome(call)
            self._in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self._in_flight)
        try:
            if self.latency:
                time.sleep(self.latency)
            if callable(outcome):
                outcome = outcome(call)
        finally:
            with self._lock:
                self._in_flight -= 1
        if outcome is None:
            return self.accepted(number)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    def _next_outcome(self, call: GatewayCall) -> Any:
        for predicate, outcomes, always in self._rules:
            if not outcomes or not predicate(call):
                continue
            return outcomes[0] if always else outcomes.popleft()
        return None

    @staticmethod
    def accepted(invoice_number: str) -> FbrResult:
        raw = {
            "invoiceNumber": invoice_number,
            "dated": "2025-01-15 09:00:00",
            "validationResponse": {"statusCode": "00", "status": "Valid", "error": ""},
        }
        return FbrResult(
            accepted=True,
            invoice_number=invoice_number,
            transmission_id=f"TX-{invoice_number}",
            acknowledgment_number=f"ACK-{invoice_number}",
            status_code="00",
            raw_response=raw,
            http_status=200,
        )

    @staticmethod
    def rejected(message: str, code: str = "0052") -> FbrResult:
        raw = {
            "validationResponse": {
                "statusCode": "01",
                "status": "Invalid",
                "errorCode": code,
                "error": message,
            },
        }
        return FbrResult(
            accepted=False,
            status_code="01",
            errors=(FieldError(code=code, message=message),),
            raw_response=raw,
            http_status=200,
        )


@pytest.fixture
def gateway():
    return ScriptedGateway()


# =============================================================================
# Tenant and invoice fixtures
# =============================================================================


@pytest.fixture
def register_business(session_factory, actor_id):
    """
    Register a business with customer C001 and product P001.

    Returns the business id.
    """
    ntns = itertools.count(1000001)

    def _register(
        mode: IntegrationMode = IntegrationMode.SANDBOX,
        production: bool = False,
        sandbox_token: str | None = "sandbox-token",
        production_token: str | None = "production-token",
        prefix: str = "INV",
    ) -> UUID:
        with transaction(session_factory) as session:
            tenants = TenantService(session)
            business = tenants.register_business(
                ntn=str(next(ntns)),
                name="Lahore Textiles",
                province="Punjab",
                address="1 Mall Road, Lahore",
                actor_id=actor_id,
                integration_mode=(
                    IntegrationMode.SANDBOX if mode is IntegrationMode.PRODUCTION else mode
                ),
                sandbox_token=sandbox_token,
                production_token=production_token,
                invoice_prefix=prefix,
                scenario_id="SN001",
            )
            if production:
                tenants.mark_sandbox_validated(business.id, actor_id)
                tenants.enable_production(business.id, actor_id)
            if mode is IntegrationMode.PRODUCTION:
                tenants.set_integration_mode(business.id, mode, actor_id)
            tenants.add_customer(
                business.id,
                code="C001",
                name="Karachi Traders",
                actor_id=actor_id,
                ntn_cnic="7654321",
                province="Sindh",
                address="Saddar, Karachi",
                registration_type="Registered",
            )
            tenants.add_product(
                business.id,
                code="P001",
                description="Cotton yarn",
                hs_code="5205.11",
                actor_id=actor_id,
                unit_price=Decimal("250.00"),
                tax_rate=Decimal("18"),
            )
            return business.id

    return _register


@pytest.fixture
def business_id(register_business):
    """A SANDBOX business with production disabled."""
    return register_business()


@pytest.fixture
def create_invoice(session_factory, actor_id):
    """Create a one-line DRAFT invoice (2 x 100.00 at 18% unless told otherwise)."""

    def _create(
        business_id: UUID,
        *,
        quantity: Decimal = Decimal("2"),
        unit_price: Decimal = Decimal("100.00"),
        tax_rate: Decimal = Decimal("18"),
        total_amount: Decimal | None = None,
        mode: IntegrationMode | None = None,
        description: str = "Cotton yarn",
    ) -> UUID:
        with transaction(session_factory) as session:
            invoice = InvoiceFactory(session).create_draft(
                business_id,
                invoice_date=INVOICE_DATE,
                lines=[LineSpec(
                    description=description,
                    hs_code="5205.11",
                    quantity=quantity,
                    unit_price=unit_price,
                    tax_rate=tax_rate,
                )],
                actor_id=actor_id,
                total_amount=total_amount,
                mode=mode,
                buyer_name="Karachi Traders",
                buyer_ntn_cnic="7654321",
                buyer_province="SINDH",
            )
            return invoice.id

    return _create


@pytest.fixture
def make_submission(session_factory, gateway, clock, sleeps):
    def _make(max_attempts: int = 5, schedule=None, lease_seconds: float = 300.0, gw=None):
        return InvoiceSubmissionService(
            session_factory,
            gw or gateway,
            policy=BackoffPolicy(max_attempts=max_attempts, sleep=sleeps.append),
            clock=clock,
            lease_seconds=lease_seconds,
            schedule=schedule,
        )

    return _make


@pytest.fixture
def submission(make_submission):
    return make_submission()


@pytest.fixture
def attempts_for(session_factory):
    """SubmissionAttempt rows of an invoice, in attempt order."""

    def _attempts(invoice_id: UUID) -> list[SubmissionAttempt]:
        with transaction(session_factory) as session:
            return list(session.execute(
                select(SubmissionAttempt)
                .where(SubmissionAttempt.invoice_id == invoice_id)
                .order_by(SubmissionAttempt.attempt_number)
            ).scalars())

    return _attempts


# =============================================================================
# Batch fixtures
# =============================================================================


@pytest.fixture
def invoice_row():
    """A nested JSON row for customer C001 whose amounts are consistent."""

    def _row(n: int, **overrides: Any) -> dict[str, Any]:
        row = {
            "local_id": f"INV-{n:04d}",
            "invoice_date": "2025-01-15",
            "customer_code": "C001",
            "items": [{
                "description": f"Item {n}",
                "hs_code": "5205.11",
                "quantity": "2",
                "unit_price": "100.00",
                "tax_rate": "18",
            }],
        }
        row.update(overrides)
        return row

    return _row


@pytest.fixture
def jsonl():
    """Encode rows (dicts, or raw strings for malformed lines) as a JSON Lines stream."""

    def _encode(rows: list[Any]) -> io.BytesIO:
        lines = [r if isinstance(r, str) else json.dumps(r) for r in rows]
        return io.BytesIO(("\n".join(lines) + "\n").encode("utf-8"))

    return _encode


@pytest.fixture
def create_batch(session_factory, actor_id):
    """An empty batch in UPLOADING, as the orchestrator creates it."""

    def _create(business_id: UUID, source_format: str = "jsonl") -> UUID:
        with transaction(session_factory) as session:
            batch = BulkInvoiceBatch(
                business_id=business_id,
                source_filename="upload.jsonl",
                source_format=source_format,
                created_by_id=actor_id,
            )
            session.add(batch)
            session.flush()
            return batch.id

    return _create


@pytest.fixture
def batch_rows(session_factory):
    """The batch's rows, ordered by row number."""

    def _rows(batch_id: UUID) -> list[BulkInvoiceItem]:
        with transaction(session_factory) as session:
            return list(session.execute(
                select(BulkInvoiceItem)
                .where(BulkInvoiceItem.batch_id == batch_id)
                .order_by(BulkInvoiceItem.row_number)
            ).scalars())

    return _rows


@pytest.fixture
def make_orchestrator(session_factory, gateway, clock, sleeps):
    def _make(pool_size: int = 4, max_attempts: int = 3, requests_per_second: float | None = None):
        settings = Settings(
            retry=RetrySettings(max_attempts=max_attempts),
            workers=WorkerSettings(pool_size=pool_size, requests_per_second=requests_per_second),
        )
        return BatchOrchestrator.from_settings(
            settings, session_factory, gateway=gateway, clock=clock, sleep=sleeps.append
        )

    return _make


@pytest.fixture
def orchestrator(make_orchestrator):
    return make_orchestrator()
