"""Pytest configuration and fixtures."""

from datetime import datetime
from pathlib import Path

import pytest

from evledger.db import Database
from evledger.db.enums import RoamingType
from evledger.payments.processor import PaymentProcessor, ProcessorError, ProcessorIntent
from evledger.pricing.billing import BillingService
from evledger.pricing.tariffs import TariffService

WORKSPACE = "ws-1"


@pytest.fixture
def temp_db(tmp_path: Path) -> str:
    """Create a temporary database path."""
    return str(tmp_path / "test.db")


@pytest.fixture
def db(temp_db):
    """Create initialized database."""
    database = Database(temp_db)
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def tariffs(db) -> TariffService:
    return TariffService(db)


@pytest.fixture
def billing(db) -> BillingService:
    return BillingService(db)


@pytest.fixture
def make_tariff(tariffs):
    """Create a tariff, optionally assigned to a station or connector."""

    def _make(
        station_id: str | None = "st-1",
        connector_id: str | None = None,
        assigned_from: datetime = datetime(2025, 1, 1),
        assigned_until: datetime | None = None,
        workspace_id: str = WORKSPACE,
        **data,
    ):
        values = {
            "name": "Standard",
            "base_price_per_kwh": 0.30,
            "price_per_minute": 0.0,
            "session_start_fee": 0.0,
            "ms_fee_percent": 0.15,
            "valid_from": datetime(2024, 1, 1),
        }
        values.update(data)
        tariff = tariffs.create_tariff(workspace_id, values).unwrap()
        if station_id and connector_id:
            tariffs.assign_tariff_to_connector(
                workspace_id, tariff.id, station_id, connector_id, assigned_from, assigned_until
            ).unwrap()
        elif station_id:
            tariffs.assign_tariff_to_station(
                workspace_id, tariff.id, station_id, assigned_from, assigned_until
            ).unwrap()
        return tariff

    return _make


@pytest.fixture
def make_billed_session(billing):
    """Start and stop a session, returning the billed record."""

    def _make(
        energy_kwh: float = 15.0,
        duration_seconds: int = 1800,
        start_time: datetime = datetime(2025, 3, 10, 8, 0),
        station_id: str = "st-1",
        end_user_id: str | None = None,
        roaming_type: RoamingType = RoamingType.NONE,
        hubject_session_id: str | None = None,
        workspace_id: str = WORKSPACE,
    ):
        session = billing.start_session(
            workspace_id,
            station_id,
            end_user_id=end_user_id,
            start_time=start_time,
            roaming_type=roaming_type,
            hubject_session_id=hubject_session_id,
        ).unwrap()
        return billing.stop_session(session.id, energy_kwh, duration_seconds).unwrap()

    return _make


class FakeProcessor(PaymentProcessor):
    """In-memory processor recording every call."""

    def __init__(self):
        self.calls: list[tuple] = []
        self.intents: dict[str, ProcessorIntent] = {}
        self.hold_status = "requires_capture"
        self.hold_error: ProcessorError | None = None
        self.capture_error: ProcessorError | None = None
        self.cancel_error: ProcessorError | None = None

    def create_hold(
        self,
        amount_cents,
        currency,
        customer_id,
        payment_method_id,
        idempotency_key=None,
        metadata=None,
    ):
        self.calls.append(("create_hold", amount_cents, currency, idempotency_key))
        if self.hold_error:
            raise self.hold_error
        intent = ProcessorIntent(
            id=f"pi_{len(self.intents) + 1}",
            status=self.hold_status,
            amount_cents=amount_cents,
        )
        self.intents[intent.id] = intent
        return intent

    def capture(self, intent_id, amount_cents, idempotency_key=None):
        self.calls.append(("capture", intent_id, amount_cents))
        if self.capture_error:
            raise self.capture_error
        intent = self.intents[intent_id]
        intent.status = "succeeded"
        intent.amount_received_cents = amount_cents
        return intent

    def cancel(self, intent_id):
        self.calls.append(("cancel", intent_id))
        if self.cancel_error:
            raise self.cancel_error
        intent = self.intents[intent_id]
        intent.status = "canceled"
        return intent

    def retrieve(self, intent_id):
        self.calls.append(("retrieve", intent_id))
        return self.intents[intent_id]

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)


@pytest.fixture
def processor() -> FakeProcessor:
    return FakeProcessor()
