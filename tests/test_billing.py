"""Tests for tariff snapshots and session billing."""

import json
from dataclasses import replace
from datetime import datetime
from decimal import Decimal

import pytest

from evledger.db.enums import BillingStatus, RoamingType, SessionStatus
from evledger.errors import ErrorKind
from evledger.pricing.billing import (
    TariffSnapshot,
    compute_billing_at_stop,
    compute_session_amounts,
    round_to_cents,
    snapshot_tariff_at_start,
)

START = datetime(2025, 3, 10, 8, 0)


class TestRounding:
    """Tests for half-up cent rounding."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            (0.675, "0.68"),
            (0.125, "0.13"),
            (2.675, "2.68"),
            (1.005, "1.01"),
            (-0.005, "-0.01"),
            (None, "0.00"),
        ],
    )
    def test_round_half_up(self, value, expected):
        """Halves round away from zero regardless of binary float representation."""
        assert round_to_cents(value) == Decimal(expected)


class TestComputeSessionAmounts:
    """Tests for the pricing formula."""

    def test_energy_only(self):
        """15 kWh at 0.30 with a 15% fee."""
        breakdown = compute_session_amounts(15, 0, 0.30, 0, 0, 15)

        assert breakdown.gross_amount == 4.50
        assert breakdown.ms_fee_amount == 0.68
        assert breakdown.sub_cpo_earning_amount == 3.82

    def test_all_components(self):
        """Energy, time and start fee are rounded individually then summed."""
        breakdown = compute_session_amounts(
            energy_kwh=10.333,
            duration_seconds=1250,
            base_price_per_kwh=0.299,
            price_per_minute=0.05,
            session_start_fee=0.5,
            ms_fee_percent=10,
        )

        # 10.333 * 0.299 = 3.089567 -> 3.09; 20.8333 min * 0.05 = 1.0417 -> 1.04
        assert breakdown.energy_amount == 3.09
        assert breakdown.time_amount == 1.04
        assert breakdown.start_fee_amount == 0.50
        assert breakdown.gross_amount == 4.63
        assert breakdown.ms_fee_amount == 0.46
        assert breakdown.sub_cpo_earning_amount == 4.17

    def test_fee_plus_earning_equals_gross(self):
        """The fee and operator share always add up to gross."""
        for kwh in (0.01, 1.7, 7.77, 33.333, 99.99):
            b = compute_session_amounts(kwh, 725, 0.4321, 0.033, 0.25, 17.5)
            assert round_to_cents(b.ms_fee_amount + b.sub_cpo_earning_amount) == round_to_cents(
                b.gross_amount
            )

    def test_zero_session(self):
        """A zero-energy, zero-duration session costs only the start fee."""
        breakdown = compute_session_amounts(0, 0, 0.30, 0.10, 1.0, 15)

        assert breakdown.gross_amount == 1.00
        assert breakdown.ms_fee_amount == 0.15
        assert breakdown.sub_cpo_earning_amount == 0.85


class TestTariffSnapshot:
    """Tests for freezing tariff terms."""

    def test_snapshot_converts_fee_to_percent(self, db, make_tariff):
        """The fraction stored on the tariff becomes percent units on the snapshot."""
        tariff = make_tariff(ms_fee_percent=0.15)

        snapshot = snapshot_tariff_at_start(db, "ws-1", "st-1", None, START)

        assert snapshot.tariff_id == tariff.id
        assert snapshot.tariff_version == tariff.version
        assert snapshot.ms_fee_percent == pytest.approx(15.0)

    def test_no_tariff_returns_none(self, db):
        """No applicable tariff gives no snapshot."""
        assert snapshot_tariff_at_start(db, "ws-1", "st-1", None, START) is None

    def test_snapshot_json(self, db, make_tariff):
        """The audit copy round-trips through JSON."""
        make_tariff(price_per_minute=0.05)

        snapshot = snapshot_tariff_at_start(db, "ws-1", "st-1", None, START)
        data = json.loads(snapshot.to_json())

        assert data["base_price_per_kwh"] == 0.30
        assert data["price_per_minute"] == 0.05
        assert data["captured_at"] == START.isoformat()

    def test_snapshot_is_immutable(self, db, make_tariff):
        """Snapshots are frozen value objects."""
        make_tariff()
        snapshot = snapshot_tariff_at_start(db, "ws-1", "st-1", None, START)

        with pytest.raises(AttributeError):
            snapshot.base_price_per_kwh = 1.0


class TestStartSession:
    """Tests for session creation."""

    def test_start_copies_snapshot(self, billing, make_tariff):
        """The resolved tariff terms are copied onto the session."""
        tariff = make_tariff(session_start_fee=0.5)

        session = billing.start_session("ws-1", "st-1", "c-1", start_time=START).unwrap()

        assert session.status == SessionStatus.ACTIVE
        assert session.billable is True
        assert session.tariff_snapshot_id == tariff.id
        assert session.tariff_session_start_fee == 0.5
        assert session.tariff_ms_fee_percent == pytest.approx(15.0)
        assert json.loads(session.tariff_snapshot_json)["tariff_id"] == tariff.id

    def test_start_without_tariff_is_unbillable(self, billing):
        """Missing tariff does not block the session."""
        session = billing.start_session("ws-1", "st-1", start_time=START).unwrap()

        assert session.billable is False
        assert session.tariff_snapshot_id is None

    def test_roaming_requires_hub_id(self, billing):
        """Roaming sessions need the roaming network session id."""
        result = billing.start_session("ws-1", "st-1", roaming_type=RoamingType.INBOUND)

        assert result.error.kind == ErrorKind.VALIDATION

    def test_duplicate_hub_id_conflicts(self, billing, make_tariff):
        """A roaming id can only belong to one session."""
        make_tariff()
        billing.start_session(
            "ws-1", "st-1", start_time=START,
            roaming_type=RoamingType.INBOUND, hubject_session_id="hub-1",
        ).unwrap()

        result = billing.start_session(
            "ws-1", "st-1", start_time=START,
            roaming_type=RoamingType.INBOUND, hubject_session_id="hub-1",
        )

        assert result.error.kind == ErrorKind.CONFLICT


class TestStopSession:
    """Tests for completing and billing a session."""

    def test_stop_bills_session(self, billing, make_tariff):
        """15 kWh at 0.30 with a 15% tariff fee bills 4.50 / 0.68 / 3.82."""
        make_tariff()
        session = billing.start_session("ws-1", "st-1", start_time=START).unwrap()

        billed = billing.stop_session(session.id, 15, 1800).unwrap()

        assert billed.status == SessionStatus.COMPLETED
        assert billed.billing_status == BillingStatus.BILLED
        assert billed.gross_amount == 4.50
        assert billed.ms_fee_amount == 0.68
        assert billed.sub_cpo_earning_amount == 3.82
        assert billed.billed_at is not None
        assert json.loads(billed.billing_breakdown_json)["gross_amount"] == 4.50

    def test_tariff_edit_after_start_does_not_change_bill(self, billing, tariffs, make_tariff):
        """Sessions are billed on the snapshot taken at start."""
        tariff = make_tariff()
        session = billing.start_session("ws-1", "st-1", start_time=START).unwrap()

        tariffs.update_tariff("ws-1", tariff.id, {"base_price_per_kwh": 0.99, "ms_fee_percent": 0.5})
        billed = billing.stop_session(session.id, 15, 1800).unwrap()

        assert billed.gross_amount == 4.50
        assert billed.tariff_snapshot_version == tariff.version

    def test_second_stop_with_same_figures_is_idempotent(self, billing, make_tariff):
        """Repeating a stop returns the already billed session."""
        make_tariff()
        session = billing.start_session("ws-1", "st-1", start_time=START).unwrap()
        first = billing.stop_session(session.id, 15, 1800).unwrap()

        second = billing.stop_session(session.id, 15, 1800).unwrap()

        assert second.gross_amount == first.gross_amount
        assert second.billed_at == first.billed_at

    def test_second_stop_with_other_figures_conflicts(self, billing, make_tariff):
        """A racing stop with different measurements cannot rebill."""
        make_tariff()
        session = billing.start_session("ws-1", "st-1", start_time=START).unwrap()
        billing.stop_session(session.id, 15, 1800).unwrap()

        result = billing.stop_session(session.id, 20, 1800)

        assert result.error.kind == ErrorKind.CONFLICT
        assert billing.db.get_session(session.id).gross_amount == 4.50

    def test_stop_without_snapshot(self, billing):
        """A session without snapshot completes unbilled with a consistency error."""
        session = billing.start_session("ws-1", "st-1", start_time=START).unwrap()

        result = billing.stop_session(session.id, 15, 1800)

        assert result.error.kind == ErrorKind.DATA_CONSISTENCY
        stored = billing.db.get_session(session.id)
        assert stored.status == SessionStatus.COMPLETED
        assert stored.billing_status == BillingStatus.NOT_BILLED
        assert stored.gross_amount is None

    def test_stop_rejects_negative_energy(self, billing, make_tariff):
        """Measurements must not be negative."""
        make_tariff()
        session = billing.start_session("ws-1", "st-1", start_time=START).unwrap()

        assert billing.stop_session(session.id, -1, 10).error.kind == ErrorKind.VALIDATION

    def test_stop_unknown_session(self, billing):
        """Stopping a missing session is NotFound."""
        assert billing.stop_session(42, 1, 1).error.kind == ErrorKind.NOT_FOUND

    def test_stop_cancelled_session_conflicts(self, billing, make_tariff):
        """Cancelled sessions are never billed."""
        make_tariff()
        session = billing.start_session("ws-1", "st-1", start_time=START).unwrap()
        billing.cancel_session(session.id).unwrap()

        assert billing.stop_session(session.id, 15, 1800).error.kind == ErrorKind.CONFLICT


class TestComputeBillingAtStop:
    """Tests for the pure computation on a stored session."""

    def test_idempotent(self, billing, make_tariff):
        """Computing twice gives identical figures."""
        make_tariff()
        session = billing.start_session("ws-1", "st-1", start_time=START).unwrap()
        measured = replace(session, energy_kwh=15.0, duration_seconds=1800)

        assert compute_billing_at_stop(measured).value == compute_billing_at_stop(measured).value

    def test_missing_snapshot(self, billing):
        """No snapshot is a data consistency error."""
        session = billing.start_session("ws-1", "st-1", start_time=START).unwrap()

        result = compute_billing_at_stop(session)

        assert result.error.kind == ErrorKind.DATA_CONSISTENCY
        assert result.error.code == "missing_tariff_snapshot"


class TestCorrections:
    """Tests for manual tariff correction and late billing."""

    def test_correct_then_bill(self, billing, tariffs, make_tariff):
        """An unbillable session can be given a tariff and billed later."""
        session = billing.start_session("ws-1", "st-1", start_time=START).unwrap()
        billing.stop_session(session.id, 15, 1800)
        tariff = make_tariff(station_id=None)

        corrected = billing.correct_session_tariff(session.id, tariff.id).unwrap()
        assert corrected.billable is True

        billed = billing.bill_session(session.id).unwrap()
        assert billed.billing_status == BillingStatus.BILLED
        assert billed.gross_amount == 4.50

    def test_cannot_correct_billed_session(self, billing, make_tariff):
        """Billed sessions keep their snapshot."""
        tariff = make_tariff()
        billed = billing.stop_session(
            billing.start_session("ws-1", "st-1", start_time=START).unwrap().id, 15, 1800
        ).unwrap()

        result = billing.correct_session_tariff(billed.id, tariff.id)

        assert result.error.kind == ErrorKind.CONFLICT
        assert result.error.code == "already_billed"

    def test_bill_active_session_conflicts(self, billing, make_tariff):
        """Only completed sessions can be billed."""
        make_tariff()
        session = billing.start_session("ws-1", "st-1", start_time=START).unwrap()

        assert billing.bill_session(session.id).error.kind == ErrorKind.CONFLICT

    def test_cancel_completed_session_conflicts(self, billing, make_tariff):
        """Completed sessions cannot be cancelled."""
        make_tariff()
        session = billing.start_session("ws-1", "st-1", start_time=START).unwrap()
        billing.stop_session(session.id, 1, 60).unwrap()

        assert billing.cancel_session(session.id).error.kind == ErrorKind.CONFLICT
