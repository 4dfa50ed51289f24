"""Session billing: tariff snapshots at start, amount computation at stop.

All monetary arithmetic is done in Decimal and rounded half-up to cents at
every step (energy, time and start fee individually, then the subtotal, then
the platform fee, then the operator share). Figures are persisted as floats
with two decimals.
"""

import json
from dataclasses import asdict, dataclass, replace
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from .. import audit
from ..clock import coerce_datetime, utcnow
from ..db import ChargingSession, Database, TariffProfile
from ..db.enums import BillingStatus, ClearingStatus, RoamingType, SessionStatus
from ..errors import ErrorKind, Result, conflict, failure, invalid, not_found, success
from ..logging import get_logger
from .tariffs import resolve_active_tariff

logger = get_logger(__name__)

CENT = Decimal("0.01")
WATT_HOUR = Decimal("0.001")


def to_decimal(value: float | int | str | Decimal | None) -> Decimal:
    """Convert a number to Decimal via its string form, None as zero."""
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_to_cents(value: float | int | str | Decimal | None) -> Decimal:
    """Round half-up to two decimals."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def round_energy(value: float | int | str | Decimal | None) -> Decimal:
    """Round kWh half-up to whole watt-hours."""
    return to_decimal(value).quantize(WATT_HOUR, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class TariffSnapshot:
    """Immutable copy of the tariff terms a session is billed under.

    ``ms_fee_percent`` is in percent units (15 means 15%), while tariff
    profiles store the fee as a fraction.
    """

    tariff_id: int
    tariff_version: int
    base_price_per_kwh: float
    price_per_minute: float
    session_start_fee: float
    ms_fee_percent: float
    currency: str
    captured_at: datetime

    @classmethod
    def from_tariff(cls, tariff: TariffProfile, captured_at: datetime | None = None) -> "TariffSnapshot":
        return cls(
            tariff_id=tariff.id,
            tariff_version=tariff.version,
            base_price_per_kwh=tariff.base_price_per_kwh,
            price_per_minute=tariff.price_per_minute or 0.0,
            session_start_fee=tariff.session_start_fee or 0.0,
            ms_fee_percent=float(to_decimal(tariff.ms_fee_percent) * 100),
            currency=tariff.currency,
            captured_at=captured_at or utcnow(),
        )

    def to_json(self) -> str:
        """Serialize for the audit copy stored on the session."""
        data = asdict(self)
        data["captured_at"] = self.captured_at.isoformat()
        return json.dumps(data, sort_keys=True)

    def to_columns(self) -> dict:
        """Session column values carrying this snapshot."""
        return {
            "tariff_snapshot_id": self.tariff_id,
            "tariff_snapshot_version": self.tariff_version,
            "tariff_base_price_per_kwh": self.base_price_per_kwh,
            "tariff_price_per_minute": self.price_per_minute,
            "tariff_session_start_fee": self.session_start_fee,
            "tariff_ms_fee_percent": self.ms_fee_percent,
            "currency": self.currency,
            "tariff_snapshot_json": self.to_json(),
        }


@dataclass(frozen=True)
class BillingBreakdown:
    """Computed monetary outcome of a session."""

    energy_kwh: float
    duration_minutes: float
    energy_amount: float
    time_amount: float
    start_fee_amount: float
    gross_amount: float
    ms_fee_percent: float
    ms_fee_amount: float
    sub_cpo_earning_amount: float
    currency: str

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True)


def compute_session_amounts(
    energy_kwh: float | None,
    duration_seconds: int | None,
    base_price_per_kwh: float,
    price_per_minute: float | None,
    session_start_fee: float | None,
    ms_fee_percent: float,
    currency: str = "EUR",
) -> BillingBreakdown:
    """Price a session from its measurements and snapshot terms.

    ``ms_fee_percent`` is in percent units.
    """
    energy = to_decimal(energy_kwh)
    minutes = to_decimal(duration_seconds) / Decimal(60)

    energy_amount = round_to_cents(energy * to_decimal(base_price_per_kwh))
    time_amount = round_to_cents(minutes * to_decimal(price_per_minute))
    start_fee = round_to_cents(session_start_fee)
    gross = round_to_cents(energy_amount + time_amount + start_fee)
    ms_fee = round_to_cents(gross * to_decimal(ms_fee_percent) / Decimal(100))
    sub_cpo = round_to_cents(gross - ms_fee)

    return BillingBreakdown(
        energy_kwh=float(energy),
        duration_minutes=float(minutes.quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP)),
        energy_amount=float(energy_amount),
        time_amount=float(time_amount),
        start_fee_amount=float(start_fee),
        gross_amount=float(gross),
        ms_fee_percent=float(ms_fee_percent),
        ms_fee_amount=float(ms_fee),
        sub_cpo_earning_amount=float(sub_cpo),
        currency=currency,
    )


def compute_billing_at_stop(session: ChargingSession) -> Result[BillingBreakdown]:
    """Compute a session's amounts from its frozen tariff snapshot.

    Pure: reads only the snapshot columns and measurements on ``session``,
    so repeated calls give identical figures.
    """
    if not session.has_tariff_snapshot:
        return failure(
            ErrorKind.DATA_CONSISTENCY,
            f"Session {session.id} has no tariff snapshot",
            code="missing_tariff_snapshot",
        )

    return success(
        compute_session_amounts(
            energy_kwh=session.energy_kwh,
            duration_seconds=session.duration_seconds,
            base_price_per_kwh=session.tariff_base_price_per_kwh,
            price_per_minute=session.tariff_price_per_minute,
            session_start_fee=session.tariff_session_start_fee,
            ms_fee_percent=session.tariff_ms_fee_percent,
            currency=session.currency,
        )
    )


def snapshot_tariff_at_start(
    db: Database,
    workspace_id: str,
    station_id: str,
    connector_id: str | None = None,
    at_time: datetime | str | None = None,
) -> TariffSnapshot | None:
    """Resolve the tariff in force and freeze its terms.

    Returns None when no tariff applies.
    """
    when = utcnow() if at_time is None else coerce_datetime(at_time)
    tariff = resolve_active_tariff(db, workspace_id, station_id, connector_id, when)
    if not tariff:
        return None
    return TariffSnapshot.from_tariff(tariff, captured_at=when)


def _billed_values(breakdown: BillingBreakdown) -> dict:
    return {
        "billing_status": BillingStatus.BILLED,
        "gross_amount": breakdown.gross_amount,
        "ms_fee_amount": breakdown.ms_fee_amount,
        "sub_cpo_earning_amount": breakdown.sub_cpo_earning_amount,
        "billing_breakdown_json": breakdown.to_json(),
        "billed_at": utcnow(),
    }


def _validate_measurements(energy_kwh: float, duration_seconds: int) -> str | None:
    if energy_kwh is None or energy_kwh < 0:
        return "energy_kwh must be zero or positive"
    if duration_seconds is None or duration_seconds < 0:
        return "duration_seconds must be zero or positive"
    return None


class BillingService:
    """Drives the billing side of the session lifecycle."""

    def __init__(self, db: Database):
        self.db = db

    def start_session(
        self,
        workspace_id: str,
        station_id: str,
        connector_id: str | None = None,
        end_user_id: str | None = None,
        start_time: datetime | str | None = None,
        roaming_type: RoamingType = RoamingType.NONE,
        hubject_session_id: str | None = None,
    ) -> Result[ChargingSession]:
        """Create a session with the tariff snapshot in force at its start.

        When no tariff resolves the session is still created, flagged as not
        billable, so charging is never blocked by missing price data.
        """
        try:
            started = utcnow() if start_time is None else coerce_datetime(start_time)
        except ValueError as e:
            return invalid(str(e))

        if roaming_type != RoamingType.NONE and not hubject_session_id:
            return invalid("Roaming sessions require hubject_session_id")
        if hubject_session_id and self.db.get_session_by_hubject_id(hubject_session_id):
            return conflict(
                f"Roaming session {hubject_session_id} already exists",
                code="duplicate_roaming_session",
            )

        snapshot = snapshot_tariff_at_start(
            self.db, workspace_id, station_id, connector_id, started
        )

        values = {
            "workspace_id": workspace_id,
            "station_id": station_id,
            "connector_id": connector_id,
            "end_user_id": end_user_id,
            "start_time": started,
            "status": SessionStatus.ACTIVE,
            "billing_status": BillingStatus.NOT_BILLED,
            "billable": snapshot is not None,
            "roaming_type": roaming_type,
            "hubject_session_id": hubject_session_id,
            "clearing_status": (
                ClearingStatus.PENDING if roaming_type != RoamingType.NONE else ClearingStatus.NONE
            ),
        }
        if snapshot:
            values.update(snapshot.to_columns())

        session = self.db.create_session(values)

        if snapshot is None:
            logger.warning(
                "no_tariff_for_session",
                session_id=session.id,
                workspace_id=workspace_id,
                station_id=station_id,
                connector_id=connector_id or "",
            )
        audit.log_tariff_snapshot(
            session.id,
            snapshot.tariff_id if snapshot else None,
            snapshot.tariff_version if snapshot else None,
            billable=snapshot is not None,
        )
        return success(session)

    def stop_session(
        self,
        session_id: int,
        energy_kwh: float,
        duration_seconds: int,
        end_time: datetime | str | None = None,
    ) -> Result[ChargingSession]:
        """Complete a session and bill it from its snapshot in one update.

        A second stop with identical measurements returns the billed session;
        any other concurrent stop is a conflict.
        """
        error = _validate_measurements(energy_kwh, duration_seconds)
        if error:
            return invalid(error)
        try:
            ended = utcnow() if end_time is None else coerce_datetime(end_time)
        except ValueError as e:
            return invalid(str(e))

        session = self.db.get_session(session_id)
        if not session:
            return not_found(f"Session {session_id} not found")
        if session.status != SessionStatus.ACTIVE:
            return self._already_stopped(session, energy_kwh, duration_seconds)

        values = {
            "status": SessionStatus.COMPLETED,
            "end_time": ended,
            "energy_kwh": energy_kwh,
            "duration_seconds": duration_seconds,
        }

        measured = replace(session, energy_kwh=energy_kwh, duration_seconds=duration_seconds)
        computed = compute_billing_at_stop(measured)

        if computed.ok:
            values.update(_billed_values(computed.value))

        updated = self.db.update_session_if(
            session_id,
            values,
            status=SessionStatus.ACTIVE,
            billing_status=BillingStatus.NOT_BILLED,
        )
        if not updated:
            return self._already_stopped(
                self.db.get_session(session_id), energy_kwh, duration_seconds
            )

        if not computed.ok:
            logger.warning(
                "session_completed_unbilled",
                session_id=session_id,
                reason=computed.error.message,
            )
            return computed

        breakdown = computed.value
        audit.log_session_billed(
            session_id,
            session.workspace_id,
            breakdown.energy_kwh,
            breakdown.gross_amount,
            breakdown.ms_fee_amount,
            breakdown.currency,
        )
        return success(self.db.get_session(session_id))

    def _already_stopped(
        self,
        session: ChargingSession,
        energy_kwh: float,
        duration_seconds: int,
    ) -> Result[ChargingSession]:
        if (
            session.status == SessionStatus.COMPLETED
            and session.billing_status == BillingStatus.BILLED
            and session.energy_kwh == energy_kwh
            and session.duration_seconds == duration_seconds
        ):
            return success(session)
        return conflict(
            f"Session {session.id} is already {session.status.value}",
            code="session_not_active",
        )

    def cancel_session(self, session_id: int) -> Result[ChargingSession]:
        """Cancel an active session. Cancelled sessions are never billed."""
        session = self.db.get_session(session_id)
        if not session:
            return not_found(f"Session {session_id} not found")
        if session.status == SessionStatus.CANCELLED:
            return success(session)

        if not self.db.update_session_if(
            session_id,
            {"status": SessionStatus.CANCELLED, "end_time": utcnow()},
            status=SessionStatus.ACTIVE,
        ):
            return conflict(
                f"Session {session_id} is no longer active",
                code="session_not_active",
            )
        logger.info("session_cancelled", session_id=session_id)
        return success(self.db.get_session(session_id))

    def correct_session_tariff(
        self,
        session_id: int,
        tariff_id: int,
    ) -> Result[ChargingSession]:
        """Attach a tariff snapshot to a session that has not been billed.

        Used for sessions that started without an applicable tariff.
        """
        session = self.db.get_session(session_id)
        if not session:
            return not_found(f"Session {session_id} not found")
        if session.billing_status == BillingStatus.BILLED:
            return conflict(f"Session {session_id} is already billed", code="already_billed")

        tariff = self.db.get_tariff(tariff_id, workspace_id=session.workspace_id)
        if not tariff:
            return not_found(f"Tariff {tariff_id} not found")

        snapshot = TariffSnapshot.from_tariff(tariff)
        values = {**snapshot.to_columns(), "billable": True}
        if not self.db.update_session_if(
            session_id, values, billing_status=BillingStatus.NOT_BILLED
        ):
            return conflict(f"Session {session_id} is already billed", code="already_billed")

        audit.log_tariff_snapshot(session_id, tariff.id, tariff.version, billable=True)
        return success(self.db.get_session(session_id))

    def bill_session(self, session_id: int) -> Result[ChargingSession]:
        """Bill a completed session that was left unbilled."""
        session = self.db.get_session(session_id)
        if not session:
            return not_found(f"Session {session_id} not found")
        if session.billing_status == BillingStatus.BILLED:
            return conflict(f"Session {session_id} is already billed", code="already_billed")
        if session.status != SessionStatus.COMPLETED:
            return conflict(
                f"Session {session_id} is {session.status.value}, expected COMPLETED",
                code="session_not_completed",
            )

        computed = compute_billing_at_stop(session)
        if not computed.ok:
            return computed

        if not self.db.update_session_if(
            session_id,
            _billed_values(computed.value),
            status=SessionStatus.COMPLETED,
            billing_status=BillingStatus.NOT_BILLED,
        ):
            return conflict(f"Session {session_id} is already billed", code="already_billed")

        breakdown = computed.value
        audit.log_session_billed(
            session_id,
            session.workspace_id,
            breakdown.energy_kwh,
            breakdown.gross_amount,
            breakdown.ms_fee_amount,
            breakdown.currency,
        )
        return success(self.db.get_session(session_id))
