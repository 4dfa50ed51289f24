"""Revenue reporting over completed charging sessions.

Every sum is taken over the per-session figures that billing already rounded
to cents, so a day's totals always equal the sum of that day's rows and the
period totals equal the sum of the days.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from decimal import ROUND_HALF_UP, Decimal

from ..clock import coerce_datetime
from ..db import ChargingSession, Database
from ..errors import Result, invalid, success
from ..pricing.billing import round_energy, round_to_cents

TOP_STATIONS = 5


@dataclass
class RevenueBucket:
    """Decimal running totals for a group of sessions."""

    sessions_count: int = 0
    total_energy_kwh: Decimal = Decimal("0")
    gross_revenue: Decimal = Decimal("0")
    ms_fees: Decimal = Decimal("0")
    sub_cpo_earnings: Decimal = Decimal("0")

    def add_session(self, session: ChargingSession) -> None:
        self.sessions_count += 1
        self.total_energy_kwh += round_energy(session.energy_kwh)
        self.gross_revenue += round_to_cents(session.gross_amount)
        self.ms_fees += round_to_cents(session.ms_fee_amount)
        self.sub_cpo_earnings += round_to_cents(session.sub_cpo_earning_amount)

    @property
    def avg_price_per_kwh(self) -> Decimal:
        if not self.total_energy_kwh:
            return Decimal("0")
        return (self.gross_revenue / self.total_energy_kwh).quantize(
            Decimal("0.0001"), rounding=ROUND_HALF_UP
        )


@dataclass
class DailyRevenue(RevenueBucket):
    day: date | None = None


@dataclass
class StationRevenue(RevenueBucket):
    station_id: str = ""


@dataclass
class RevenueSummary:
    """Totals, a gap-free daily series and the top-earning stations."""

    workspace_id: str
    first_day: date
    last_day: date
    currency: str | None
    totals: RevenueBucket = field(default_factory=RevenueBucket)
    daily: list[DailyRevenue] = field(default_factory=list)
    top_stations: list[StationRevenue] = field(default_factory=list)


def build_revenue_summary(
    workspace_id: str,
    sessions: list[ChargingSession],
    first_day: date,
    last_day: date,
    top: int = TOP_STATIONS,
) -> RevenueSummary:
    """Group sessions by start day and by station.

    Days without sessions appear with zero totals. Stations are ranked by
    gross revenue, ties broken by station id.

    Raises:
        ValueError: If the sessions use more than one currency.
    """
    currencies = sorted({s.currency for s in sessions if s.currency})
    if len(currencies) > 1:
        raise ValueError(
            f"Multiple currencies found: {', '.join(currencies)}. "
            "Revenue can only be summed in one currency."
        )

    summary = RevenueSummary(
        workspace_id=workspace_id,
        first_day=first_day,
        last_day=last_day,
        currency=currencies[0] if currencies else None,
    )

    days: dict[date, DailyRevenue] = {}
    day = first_day
    while day <= last_day:
        days[day] = DailyRevenue(day=day)
        day += timedelta(days=1)

    stations: dict[str, StationRevenue] = {}
    for session in sessions:
        summary.totals.add_session(session)
        session_day = session.start_time.date()
        if session_day in days:
            days[session_day].add_session(session)
        stations.setdefault(session.station_id, StationRevenue(station_id=session.station_id))
        stations[session.station_id].add_session(session)

    summary.daily = list(days.values())
    ranked = sorted(stations.values(), key=lambda s: (-s.gross_revenue, s.station_id))
    summary.top_stations = ranked[:top]
    return summary


class RevenueService:
    """Revenue reporting for a workspace."""

    def __init__(self, db: Database):
        self.db = db

    def get_revenue_summary(
        self,
        workspace_id: str,
        from_date: date | datetime | str,
        to_date: date | datetime | str,
    ) -> Result[RevenueSummary]:
        """Summarize completed sessions starting between two days, both inclusive."""
        try:
            first_day = _as_day(from_date)
            last_day = _as_day(to_date)
        except ValueError as e:
            return invalid(str(e))
        if first_day > last_day:
            return invalid("from_date must not be after to_date")

        sessions = self.db.select_completed_sessions(
            workspace_id,
            datetime.combine(first_day, time.min),
            datetime.combine(last_day, time.max),
        )
        try:
            return success(build_revenue_summary(workspace_id, sessions, first_day, last_day))
        except ValueError as e:
            return invalid(str(e), code="mixed_currency")


def _as_day(value: date | datetime | str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return coerce_datetime(value).date()
