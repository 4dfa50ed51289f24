"""Data access layer using SQLAlchemy Core."""

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from ..clock import utcnow
from .engine import create_db_engine, get_dialect, initialize_schema
from .enums import (
    BillingStatus,
    ClearingStatus,
    Lifecycle,
    PaymentStatus,
    PayoutStatus,
    RoamingType,
    SessionStatus,
)
from .tables import (
    charging_sessions,
    end_users,
    payout_line_items,
    payout_statements,
    processed_webhook_events,
    tariff_assignments,
    tariff_profiles,
    wallet_transactions,
)


class DuplicatePeriodError(Exception):
    """A live payout statement already covers the exact period."""


class SessionClaimError(Exception):
    """Sessions were attached to another statement while committing."""


@dataclass
class TariffProfile:
    """Tariff profile record."""

    id: int
    workspace_id: str
    name: str
    base_price_per_kwh: float
    price_per_minute: float
    session_start_fee: float
    currency: str
    ms_fee_percent: float  # fraction in [0, 1]
    is_active: bool
    valid_from: datetime
    valid_until: datetime | None
    version: int
    lifecycle: Lifecycle
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class TariffAssignment:
    """Tariff assignment record (station-level when connector_id is None)."""

    id: int
    tariff_id: int
    station_id: str
    connector_id: str | None
    valid_from: datetime
    valid_until: datetime | None
    created_at: datetime | None = None


@dataclass
class EndUser:
    """Driver payment profile and wallet."""

    id: str
    email: str | None = None
    stripe_customer_id: str | None = None
    stripe_payment_method_id: str | None = None
    wallet_balance_cents: int = 0
    created_at: datetime | None = None


@dataclass
class ChargingSession:
    """Charging session record."""

    id: int
    workspace_id: str
    station_id: str
    connector_id: str | None
    end_user_id: str | None
    start_time: datetime
    end_time: datetime | None
    energy_kwh: float | None
    duration_seconds: int | None
    status: SessionStatus
    billing_status: BillingStatus
    billable: bool
    tariff_snapshot_id: int | None
    tariff_snapshot_version: int | None
    tariff_base_price_per_kwh: float | None
    tariff_price_per_minute: float | None
    tariff_session_start_fee: float | None
    tariff_ms_fee_percent: float | None  # percent units, 15 = 15%
    currency: str
    tariff_snapshot_json: str | None
    gross_amount: float | None
    ms_fee_amount: float | None
    sub_cpo_earning_amount: float | None
    billing_breakdown_json: str | None
    billed_at: datetime | None
    payment_status: PaymentStatus
    stripe_payment_intent_id: str | None
    payment_reference: str | None
    hold_amount_cents: int | None
    captured_amount_cents: int | None
    paid_at: datetime | None
    payment_last_error_code: str | None
    payment_last_error_message: str | None
    roaming_type: RoamingType
    hubject_session_id: str | None
    clearing_status: ClearingStatus
    roaming_gross_amount: float | None
    roaming_net_amount: float | None
    clearing_reference: str | None
    clearing_dispute_reason: str | None
    clearing_cdr_json: str | None
    clearing_settled_at: datetime | None
    payout_statement_id: int | None
    created_at: datetime | None = None

    @property
    def has_tariff_snapshot(self) -> bool:
        return self.tariff_base_price_per_kwh is not None and self.tariff_ms_fee_percent is not None


@dataclass
class PayoutStatement:
    """Payout statement record."""

    id: int
    workspace_id: str
    period_start: datetime
    period_end: datetime
    status: PayoutStatus
    total_sessions: int
    total_energy_kwh: float
    total_gross_amount: float
    total_ms_fee_amount: float
    total_sub_cpo_earning: float
    currency: str
    created_by: str | None = None
    finalized_at: datetime | None = None
    payout_date: datetime | None = None
    payout_reference: str | None = None
    payout_amount: float | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class PayoutLineItem:
    """Payout line item (copy of one session's billed figures)."""

    id: int | None
    statement_id: int | None
    session_id: int
    session_start_time: datetime
    station_id: str | None
    energy_kwh: float
    gross_amount: float
    ms_fee_amount: float
    sub_cpo_earning: float
    currency: str


def _row_to_dict(row: Any) -> dict:
    """Convert SQLAlchemy row to dict."""
    return dict(row._mapping)


def _tariff_from_row(row: Any) -> TariffProfile:
    row_dict = _row_to_dict(row)
    row_dict["is_active"] = bool(row_dict["is_active"])
    row_dict["lifecycle"] = Lifecycle(row_dict["lifecycle"])
    return TariffProfile(**row_dict)


def _session_from_row(row: Any) -> ChargingSession:
    row_dict = _row_to_dict(row)
    row_dict["billable"] = bool(row_dict["billable"])
    row_dict["status"] = SessionStatus(row_dict["status"])
    row_dict["billing_status"] = BillingStatus(row_dict["billing_status"])
    row_dict["payment_status"] = PaymentStatus(row_dict["payment_status"])
    row_dict["roaming_type"] = RoamingType(row_dict["roaming_type"])
    row_dict["clearing_status"] = ClearingStatus(row_dict["clearing_status"])
    return ChargingSession(**row_dict)


def _statement_from_row(row: Any) -> PayoutStatement:
    row_dict = _row_to_dict(row)
    row_dict["status"] = PayoutStatus(row_dict["status"])
    return PayoutStatement(**row_dict)


def _expected_clause(column, expected: Any):
    """Build a WHERE clause for a conditional update."""
    if expected is None:
        return column.is_(None)
    if isinstance(expected, (list, tuple, set, frozenset)):
        return column.in_([getattr(v, "value", v) for v in expected])
    return column == getattr(expected, "value", expected)


def _plain_values(values: dict[str, Any]) -> dict[str, Any]:
    """Replace enum members with their stored string values."""
    return {key: getattr(value, "value", value) for key, value in values.items()}


class Database:
    """Database connection and operations using SQLAlchemy Core.

    Services receive an instance explicitly; the owner calls ``close()`` at
    shutdown.
    """

    def __init__(self, db_path: Path | str):
        """Initialize database connection.

        Args:
            db_path: Path to SQLite database file, or full connection string.
        """
        self._engine: Engine | None = None
        self._db_path = db_path

    @property
    def engine(self) -> Engine:
        """Get or create database engine."""
        if self._engine is None:
            self._engine = create_db_engine(self._db_path)
        return self._engine

    @property
    def dialect(self) -> str:
        """Get database dialect (sqlite, postgresql)."""
        return get_dialect(self.engine)

    def close(self) -> None:
        """Close database connection."""
        if self._engine:
            self._engine.dispose()
            self._engine = None

    def initialize(self) -> None:
        """Initialize database schema."""
        initialize_schema(self.engine)

    # Tariff operations

    def create_tariff(self, values: dict[str, Any]) -> TariffProfile:
        """Insert a tariff profile."""
        now = utcnow()
        values = _plain_values({**values, "created_at": now, "updated_at": now})
        with self.engine.begin() as conn:
            result = conn.execute(tariff_profiles.insert().values(**values))
            tariff_id = result.inserted_primary_key[0]
        return self.get_tariff(tariff_id, include_archived=True)

    def get_tariff(
        self,
        tariff_id: int,
        workspace_id: str | None = None,
        include_archived: bool = False,
    ) -> TariffProfile | None:
        """Get a tariff profile by ID, optionally scoped to a workspace."""
        with self.engine.connect() as conn:
            stmt = select(tariff_profiles).where(tariff_profiles.c.id == tariff_id)
            if workspace_id is not None:
                stmt = stmt.where(tariff_profiles.c.workspace_id == workspace_id)
            if not include_archived:
                stmt = stmt.where(tariff_profiles.c.lifecycle == Lifecycle.ACTIVE.value)
            row = conn.execute(stmt).fetchone()
            return _tariff_from_row(row) if row else None

    def list_tariffs(
        self,
        workspace_id: str,
        include_archived: bool = False,
    ) -> list[TariffProfile]:
        """List tariff profiles for a workspace, newest first."""
        with self.engine.connect() as conn:
            stmt = select(tariff_profiles).where(tariff_profiles.c.workspace_id == workspace_id)
            if not include_archived:
                stmt = stmt.where(tariff_profiles.c.lifecycle == Lifecycle.ACTIVE.value)
            stmt = stmt.order_by(tariff_profiles.c.created_at.desc(), tariff_profiles.c.id.desc())
            return [_tariff_from_row(row) for row in conn.execute(stmt).fetchall()]

    def update_tariff(self, tariff_id: int, values: dict[str, Any]) -> bool:
        """Update an active tariff and bump its version atomically."""
        with self.engine.begin() as conn:
            result = conn.execute(
                update(tariff_profiles)
                .where(tariff_profiles.c.id == tariff_id)
                .where(tariff_profiles.c.lifecycle == Lifecycle.ACTIVE.value)
                .values(
                    **_plain_values(values),
                    version=tariff_profiles.c.version + 1,
                    updated_at=utcnow(),
                )
            )
            return result.rowcount == 1

    def archive_tariff(self, tariff_id: int) -> bool:
        """Archive (soft-delete) an active tariff."""
        with self.engine.begin() as conn:
            result = conn.execute(
                update(tariff_profiles)
                .where(tariff_profiles.c.id == tariff_id)
                .where(tariff_profiles.c.lifecycle == Lifecycle.ACTIVE.value)
                .values(lifecycle=Lifecycle.ARCHIVED.value, updated_at=utcnow())
            )
            return result.rowcount == 1

    # Tariff assignment operations

    def create_assignment(self, values: dict[str, Any]) -> TariffAssignment:
        """Insert a tariff assignment."""
        with self.engine.begin() as conn:
            result = conn.execute(
                tariff_assignments.insert().values(**values, created_at=utcnow())
            )
            assignment_id = result.inserted_primary_key[0]
            row = conn.execute(
                select(tariff_assignments).where(tariff_assignments.c.id == assignment_id)
            ).fetchone()
            return TariffAssignment(**_row_to_dict(row))

    def get_assignment(self, assignment_id: int, workspace_id: str) -> TariffAssignment | None:
        """Get an assignment whose tariff belongs to the workspace."""
        with self.engine.connect() as conn:
            stmt = (
                select(tariff_assignments)
                .join(tariff_profiles, tariff_assignments.c.tariff_id == tariff_profiles.c.id)
                .where(tariff_assignments.c.id == assignment_id)
                .where(tariff_profiles.c.workspace_id == workspace_id)
            )
            row = conn.execute(stmt).fetchone()
            return TariffAssignment(**_row_to_dict(row)) if row else None

    def list_station_assignments(self, workspace_id: str, station_id: str) -> list[TariffAssignment]:
        """List assignments (station and connector level) for a station."""
        with self.engine.connect() as conn:
            stmt = (
                select(tariff_assignments)
                .join(tariff_profiles, tariff_assignments.c.tariff_id == tariff_profiles.c.id)
                .where(tariff_assignments.c.station_id == station_id)
                .where(tariff_profiles.c.workspace_id == workspace_id)
                .where(tariff_profiles.c.lifecycle == Lifecycle.ACTIVE.value)
                .order_by(tariff_assignments.c.created_at.desc(), tariff_assignments.c.id.desc())
            )
            return [TariffAssignment(**_row_to_dict(row)) for row in conn.execute(stmt).fetchall()]

    def delete_assignment(self, assignment_id: int) -> bool:
        """Delete an assignment."""
        with self.engine.begin() as conn:
            result = conn.execute(
                tariff_assignments.delete().where(tariff_assignments.c.id == assignment_id)
            )
            return result.rowcount == 1

    def find_assigned_tariff(
        self,
        workspace_id: str,
        station_id: str,
        connector_id: str | None,
        at_time: datetime,
    ) -> TariffProfile | None:
        """Find the tariff of the most recently started assignment valid at ``at_time``.

        With ``connector_id`` the search covers that connector's assignments;
        without it, only station-level ones (connector_id IS NULL).
        """
        ta = tariff_assignments
        tp = tariff_profiles
        stmt = (
            select(tp)
            .select_from(ta.join(tp, ta.c.tariff_id == tp.c.id))
            .where(ta.c.station_id == station_id)
            .where(tp.c.workspace_id == workspace_id)
            .where(tp.c.lifecycle == Lifecycle.ACTIVE.value)
            .where(tp.c.is_active == True)  # noqa: E712
            .where(ta.c.valid_from <= at_time)
            .where(or_(ta.c.valid_until.is_(None), ta.c.valid_until >= at_time))
            .where(tp.c.valid_from <= at_time)
            .where(or_(tp.c.valid_until.is_(None), tp.c.valid_until >= at_time))
        )
        if connector_id is not None:
            stmt = stmt.where(ta.c.connector_id == connector_id)
        else:
            stmt = stmt.where(ta.c.connector_id.is_(None))
        stmt = stmt.order_by(ta.c.valid_from.desc(), ta.c.id.desc()).limit(1)

        with self.engine.connect() as conn:
            row = conn.execute(stmt).fetchone()
            return _tariff_from_row(row) if row else None

    # End user and wallet operations

    def save_end_user(self, end_user: EndUser) -> EndUser:
        """Insert or update an end user's payment profile."""
        values = {
            "email": end_user.email,
            "stripe_customer_id": end_user.stripe_customer_id,
            "stripe_payment_method_id": end_user.stripe_payment_method_id,
        }
        with self.engine.begin() as conn:
            result = conn.execute(
                update(end_users).where(end_users.c.id == end_user.id).values(**values)
            )
            if result.rowcount == 0:
                conn.execute(
                    end_users.insert().values(
                        id=end_user.id,
                        wallet_balance_cents=end_user.wallet_balance_cents,
                        created_at=utcnow(),
                        **values,
                    )
                )
        return self.get_end_user(end_user.id)

    def get_end_user(self, end_user_id: str) -> EndUser | None:
        """Get an end user by ID."""
        with self.engine.connect() as conn:
            row = conn.execute(select(end_users).where(end_users.c.id == end_user_id)).fetchone()
            return EndUser(**_row_to_dict(row)) if row else None

    def credit_wallet(self, end_user_id: str, amount_cents: int, reference: str) -> int | None:
        """Atomically add to a wallet balance, once per reference.

        Returns:
            The new balance, or None if the reference was already applied.
        """
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    wallet_transactions.insert().values(
                        end_user_id=end_user_id,
                        amount_cents=amount_cents,
                        reference=reference,
                        created_at=utcnow(),
                    )
                )
                conn.execute(
                    update(end_users)
                    .where(end_users.c.id == end_user_id)
                    .values(wallet_balance_cents=end_users.c.wallet_balance_cents + amount_cents)
                )
                return conn.execute(
                    select(end_users.c.wallet_balance_cents).where(end_users.c.id == end_user_id)
                ).scalar_one()
        except IntegrityError:
            if not self._wallet_reference_exists(reference):
                raise
            return None

    def _wallet_reference_exists(self, reference: str) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(wallet_transactions.c.id).where(wallet_transactions.c.reference == reference)
            ).fetchone()
            return row is not None

    # Charging session operations

    def create_session(self, values: dict[str, Any]) -> ChargingSession:
        """Insert a charging session."""
        with self.engine.begin() as conn:
            result = conn.execute(
                charging_sessions.insert().values(**_plain_values(values), created_at=utcnow())
            )
            session_id = result.inserted_primary_key[0]
        return self.get_session(session_id)

    def get_session(self, session_id: int, workspace_id: str | None = None) -> ChargingSession | None:
        """Get a session by ID, optionally scoped to a workspace."""
        with self.engine.connect() as conn:
            stmt = select(charging_sessions).where(charging_sessions.c.id == session_id)
            if workspace_id is not None:
                stmt = stmt.where(charging_sessions.c.workspace_id == workspace_id)
            row = conn.execute(stmt).fetchone()
            return _session_from_row(row) if row else None

    def get_session_by_payment_intent(self, payment_intent_id: str) -> ChargingSession | None:
        """Get the session holding a processor payment intent."""
        with self.engine.connect() as conn:
            row = conn.execute(
                select(charging_sessions).where(
                    charging_sessions.c.stripe_payment_intent_id == payment_intent_id
                )
            ).fetchone()
            return _session_from_row(row) if row else None

    def get_session_by_hubject_id(self, hubject_session_id: str) -> ChargingSession | None:
        """Get a roaming session by its roaming network session ID."""
        with self.engine.connect() as conn:
            row = conn.execute(
                select(charging_sessions).where(
                    charging_sessions.c.hubject_session_id == hubject_session_id
                )
            ).fetchone()
            return _session_from_row(row) if row else None

    def list_sessions(
        self,
        workspace_id: str,
        status: SessionStatus | None = None,
        station_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> tuple[list[ChargingSession], int]:
        """Get sessions with pagination and filtering.

        Returns a tuple of (sessions, total_count).
        """
        conditions = [charging_sessions.c.workspace_id == workspace_id]
        if status:
            conditions.append(charging_sessions.c.status == status.value)
        if station_id:
            conditions.append(charging_sessions.c.station_id == station_id)
        if start:
            conditions.append(charging_sessions.c.start_time >= start)
        if end:
            conditions.append(charging_sessions.c.start_time <= end)

        with self.engine.connect() as conn:
            total = conn.execute(
                select(func.count(charging_sessions.c.id)).where(*conditions)
            ).scalar_one()
            rows = conn.execute(
                select(charging_sessions)
                .where(*conditions)
                .order_by(charging_sessions.c.start_time.desc(), charging_sessions.c.id.desc())
                .offset(offset)
                .limit(limit)
            ).fetchall()
            return [_session_from_row(row) for row in rows], total

    def select_completed_sessions(
        self,
        workspace_id: str,
        start: datetime,
        end: datetime,
    ) -> list[ChargingSession]:
        """Completed sessions starting within [start, end], oldest first."""
        cs = charging_sessions
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(cs)
                .where(cs.c.workspace_id == workspace_id)
                .where(cs.c.status == SessionStatus.COMPLETED.value)
                .where(cs.c.start_time >= start)
                .where(cs.c.start_time <= end)
                .order_by(cs.c.start_time.asc(), cs.c.id.asc())
            ).fetchall()
            return [_session_from_row(row) for row in rows]

    def update_session_if(self, session_id: int, values: dict[str, Any], **expected: Any) -> bool:
        """Update a session only if its columns still hold the expected values.

        ``expected`` maps column names to a value, a collection of allowed
        values, or None for IS NULL. Returns True if the row was updated.
        """
        stmt = update(charging_sessions).where(charging_sessions.c.id == session_id)
        for column_name, value in expected.items():
            stmt = stmt.where(_expected_clause(charging_sessions.c[column_name], value))
        with self.engine.begin() as conn:
            result = conn.execute(stmt.values(**_plain_values(values)))
            return result.rowcount == 1

    # Payment operations

    def webhook_event_processed(self, event_id: str) -> bool:
        """Check the webhook idempotency ledger."""
        with self.engine.connect() as conn:
            row = conn.execute(
                select(processed_webhook_events.c.id).where(
                    processed_webhook_events.c.event_id == event_id
                )
            ).fetchone()
            return row is not None

    def apply_payment_transition(
        self,
        session_id: int | None,
        allowed_from: Iterable[PaymentStatus],
        values: dict[str, Any],
        webhook_event: dict[str, Any] | None = None,
    ) -> str:
        """Advance a session's payment state and record the webhook in one transaction.

        Returns:
            "applied" if the row moved, "skipped" if the state guard rejected
            it, "duplicate" if the webhook event id was already recorded.
        """
        allowed = [status.value for status in allowed_from]
        try:
            with self.engine.begin() as conn:
                applied = False
                if session_id is not None and allowed and values:
                    result = conn.execute(
                        update(charging_sessions)
                        .where(charging_sessions.c.id == session_id)
                        .where(charging_sessions.c.payment_status.in_(allowed))
                        .values(**_plain_values(values))
                    )
                    applied = result.rowcount == 1
                if webhook_event is not None:
                    conn.execute(
                        processed_webhook_events.insert().values(
                            **webhook_event,
                            session_id=session_id,
                            outcome="applied" if applied else "skipped",
                            processed_at=utcnow(),
                        )
                    )
        except IntegrityError:
            # Only a unique clash on the event id means redelivery
            if webhook_event is None or not self.webhook_event_processed(webhook_event["event_id"]):
                raise
            return "duplicate"
        return "applied" if applied else "skipped"

    # Payout operations

    def find_live_statement(
        self,
        workspace_id: str,
        period_start: datetime,
        period_end: datetime,
    ) -> PayoutStatement | None:
        """Find a non-cancelled statement for the exact period."""
        with self.engine.connect() as conn:
            row = conn.execute(
                select(payout_statements)
                .where(payout_statements.c.workspace_id == workspace_id)
                .where(payout_statements.c.period_start == period_start)
                .where(payout_statements.c.period_end == period_end)
                .where(payout_statements.c.status != PayoutStatus.CANCELLED.value)
            ).fetchone()
            return _statement_from_row(row) if row else None

    def select_payout_sessions(
        self,
        workspace_id: str,
        period_start: datetime,
        period_end: datetime,
        exclude_outbound: bool = True,
        require_captured: bool = False,
    ) -> list[ChargingSession]:
        """Select billed sessions not yet attached to a live statement."""
        cs = charging_sessions
        local = cs.c.roaming_type == RoamingType.NONE.value
        if require_captured:
            local = and_(local, cs.c.payment_status == PaymentStatus.CAPTURED.value)
        roaming_types = [RoamingType.INBOUND.value]
        if not exclude_outbound:
            roaming_types.append(RoamingType.OUTBOUND.value)
        roaming = and_(
            cs.c.roaming_type.in_(roaming_types),
            cs.c.clearing_status == ClearingStatus.MATCHED.value,
        )

        stmt = (
            select(cs)
            .where(cs.c.workspace_id == workspace_id)
            .where(cs.c.status == SessionStatus.COMPLETED.value)
            .where(cs.c.billing_status == BillingStatus.BILLED.value)
            .where(cs.c.start_time >= period_start)
            .where(cs.c.start_time <= period_end)
            .where(cs.c.payout_statement_id.is_(None))
            .where(or_(local, roaming))
            .order_by(cs.c.start_time.asc(), cs.c.id.asc())
        )
        with self.engine.connect() as conn:
            return [_session_from_row(row) for row in conn.execute(stmt).fetchall()]

    def commit_payout_statement(
        self,
        statement_values: dict[str, Any],
        line_items: list[PayoutLineItem],
    ) -> PayoutStatement:
        """Persist a statement, its line items and session claims atomically.

        Raises:
            DuplicatePeriodError: A live statement exists for the exact period.
            SessionClaimError: A session was claimed by another statement.
        """
        session_ids = [item.session_id for item in line_items]
        now = utcnow()
        try:
            with self.engine.begin() as conn:
                existing = conn.execute(
                    select(payout_statements.c.id)
                    .where(payout_statements.c.workspace_id == statement_values["workspace_id"])
                    .where(payout_statements.c.period_start == statement_values["period_start"])
                    .where(payout_statements.c.period_end == statement_values["period_end"])
                    .where(payout_statements.c.status != PayoutStatus.CANCELLED.value)
                ).fetchone()
                if existing:
                    raise DuplicatePeriodError(
                        f"Payout statement {existing.id} already covers this period"
                    )

                result = conn.execute(
                    payout_statements.insert().values(
                        **_plain_values(statement_values),
                        status=PayoutStatus.DRAFT.value,
                        created_at=now,
                        updated_at=now,
                    )
                )
                statement_id = result.inserted_primary_key[0]

                if line_items:
                    conn.execute(
                        payout_line_items.insert(),
                        [
                            {
                                "statement_id": statement_id,
                                "session_id": item.session_id,
                                "session_start_time": item.session_start_time,
                                "station_id": item.station_id,
                                "energy_kwh": item.energy_kwh,
                                "gross_amount": item.gross_amount,
                                "ms_fee_amount": item.ms_fee_amount,
                                "sub_cpo_earning": item.sub_cpo_earning,
                                "currency": item.currency,
                            }
                            for item in line_items
                        ],
                    )
                    claimed = conn.execute(
                        update(charging_sessions)
                        .where(charging_sessions.c.id.in_(session_ids))
                        .where(charging_sessions.c.payout_statement_id.is_(None))
                        .values(payout_statement_id=statement_id)
                    )
                    if claimed.rowcount != len(session_ids):
                        raise SessionClaimError(
                            f"Only {claimed.rowcount} of {len(session_ids)} sessions could be claimed"
                        )
        except IntegrityError as exc:
            live = self.find_live_statement(
                statement_values["workspace_id"],
                statement_values["period_start"],
                statement_values["period_end"],
            )
            if live is None:
                raise
            raise DuplicatePeriodError(
                f"Payout statement {live.id} already covers this period"
            ) from exc

        return self.get_statement(statement_id)

    def get_statement(self, statement_id: int, workspace_id: str | None = None) -> PayoutStatement | None:
        """Get a payout statement by ID, optionally scoped to a workspace."""
        with self.engine.connect() as conn:
            stmt = select(payout_statements).where(payout_statements.c.id == statement_id)
            if workspace_id is not None:
                stmt = stmt.where(payout_statements.c.workspace_id == workspace_id)
            row = conn.execute(stmt).fetchone()
            return _statement_from_row(row) if row else None

    def list_statements(
        self,
        workspace_id: str,
        status: PayoutStatus | None = None,
    ) -> list[PayoutStatement]:
        """List payout statements for a workspace, most recent period first."""
        with self.engine.connect() as conn:
            stmt = select(payout_statements).where(payout_statements.c.workspace_id == workspace_id)
            if status:
                stmt = stmt.where(payout_statements.c.status == status.value)
            stmt = stmt.order_by(payout_statements.c.period_start.desc(), payout_statements.c.id.desc())
            return [_statement_from_row(row) for row in conn.execute(stmt).fetchall()]

    def get_line_items(self, statement_id: int) -> list[PayoutLineItem]:
        """Get line items of a statement in session order."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(payout_line_items)
                .where(payout_line_items.c.statement_id == statement_id)
                .order_by(payout_line_items.c.session_start_time.asc(), payout_line_items.c.id.asc())
            ).fetchall()
            return [PayoutLineItem(**_row_to_dict(row)) for row in rows]

    def update_statement_if(
        self,
        statement_id: int,
        allowed_from: Iterable[PayoutStatus],
        values: dict[str, Any],
    ) -> bool:
        """Update a statement only while it is in one of the allowed statuses."""
        with self.engine.begin() as conn:
            result = conn.execute(
                update(payout_statements)
                .where(payout_statements.c.id == statement_id)
                .where(payout_statements.c.status.in_([s.value for s in allowed_from]))
                .values(**_plain_values(values), updated_at=utcnow())
            )
            return result.rowcount == 1

    def cancel_statement(self, statement_id: int, allowed_from: Iterable[PayoutStatus]) -> bool:
        """Cancel a statement and release its sessions in one transaction."""
        with self.engine.begin() as conn:
            result = conn.execute(
                update(payout_statements)
                .where(payout_statements.c.id == statement_id)
                .where(payout_statements.c.status.in_([s.value for s in allowed_from]))
                .values(status=PayoutStatus.CANCELLED.value, updated_at=utcnow())
            )
            if result.rowcount != 1:
                return False
            conn.execute(
                update(charging_sessions)
                .where(charging_sessions.c.payout_statement_id == statement_id)
                .values(payout_statement_id=None)
            )
            return True
