"""Payout statement generation for operator (sub-CPO) earnings."""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from .. import audit
from ..clock import coerce_datetime, utcnow
from ..config import PayoutConfig
from ..db import (
    ChargingSession,
    Database,
    DuplicatePeriodError,
    PayoutLineItem,
    PayoutStatement,
    SessionClaimError,
)
from ..db.enums import PayoutStatus, RoamingType
from ..errors import Result, conflict, invalid, not_found, success
from ..logging import get_logger
from ..pricing.billing import round_energy, round_to_cents, to_decimal

logger = get_logger(__name__)

MODES = ("preview", "commit")


@dataclass
class PayoutSummary:
    """Running totals over a statement's line items."""

    currency: str | None = None
    line_items: list[PayoutLineItem] = field(default_factory=list)
    total_energy_kwh: Decimal = Decimal("0")
    total_gross_amount: Decimal = Decimal("0")
    total_ms_fee_amount: Decimal = Decimal("0")
    total_sub_cpo_earning: Decimal = Decimal("0")

    def add_line_item(self, item: PayoutLineItem) -> None:
        self.line_items.append(item)
        self.total_energy_kwh += to_decimal(item.energy_kwh)
        self.total_gross_amount += to_decimal(item.gross_amount)
        self.total_ms_fee_amount += to_decimal(item.ms_fee_amount)
        self.total_sub_cpo_earning += to_decimal(item.sub_cpo_earning)

    @property
    def total_sessions(self) -> int:
        return len(self.line_items)

    def totals(self) -> dict:
        """Statement total columns: money to cents, energy to watt-hours."""
        return {
            "total_sessions": self.total_sessions,
            "total_energy_kwh": float(round_energy(self.total_energy_kwh)),
            "total_gross_amount": float(round_to_cents(self.total_gross_amount)),
            "total_ms_fee_amount": float(round_to_cents(self.total_ms_fee_amount)),
            "total_sub_cpo_earning": float(round_to_cents(self.total_sub_cpo_earning)),
        }


@dataclass
class PayoutStatementResult:
    """Outcome of a preview or commit run."""

    mode: str
    workspace_id: str
    period_start: datetime
    period_end: datetime
    currency: str
    total_sessions: int
    total_energy_kwh: float
    total_gross_amount: float
    total_ms_fee_amount: float
    total_sub_cpo_earning: float
    line_items: list[PayoutLineItem] = field(default_factory=list)
    statement: PayoutStatement | None = None


def build_line_item(session: ChargingSession) -> PayoutLineItem:
    """Copy a session's billed figures into a line item.

    Matched roaming sessions are paid on the CDR's authoritative amounts:
    the CDR gross, the CDR net as operator earning, and the difference as fee.
    """
    if session.roaming_type != RoamingType.NONE and session.roaming_gross_amount is not None:
        gross = round_to_cents(session.roaming_gross_amount)
        net = round_to_cents(
            session.roaming_net_amount
            if session.roaming_net_amount is not None
            else session.roaming_gross_amount
        )
        fee = round_to_cents(gross - net)
    else:
        gross = round_to_cents(session.gross_amount)
        fee = round_to_cents(session.ms_fee_amount)
        net = round_to_cents(session.sub_cpo_earning_amount)

    return PayoutLineItem(
        id=None,
        statement_id=None,
        session_id=session.id,
        session_start_time=session.start_time,
        station_id=session.station_id,
        energy_kwh=session.energy_kwh or 0.0,
        gross_amount=float(gross),
        ms_fee_amount=float(fee),
        sub_cpo_earning=float(net),
        currency=session.currency,
    )


def aggregate_sessions(sessions: list[ChargingSession]) -> PayoutSummary:
    """Aggregate sessions into line items and totals.

    Raises:
        ValueError: If the sessions use more than one currency.
    """
    currencies = sorted({s.currency for s in sessions if s.currency})
    if len(currencies) > 1:
        raise ValueError(
            f"Multiple currencies found: {', '.join(currencies)}. "
            "All sessions must use the same currency."
        )

    summary = PayoutSummary(currency=currencies[0] if currencies else None)
    for session in sessions:
        summary.add_line_item(build_line_item(session))
    return summary


class PayoutService:
    """Service for payout statements and their DRAFT/ISSUED/PAID workflow."""

    def __init__(self, db: Database, config: PayoutConfig | None = None, currency: str = "EUR"):
        self.db = db
        self.config = config or PayoutConfig()
        self.default_currency = currency

    def generate_payout_statement(
        self,
        workspace_id: str,
        period_start: datetime | str,
        period_end: datetime | str,
        mode: str = "preview",
        created_by: str | None = None,
    ) -> Result[PayoutStatementResult]:
        """Aggregate billed, unclaimed sessions of a period.

        ``preview`` writes nothing. ``commit`` stores the statement, its line
        items and the session claims in one transaction.
        """
        if mode not in MODES:
            return invalid(f"Unknown mode {mode!r}, expected preview or commit")
        try:
            start = coerce_datetime(period_start)
            end = coerce_datetime(period_end)
        except ValueError as e:
            return invalid(str(e))
        if start >= end:
            return invalid("period_start must be before period_end")

        if mode == "commit":
            existing = self.db.find_live_statement(workspace_id, start, end)
            if existing:
                return conflict(
                    f"Payout statement {existing.id} already exists for this period "
                    f"with status {existing.status.value}",
                    code="duplicate_period",
                )

        sessions = self.db.select_payout_sessions(
            workspace_id,
            start,
            end,
            exclude_outbound=self.config.exclude_outbound_roaming,
            require_captured=self.config.require_captured_payment,
        )
        try:
            summary = aggregate_sessions(sessions)
        except ValueError as e:
            return invalid(str(e), code="mixed_currency")

        currency = summary.currency or self.default_currency
        totals = summary.totals()
        result = PayoutStatementResult(
            mode=mode,
            workspace_id=workspace_id,
            period_start=start,
            period_end=end,
            currency=currency,
            line_items=summary.line_items,
            **totals,
        )

        if mode == "preview":
            return success(result)

        try:
            statement = self.db.commit_payout_statement(
                {
                    "workspace_id": workspace_id,
                    "period_start": start,
                    "period_end": end,
                    "currency": currency,
                    "created_by": created_by,
                    **totals,
                },
                summary.line_items,
            )
        except DuplicatePeriodError as e:
            return conflict(str(e), code="duplicate_period")
        except SessionClaimError as e:
            logger.warning("payout_commit_race", workspace_id=workspace_id, reason=str(e))
            return conflict(str(e), code="sessions_claimed")

        result.statement = statement
        result.line_items = self.db.get_line_items(statement.id)
        audit.log_payout_committed(
            statement.id,
            workspace_id,
            start.isoformat(),
            end.isoformat(),
            statement.total_sessions,
            statement.total_sub_cpo_earning,
            created_by,
        )
        return success(result)

    def get_payout_statement(self, workspace_id: str, statement_id: int) -> Result[PayoutStatement]:
        statement = self.db.get_statement(statement_id, workspace_id=workspace_id)
        if not statement:
            return not_found(f"Payout statement {statement_id} not found")
        return success(statement)

    def get_line_items(self, workspace_id: str, statement_id: int) -> Result[list[PayoutLineItem]]:
        found = self.get_payout_statement(workspace_id, statement_id)
        if not found.ok:
            return found
        return success(self.db.get_line_items(statement_id))

    def list_payout_statements(
        self,
        workspace_id: str,
        status: PayoutStatus | None = None,
    ) -> list[PayoutStatement]:
        return self.db.list_statements(workspace_id, status=status)

    def _change_status(
        self,
        workspace_id: str,
        statement_id: int,
        allowed_from: tuple[PayoutStatus, ...],
        values: dict,
        user: str | None,
    ) -> Result[PayoutStatement]:
        found = self.get_payout_statement(workspace_id, statement_id)
        if not found.ok:
            return found
        statement = found.value
        target = values["status"]
        if statement.status not in allowed_from or not self.db.update_statement_if(
            statement_id, allowed_from, values
        ):
            current = self.db.get_statement(statement_id)
            return conflict(
                f"Cannot move statement from {current.status.value} to {target.value}",
                code="illegal_transition",
            )
        audit.log_payout_status(statement_id, target.value, user)
        return success(self.db.get_statement(statement_id))

    def issue_payout_statement(
        self,
        workspace_id: str,
        statement_id: int,
        user: str | None = None,
    ) -> Result[PayoutStatement]:
        """DRAFT -> ISSUED."""
        return self._change_status(
            workspace_id,
            statement_id,
            (PayoutStatus.DRAFT,),
            {"status": PayoutStatus.ISSUED, "finalized_at": utcnow()},
            user,
        )

    def mark_payout_paid(
        self,
        workspace_id: str,
        statement_id: int,
        paid_at: datetime | str | None = None,
        reference: str | None = None,
        user: str | None = None,
    ) -> Result[PayoutStatement]:
        """ISSUED -> PAID; the payout amount is the operator earning."""
        found = self.get_payout_statement(workspace_id, statement_id)
        if not found.ok:
            return found
        try:
            payout_date = utcnow() if paid_at is None else coerce_datetime(paid_at)
        except ValueError as e:
            return invalid(str(e))
        return self._change_status(
            workspace_id,
            statement_id,
            (PayoutStatus.ISSUED,),
            {
                "status": PayoutStatus.PAID,
                "payout_date": payout_date,
                "payout_reference": reference,
                "payout_amount": found.value.total_sub_cpo_earning,
            },
            user,
        )

    def cancel_payout_statement(
        self,
        workspace_id: str,
        statement_id: int,
        user: str | None = None,
    ) -> Result[PayoutStatement]:
        """Cancel a DRAFT or ISSUED statement and release its sessions."""
        found = self.get_payout_statement(workspace_id, statement_id)
        if not found.ok:
            return found
        if found.value.status == PayoutStatus.CANCELLED:
            return success(found.value)
        if not self.db.cancel_statement(
            statement_id, (PayoutStatus.DRAFT, PayoutStatus.ISSUED)
        ):
            current = self.db.get_statement(statement_id)
            return conflict(
                f"Cannot cancel a statement with status {current.status.value}",
                code="illegal_transition",
            )
        audit.log_payout_status(statement_id, PayoutStatus.CANCELLED.value, user)
        return success(self.db.get_statement(statement_id))

    def recalculate_payout_statement(
        self,
        workspace_id: str,
        statement_id: int,
    ) -> Result[PayoutStatement]:
        """Recompute a DRAFT statement's totals from its line items."""
        found = self.get_payout_statement(workspace_id, statement_id)
        if not found.ok:
            return found
        if found.value.status != PayoutStatus.DRAFT:
            return conflict(
                f"Cannot recalculate statement with status {found.value.status.value}",
                code="illegal_transition",
            )

        summary = PayoutSummary()
        for item in self.db.get_line_items(statement_id):
            summary.add_line_item(item)

        if not self.db.update_statement_if(statement_id, (PayoutStatus.DRAFT,), summary.totals()):
            return conflict(
                f"Statement {statement_id} is no longer a draft",
                code="illegal_transition",
            )
        return success(self.db.get_statement(statement_id))
