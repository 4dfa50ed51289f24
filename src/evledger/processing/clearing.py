"""Roaming CDR reconciliation.

A charge detail record from the roaming hub is compared to the locally
measured session. Within tolerance the session is MATCHED and the CDR's
amounts become authoritative for payout; otherwise it is DISPUTED and left
for a human, with the session's own measurements untouched.
"""

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from .. import audit
from ..clock import coerce_datetime, utcnow
from ..config import ReconciliationConfig
from ..db import ChargingSession, Database
from ..db.enums import BillingStatus, ClearingStatus, RoamingType, SessionStatus
from ..errors import Result, conflict, invalid, not_found, success
from ..logging import get_logger
from ..pricing.billing import round_to_cents, to_decimal

logger = get_logger(__name__)

OPEN_STATUSES = (ClearingStatus.NONE, ClearingStatus.PENDING)


@dataclass(frozen=True)
class Cdr:
    """Charge detail record as delivered by the roaming hub."""

    hubject_session_id: str
    energy_kwh: float
    duration_seconds: int
    gross_amount: float
    net_amount: float | None = None
    currency: str | None = None
    start_time: datetime | None = None
    clearing_reference: str | None = None
    settled_at: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Cdr":
        """Build from a decoded CDR payload.

        Raises:
            ValueError: If a required field is missing or malformed.
        """
        missing = [
            key
            for key in ("hubject_session_id", "energy_kwh", "duration_seconds", "gross_amount")
            if data.get(key) is None
        ]
        if missing:
            raise ValueError(f"CDR is missing fields: {', '.join(missing)}")
        try:
            return cls(
                hubject_session_id=str(data["hubject_session_id"]),
                energy_kwh=float(data["energy_kwh"]),
                duration_seconds=int(data["duration_seconds"]),
                gross_amount=float(data["gross_amount"]),
                net_amount=float(data["net_amount"]) if data.get("net_amount") is not None else None,
                currency=data.get("currency"),
                start_time=coerce_datetime(data["start_time"]) if data.get("start_time") else None,
                clearing_reference=data.get("clearing_reference"),
                settled_at=coerce_datetime(data["settled_at"]) if data.get("settled_at") else None,
            )
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid CDR: {e}") from e

    def to_json(self) -> str:
        data = asdict(self)
        for key in ("start_time", "settled_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return json.dumps(data, sort_keys=True)


@dataclass(frozen=True)
class CdrTolerances:
    energy_kwh: Decimal = Decimal("0.1")
    duration_seconds: int = 60
    amount: Decimal = Decimal("0.05")
    start_time_seconds: int = 300

    @classmethod
    def from_config(cls, config: ReconciliationConfig) -> "CdrTolerances":
        return cls(
            energy_kwh=to_decimal(config.energy_tolerance_kwh),
            duration_seconds=config.duration_tolerance_seconds,
            amount=to_decimal(config.amount_tolerance),
            start_time_seconds=config.start_time_tolerance_seconds,
        )


@dataclass
class CdrVerification:
    """Field-by-field comparison of a session and a CDR."""

    mismatches: list[str] = field(default_factory=list)

    @property
    def match(self) -> bool:
        return not self.mismatches


@dataclass
class CdrMatchOutcome:
    session_id: int
    hubject_session_id: str
    clearing_status: ClearingStatus
    mismatches: list[str] = field(default_factory=list)
    already_processed: bool = False

    @property
    def matched(self) -> bool:
        return self.clearing_status == ClearingStatus.MATCHED


def verify_cdr_match(
    session: ChargingSession,
    cdr: Cdr,
    tolerances: CdrTolerances | None = None,
) -> CdrVerification:
    """Compare energy, duration, gross amount and start time within tolerances."""
    tolerances = tolerances or CdrTolerances()
    result = CdrVerification()

    session_energy = to_decimal(session.energy_kwh)
    cdr_energy = to_decimal(cdr.energy_kwh)
    energy_diff = abs(session_energy - cdr_energy)
    if energy_diff > tolerances.energy_kwh:
        result.mismatches.append(
            f"Energy mismatch: session={session_energy} kWh, cdr={cdr_energy} kWh, "
            f"diff={energy_diff:.3f} kWh"
        )

    session_duration = session.duration_seconds or 0
    duration_diff = abs(session_duration - cdr.duration_seconds)
    if duration_diff > tolerances.duration_seconds:
        result.mismatches.append(
            f"Duration mismatch: session={session_duration}s, cdr={cdr.duration_seconds}s, "
            f"diff={duration_diff}s"
        )

    session_gross = round_to_cents(session.gross_amount)
    cdr_gross = round_to_cents(cdr.gross_amount)
    amount_diff = abs(session_gross - cdr_gross)
    if amount_diff > tolerances.amount:
        result.mismatches.append(
            f"Amount mismatch: session={session_gross} {session.currency}, "
            f"cdr={cdr_gross} {cdr.currency or session.currency}, diff={amount_diff:.2f}"
        )

    if cdr.start_time is not None and session.start_time is not None:
        time_diff = abs((session.start_time - cdr.start_time).total_seconds())
        if time_diff > tolerances.start_time_seconds:
            result.mismatches.append(
                f"Start time mismatch: session={session.start_time.isoformat()}, "
                f"cdr={cdr.start_time.isoformat()}, diff={time_diff:.0f}s"
            )

    return result


class ClearingService:
    """Matches roaming CDRs with local sessions."""

    def __init__(self, db: Database, config: ReconciliationConfig | None = None):
        self.db = db
        self.tolerances = CdrTolerances.from_config(config or ReconciliationConfig())

    def match_cdr_with_session(
        self,
        hubject_session_id: str,
        cdr: Cdr | dict[str, Any],
    ) -> Result[CdrMatchOutcome]:
        """Reconcile one CDR delivery, idempotently per roaming session id."""
        if isinstance(cdr, dict):
            try:
                cdr = Cdr.from_dict({"hubject_session_id": hubject_session_id, **cdr})
            except ValueError as e:
                return invalid(str(e))
        if cdr.hubject_session_id != hubject_session_id:
            return invalid(
                f"CDR belongs to {cdr.hubject_session_id}, not {hubject_session_id}"
            )

        session = self.db.get_session_by_hubject_id(hubject_session_id)
        if not session:
            return not_found(f"No session for roaming id {hubject_session_id}")
        if session.roaming_type == RoamingType.NONE:
            return invalid(f"Session {session.id} is not a roaming session")

        if session.clearing_status not in OPEN_STATUSES:
            return self._already_cleared(session, cdr)

        # The hub can deliver before the stop is billed; the caller retries later
        if session.status != SessionStatus.COMPLETED or session.billing_status != BillingStatus.BILLED:
            logger.info(
                "cdr_before_billing",
                session_id=session.id,
                hubject_session_id=hubject_session_id,
                status=session.status,
                billing_status=session.billing_status,
            )
            return conflict(
                f"Session {session.id} is not billed yet ({session.status.value}, "
                f"{session.billing_status.value}); retry the CDR later",
                code="session_not_billed",
            )

        verification = verify_cdr_match(session, cdr, self.tolerances)
        gross = round_to_cents(cdr.gross_amount)
        net = round_to_cents(cdr.net_amount if cdr.net_amount is not None else cdr.gross_amount)
        values: dict[str, Any] = {
            "roaming_gross_amount": float(gross),
            "roaming_net_amount": float(net),
            "clearing_reference": cdr.clearing_reference,
            "clearing_cdr_json": cdr.to_json(),
        }
        if verification.match:
            status = ClearingStatus.MATCHED
            values["clearing_settled_at"] = cdr.settled_at or utcnow()
            values["clearing_dispute_reason"] = None
        else:
            status = ClearingStatus.DISPUTED
            values["clearing_dispute_reason"] = "CDR mismatch detected: " + "; ".join(
                verification.mismatches
            )
        values["clearing_status"] = status

        if not self.db.update_session_if(
            session.id, values, clearing_status=list(OPEN_STATUSES)
        ):
            return self._already_cleared(self.db.get_session(session.id), cdr)

        audit.log_clearing_result(
            session.id,
            hubject_session_id,
            status.value,
            values["clearing_dispute_reason"],
        )
        return success(
            CdrMatchOutcome(
                session_id=session.id,
                hubject_session_id=hubject_session_id,
                clearing_status=status,
                mismatches=verification.mismatches,
            )
        )

    def _already_cleared(self, session: ChargingSession, cdr: Cdr) -> Result[CdrMatchOutcome]:
        if session.clearing_cdr_json == cdr.to_json():
            return success(
                CdrMatchOutcome(
                    session_id=session.id,
                    hubject_session_id=session.hubject_session_id,
                    clearing_status=session.clearing_status,
                    already_processed=True,
                )
            )
        return conflict(
            f"Session {session.id} is already {session.clearing_status.value} "
            "with a different CDR",
            code=f"already_{session.clearing_status.value.lower()}",
        )

    def resolve_dispute(
        self,
        session_id: int,
        accept_cdr: bool,
        note: str | None = None,
        user: str | None = None,
    ) -> Result[ChargingSession]:
        """Close a disputed clearing by accepting the CDR or rejecting it."""
        session = self.db.get_session(session_id)
        if not session:
            return not_found(f"Session {session_id} not found")
        if session.clearing_status != ClearingStatus.DISPUTED:
            return conflict(
                f"Session {session_id} is {session.clearing_status.value}, not DISPUTED",
                code="not_disputed",
            )

        status = ClearingStatus.MATCHED if accept_cdr else ClearingStatus.REJECTED
        reason = session.clearing_dispute_reason or ""
        if note:
            reason = f"{reason} | Resolved by {user or 'system'}: {note}".lstrip(" |")
        values: dict[str, Any] = {"clearing_status": status, "clearing_dispute_reason": reason}
        if accept_cdr:
            values["clearing_settled_at"] = utcnow()

        if not self.db.update_session_if(
            session_id, values, clearing_status=ClearingStatus.DISPUTED
        ):
            return conflict(
                f"Session {session_id} dispute was already resolved",
                code="not_disputed",
            )

        audit.log_clearing_result(session_id, session.hubject_session_id, status.value, note)
        return success(self.db.get_session(session_id))
