"""Tariff administration and time-windowed tariff resolution."""

import re
from datetime import datetime
from typing import Any

from .. import audit
from ..clock import coerce_datetime, utcnow
from ..db import Database, TariffAssignment, TariffProfile
from ..errors import Result, invalid, not_found, success
from ..logging import get_logger

logger = get_logger(__name__)

CURRENCY_PATTERN = re.compile(r"^[A-Z]{3}$")

TARIFF_FIELDS = (
    "name",
    "base_price_per_kwh",
    "price_per_minute",
    "session_start_fee",
    "currency",
    "ms_fee_percent",
    "is_active",
    "valid_from",
    "valid_until",
)

PRICE_FIELDS = ("base_price_per_kwh", "price_per_minute", "session_start_fee")


def resolve_active_tariff(
    db: Database,
    workspace_id: str,
    station_id: str,
    connector_id: str | None = None,
    at_time: datetime | str | None = None,
) -> TariffProfile | None:
    """Return the tariff in force for a station or connector at a point in time.

    A connector-level assignment wins over a station-level one. Within a level,
    the assignment with the latest ``valid_from`` wins and ties go to the most
    recently created assignment.

    Raises:
        ValueError: If ``at_time`` cannot be parsed.
    """
    when = utcnow() if at_time is None else coerce_datetime(at_time)

    if connector_id is not None:
        tariff = db.find_assigned_tariff(workspace_id, station_id, connector_id, when)
        if tariff:
            return tariff

    return db.find_assigned_tariff(workspace_id, station_id, None, when)


def validate_tariff_data(data: dict[str, Any], partial: bool = False) -> str | None:
    """Check tariff fields, returning an error message or None.

    With ``partial`` only the supplied fields are checked.
    """
    unknown = sorted(set(data) - set(TARIFF_FIELDS))
    if unknown:
        return f"Unknown tariff fields: {', '.join(unknown)}"

    if not partial:
        for required in ("name", "base_price_per_kwh", "ms_fee_percent"):
            if data.get(required) is None:
                return f"{required} is required"

    if "name" in data and not str(data["name"] or "").strip():
        return "name must not be empty"

    for field in PRICE_FIELDS:
        if field in data and data[field] is not None:
            try:
                value = float(data[field])
            except (TypeError, ValueError):
                return f"{field} must be a number"
            if value < 0:
                return f"{field} must not be negative"

    if "ms_fee_percent" in data:
        try:
            fee = float(data["ms_fee_percent"])
        except (TypeError, ValueError):
            return "ms_fee_percent must be a number"
        if fee < 0 or fee > 1:
            return "ms_fee_percent must be between 0 and 1"

    if "currency" in data and not CURRENCY_PATTERN.match(str(data["currency"] or "")):
        return "currency must be a 3-letter ISO code"

    return None


def _validity_error(valid_from: datetime | None, valid_until: datetime | None) -> str | None:
    if valid_from and valid_until and valid_until < valid_from:
        return "valid_until must not be before valid_from"
    return None


class TariffService:
    """Service for tariff profiles and their station/connector assignments."""

    def __init__(self, db: Database):
        self.db = db

    def resolve_active_tariff(
        self,
        workspace_id: str,
        station_id: str,
        connector_id: str | None = None,
        at_time: datetime | str | None = None,
    ) -> TariffProfile | None:
        """Resolve the applicable tariff. See :func:`resolve_active_tariff`."""
        return resolve_active_tariff(self.db, workspace_id, station_id, connector_id, at_time)

    def get_tariff(self, workspace_id: str, tariff_id: int) -> Result[TariffProfile]:
        tariff = self.db.get_tariff(tariff_id, workspace_id=workspace_id)
        if not tariff:
            return not_found(f"Tariff {tariff_id} not found")
        return success(tariff)

    def list_tariffs(self, workspace_id: str, include_archived: bool = False) -> list[TariffProfile]:
        return self.db.list_tariffs(workspace_id, include_archived=include_archived)

    def create_tariff(
        self,
        workspace_id: str,
        data: dict[str, Any],
        user: str | None = None,
    ) -> Result[TariffProfile]:
        """Create a tariff profile after validating prices, fee and window."""
        error = validate_tariff_data(data)
        if error:
            return invalid(error)

        try:
            valid_from = coerce_datetime(data["valid_from"]) if data.get("valid_from") else utcnow()
            valid_until = coerce_datetime(data["valid_until"]) if data.get("valid_until") else None
        except ValueError as e:
            return invalid(str(e))
        error = _validity_error(valid_from, valid_until)
        if error:
            return invalid(error)

        tariff = self.db.create_tariff(
            {
                "workspace_id": workspace_id,
                "name": str(data["name"]).strip(),
                "base_price_per_kwh": float(data["base_price_per_kwh"]),
                "price_per_minute": float(data.get("price_per_minute") or 0),
                "session_start_fee": float(data.get("session_start_fee") or 0),
                "currency": data.get("currency") or "EUR",
                "ms_fee_percent": float(data["ms_fee_percent"]),
                "is_active": bool(data.get("is_active", True)),
                "valid_from": valid_from,
                "valid_until": valid_until,
            }
        )
        audit.log_tariff_changed(tariff.id, workspace_id, "created", tariff.version, user)
        return success(tariff)

    def update_tariff(
        self,
        workspace_id: str,
        tariff_id: int,
        changes: dict[str, Any],
        user: str | None = None,
    ) -> Result[TariffProfile]:
        """Apply changes to an active tariff and bump its version.

        Sessions keep their own snapshot, so edits never change billed figures.
        """
        current = self.db.get_tariff(tariff_id, workspace_id=workspace_id)
        if not current:
            return not_found(f"Tariff {tariff_id} not found")

        error = validate_tariff_data(changes, partial=True)
        if error:
            return invalid(error)

        values = dict(changes)
        try:
            for key in ("valid_from", "valid_until"):
                if values.get(key) is not None:
                    values[key] = coerce_datetime(values[key])
        except ValueError as e:
            return invalid(str(e))
        if "valid_from" in values and values["valid_from"] is None:
            return invalid("valid_from must not be empty")

        error = _validity_error(
            values.get("valid_from", current.valid_from),
            values.get("valid_until", current.valid_until),
        )
        if error:
            return invalid(error)

        if not values:
            return success(current)

        if not self.db.update_tariff(tariff_id, values):
            return not_found(f"Tariff {tariff_id} not found")

        tariff = self.db.get_tariff(tariff_id, workspace_id=workspace_id, include_archived=True)
        audit.log_tariff_changed(tariff_id, workspace_id, "updated", tariff.version, user)
        return success(tariff)

    def archive_tariff(
        self,
        workspace_id: str,
        tariff_id: int,
        user: str | None = None,
    ) -> Result[TariffProfile]:
        """Archive a tariff. Archived tariffs never resolve."""
        current = self.db.get_tariff(tariff_id, workspace_id=workspace_id)
        if not current or not self.db.archive_tariff(tariff_id):
            return not_found(f"Tariff {tariff_id} not found")

        audit.log_tariff_changed(tariff_id, workspace_id, "archived", current.version, user)
        return success(
            self.db.get_tariff(tariff_id, workspace_id=workspace_id, include_archived=True)
        )

    # Assignments

    def assign_tariff_to_station(
        self,
        workspace_id: str,
        tariff_id: int,
        station_id: str,
        valid_from: datetime | str | None = None,
        valid_until: datetime | str | None = None,
    ) -> Result[TariffAssignment]:
        """Assign a tariff to every connector of a station."""
        return self._assign(workspace_id, tariff_id, station_id, None, valid_from, valid_until)

    def assign_tariff_to_connector(
        self,
        workspace_id: str,
        tariff_id: int,
        station_id: str,
        connector_id: str,
        valid_from: datetime | str | None = None,
        valid_until: datetime | str | None = None,
    ) -> Result[TariffAssignment]:
        """Assign a tariff to a single connector, overriding the station tariff."""
        if not connector_id:
            return invalid("connector_id is required")
        return self._assign(
            workspace_id, tariff_id, station_id, connector_id, valid_from, valid_until
        )

    def _assign(
        self,
        workspace_id: str,
        tariff_id: int,
        station_id: str,
        connector_id: str | None,
        valid_from: datetime | str | None,
        valid_until: datetime | str | None,
    ) -> Result[TariffAssignment]:
        if not station_id:
            return invalid("station_id is required")

        tariff = self.db.get_tariff(tariff_id, workspace_id=workspace_id)
        if not tariff:
            return not_found(f"Tariff {tariff_id} not found")

        try:
            start = coerce_datetime(valid_from) if valid_from else utcnow()
            end = coerce_datetime(valid_until) if valid_until else None
        except ValueError as e:
            return invalid(str(e))
        error = _validity_error(start, end)
        if error:
            return invalid(error)

        assignment = self.db.create_assignment(
            {
                "tariff_id": tariff_id,
                "station_id": station_id,
                "connector_id": connector_id,
                "valid_from": start,
                "valid_until": end,
            }
        )
        logger.info(
            "tariff_assigned",
            tariff_id=tariff_id,
            station_id=station_id,
            connector_id=connector_id or "",
            assignment_id=assignment.id,
        )
        return success(assignment)

    def delete_assignment(self, workspace_id: str, assignment_id: int) -> Result[bool]:
        assignment = self.db.get_assignment(assignment_id, workspace_id)
        if not assignment or not self.db.delete_assignment(assignment_id):
            return not_found(f"Assignment {assignment_id} not found")
        return success(True)

    def list_station_assignments(self, workspace_id: str, station_id: str) -> list[TariffAssignment]:
        return self.db.list_station_assignments(workspace_id, station_id)
