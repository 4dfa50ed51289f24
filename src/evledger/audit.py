"""Audit logging for monetary operations.

Emits structured log events that can be consumed by Splunk, Elasticsearch,
or any log aggregator that supports JSON or key=value format.

Configure via config.yaml:
    logging:
      enabled: true  # set to false to disable audit logging
      level: INFO
      format: json  # or 'splunk' for key=value format
      file: /var/log/evledger/audit.log  # optional

Every event carries ``event_type`` and ``action``; amounts are rounded to
cents so the audit trail matches persisted figures.
"""

from typing import Any

import structlog

# Module state
_logger: structlog.stdlib.BoundLogger | None = None
_enabled: bool = True


def configure(enabled: bool = True) -> None:
    """Configure the audit logger.

    Args:
        enabled: Whether audit logging is enabled.
    """
    global _enabled
    _enabled = enabled


def _get_logger() -> structlog.stdlib.BoundLogger:
    """Get or create the audit logger."""
    global _logger
    if _logger is None:
        _logger = structlog.get_logger("audit")
    return _logger


def _emit(
    event_type: str,
    action: str,
    **kwargs: Any,
) -> None:
    """Emit an audit log event.

    Args:
        event_type: Category of event (tariff, session, payment, webhook, payout, clearing, wallet)
        action: Specific action (snapshot, billed, captured, committed, matched, etc.)
        **kwargs: Additional event-specific fields
    """
    if not _enabled:
        return

    logger = _get_logger()
    logger.info(
        f"{event_type}.{action}",
        event_type=event_type,
        action=action,
        **kwargs,
    )


# Tariff events
def log_tariff_changed(
    tariff_id: int,
    workspace_id: str,
    action: str,
    version: int,
    user: str | None = None,
) -> None:
    """Log a tariff create/update/archive event."""
    _emit(
        "tariff",
        action,
        tariff_id=tariff_id,
        workspace_id=workspace_id,
        version=version,
        user=user or "system",
    )


def log_tariff_snapshot(
    session_id: int,
    tariff_id: int | None,
    tariff_version: int | None,
    billable: bool,
) -> None:
    """Log the tariff snapshot taken when a session starts."""
    _emit(
        "tariff",
        "snapshot",
        session_id=session_id,
        tariff_id=tariff_id,
        tariff_version=tariff_version,
        billable=billable,
    )


# Session events
def log_session_billed(
    session_id: int,
    workspace_id: str,
    energy_kwh: float,
    gross_amount: float,
    ms_fee_amount: float,
    currency: str,
) -> None:
    """Log a session billing computation."""
    _emit(
        "session",
        "billed",
        session_id=session_id,
        workspace_id=workspace_id,
        energy_kwh=energy_kwh,
        gross_amount=round(gross_amount, 2),
        ms_fee_amount=round(ms_fee_amount, 2),
        currency=currency,
    )


# Payment events
def log_payment_event(
    action: str,
    session_id: int | None,
    payment_intent_id: str | None,
    amount_cents: int | None = None,
    error_code: str | None = None,
) -> None:
    """Log a payment lifecycle event (hold_created, captured, failed, released)."""
    kwargs: dict[str, Any] = {
        "session_id": session_id,
        "payment_intent_id": payment_intent_id or "",
    }
    if amount_cents is not None:
        kwargs["amount_cents"] = amount_cents
    if error_code:
        kwargs["error_code"] = error_code
    _emit("payment", action, **kwargs)


def log_webhook_applied(
    event_id: str,
    event_type: str,
    session_id: int | None,
    outcome: str,
) -> None:
    """Log the outcome of a processor webhook delivery."""
    _emit(
        "webhook",
        "applied",
        event_id=event_id,
        webhook_type=event_type,
        session_id=session_id,
        outcome=outcome,
    )


# Payout events
def log_payout_committed(
    statement_id: int,
    workspace_id: str,
    period_start: str,
    period_end: str,
    session_count: int,
    total_sub_cpo_earning: float,
    user: str | None = None,
) -> None:
    """Log a committed payout statement."""
    _emit(
        "payout",
        "committed",
        statement_id=statement_id,
        workspace_id=workspace_id,
        period_start=period_start,
        period_end=period_end,
        session_count=session_count,
        total_sub_cpo_earning=round(total_sub_cpo_earning, 2),
        user=user or "system",
    )


def log_payout_status(
    statement_id: int,
    status: str,
    user: str | None = None,
) -> None:
    """Log a payout statement workflow change (issued, paid, cancelled)."""
    _emit(
        "payout",
        status.lower(),
        statement_id=statement_id,
        user=user or "system",
    )


# Clearing events
def log_clearing_result(
    session_id: int,
    hubject_session_id: str,
    clearing_status: str,
    reason: str | None = None,
) -> None:
    """Log a CDR reconciliation outcome."""
    kwargs: dict[str, Any] = {
        "session_id": session_id,
        "hubject_session_id": hubject_session_id,
    }
    if reason:
        kwargs["reason"] = reason
    _emit("clearing", clearing_status.lower(), **kwargs)


# Wallet events
def log_wallet_credit(
    end_user_id: str,
    amount_cents: int,
    reference: str,
    balance_cents: int,
) -> None:
    """Log a wallet balance increment."""
    _emit(
        "wallet",
        "credited",
        end_user_id=end_user_id,
        amount_cents=amount_cents,
        reference=reference,
        balance_cents=balance_cents,
    )
