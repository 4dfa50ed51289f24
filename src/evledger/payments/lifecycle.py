"""Payment lifecycle: hold, capture, release and webhook application.

Every status change is a conditional update on the statuses allowed to move
to the target, so duplicate or reordered triggers can only move a session
forward.
"""

import uuid
from dataclasses import dataclass

from .. import audit
from ..clock import utcnow
from ..config import PaymentConfig
from ..db import ChargingSession, Database, EndUser
from ..db.enums import PaymentStatus
from ..errors import ErrorKind, Result, conflict, failure, invalid, not_found, success
from ..logging import get_logger
from ..pricing.billing import round_to_cents
from .processor import PaymentProcessor, ProcessorError, ProcessorIntent, WebhookEvent

logger = get_logger(__name__)

ALLOWED_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.NONE: frozenset(
        {PaymentStatus.HOLD_PENDING, PaymentStatus.HOLD_OK, PaymentStatus.FAILED}
    ),
    PaymentStatus.HOLD_PENDING: frozenset(
        {
            PaymentStatus.HOLD_OK,
            PaymentStatus.CAPTURED,
            PaymentStatus.FAILED,
            PaymentStatus.RELEASED,
        }
    ),
    PaymentStatus.HOLD_OK: frozenset(
        {
            PaymentStatus.CAPTURED,
            PaymentStatus.PARTIAL_FAILED,
            PaymentStatus.FAILED,
            PaymentStatus.RELEASED,
        }
    ),
    PaymentStatus.PARTIAL_FAILED: frozenset({PaymentStatus.CAPTURED, PaymentStatus.FAILED}),
    # A processor-confirmed success outranks an earlier failure report
    PaymentStatus.FAILED: frozenset({PaymentStatus.CAPTURED}),
    PaymentStatus.CAPTURED: frozenset(),
    PaymentStatus.RELEASED: frozenset(),
}

WEBHOOK_TARGETS = {
    "payment_intent.amount_capturable_updated": PaymentStatus.HOLD_OK,
    "payment_intent.succeeded": PaymentStatus.CAPTURED,
    "charge.captured": PaymentStatus.CAPTURED,
    "payment_intent.payment_failed": PaymentStatus.FAILED,
    "payment_intent.canceled": PaymentStatus.RELEASED,
}


def can_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def sources_for(target: PaymentStatus) -> list[PaymentStatus]:
    """Statuses from which ``target`` is a legal advance."""
    return [status for status, targets in ALLOWED_TRANSITIONS.items() if target in targets]


def eur_to_cents(amount: float) -> int:
    """Convert a currency amount to integer cents, rounding half-up."""
    return int(round_to_cents(amount) * 100)


@dataclass
class HoldResult:
    session_id: int | None
    payment_intent_id: str
    status: PaymentStatus
    hold_amount_cents: int


@dataclass
class CaptureResult:
    session_id: int
    payment_intent_id: str
    status: PaymentStatus
    captured_amount_cents: int
    already_captured: bool = False


@dataclass
class WebhookOutcome:
    """Result of applying one webhook delivery."""

    event_id: str
    processed: bool
    reason: str | None = None
    session_id: int | None = None
    payment_status: PaymentStatus | None = None


class PaymentService:
    """Drives a session's payment through the processor."""

    def __init__(
        self,
        db: Database,
        processor: PaymentProcessor | None = None,
        config: PaymentConfig | None = None,
    ):
        self.db = db
        self.processor = processor
        self.config = config or PaymentConfig()

    def _require_processor(self) -> PaymentProcessor:
        # Webhook application works without a processor; holds and captures do not
        if self.processor is None:
            raise RuntimeError("No payment processor configured")
        return self.processor

    def register_payment_profile(
        self,
        end_user_id: str,
        stripe_customer_id: str,
        stripe_payment_method_id: str,
        email: str | None = None,
    ) -> Result[EndUser]:
        """Store the processor customer and payment method used for holds."""
        if not end_user_id:
            return invalid("end_user_id is required")
        if not stripe_customer_id or not stripe_payment_method_id:
            return invalid("Customer and payment method are required")
        existing = self.db.get_end_user(end_user_id)
        return success(
            self.db.save_end_user(
                EndUser(
                    id=end_user_id,
                    email=email or (existing.email if existing else None),
                    stripe_customer_id=stripe_customer_id,
                    stripe_payment_method_id=stripe_payment_method_id,
                )
            )
        )

    def _advance(
        self,
        session_id: int,
        target: PaymentStatus,
        values: dict | None = None,
    ) -> Result[ChargingSession]:
        """Move a session to ``target`` if legal; already at target is a no-op."""
        outcome = self.db.apply_payment_transition(
            session_id,
            sources_for(target),
            {"payment_status": target, **(values or {})},
        )
        session = self.db.get_session(session_id)
        if outcome == "applied" or session.payment_status == target:
            return success(session)
        return conflict(
            f"Cannot move payment from {session.payment_status.value} to {target.value}",
            code="illegal_transition",
        )

    def _record_failure(self, session_id: int, error: ProcessorError) -> None:
        result = self._advance(
            session_id,
            PaymentStatus.FAILED,
            {
                "payment_last_error_code": error.code,
                "payment_last_error_message": error.message,
            },
        )
        if not result.ok:
            logger.warning(
                "payment_failure_not_recorded",
                session_id=session_id,
                reason=result.error.message,
            )

    def create_hold(
        self,
        end_user_id: str,
        amount_eur: float | None = None,
        currency: str | None = None,
        session_id: int | None = None,
    ) -> Result[HoldResult]:
        """Pre-authorize an amount against the end user's saved payment method.

        With a session the hold is mirrored on it: the session is claimed as
        HOLD_PENDING before the processor call, then moved to HOLD_OK (or left
        HOLD_PENDING until the processor authorizes) or FAILED.
        """
        processor = self._require_processor()
        amount = self.config.default_hold_amount if amount_eur is None else amount_eur
        if amount <= 0:
            return invalid("Hold amount must be positive")
        amount_cents = eur_to_cents(amount)
        if amount_cents <= 0:
            return invalid("Hold amount must be at least one cent")
        currency = currency or self.config.currency
        idempotency_key = None

        user = self.db.get_end_user(end_user_id)
        if not user:
            return not_found(f"End user {end_user_id} not found")
        if not user.stripe_customer_id or not user.stripe_payment_method_id:
            return invalid(
                f"End user {end_user_id} has no saved payment method",
                code="missing_payment_method",
            )

        if session_id is not None:
            session = self.db.get_session(session_id)
            if not session:
                return not_found(f"Session {session_id} not found")
            if session.end_user_id and session.end_user_id != end_user_id:
                return invalid(f"Session {session_id} belongs to another end user")
            # Session ids repeat across deployments sharing one processor account
            reference = uuid.uuid4().hex
            claimed = self.db.apply_payment_transition(
                session_id,
                [PaymentStatus.NONE],
                {
                    "payment_status": PaymentStatus.HOLD_PENDING,
                    "hold_amount_cents": amount_cents,
                    "payment_reference": reference,
                },
            )
            if claimed != "applied":
                return conflict(
                    f"Session {session_id} already has a payment ({session.payment_status.value})",
                    code="hold_exists",
                )
            idempotency_key = f"hold-{reference}"

        try:
            intent = processor.create_hold(
                amount_cents=amount_cents,
                currency=currency,
                customer_id=user.stripe_customer_id,
                payment_method_id=user.stripe_payment_method_id,
                idempotency_key=idempotency_key,
                metadata={"session_id": str(session_id or ""), "end_user_id": end_user_id},
            )
        except ProcessorError as e:
            if session_id is not None:
                self._record_failure(session_id, e)
            audit.log_payment_event("failed", session_id, None, amount_cents, e.code)
            return failure(ErrorKind.EXTERNAL_FAILURE, e.message, code=e.code)

        status = PaymentStatus.HOLD_OK if intent.is_authorized else PaymentStatus.HOLD_PENDING
        if session_id is not None:
            recorded = self.db.apply_payment_transition(
                session_id,
                [PaymentStatus.HOLD_PENDING],
                {
                    "payment_status": status,
                    "stripe_payment_intent_id": intent.id,
                    "hold_amount_cents": intent.amount_cents or amount_cents,
                },
            )
            if recorded != "applied":
                return self._orphaned_hold(session_id, intent)

        audit.log_payment_event("hold_created", session_id, intent.id, amount_cents)
        return success(
            HoldResult(
                session_id=session_id,
                payment_intent_id=intent.id,
                status=status,
                hold_amount_cents=intent.amount_cents or amount_cents,
            )
        )

    def capture_hold(
        self,
        session_id: int,
        amount_eur: float | None = None,
    ) -> Result[CaptureResult]:
        """Capture the final amount against the session's hold.

        The amount defaults to the session's gross amount. The captured figure
        stored on the session is the one the processor reports.
        """
        session = self.db.get_session(session_id)
        if not session:
            return not_found(f"Session {session_id} not found")

        if session.payment_status == PaymentStatus.CAPTURED:
            return success(
                CaptureResult(
                    session_id=session_id,
                    payment_intent_id=session.stripe_payment_intent_id,
                    status=PaymentStatus.CAPTURED,
                    captured_amount_cents=session.captured_amount_cents or 0,
                    already_captured=True,
                )
            )

        if not session.stripe_payment_intent_id:
            return invalid(f"Session {session_id} has no payment hold", code="no_payment_intent")
        if not can_transition(session.payment_status, PaymentStatus.CAPTURED) or (
            session.payment_status == PaymentStatus.FAILED
        ):
            return conflict(
                f"Cannot capture payment in status {session.payment_status.value}",
                code="illegal_transition",
            )

        amount = session.gross_amount if amount_eur is None else amount_eur
        if amount is None or amount <= 0:
            return invalid("Capture amount must be positive")
        amount_cents = eur_to_cents(amount)

        if session.hold_amount_cents is not None and amount_cents > session.hold_amount_cents:
            if can_transition(session.payment_status, PaymentStatus.PARTIAL_FAILED):
                self._advance(
                    session_id,
                    PaymentStatus.PARTIAL_FAILED,
                    {
                        "payment_last_error_code": "amount_exceeds_hold",
                        "payment_last_error_message": (
                            f"Capture of {amount_cents} cents exceeds hold of "
                            f"{session.hold_amount_cents} cents"
                        ),
                    },
                )
            audit.log_payment_event(
                "partial_failed",
                session_id,
                session.stripe_payment_intent_id,
                amount_cents,
                "amount_exceeds_hold",
            )
            return invalid(
                f"Capture amount {amount_cents} cents exceeds hold of "
                f"{session.hold_amount_cents} cents",
                code="amount_exceeds_hold",
            )

        try:
            intent = self._require_processor().capture(
                session.stripe_payment_intent_id,
                amount_cents,
                idempotency_key=f"capture-{session.stripe_payment_intent_id}",
            )
        except ProcessorError as e:
            intent = self._captured_elsewhere(session.stripe_payment_intent_id)
            if intent is None:
                self._record_failure(session_id, e)
                audit.log_payment_event(
                    "failed", session_id, session.stripe_payment_intent_id, amount_cents, e.code
                )
                return failure(ErrorKind.EXTERNAL_FAILURE, e.message, code=e.code)

        captured_cents = intent.amount_received_cents
        result = self._advance(
            session_id,
            PaymentStatus.CAPTURED,
            {
                "captured_amount_cents": captured_cents,
                "paid_at": utcnow(),
                "payment_last_error_code": None,
                "payment_last_error_message": None,
            },
        )
        if not result.ok:
            return result

        audit.log_payment_event("captured", session_id, intent.id, captured_cents)
        return success(
            CaptureResult(
                session_id=session_id,
                payment_intent_id=intent.id,
                status=PaymentStatus.CAPTURED,
                captured_amount_cents=result.value.captured_amount_cents or captured_cents,
            )
        )

    def _orphaned_hold(self, session_id: int, intent: ProcessorIntent) -> Result[HoldResult]:
        """Cancel a hold whose session moved on while the processor call was in flight."""
        session = self.db.get_session(session_id)
        logger.warning(
            "hold_not_recorded",
            session_id=session_id,
            payment_intent_id=intent.id,
            payment_status=session.payment_status,
        )
        try:
            self._require_processor().cancel(intent.id)
        except ProcessorError as e:
            audit.log_payment_event("release_failed", session_id, intent.id, error_code=e.code)
            return failure(ErrorKind.EXTERNAL_FAILURE, e.message, code=e.code)
        audit.log_payment_event("released", session_id, intent.id)
        return conflict(
            f"Session {session_id} moved to {session.payment_status.value} during the hold; "
            f"intent {intent.id} was cancelled",
            code="hold_not_recorded",
        )

    def _captured_elsewhere(self, intent_id: str) -> ProcessorIntent | None:
        """Return the intent if the processor already captured it."""
        try:
            intent = self._require_processor().retrieve(intent_id)
        except ProcessorError:
            return None
        return intent if intent.is_captured else None

    def release_hold(self, session_id: int) -> Result[ChargingSession]:
        """Cancel an uncaptured hold. Releasing is terminal."""
        session = self.db.get_session(session_id)
        if not session:
            return not_found(f"Session {session_id} not found")
        if session.payment_status == PaymentStatus.RELEASED:
            return success(session)
        if not can_transition(session.payment_status, PaymentStatus.RELEASED):
            return conflict(
                f"Cannot release payment in status {session.payment_status.value}",
                code="illegal_transition",
            )
        if not session.stripe_payment_intent_id:
            return invalid(f"Session {session_id} has no payment hold", code="no_payment_intent")

        try:
            self._require_processor().cancel(session.stripe_payment_intent_id)
        except ProcessorError as e:
            audit.log_payment_event(
                "release_failed", session_id, session.stripe_payment_intent_id, error_code=e.code
            )
            return failure(ErrorKind.EXTERNAL_FAILURE, e.message, code=e.code)

        result = self._advance(session_id, PaymentStatus.RELEASED)
        if result.ok:
            audit.log_payment_event(
                "released", session_id, session.stripe_payment_intent_id, session.hold_amount_cents
            )
        return result

    def apply_webhook_event(self, event: WebhookEvent) -> WebhookOutcome:
        """Apply a processor webhook at most once.

        The event id goes into the processed-events ledger in the same
        transaction as the status change; events for unknown intents are not
        recorded so a later redelivery can still apply.
        """
        if self.db.webhook_event_processed(event.id):
            return WebhookOutcome(event.id, processed=False, reason="duplicate_event")

        ledger_entry = {
            "event_id": event.id,
            "event_type": event.type,
            "payment_intent_id": event.payment_intent_id,
        }

        session = (
            self.db.get_session_by_payment_intent(event.payment_intent_id)
            if event.payment_intent_id
            else None
        )
        if not session:
            logger.info(
                "webhook_session_not_found",
                event_id=event.id,
                event_type=event.type,
                payment_intent_id=event.payment_intent_id or "",
            )
            return WebhookOutcome(event.id, processed=False, reason="session_not_found")

        target = WEBHOOK_TARGETS.get(event.type)
        if target is None:
            outcome = self.db.apply_payment_transition(
                session.id, [], {}, webhook_event=ledger_entry
            )
            reason = "duplicate_event" if outcome == "duplicate" else "unsupported_event_type"
            audit.log_webhook_applied(event.id, event.type, session.id, reason)
            return WebhookOutcome(
                event.id,
                processed=False,
                reason=reason,
                session_id=session.id,
                payment_status=session.payment_status,
            )

        values: dict = {"payment_status": target}
        if target == PaymentStatus.CAPTURED:
            values["paid_at"] = utcnow()
            if event.amount_cents is not None:
                values["captured_amount_cents"] = event.amount_cents
        elif target == PaymentStatus.FAILED:
            values["payment_last_error_code"] = event.error_code or "payment_failed"
            values["payment_last_error_message"] = event.error_message

        outcome = self.db.apply_payment_transition(
            session.id, sources_for(target), values, webhook_event=ledger_entry
        )
        audit.log_webhook_applied(event.id, event.type, session.id, outcome)

        current = self.db.get_session(session.id)
        if outcome == "applied":
            return WebhookOutcome(
                event.id,
                processed=True,
                session_id=session.id,
                payment_status=current.payment_status,
            )
        return WebhookOutcome(
            event.id,
            processed=False,
            reason="duplicate_event" if outcome == "duplicate" else "no_state_change",
            session_id=session.id,
            payment_status=current.payment_status,
        )
