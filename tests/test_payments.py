"""Tests for the payment hold/capture lifecycle and webhook application."""

import json
from datetime import datetime
from unittest.mock import MagicMock

import pytest

from evledger.db import Database
from evledger.db.enums import PaymentStatus
from evledger.errors import ErrorKind
from evledger.payments.lifecycle import (
    ALLOWED_TRANSITIONS,
    PaymentService,
    can_transition,
    eur_to_cents,
    sources_for,
)
from evledger.payments.processor import (
    ProcessorError,
    StripeProcessor,
    WebhookEvent,
    parse_webhook_event,
)


@pytest.fixture
def payments(db, processor) -> PaymentService:
    service = PaymentService(db, processor)
    service.register_payment_profile("user-1", "cus_1", "pm_1", email="driver@example.com").unwrap()
    return service


@pytest.fixture
def session(make_tariff, make_billed_session):
    """A billed session of 4.50 belonging to user-1."""
    make_tariff()
    return make_billed_session(energy_kwh=15.0, end_user_id="user-1")


def webhook(event_id: str, event_type: str, intent_id: str, **obj) -> WebhookEvent:
    return WebhookEvent.from_dict(
        {
            "id": event_id,
            "type": event_type,
            "data": {"object": {"id": intent_id, "object": "payment_intent", **obj}},
        }
    )


class TestStateMachine:
    """Tests for the transition table."""

    def test_terminal_states(self):
        """CAPTURED and RELEASED allow no further moves."""
        assert ALLOWED_TRANSITIONS[PaymentStatus.CAPTURED] == frozenset()
        assert ALLOWED_TRANSITIONS[PaymentStatus.RELEASED] == frozenset()

    def test_failure_never_undoes_capture(self):
        """FAILED cannot follow CAPTURED."""
        assert not can_transition(PaymentStatus.CAPTURED, PaymentStatus.FAILED)

    def test_late_success_after_failure(self):
        """A processor-confirmed capture may follow a failure."""
        assert can_transition(PaymentStatus.FAILED, PaymentStatus.CAPTURED)

    def test_sources_for_captured(self):
        """Capture is reachable from pending, authorized, partial and failed holds."""
        assert set(sources_for(PaymentStatus.CAPTURED)) == {
            PaymentStatus.HOLD_PENDING,
            PaymentStatus.HOLD_OK,
            PaymentStatus.PARTIAL_FAILED,
            PaymentStatus.FAILED,
        }

    @pytest.mark.parametrize("amount,cents", [(50, 5000), (45.0, 4500), (0.675, 68), (12.345, 1235)])
    def test_eur_to_cents(self, amount, cents):
        assert eur_to_cents(amount) == cents


class TestCreateHold:
    """Tests for pre-authorization."""

    def test_hold_ok(self, payments, processor, session):
        """A 50 EUR hold is authorized and mirrored on the session."""
        hold = payments.create_hold("user-1", 50, "EUR", session_id=session.id).unwrap()

        stored = payments.db.get_session(session.id)
        assert hold.status == PaymentStatus.HOLD_OK
        assert stored.payment_status == PaymentStatus.HOLD_OK
        assert stored.hold_amount_cents == 5000
        assert stored.stripe_payment_intent_id == hold.payment_intent_id
        assert processor.calls[0] == ("create_hold", 5000, "EUR", f"hold-{stored.payment_reference}")

    def test_hold_pending_until_authorized(self, payments, processor, session):
        """An intent that still needs action stays HOLD_PENDING."""
        processor.hold_status = "requires_action"

        hold = payments.create_hold("user-1", 50, session_id=session.id).unwrap()

        assert hold.status == PaymentStatus.HOLD_PENDING
        assert payments.db.get_session(session.id).payment_status == PaymentStatus.HOLD_PENDING

    def test_default_amount(self, payments, processor):
        """Without an amount the configured default hold is used."""
        hold = payments.create_hold("user-1").unwrap()

        assert hold.hold_amount_cents == 5000
        assert hold.session_id is None

    def test_processor_error_marks_failed(self, payments, processor, session):
        """A processor error is recorded on the session and returned, not raised."""
        processor.hold_error = ProcessorError("card_declined", "Your card was declined.")

        result = payments.create_hold("user-1", 50, session_id=session.id)

        assert result.error.kind == ErrorKind.EXTERNAL_FAILURE
        assert result.error.code == "card_declined"
        stored = payments.db.get_session(session.id)
        assert stored.payment_status == PaymentStatus.FAILED
        assert stored.payment_last_error_code == "card_declined"
        assert stored.payment_last_error_message == "Your card was declined."

    def test_timeout_marks_failed(self, payments, processor, session):
        """An unreachable processor ends as FAILED, never stuck pending."""
        processor.hold_error = ProcessorError("processor_unreachable", "Request timed out")

        payments.create_hold("user-1", 50, session_id=session.id)

        assert payments.db.get_session(session.id).payment_status == PaymentStatus.FAILED

    def test_second_hold_conflicts(self, payments, processor, session):
        """A session can carry only one hold."""
        payments.create_hold("user-1", 50, session_id=session.id).unwrap()

        result = payments.create_hold("user-1", 50, session_id=session.id)

        assert result.error.kind == ErrorKind.CONFLICT
        assert processor.count("create_hold") == 1

    @pytest.mark.parametrize("amount", [0, -5])
    def test_non_positive_amount(self, payments, amount):
        assert payments.create_hold("user-1", amount).error.kind == ErrorKind.VALIDATION

    def test_unknown_user(self, payments):
        assert payments.create_hold("nobody", 10).error.kind == ErrorKind.NOT_FOUND

    def test_user_without_payment_method(self, payments, db):
        """End users need a saved payment method."""
        from evledger.db import EndUser

        db.save_end_user(EndUser(id="user-2"))

        result = payments.create_hold("user-2", 10)

        assert result.error.code == "missing_payment_method"

    def test_session_of_other_user(self, payments, session):
        """A hold cannot be placed on another user's session."""
        payments.register_payment_profile("user-2", "cus_2", "pm_2").unwrap()

        assert payments.create_hold("user-2", 10, session_id=session.id).error.kind == ErrorKind.VALIDATION

    def test_idempotency_keys_distinct_across_databases(self, tmp_path, processor):
        """Two ledgers sharing one processor account never send the same key."""
        keys = []
        for name in ("a.db", "b.db"):
            database = Database(str(tmp_path / name))
            database.initialize()
            service = PaymentService(database, processor)
            service.register_payment_profile("user-1", "cus_1", "pm_1").unwrap()
            created = database.create_session(
                {"workspace_id": "ws-1", "station_id": "st-1", "start_time": datetime(2025, 3, 10)}
            )
            assert created.id == 1

            service.create_hold("user-1", 50, session_id=created.id).unwrap()
            keys.append(processor.calls[-1][3])
            database.close()

        assert keys[0] != keys[1]
        assert all(key.startswith("hold-") for key in keys)

    def test_hold_cancelled_when_session_moved_on(self, payments, processor, session, monkeypatch):
        """A hold the session can no longer record is released at the processor."""
        original_create_hold = processor.create_hold

        def racing_create_hold(*args, **kwargs):
            intent = original_create_hold(*args, **kwargs)
            payments.db.update_session_if(session.id, {"payment_status": PaymentStatus.RELEASED})
            return intent

        monkeypatch.setattr(processor, "create_hold", racing_create_hold)

        result = payments.create_hold("user-1", 50, session_id=session.id)

        assert result.error.code == "hold_not_recorded"
        assert processor.count("cancel") == 1
        assert processor.intents["pi_1"].status == "canceled"
        assert payments.db.get_session(session.id).stripe_payment_intent_id is None


class TestCaptureHold:
    """Tests for capturing the final amount."""

    def test_capture_gross(self, payments, processor, session):
        """Hold 50, capture gross 4.50: 450 cents captured, the rest released."""
        payments.create_hold("user-1", 50, session_id=session.id).unwrap()

        capture = payments.capture_hold(session.id).unwrap()

        stored = payments.db.get_session(session.id)
        assert capture.captured_amount_cents == 450
        assert stored.payment_status == PaymentStatus.CAPTURED
        assert stored.captured_amount_cents == 450
        assert stored.paid_at is not None
        assert processor.count("cancel") == 0

    def test_capture_explicit_amount(self, payments, session):
        """Hold 50, capture 45.00 gives 4500 cents."""
        payments.create_hold("user-1", 50, session_id=session.id).unwrap()

        capture = payments.capture_hold(session.id, 45.00).unwrap()

        assert capture.captured_amount_cents == 4500
        assert payments.db.get_session(session.id).hold_amount_cents == 5000

    def test_capture_twice_calls_processor_once(self, payments, processor, session):
        """The second capture reports already captured without a processor call."""
        payments.create_hold("user-1", 50, session_id=session.id).unwrap()
        payments.capture_hold(session.id).unwrap()

        second = payments.capture_hold(session.id).unwrap()

        assert second.already_captured is True
        assert second.captured_amount_cents == 450
        assert processor.count("capture") == 1

    def test_captured_amount_comes_from_processor(self, payments, processor, session):
        """The stored figure is what the processor reports, not what was requested."""
        payments.create_hold("user-1", 50, session_id=session.id).unwrap()
        original_capture = processor.capture

        def short_capture(intent_id, amount_cents, idempotency_key=None):
            intent = original_capture(intent_id, amount_cents, idempotency_key)
            intent.amount_received_cents = amount_cents - 10
            return intent

        processor.capture = short_capture

        capture = payments.capture_hold(session.id, 20).unwrap()

        assert capture.captured_amount_cents == 1990
        assert payments.db.get_session(session.id).captured_amount_cents == 1990

    def test_capture_above_hold_is_partial_failed(self, payments, processor, session):
        """Capturing more than was held is surfaced, never silently capped."""
        payments.create_hold("user-1", 5, session_id=session.id).unwrap()

        result = payments.capture_hold(session.id, 6)

        assert result.error.code == "amount_exceeds_hold"
        assert payments.db.get_session(session.id).payment_status == PaymentStatus.PARTIAL_FAILED
        assert processor.count("capture") == 0

    def test_capture_processor_error(self, payments, processor, session):
        """A capture error is recorded as FAILED."""
        payments.create_hold("user-1", 50, session_id=session.id).unwrap()
        processor.capture_error = ProcessorError("processor_unreachable", "timeout")

        result = payments.capture_hold(session.id)

        assert result.error.kind == ErrorKind.EXTERNAL_FAILURE
        assert payments.db.get_session(session.id).payment_status == PaymentStatus.FAILED

    def test_capture_already_done_at_processor(self, payments, processor, session):
        """A capture rejected because the processor already captured is treated as success."""
        hold = payments.create_hold("user-1", 50, session_id=session.id).unwrap()
        processor.intents[hold.payment_intent_id].status = "succeeded"
        processor.intents[hold.payment_intent_id].amount_received_cents = 450
        processor.capture_error = ProcessorError(
            "payment_intent_unexpected_state", "already captured"
        )

        capture = payments.capture_hold(session.id).unwrap()

        assert capture.captured_amount_cents == 450
        assert payments.db.get_session(session.id).payment_status == PaymentStatus.CAPTURED

    def test_capture_without_hold(self, payments, session):
        assert payments.capture_hold(session.id).error.code == "no_payment_intent"

    def test_capture_unknown_session(self, payments):
        assert payments.capture_hold(999).error.kind == ErrorKind.NOT_FOUND


class TestReleaseHold:
    """Tests for cancelling a hold."""

    def test_release(self, payments, processor, session):
        """Releasing cancels the intent and is terminal."""
        payments.create_hold("user-1", 50, session_id=session.id).unwrap()

        released = payments.release_hold(session.id).unwrap()

        assert released.payment_status == PaymentStatus.RELEASED
        assert processor.count("cancel") == 1
        assert payments.capture_hold(session.id).error.kind == ErrorKind.CONFLICT

    def test_release_twice_is_noop(self, payments, processor, session):
        payments.create_hold("user-1", 50, session_id=session.id).unwrap()
        payments.release_hold(session.id).unwrap()

        assert payments.release_hold(session.id).ok
        assert processor.count("cancel") == 1

    def test_release_after_capture_conflicts(self, payments, session):
        payments.create_hold("user-1", 50, session_id=session.id).unwrap()
        payments.capture_hold(session.id).unwrap()

        assert payments.release_hold(session.id).error.kind == ErrorKind.CONFLICT


class TestWebhooks:
    """Tests for idempotent webhook application."""

    def test_succeeded_captures(self, payments, session):
        """payment_intent.succeeded moves a hold to CAPTURED."""
        hold = payments.create_hold("user-1", 50, session_id=session.id).unwrap()

        outcome = payments.apply_webhook_event(
            webhook("evt_1", "payment_intent.succeeded", hold.payment_intent_id, amount_received=450)
        )

        assert outcome.processed is True
        stored = payments.db.get_session(session.id)
        assert stored.payment_status == PaymentStatus.CAPTURED
        assert stored.captured_amount_cents == 450

    def test_failed_after_captured_is_ignored(self, payments, session):
        """Out-of-order failure never undoes a capture."""
        hold = payments.create_hold("user-1", 50, session_id=session.id).unwrap()
        payments.capture_hold(session.id).unwrap()

        outcome = payments.apply_webhook_event(
            webhook("evt_2", "payment_intent.payment_failed", hold.payment_intent_id)
        )

        assert outcome.processed is False
        assert outcome.reason == "no_state_change"
        assert payments.db.get_session(session.id).payment_status == PaymentStatus.CAPTURED

    def test_failed_event_records_error(self, payments, session):
        """A failure event stores the decline code."""
        hold = payments.create_hold("user-1", 50, session_id=session.id).unwrap()

        payments.apply_webhook_event(
            webhook(
                "evt_3",
                "payment_intent.payment_failed",
                hold.payment_intent_id,
                last_payment_error={"code": "card_declined", "message": "Declined"},
            )
        )

        stored = payments.db.get_session(session.id)
        assert stored.payment_status == PaymentStatus.FAILED
        assert stored.payment_last_error_code == "card_declined"

    def test_duplicate_event_ignored(self, payments, session):
        """The same event id applies once."""
        hold = payments.create_hold("user-1", 50, session_id=session.id).unwrap()
        event = webhook("evt_4", "payment_intent.succeeded", hold.payment_intent_id)

        first = payments.apply_webhook_event(event)
        second = payments.apply_webhook_event(event)

        assert first.processed is True
        assert second.processed is False
        assert second.reason == "duplicate_event"

    def test_duplicate_capture_events_leave_one_capture(self, payments, session):
        """succeeded and charge.captured for one intent capture once."""
        hold = payments.create_hold("user-1", 50, session_id=session.id).unwrap()

        payments.apply_webhook_event(
            webhook("evt_5", "payment_intent.succeeded", hold.payment_intent_id)
        )
        outcome = payments.apply_webhook_event(
            WebhookEvent.from_dict(
                {
                    "id": "evt_6",
                    "type": "charge.captured",
                    "data": {
                        "object": {
                            "id": "ch_1",
                            "object": "charge",
                            "payment_intent": hold.payment_intent_id,
                            "amount_captured": 450,
                        }
                    },
                }
            )
        )

        assert outcome.processed is False
        assert payments.db.get_session(session.id).payment_status == PaymentStatus.CAPTURED

    def test_unknown_intent_not_processed(self, payments, db):
        """Events for intents of another deployment are not errors."""
        outcome = payments.apply_webhook_event(
            webhook("evt_7", "payment_intent.succeeded", "pi_unknown")
        )

        assert outcome.processed is False
        assert outcome.reason == "session_not_found"
        assert db.webhook_event_processed("evt_7") is False

    def test_unsupported_type_recorded(self, payments, db, session):
        """Unknown event types are recorded and ignored."""
        hold = payments.create_hold("user-1", 50, session_id=session.id).unwrap()

        outcome = payments.apply_webhook_event(
            webhook("evt_8", "payment_intent.created", hold.payment_intent_id)
        )

        assert outcome.reason == "unsupported_event_type"
        assert db.webhook_event_processed("evt_8") is True
        assert db.get_session(session.id).payment_status == PaymentStatus.HOLD_OK

    def test_capturable_event_authorizes_pending_hold(self, payments, processor, session):
        """amount_capturable_updated moves HOLD_PENDING to HOLD_OK."""
        processor.hold_status = "requires_action"
        hold = payments.create_hold("user-1", 50, session_id=session.id).unwrap()

        outcome = payments.apply_webhook_event(
            webhook("evt_9", "payment_intent.amount_capturable_updated", hold.payment_intent_id)
        )

        assert outcome.processed is True
        assert outcome.payment_status == PaymentStatus.HOLD_OK

    def test_webhook_without_processor(self, db, session, payments):
        """Applying webhooks does not need a processor client."""
        hold = payments.create_hold("user-1", 50, session_id=session.id).unwrap()

        outcome = PaymentService(db).apply_webhook_event(
            webhook("evt_10", "payment_intent.canceled", hold.payment_intent_id)
        )

        assert outcome.payment_status == PaymentStatus.RELEASED


class TestWebhookParsing:
    """Tests for webhook payload parsing and verification."""

    def test_from_dict_requires_id(self):
        with pytest.raises(ValueError):
            WebhookEvent.from_dict({"type": "payment_intent.succeeded"})

    def test_parse_verifies_signature(self, monkeypatch):
        """A valid signature yields the parsed event."""
        payload = json.dumps(
            {
                "id": "evt_1",
                "type": "payment_intent.succeeded",
                "data": {"object": {"id": "pi_1", "object": "payment_intent", "amount_received": 100}},
            }
        )
        construct = MagicMock(return_value={"id": "evt_1"})
        monkeypatch.setattr("stripe.Webhook.construct_event", construct)

        event = parse_webhook_event(payload, "t=1,v1=abc", "whsec_test")

        assert event.payment_intent_id == "pi_1"
        assert event.amount_cents == 100
        construct.assert_called_once()

    def test_parse_rejects_bad_signature(self, monkeypatch):
        """Signature failures become ValueError."""
        import stripe

        def reject(**kwargs):
            raise stripe.SignatureVerificationError("bad", "t=1,v1=abc")

        monkeypatch.setattr("stripe.Webhook.construct_event", reject)

        with pytest.raises(ValueError, match="signature"):
            parse_webhook_event("{}", "t=1,v1=abc", "whsec_test")

    def test_parse_requires_secret(self):
        with pytest.raises(ValueError):
            parse_webhook_event("{}", "sig", "")


class TestStripeProcessor:
    """Tests for the Stripe adapter with the SDK mocked."""

    def test_requires_secret_key(self):
        with pytest.raises(ValueError):
            StripeProcessor("")

    def test_create_hold_uses_manual_capture(self, monkeypatch):
        create = MagicMock(
            return_value={"id": "pi_1", "status": "requires_capture", "amount": 5000, "amount_received": 0}
        )
        monkeypatch.setattr("stripe.PaymentIntent.create", create)

        intent = StripeProcessor("sk_test").create_hold(5000, "EUR", "cus_1", "pm_1", "hold-1")

        assert intent.is_authorized
        kwargs = create.call_args.kwargs
        assert kwargs["capture_method"] == "manual"
        assert kwargs["currency"] == "eur"
        assert kwargs["idempotency_key"] == "hold-1"

    def test_stripe_error_wrapped(self, monkeypatch):
        import stripe

        def decline(**kwargs):
            raise stripe.CardError("Your card was declined.", None, "card_declined")

        monkeypatch.setattr("stripe.PaymentIntent.create", decline)

        with pytest.raises(ProcessorError) as exc_info:
            StripeProcessor("sk_test").create_hold(5000, "EUR", "cus_1", "pm_1")

        assert exc_info.value.code == "card_declined"
