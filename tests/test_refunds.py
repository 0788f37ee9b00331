"""Tests for refunds, invoice voids and return-URL confirmation."""

import uuid
from datetime import UTC, datetime

import pytest
from sqlalchemy import select

from billing_engine.models.audit import AuditActorType, AuditLog
from billing_engine.models.billing import (
    EntitlementKey,
    InvoiceStatus,
    InvoiceType,
    PaymentStatus,
    Subscription,
    SubscriptionStatus,
)
from billing_engine.schemas.billing import NormalizedWebhook
from billing_engine.services.billing import events
from billing_engine.services.billing.dispatch import (
    confirm_checkout_return,
    dispatch_payment,
)
from billing_engine.services.billing.entitlements import has_active_entitlement
from billing_engine.services.billing.events import BillingEventType
from billing_engine.services.billing.exceptions import (
    CheckoutSessionNotFoundError,
    InvoiceAlreadyVoidError,
    InvoiceNotFoundError,
    PaymentNotFoundError,
    PaymentNotRefundableError,
)
from billing_engine.services.billing.payments import record_payment
from billing_engine.services.billing.refunds import refund_payment, void_invoice


@pytest.fixture()
def paid_subscription(db_session, user_id, subscription_price, make_session, jan_first):
    """A subscription bought through the recorder and dispatcher."""
    session = make_session(user_id, subscription_price)
    recorded = record_payment(
        db_session,
        "zarinpal",
        NormalizedWebhook(
            external_id="A-1",
            session_id=str(session.id),
            outcome_status=PaymentStatus.PAID,
        ),
        now=jan_first,
    )
    dispatch_payment(db_session, recorded.payment_id, recorded.invoice_id, now=jan_first)
    return recorded


class TestRefundPayment:
    def test_full_refund_expires_subscription(
        self, db_session, user_id, paid_subscription, jan_first
    ) -> None:
        received = []
        events.on(BillingEventType.PAYMENT_REFUNDED, received.append)
        events.on(BillingEventType.SUBSCRIPTION_EXPIRED, received.append)
        actor = uuid.uuid4()

        payment = refund_payment(
            db_session,
            paid_subscription.payment_id,
            actor_id=actor,
            reason="customer request",
            now=jan_first,
        )

        assert payment.status == PaymentStatus.REFUNDED
        invoice = payment.invoice
        assert invoice.type == InvoiceType.REFUND
        assert invoice.status == InvoiceStatus.REFUNDED
        assert invoice.total == -500_000
        assert invoice.notes == "customer request"
        sub = db_session.scalar(select(Subscription))
        assert sub.status == SubscriptionStatus.expired
        assert sub.ends_at == jan_first
        assert sub.renewal_at == jan_first
        assert not has_active_entitlement(
            db_session, user_id, EntitlementKey.CAN_PUBLISH_PROFILE, now=jan_first
        )
        assert [e.type for e in received] == [
            BillingEventType.PAYMENT_REFUNDED,
            BillingEventType.SUBSCRIPTION_EXPIRED,
        ]
        entry = db_session.scalar(
            select(AuditLog).where(AuditLog.action == "PAYMENT_REFUNDED")
        )
        assert entry.actor_id == str(actor)
        assert entry.actor_type == AuditActorType.admin
        assert entry.before["payment_status"] == "PAID"

    def test_repurchase_after_refund_starts_fresh(
        self, db_session, user_id, subscription_price, paid_subscription, make_paid_payment
    ) -> None:
        refund_payment(
            db_session,
            paid_subscription.payment_id,
            now=datetime(2025, 1, 2, tzinfo=UTC),
        )
        repurchase = make_paid_payment(user_id, subscription_price)
        jan_third = datetime(2025, 1, 3, tzinfo=UTC)

        result = dispatch_payment(db_session, repurchase.id, now=jan_third)

        assert result.applied is True
        assert result.mode == "SUBSCRIPTION_RESTARTED"
        sub = db_session.scalar(select(Subscription))
        assert sub.status == SubscriptionStatus.active
        assert sub.started_at == jan_third
        assert sub.ends_at == datetime(2025, 2, 3, tzinfo=UTC)
        assert has_active_entitlement(
            db_session, user_id, EntitlementKey.CAN_PUBLISH_PROFILE, now=jan_third
        )

    def test_partial_refund_keeps_subscription(
        self, db_session, paid_subscription, jan_first
    ) -> None:
        payment = refund_payment(
            db_session, paid_subscription.payment_id, amount=100_000, now=jan_first
        )

        assert payment.status == PaymentStatus.REFUNDED
        assert payment.invoice.total == -100_000
        sub = db_session.scalar(select(Subscription))
        assert sub.status == SubscriptionStatus.active

    def test_refund_twice(self, db_session, paid_subscription) -> None:
        refund_payment(db_session, paid_subscription.payment_id)
        with pytest.raises(PaymentNotRefundableError):
            refund_payment(db_session, paid_subscription.payment_id)

    def test_refund_more_than_paid(self, db_session, paid_subscription) -> None:
        with pytest.raises(PaymentNotRefundableError):
            refund_payment(db_session, paid_subscription.payment_id, amount=900_000)

    def test_missing_payment(self, db_session) -> None:
        with pytest.raises(PaymentNotFoundError):
            refund_payment(db_session, uuid.uuid4())

    def test_late_refund_webhook_after_manual_refund_is_harmless(
        self, db_session, paid_subscription
    ) -> None:
        refund_payment(db_session, paid_subscription.payment_id)
        result = dispatch_payment(db_session, paid_subscription.payment_id)
        assert result.reason == "PAYMENT_NOT_PAID"


class TestVoidInvoice:
    def test_void(self, db_session, paid_subscription) -> None:
        invoice = void_invoice(db_session, paid_subscription.invoice_id, "duplicate charge")

        assert invoice.status == InvoiceStatus.VOID
        assert invoice.notes == "duplicate charge"
        assert db_session.scalar(
            select(AuditLog).where(AuditLog.action == "INVOICE_VOIDED")
        ).reason == "duplicate charge"

    def test_void_twice(self, db_session, paid_subscription) -> None:
        void_invoice(db_session, paid_subscription.invoice_id, "first")
        with pytest.raises(InvoiceAlreadyVoidError):
            void_invoice(db_session, paid_subscription.invoice_id, "second")

    def test_missing_invoice(self, db_session) -> None:
        with pytest.raises(InvoiceNotFoundError):
            void_invoice(db_session, uuid.uuid4(), "gone")


class TestConfirmCheckoutReturn:
    def test_confirm_before_webhook_dispatch(
        self, db_session, user_id, subscription_price, make_paid_payment
    ) -> None:
        payment = make_paid_payment(user_id, subscription_price)

        result = confirm_checkout_return(db_session, payment.checkout_session_id)

        assert result.confirmed is True
        assert result.payment_id == payment.id
        assert result.dispatch.applied is True
        again = confirm_checkout_return(db_session, payment.checkout_session_id)
        assert again.dispatch.reason == "ALREADY_GRANTED"

    def test_nothing_paid_yet(
        self, db_session, user_id, subscription_price, make_session
    ) -> None:
        session = make_session(user_id, subscription_price)
        result = confirm_checkout_return(db_session, session.id)
        assert result.confirmed is False
        assert result.payment_id is None

    def test_unknown_session(self, db_session) -> None:
        with pytest.raises(CheckoutSessionNotFoundError):
            confirm_checkout_return(db_session, "nope")
