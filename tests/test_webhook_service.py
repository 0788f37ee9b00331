"""Tests for webhook ingestion: verification, dedupe, recording and dispatch."""

import dataclasses
from datetime import UTC, datetime
from unittest.mock import patch

import pytest
from sqlalchemy import func, select

from billing_engine.config import settings
from billing_engine.models.audit import AuditActorType, AuditLog
from billing_engine.models.billing import (
    EntitlementKey,
    Invoice,
    InvoiceStatus,
    InvoiceType,
    Payment,
    PaymentStatus,
    PaymentWebhookLog,
    Provider,
    Subscription,
    SubscriptionStatus,
    UserEntitlement,
    WebhookLogStatus,
)
from billing_engine.services.billing import events, providers
from billing_engine.services.billing.entitlements import has_active_entitlement
from billing_engine.services.billing.events import BillingEventType
from billing_engine.services.billing.exceptions import (
    PaymentNotRefundableError,
    ProviderNotConfiguredError,
    UnknownProviderError,
)
from billing_engine.services.billing.refunds import refund_payment
from billing_engine.services.billing.webhooks import ingest_webhook


def _count(db, model) -> int:
    return db.scalar(select(func.count()).select_from(model))


def _paid(session, authority="A-1", status="OK", **extra) -> dict:
    return {"authority": authority, "sessionId": str(session.id), "status": status, **extra}


class TestIngestWebhook:
    def test_paid_subscription_webhook_is_handled(
        self, db_session, user_id, subscription_price, make_session, webhook_body, jan_first
    ) -> None:
        session = make_session(user_id, subscription_price)
        issued = []
        events.on(BillingEventType.INVOICE_ISSUED, issued.append)
        body, signature = webhook_body(_paid(session))

        result = ingest_webhook(db_session, "zarinpal", body, signature, now=jan_first)

        assert result.status == WebhookLogStatus.handled
        assert result.idempotent is False
        payment = db_session.get(Payment, result.payment_id)
        assert payment.status == PaymentStatus.PAID
        assert payment.provider_ref == str(session.id)
        assert payment.provider_transaction_id == "A-1"
        invoice = db_session.get(Invoice, result.invoice_id)
        assert invoice.payment_id == payment.id
        assert invoice.number == "INV-20250101-0001"
        log = db_session.get(PaymentWebhookLog, result.log_id)
        assert log.status == WebhookLogStatus.handled
        assert log.payment_id == payment.id
        assert log.handled_at == jan_first
        subscription = db_session.scalar(
            select(Subscription).where(Subscription.user_id == user_id)
        )
        assert subscription.status == SubscriptionStatus.active
        assert [e.payload["invoice_id"] for e in issued] == [str(invoice.id)]

    def test_replay_is_idempotent(
        self, db_session, user_id, subscription_price, make_session, webhook_body
    ) -> None:
        session = make_session(user_id, subscription_price)
        body, signature = webhook_body(_paid(session))

        first = ingest_webhook(db_session, "zarinpal", body, signature)
        second = ingest_webhook(db_session, "zarinpal", body, signature)

        assert second.idempotent is True
        assert second.status == WebhookLogStatus.handled
        assert second.log_id == first.log_id
        assert second.payment_id == first.payment_id
        assert _count(db_session, Payment) == 1
        assert _count(db_session, Invoice) == 1
        assert _count(db_session, PaymentWebhookLog) == 1

    def test_retried_authorities_collapse_onto_one_payment(
        self, db_session, user_id, subscription_price, make_session, webhook_body
    ) -> None:
        session = make_session(user_id, subscription_price)
        failed_body, failed_sig = webhook_body(_paid(session, authority="A-1", status="NOK"))
        paid_body, paid_sig = webhook_body(_paid(session, authority="A-2"))

        first = ingest_webhook(db_session, "zarinpal", failed_body, failed_sig)
        second = ingest_webhook(db_session, "zarinpal", paid_body, paid_sig)

        assert first.payment_id == second.payment_id
        payment = db_session.get(Payment, second.payment_id)
        assert payment.status == PaymentStatus.PAID
        assert payment.provider_transaction_id == "A-2"
        assert _count(db_session, PaymentWebhookLog) == 2

    def test_invalid_signature_is_logged(
        self, db_session, user_id, subscription_price, make_session, webhook_body
    ) -> None:
        session = make_session(user_id, subscription_price)
        body, _ = webhook_body(_paid(session))

        result = ingest_webhook(db_session, "zarinpal", body, "deadbeef")

        assert result.status == WebhookLogStatus.invalid
        assert result.reason == "invalid_signature"
        log = db_session.scalar(select(PaymentWebhookLog))
        assert log.status == WebhookLogStatus.invalid
        assert log.external_id.startswith("invalid:")
        assert log.payload["sessionId"] == str(session.id)
        assert _count(db_session, Payment) == 0

    def test_repeated_invalid_body_logs_once(self, db_session) -> None:
        for _ in range(2):
            result = ingest_webhook(db_session, "zarinpal", b"garbage", None)
            assert result.status == WebhookLogStatus.invalid
        assert _count(db_session, PaymentWebhookLog) == 1
        assert db_session.scalar(select(PaymentWebhookLog)).payload == {"raw": "garbage"}

    def test_missing_external_id_is_invalid_payload(
        self, db_session, webhook_body
    ) -> None:
        body, signature = webhook_body({"status": "OK"})
        result = ingest_webhook(db_session, "zarinpal", body, signature)
        assert result.status == WebhookLogStatus.invalid
        assert result.reason == "invalid_payload"

    def test_unknown_session_is_rejected(self, db_session, webhook_body) -> None:
        body, signature = webhook_body(
            {"authority": "A-9", "sessionId": "not-a-session", "status": "OK"}
        )

        result = ingest_webhook(db_session, "zarinpal", body, signature)

        assert result.status == WebhookLogStatus.rejected
        assert result.reason == "checkout_session_not_found"
        log = db_session.get(PaymentWebhookLog, result.log_id)
        assert log.status == WebhookLogStatus.rejected
        assert log.error_message
        assert _count(db_session, Payment) == 0

    def test_replayed_rejection_keeps_its_reason(
        self, db_session, user_id, subscription_price, make_session, webhook_body
    ) -> None:
        session = make_session(user_id, subscription_price, provider=Provider.idpay)
        body, signature = webhook_body(_paid(session))

        first = ingest_webhook(db_session, "zarinpal", body, signature)
        replay = ingest_webhook(db_session, "zarinpal", body, signature)

        assert replay.idempotent is True
        assert replay.status == WebhookLogStatus.rejected
        assert replay.reason == first.reason == "provider_mismatch"
        assert replay.log_id == first.log_id

    def test_provider_mismatch_is_rejected(
        self, db_session, user_id, subscription_price, make_session, webhook_body
    ) -> None:
        session = make_session(user_id, subscription_price, provider=Provider.idpay)
        body, signature = webhook_body(_paid(session))

        result = ingest_webhook(db_session, "zarinpal", body, signature)

        assert result.status == WebhookLogStatus.rejected
        assert result.reason == "provider_mismatch"
        assert _count(db_session, Payment) == 0

    def test_unknown_provider(self, db_session) -> None:
        with pytest.raises(UnknownProviderError):
            ingest_webhook(db_session, "paypal", b"{}", "sig")

    def test_provider_without_secret(self, db_session, monkeypatch) -> None:
        monkeypatch.setattr(
            providers, "settings", dataclasses.replace(settings, webhook_shared_secret="")
        )
        with pytest.raises(ProviderNotConfiguredError):
            ingest_webhook(db_session, "nextpay", b"{}", "sig")
        assert _count(db_session, PaymentWebhookLog) == 0

    def test_failed_processing_is_retried_on_replay(
        self, db_session, user_id, subscription_price, make_session, webhook_body
    ) -> None:
        session = make_session(user_id, subscription_price)
        body, signature = webhook_body(_paid(session))

        with patch(
            "billing_engine.services.billing.webhooks.dispatch_payment",
            side_effect=RuntimeError("downstream unavailable"),
        ):
            with pytest.raises(RuntimeError):
                ingest_webhook(db_session, "zarinpal", body, signature)

        log = db_session.scalar(select(PaymentWebhookLog))
        assert log.status == WebhookLogStatus.failed
        assert "downstream unavailable" in log.error_message

        result = ingest_webhook(db_session, "zarinpal", body, signature)

        assert result.idempotent is False
        assert result.status == WebhookLogStatus.handled
        assert result.log_id == log.id
        assert _count(db_session, Payment) == 1
        assert _count(db_session, Invoice) == 1
        subscription = db_session.scalar(select(Subscription))
        assert subscription.status == SubscriptionStatus.active

    def test_failed_payment_emits_event(
        self, db_session, user_id, subscription_price, make_session, webhook_body
    ) -> None:
        session = make_session(user_id, subscription_price)
        failures = []
        events.on(BillingEventType.PAYMENT_FAILED, failures.append)
        body, signature = webhook_body(_paid(session, status="NOK"))

        result = ingest_webhook(db_session, "zarinpal", body, signature)

        assert result.status == WebhookLogStatus.handled
        assert result.invoice_id is None
        assert len(failures) == 1
        assert failures[0].user_id == user_id
        assert _count(db_session, Subscription) == 0

    def test_job_credit_webhook(
        self, db_session, user_id, job_credit_price, make_session, webhook_body
    ) -> None:
        session = make_session(user_id, job_credit_price)
        body, signature = webhook_body(_paid(session))

        ingest_webhook(db_session, "zarinpal", body, signature)

        entitlement = db_session.scalar(
            select(UserEntitlement).where(
                UserEntitlement.key == EntitlementKey.JOB_POST_CREDIT
            )
        )
        assert entitlement.remaining_credits == 3


class TestProviderRefundWebhook:
    @pytest.fixture()
    def paid_session(
        self, db_session, user_id, subscription_price, make_session, webhook_body, jan_first
    ):
        session = make_session(user_id, subscription_price)
        body, signature = webhook_body(_paid(session, authority="A-1"))
        ingest_webhook(db_session, "zarinpal", body, signature, now=jan_first)
        return session

    def test_refund_webhook_unwinds_the_purchase(
        self, db_session, user_id, paid_session, webhook_body
    ) -> None:
        refunded = []
        events.on(BillingEventType.PAYMENT_REFUNDED, refunded.append)
        jan_second = datetime(2025, 1, 2, tzinfo=UTC)
        body, signature = webhook_body(
            _paid(paid_session, authority="A-1-refund", status="refunded")
        )

        result = ingest_webhook(db_session, "zarinpal", body, signature, now=jan_second)

        assert result.status == WebhookLogStatus.handled
        payment = db_session.get(Payment, result.payment_id)
        assert payment.status == PaymentStatus.REFUNDED
        invoice = payment.invoice
        assert invoice.type == InvoiceType.REFUND
        assert invoice.status == InvoiceStatus.REFUNDED
        assert invoice.total == -500_000
        subscription = db_session.scalar(select(Subscription))
        assert subscription.status == SubscriptionStatus.expired
        assert subscription.ends_at == jan_second
        assert not has_active_entitlement(
            db_session, user_id, EntitlementKey.CAN_PUBLISH_PROFILE, now=jan_second
        )
        entry = db_session.scalar(
            select(AuditLog).where(AuditLog.action == "PAYMENT_REFUNDED")
        )
        assert entry.actor_type == AuditActorType.provider
        assert len(refunded) == 1
        assert _count(db_session, Payment) == 1

    def test_operator_cannot_refund_twice(
        self, db_session, paid_session, webhook_body
    ) -> None:
        body, signature = webhook_body(
            _paid(paid_session, authority="A-1-refund", status="refunded")
        )
        result = ingest_webhook(db_session, "zarinpal", body, signature)

        with pytest.raises(PaymentNotRefundableError):
            refund_payment(db_session, result.payment_id)

    def test_late_paid_delivery_does_not_revive_refund(
        self, db_session, paid_session, webhook_body
    ) -> None:
        refund_body, refund_sig = webhook_body(
            _paid(paid_session, authority="A-1-refund", status="refunded")
        )
        ingest_webhook(db_session, "zarinpal", refund_body, refund_sig)
        paid_body, paid_sig = webhook_body(_paid(paid_session, authority="A-1-late"))

        result = ingest_webhook(db_session, "zarinpal", paid_body, paid_sig)

        payment = db_session.get(Payment, result.payment_id)
        assert payment.status == PaymentStatus.REFUNDED
        assert db_session.scalar(select(Subscription)).status == SubscriptionStatus.expired
