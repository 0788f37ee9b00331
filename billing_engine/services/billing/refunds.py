"""Operator actions on recorded money: refunds and invoice voids. Both are audited."""
import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from billing_engine.db import transaction, utcnow
from billing_engine.models.audit import AuditActorType
from billing_engine.models.billing import (
    Invoice,
    InvoiceStatus,
    InvoiceType,
    Payment,
    PaymentStatus,
    PurchaseType,
    SubscriptionStatus,
)
from billing_engine.services import audit
from billing_engine.services.billing import events
from billing_engine.services.billing.entitlements import sync_single_user
from billing_engine.services.billing.events import BillingEventType
from billing_engine.services.billing.exceptions import (
    InvoiceAlreadyVoidError,
    InvoiceNotFoundError,
    PaymentNotFoundError,
    PaymentNotRefundableError,
)
from billing_engine.services.billing.subscriptions import lock_subscription
from billing_engine.services.common import coerce_uuid

logger = logging.getLogger(__name__)


def refund_payment(
    db: Session,
    payment_id,
    amount: int | None = None,
    actor_id=None,
    reason: str | None = None,
    now: datetime | None = None,
    actor_type: AuditActorType = AuditActorType.admin,
) -> Payment:
    """Refund a PAID payment, in full or in part.

    A full refund of a subscription purchase ends the subscription at ``now``
    and revokes the publish entitlement in the same transaction.
    """
    now = now or utcnow()
    expired_subscription = None
    with transaction(db):
        payment = db.scalar(
            select(Payment).where(Payment.id == coerce_uuid(payment_id)).with_for_update()
        )
        if payment is None:
            raise PaymentNotFoundError(f"Payment not found: {payment_id}")
        if payment.status != PaymentStatus.PAID:
            raise PaymentNotRefundableError(
                f"Payment {payment.id} is {payment.status.value}, not PAID"
            )
        refund_amount = amount or payment.amount
        if refund_amount > payment.amount:
            raise PaymentNotRefundableError("Refund exceeds the paid amount")
        full_refund = refund_amount == payment.amount

        payment.status = PaymentStatus.REFUNDED
        invoice = payment.invoice
        before = {"payment_status": PaymentStatus.PAID.value}
        if invoice is not None:
            before.update(invoice_status=invoice.status.value, invoice_total=invoice.total)
            invoice.type = InvoiceType.REFUND
            invoice.status = InvoiceStatus.REFUNDED
            invoice.total = -refund_amount
            invoice.notes = reason or invoice.notes

        if full_refund and payment.session.purchase_type == PurchaseType.subscription:
            subscription = lock_subscription(db, payment.user_id)
            if subscription is not None:
                subscription.status = SubscriptionStatus.expired
                if subscription.ends_at > now:
                    subscription.ends_at = now
                    subscription.renewal_at = now
                subscription.cancel_at_period_end = False
                db.flush()
                sync_single_user(db, payment.user_id, now)
                expired_subscription = subscription

        audit.record(
            db,
            "PAYMENT_REFUNDED",
            "payment",
            payment.id,
            actor_id=actor_id,
            actor_type=actor_type,
            reason=reason,
            before=before,
            after={"payment_status": payment.status.value, "refund_amount": refund_amount},
        )

    logger.info(
        "Refunded %s on payment %s", refund_amount, payment.id, extra={"payment_id": payment.id}
    )
    events.emit_new(
        BillingEventType.PAYMENT_REFUNDED,
        payment.user_id,
        payment_id=str(payment.id),
        amount=refund_amount,
    )
    if expired_subscription is not None:
        events.emit_new(
            BillingEventType.SUBSCRIPTION_EXPIRED,
            payment.user_id,
            subscription_id=str(expired_subscription.id),
            reason="refund",
        )
    return payment


def void_invoice(db: Session, invoice_id, reason: str, actor_id=None) -> Invoice:
    with transaction(db):
        invoice = db.scalar(
            select(Invoice).where(Invoice.id == coerce_uuid(invoice_id)).with_for_update()
        )
        if invoice is None:
            raise InvoiceNotFoundError(f"Invoice not found: {invoice_id}")
        if invoice.status == InvoiceStatus.VOID:
            raise InvoiceAlreadyVoidError(f"Invoice {invoice.id} is already void")
        before = {"status": invoice.status.value}
        invoice.status = InvoiceStatus.VOID
        invoice.notes = reason
        audit.record(
            db,
            "INVOICE_VOIDED",
            "invoice",
            invoice.id,
            actor_id=actor_id,
            actor_type=AuditActorType.admin,
            reason=reason,
            before=before,
            after={"status": InvoiceStatus.VOID.value},
        )
    logger.info("Voided invoice %s", invoice.id)
    return invoice
