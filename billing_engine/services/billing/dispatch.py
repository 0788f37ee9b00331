"""Route a recorded payment to the domain that sold it.

Used by webhook ingestion and by return-URL confirmation; every target is
idempotent on the payment id, so running both paths is harmless.
"""
import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from billing_engine.models.billing import (
    CheckoutSession,
    Payment,
    PaymentStatus,
    PurchaseType,
)
from billing_engine.schemas.billing import ApplyPaymentResult, ConfirmCheckoutResult
from billing_engine.services.billing.exceptions import (
    CheckoutSessionNotFoundError,
    PaymentNotFoundError,
)
from billing_engine.services.billing.job_credits import apply_payment_to_job_credits
from billing_engine.services.billing.subscription_payments import (
    apply_payment_to_subscription,
)
from billing_engine.services.common import coerce_uuid, try_coerce_uuid
from billing_engine.services.courses.payments import apply_course_payment_from_webhook

logger = logging.getLogger(__name__)


def dispatch_payment(
    db: Session,
    payment_id,
    invoice_id=None,
    now: datetime | None = None,
) -> ApplyPaymentResult:
    payment = db.get(Payment, coerce_uuid(payment_id))
    if payment is None:
        raise PaymentNotFoundError(f"Payment not found: {payment_id}")
    purchase_type = payment.session.purchase_type

    if purchase_type == PurchaseType.course_semester:
        result = apply_course_payment_from_webhook(db, payment.id, payment.status, now=now)
    elif payment.status != PaymentStatus.PAID:
        result = ApplyPaymentResult(applied=False, reason="PAYMENT_NOT_PAID")
    elif purchase_type == PurchaseType.subscription:
        result = apply_payment_to_subscription(db, payment.id, invoice_id=invoice_id, now=now)
    elif purchase_type == PurchaseType.job_credit:
        result = apply_payment_to_job_credits(db, payment.id)
    else:
        result = ApplyPaymentResult(applied=False, reason="UNKNOWN_PURCHASE_TYPE")

    logger.info(
        "Dispatched payment %s (%s): applied=%s reason=%s",
        payment_id,
        purchase_type.value,
        result.applied,
        result.reason,
        extra={"payment_id": payment_id},
    )
    return result


def confirm_checkout_return(
    db: Session, session_id, now: datetime | None = None
) -> ConfirmCheckoutResult:
    """Apply a PAID payment when the user lands back before the webhook does."""
    session_uuid = try_coerce_uuid(session_id)
    session = db.get(CheckoutSession, session_uuid) if session_uuid else None
    if session is None:
        raise CheckoutSessionNotFoundError(f"Checkout session not found: {session_id}")
    payment = db.scalar(
        select(Payment)
        .where(
            Payment.checkout_session_id == session.id,
            Payment.status == PaymentStatus.PAID,
        )
        .order_by(Payment.updated_at.desc())
        .limit(1)
    )
    if payment is None:
        return ConfirmCheckoutResult(session_id=session.id, confirmed=False)
    invoice_id = payment.invoice.id if payment.invoice else None
    result = dispatch_payment(db, payment.id, invoice_id=invoice_id, now=now)
    return ConfirmCheckoutResult(
        session_id=session.id,
        payment_id=payment.id,
        confirmed=True,
        dispatch=result,
    )
