"""Turn a PAID subscription payment into subscription time and publish rights."""
import logging
from datetime import datetime

from sqlalchemy.orm import Session

from billing_engine.db import transaction, utcnow
from billing_engine.models.audit import AuditActorType
from billing_engine.models.billing import (
    ACTIVE_SUBSCRIPTION_STATUSES,
    Invoice,
    Payment,
    PaymentStatus,
    ProductType,
)
from billing_engine.schemas.billing import ApplyPaymentResult
from billing_engine.services import audit
from billing_engine.services.billing.entitlements import grant_publish_until
from billing_engine.services.billing.subscriptions import (
    lock_subscription,
    renew_locked,
    snapshot,
    start_or_restart_locked,
)
from billing_engine.services.common import coerce_uuid

logger = logging.getLogger(__name__)

GRANT_ACTION = "SUBSCRIPTION_GRANTED"
DUPLICATE_ACTION = "SUBSCRIPTION_DUPLICATE_GUARD"
GRANT_REASON = "SUBSCRIPTION_PURCHASE"


def subscription_marker_key(payment_id) -> str:
    return f"subscription:{payment_id}"


def _fill_invoice_coverage(db: Session, invoice_id, plan, price, subscription) -> None:
    invoice = db.get(Invoice, coerce_uuid(invoice_id))
    if invoice is None:
        logger.warning("Invoice %s not found for coverage", invoice_id)
        return
    invoice.plan_id = plan.id
    invoice.plan_name = plan.name
    invoice.plan_cycle = plan.cycle
    invoice.period_start = subscription.started_at
    invoice.period_end = subscription.ends_at
    invoice.unit_amount = price.amount
    invoice.quantity = 1


def apply_payment_to_subscription(
    db: Session,
    payment_id,
    invoice_id=None,
    now: datetime | None = None,
) -> ApplyPaymentResult:
    now = now or utcnow()
    payment = db.get(Payment, coerce_uuid(payment_id))
    if payment is None:
        return ApplyPaymentResult(applied=False, reason="PAYMENT_NOT_FOUND")
    if payment.status != PaymentStatus.PAID:
        return ApplyPaymentResult(applied=False, reason="PAYMENT_NOT_PAID")

    price = payment.session.price if payment.session else None
    product = price.resolve_product() if price else None
    if product is None or product.type != ProductType.SUBSCRIPTION:
        return ApplyPaymentResult(applied=False, reason="NOT_SUBSCRIPTION")
    plan = price.plan
    if plan is None:
        return ApplyPaymentResult(applied=False, reason="MISSING_PRICE")

    user_id = payment.user_id
    change = None
    with transaction(db):
        marker = audit.claim_marker(
            db,
            subscription_marker_key(payment.id),
            GRANT_ACTION,
            "payment",
            payment.id,
        )
        if marker is not None:
            existing = lock_subscription(db, user_id)
            if existing is None or existing.status not in ACTIVE_SUBSCRIPTION_STATUSES:
                change = start_or_restart_locked(
                    db, existing, user_id, plan, payment.provider_ref, now
                )
            else:
                change = renew_locked(db, existing, payment.provider_ref, now, plan=plan)
            subscription = change.subscription
            entitlement, entitlement_action = grant_publish_until(
                db, user_id, subscription.ends_at, now
            )
            if invoice_id is not None:
                _fill_invoice_coverage(db, invoice_id, plan, price, subscription)
            marker.actor_id = str(user_id)
            marker.actor_type = AuditActorType.user
            marker.reason = GRANT_REASON
            marker.after = {
                **snapshot(subscription),
                "entitlement_id": str(entitlement.id),
                "entitlement_action": entitlement_action,
            }
            db.flush()

    if change is None:
        with transaction(db):
            audit.record(
                db,
                DUPLICATE_ACTION,
                "payment",
                payment.id,
                actor_id=user_id,
                actor_type=AuditActorType.user,
                reason=GRANT_REASON,
                metadata={"status": "duplicate"},
            )
        logger.info(
            "Subscription already granted for payment %s",
            payment.id,
            extra={"payment_id": payment.id},
        )
        return ApplyPaymentResult(applied=False, reason="ALREADY_GRANTED")

    change.emit()
    subscription = change.subscription
    return ApplyPaymentResult(
        applied=True,
        mode=change.event_type.value,
        subscription_id=subscription.id,
        ends_at=subscription.ends_at,
    )
