import logging

from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from billing_engine.db import transaction
from billing_engine.models.audit import AuditActorType
from billing_engine.models.billing import (
    EntitlementKey,
    JobCreditGrant,
    Payment,
    PaymentStatus,
    ProductType,
    UserEntitlement,
)
from billing_engine.schemas.billing import ApplyPaymentResult, ProductMetadata
from billing_engine.services import audit
from billing_engine.services.common import coerce_uuid, insert_unique

logger = logging.getLogger(__name__)

DEFAULT_CREDITS = 1
GRANT_REASON = "JOB_CREDIT_PURCHASE"


def _credits_from(raw: dict | None) -> int | None:
    if not raw:
        return None
    try:
        return ProductMetadata.model_validate(raw).job_credits
    except ValidationError:
        logger.warning("Ignoring malformed job credit metadata: %s", raw)
        return None


def resolve_credit_count(payment: Payment) -> int:
    """Credits bought by one payment: price, then product, then session metadata."""
    session = payment.session
    price = session.price if session else None
    product = price.resolve_product() if price else None
    candidates = (
        price.metadata_ if price else None,
        product.metadata_ if product else None,
        session.provider_init_payload if session else None,
    )
    for raw in candidates:
        credits = _credits_from(raw)
        if credits:
            return credits
    return DEFAULT_CREDITS


def apply_payment_to_job_credits(db: Session, payment_id) -> ApplyPaymentResult:
    payment = db.get(Payment, coerce_uuid(payment_id))
    if payment is None:
        return ApplyPaymentResult(applied=False, reason="PAYMENT_NOT_FOUND")
    if payment.status != PaymentStatus.PAID:
        return ApplyPaymentResult(applied=False, reason="PAYMENT_NOT_PAID")
    price = payment.session.price if payment.session else None
    product = price.resolve_product() if price else None
    if product is None or product.type != ProductType.JOB_POST:
        return ApplyPaymentResult(applied=False, reason="NOT_JOB_PRODUCT")

    credits = resolve_credit_count(payment)
    with transaction(db):
        grant = JobCreditGrant(
            user_id=payment.user_id,
            payment_id=payment.id,
            credits=credits,
            reason=GRANT_REASON,
        )
        if not insert_unique(db, grant):
            logger.info(
                "Job credits already granted for payment %s",
                payment.id,
                extra={"payment_id": payment.id},
            )
            return ApplyPaymentResult(applied=False, reason="ALREADY_GRANTED")

        entitlement = db.scalar(
            select(UserEntitlement)
            .where(
                UserEntitlement.user_id == payment.user_id,
                UserEntitlement.key == EntitlementKey.JOB_POST_CREDIT,
            )
            .with_for_update()
        )
        before = entitlement.remaining_credits if entitlement else 0
        if entitlement is None:
            entitlement = UserEntitlement(
                user_id=payment.user_id,
                key=EntitlementKey.JOB_POST_CREDIT,
                remaining_credits=credits,
            )
            db.add(entitlement)
        else:
            entitlement.remaining_credits = (entitlement.remaining_credits or 0) + credits
        db.flush()
        audit.record(
            db,
            "JOB_CREDITS_GRANTED",
            "payment",
            payment.id,
            actor_id=payment.user_id,
            actor_type=AuditActorType.user,
            reason=GRANT_REASON,
            before={"remaining_credits": before or 0},
            after={"remaining_credits": entitlement.remaining_credits},
        )
    logger.info(
        "Granted %s job credits to user %s",
        credits,
        payment.user_id,
        extra={"user_id": payment.user_id, "payment_id": payment.id},
    )
    return ApplyPaymentResult(applied=True, mode="job_credit", credits=credits)


def consume_job_credit(db: Session, user_id) -> bool:
    """Spend one job-post credit; False when the balance is empty."""
    with transaction(db):
        result = db.execute(
            update(UserEntitlement)
            .where(
                UserEntitlement.user_id == coerce_uuid(user_id),
                UserEntitlement.key == EntitlementKey.JOB_POST_CREDIT,
                UserEntitlement.remaining_credits > 0,
            )
            .values(remaining_credits=UserEntitlement.remaining_credits - 1)
            .execution_options(synchronize_session=False)
        )
    return result.rowcount > 0
