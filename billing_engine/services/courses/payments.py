"""Course semester purchases: lump sum or a schedule of installments.

Checkout failures are returned as ``CourseCheckoutResult`` reasons so the
caller can map them to user-facing messages.
"""
import logging
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from billing_engine.config import settings
from billing_engine.db import transaction, utcnow
from billing_engine.models.billing import (
    CheckoutSession,
    CheckoutStatus,
    Payment,
    PaymentStatus,
    Provider,
    PurchaseType,
)
from billing_engine.models.course import (
    CoursePaymentInstallment,
    CoursePaymentPlan,
    CourseStatus,
    Enrollment,
    EnrollmentStatus,
    InstallmentStatus,
    PaymentMode,
    SemesterStatus,
)
from billing_engine.schemas.billing import ApplyPaymentResult
from billing_engine.schemas.course import CourseCheckoutReason, CourseCheckoutResult
from billing_engine.services.billing.checkout import build_return_url, start_with_adapter
from billing_engine.services.billing.exceptions import (
    CourseCheckoutError,
    ProviderStartError,
)
from billing_engine.services.billing.providers import get_adapter, is_provider_name
from billing_engine.services.billing.subscriptions import add_months
from billing_engine.services.common import coerce_uuid, insert_unique, try_coerce_uuid
from billing_engine.services.courses.pricing import (
    compute_semester_pricing,
    installment_amounts,
)

logger = logging.getLogger(__name__)

COURSE_CURRENCY = "IRR"


def course_idempotency_key(
    enrollment_id, payment_mode: PaymentMode, installment_index: int | None, amount: int
) -> str:
    return f"course:{enrollment_id}:{payment_mode.value}:{installment_index or 0}:{amount}"


def ensure_installment_plan(db: Session, enrollment_id, semester) -> CoursePaymentPlan:
    """Create the plan and its installment rows; existing rows are kept."""
    if not semester.installment_plan_enabled or not semester.installment_count:
        raise CourseCheckoutError(CourseCheckoutReason.INSTALLMENTS_DISABLED)
    if semester.currency != COURSE_CURRENCY:
        raise CourseCheckoutError(CourseCheckoutReason.UNSUPPORTED_CURRENCY)
    pricing = compute_semester_pricing(semester)
    enrollment_id = coerce_uuid(enrollment_id)

    with transaction(db):
        insert_unique(
            db,
            CoursePaymentPlan(
                enrollment_id=enrollment_id,
                installment_count=pricing.installments.count,
                installment_amount=pricing.installments.amount_per_installment,
            ),
        )
        for index, amount in enumerate(installment_amounts(pricing), start=1):
            insert_unique(
                db,
                CoursePaymentInstallment(
                    enrollment_id=enrollment_id,
                    index=index,
                    amount=amount,
                    status=InstallmentStatus.due,
                    due_at=add_months(semester.starts_at, index - 1),
                ),
            )
        plan = db.scalar(
            select(CoursePaymentPlan).where(
                CoursePaymentPlan.enrollment_id == enrollment_id
            )
        )
    return plan


def compute_next_installment_to_pay(
    db: Session, enrollment_id
) -> CoursePaymentInstallment | None:
    """Lowest-index installment still owed; failed ones are retryable."""
    return db.scalar(
        select(CoursePaymentInstallment)
        .where(
            CoursePaymentInstallment.enrollment_id == coerce_uuid(enrollment_id),
            CoursePaymentInstallment.status.in_(
                [InstallmentStatus.due, InstallmentStatus.failed]
            ),
        )
        .order_by(CoursePaymentInstallment.index.asc())
        .limit(1)
    )


def _failure(reason: CourseCheckoutReason) -> CourseCheckoutResult:
    return CourseCheckoutResult(ok=False, reason=reason)


def _validate_enrollment(enrollment, user_id, payment_mode) -> CourseCheckoutReason | None:
    if enrollment is None:
        return CourseCheckoutReason.ENROLLMENT_NOT_FOUND
    if enrollment.user_id != coerce_uuid(user_id):
        return CourseCheckoutReason.FORBIDDEN
    if enrollment.status != EnrollmentStatus.pending_payment:
        if enrollment.status == EnrollmentStatus.active:
            return CourseCheckoutReason.ALREADY_PAID
        return CourseCheckoutReason.INVALID_ENROLLMENT_STATUS
    if enrollment.chosen_payment_mode != payment_mode:
        return CourseCheckoutReason.PAYMENT_MODE_MISMATCH
    semester = enrollment.semester
    if semester.course.status != CourseStatus.published:
        return CourseCheckoutReason.COURSE_NOT_PUBLISHED
    if semester.status == SemesterStatus.draft:
        return CourseCheckoutReason.SEMESTER_NOT_OPEN
    if semester.currency != COURSE_CURRENCY:
        return CourseCheckoutReason.UNSUPPORTED_CURRENCY
    return None


def _find_session(db: Session, key: str) -> CheckoutSession | None:
    return db.scalar(select(CheckoutSession).where(CheckoutSession.idempotency_key == key))


def _result(session: CheckoutSession) -> CourseCheckoutResult:
    return CourseCheckoutResult(
        ok=True,
        session_id=session.id,
        redirect_url=session.redirect_url,
        return_url=session.return_url,
        amount=session.amount,
        installment_index=session.installment_index,
    )


def create_course_checkout_session(
    db: Session,
    enrollment_id,
    user_id,
    payment_mode: PaymentMode | str,
    installment_index: int | None = None,
    provider: str | None = None,
    return_url: str | None = None,
) -> CourseCheckoutResult:
    payment_mode = PaymentMode(payment_mode)
    enrollment_uuid = try_coerce_uuid(enrollment_id)
    enrollment = db.get(Enrollment, enrollment_uuid) if enrollment_uuid else None
    reason = _validate_enrollment(enrollment, user_id, payment_mode)
    if reason is not None:
        return _failure(reason)
    semester = enrollment.semester

    resolved_index = None
    if payment_mode == PaymentMode.lumpsum:
        amount = compute_semester_pricing(semester).lump_sum_payable
    else:
        if (
            not semester.installment_plan_enabled
            or not semester.installment_count
            or semester.installment_count < 2
        ):
            return _failure(CourseCheckoutReason.INSTALLMENTS_DISABLED)
        try:
            ensure_installment_plan(db, enrollment.id, semester)
        except CourseCheckoutError as exc:
            return _failure(exc.reason)
        next_installment = compute_next_installment_to_pay(db, enrollment.id)
        if next_installment is None:
            return _failure(CourseCheckoutReason.ALREADY_PAID)
        if installment_index is not None and installment_index != next_installment.index:
            return _failure(CourseCheckoutReason.INVALID_INSTALLMENT)
        resolved_index = next_installment.index
        amount = next_installment.amount

    if amount <= 0:
        return _failure(CourseCheckoutReason.INVALID_AMOUNT)
    provider = provider or settings.billing_default_provider
    if not is_provider_name(provider):
        return _failure(CourseCheckoutReason.UNKNOWN_PROVIDER)
    adapter = get_adapter(provider)

    key = course_idempotency_key(enrollment.id, payment_mode, resolved_index, amount)
    session = _find_session(db, key)
    if session is None:
        candidate = CheckoutSession(
            user_id=enrollment.user_id,
            provider=Provider(provider),
            price_id=None,
            purchase_type=PurchaseType.course_semester,
            amount=amount,
            currency=COURSE_CURRENCY,
            status=CheckoutStatus.started,
            enrollment_id=enrollment.id,
            payment_mode=payment_mode.value,
            installment_index=resolved_index,
            idempotency_key=key,
            provider_init_payload={
                "course_payment": {
                    "payment_mode": payment_mode.value,
                    "installment_index": resolved_index,
                }
            },
        )
        with transaction(db):
            created = insert_unique(db, candidate)
        session = candidate if created else _find_session(db, key)
        if not created:
            logger.info("Reusing concurrent course checkout %s", session.id)

    if session.redirect_url:
        return _result(session)

    resolved_return_url = build_return_url(
        return_url, f"/courses/payment/success?sessionId={session.id}"
    )
    try:
        start_with_adapter(db, session, adapter, resolved_return_url)
    except ProviderStartError:
        logger.warning(
            "Course checkout %s could not reach %s", session.id, provider,
            extra={"provider": provider},
        )
        return _failure(CourseCheckoutReason.PROVIDER_UNAVAILABLE)
    return _result(session)


def _release_session_key(db: Session, session_id) -> None:
    db.execute(
        update(CheckoutSession)
        .where(CheckoutSession.id == session_id)
        .values(idempotency_key=None, status=CheckoutStatus.failed)
        .execution_options(synchronize_session="fetch")
    )


def apply_course_payment_from_webhook(
    db: Session,
    payment_id,
    status: PaymentStatus,
    now: datetime | None = None,
) -> ApplyPaymentResult:
    now = now or utcnow()
    payment = db.get(Payment, coerce_uuid(payment_id))
    session = payment.session if payment else None
    if session is None:
        return ApplyPaymentResult(applied=False, reason="SESSION_NOT_FOUND")
    if session.purchase_type != PurchaseType.course_semester:
        return ApplyPaymentResult(applied=False, reason="NOT_COURSE")
    enrollment_id = session.enrollment_id
    if enrollment_id is None:
        return ApplyPaymentResult(applied=False, reason="ENROLLMENT_NOT_FOUND")
    mode = session.payment_mode
    index = session.installment_index

    if status == PaymentStatus.PAID:
        if mode == PaymentMode.lumpsum.value:
            with transaction(db):
                activated = _activate_enrollment(db, enrollment_id, now)
            return ApplyPaymentResult(
                applied=activated,
                reason=None if activated else "ALREADY_PAID",
                mode=mode,
            )
        if mode == PaymentMode.installments.value:
            if not index or index < 1:
                return ApplyPaymentResult(applied=False, reason="INSTALLMENT_NOT_FOUND")
            with transaction(db):
                outcome = _mark_installment_paid(db, enrollment_id, index, payment.id, now)
            if outcome is not None:
                return ApplyPaymentResult(applied=False, reason=outcome, mode=mode)
            return ApplyPaymentResult(applied=True, mode=mode)
        return ApplyPaymentResult(applied=False, reason="PAYMENT_MODE_MISSING")

    if status == PaymentStatus.FAILED:
        with transaction(db):
            # The failed attempt keeps holding the installment's idempotency key
            # otherwise, and every retry would reuse its dead gateway redirect.
            _release_session_key(db, session.id)
            if mode != PaymentMode.installments.value:
                return ApplyPaymentResult(applied=False, reason="NO_ACTION", mode=mode)
            if not index or index < 1:
                return ApplyPaymentResult(applied=False, reason="INSTALLMENT_NOT_FOUND")
            db.execute(
                update(CoursePaymentInstallment)
                .where(
                    CoursePaymentInstallment.enrollment_id == enrollment_id,
                    CoursePaymentInstallment.index == index,
                    CoursePaymentInstallment.status != InstallmentStatus.paid,
                )
                .values(status=InstallmentStatus.failed, updated_at=now)
                .execution_options(synchronize_session="fetch")
            )
        return ApplyPaymentResult(applied=True, mode=mode)

    return ApplyPaymentResult(applied=False, reason="UNSUPPORTED_STATUS")


def _activate_enrollment(db: Session, enrollment_id, now: datetime) -> bool:
    result = db.execute(
        update(Enrollment)
        .where(
            Enrollment.id == enrollment_id,
            Enrollment.status == EnrollmentStatus.pending_payment,
        )
        .values(status=EnrollmentStatus.active, updated_at=now)
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount:
        logger.info("Activated enrollment %s", enrollment_id)
    return result.rowcount > 0


def _mark_installment_paid(
    db: Session, enrollment_id, index: int, payment_id, now: datetime
) -> str | None:
    result = db.execute(
        update(CoursePaymentInstallment)
        .where(
            CoursePaymentInstallment.enrollment_id == enrollment_id,
            CoursePaymentInstallment.index == index,
            CoursePaymentInstallment.status != InstallmentStatus.paid,
        )
        .values(
            status=InstallmentStatus.paid,
            paid_at=now,
            paid_payment_id=payment_id,
            updated_at=now,
        )
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount == 0:
        exists = db.scalar(
            select(CoursePaymentInstallment.id).where(
                CoursePaymentInstallment.enrollment_id == enrollment_id,
                CoursePaymentInstallment.index == index,
            )
        )
        return "ALREADY_PAID" if exists else "INSTALLMENT_NOT_FOUND"

    remaining = db.scalar(
        select(func.count(CoursePaymentInstallment.id)).where(
            CoursePaymentInstallment.enrollment_id == enrollment_id,
            CoursePaymentInstallment.status != InstallmentStatus.paid,
        )
    )
    if remaining == 0:
        _activate_enrollment(db, enrollment_id, now)
    return None
