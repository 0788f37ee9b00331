"""Payment recorder: one Payment per purchase attempt, one Invoice per PAID payment."""
import logging
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from billing_engine.db import transaction, utcnow
from billing_engine.metrics import PAYMENTS_RECORDED
from billing_engine.models.billing import (
    CheckoutSession,
    CheckoutStatus,
    Payment,
    PaymentStatus,
)
from billing_engine.schemas.billing import NormalizedWebhook, RecordResult
from billing_engine.services.billing.exceptions import (
    CheckoutSessionNotFoundError,
    ProviderMismatchError,
)
from billing_engine.services.billing.invoices import get_or_create_sale_invoice
from billing_engine.services.common import insert_unique, try_coerce_uuid

logger = logging.getLogger(__name__)


def resolve_status(current: PaymentStatus | None, incoming: PaymentStatus) -> PaymentStatus:
    """PAID and REFUNDED never move through the recorder.

    A provider refund of a PAID payment is applied by ``refund_payment`` so
    the invoice, subscription and entitlement follow it.
    """
    if current in (PaymentStatus.PAID, PaymentStatus.REFUNDED):
        return current
    return incoming


def _lock_payment(db: Session, provider, provider_ref: str) -> Payment | None:
    return db.scalar(
        select(Payment)
        .where(Payment.provider == provider, Payment.provider_ref == provider_ref)
        .with_for_update()
    )


def load_session(db: Session, provider: str, session_id: str | None) -> CheckoutSession:
    session_uuid = try_coerce_uuid(session_id)
    session = db.get(CheckoutSession, session_uuid) if session_uuid else None
    if session is None:
        raise CheckoutSessionNotFoundError(f"Checkout session not found: {session_id}")
    if session.provider.value != provider:
        raise ProviderMismatchError(
            f"Session {session.id} belongs to {session.provider.value}, not {provider}"
        )
    return session


def record_payment(
    db: Session,
    provider: str,
    normalized: NormalizedWebhook,
    payload: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> RecordResult:
    """Upsert the Payment for the session's purchase attempt.

    The key is ``(provider, session.derive_provider_ref())``; the provider's own
    transaction id is stored but never used as identity, so retried
    authorities for one attempt collapse onto one row.
    """
    now = now or utcnow()
    with transaction(db):
        session = load_session(db, provider, normalized.session_id)
        provider_ref = session.derive_provider_ref()
        amount = normalized.amount or session.amount
        currency = normalized.currency or session.currency

        payment = _lock_payment(db, session.provider, provider_ref)
        if payment is None:
            candidate = Payment(
                provider=session.provider,
                provider_ref=provider_ref,
                provider_transaction_id=normalized.provider_transaction_id,
                status=normalized.outcome_status,
                amount=amount,
                currency=currency,
                user_id=session.user_id,
                checkout_session_id=session.id,
            )
            if insert_unique(db, candidate):
                payment, previous = candidate, None
            else:
                payment = _lock_payment(db, session.provider, provider_ref)
                previous = payment.status
        else:
            previous = payment.status

        refund_requested = (
            previous == PaymentStatus.PAID
            and normalized.outcome_status == PaymentStatus.REFUNDED
        )
        if previous is not None:
            status = resolve_status(previous, normalized.outcome_status)
            if status != normalized.outcome_status and not refund_requested:
                logger.info(
                    "Ignoring %s for payment %s already %s",
                    normalized.outcome_status.value,
                    payment.id,
                    previous.value,
                    extra={"payment_id": payment.id, "provider": provider},
                )
            if status != previous:
                payment.status = status
                if status == PaymentStatus.PAID:
                    payment.amount = amount
                    payment.currency = currency
            if normalized.provider_transaction_id:
                payment.provider_transaction_id = normalized.provider_transaction_id

        if payload is not None:
            session.provider_callback_payload = payload
        if payment.status == PaymentStatus.PAID:
            session.status = CheckoutStatus.succeeded
        elif payment.status == PaymentStatus.FAILED:
            session.status = CheckoutStatus.failed
        db.flush()

        invoice = None
        invoice_created = False
        if payment.status == PaymentStatus.PAID:
            invoice, invoice_created = get_or_create_sale_invoice(db, payment, now)

        result = RecordResult(
            payment_id=payment.id,
            payment_status=payment.status,
            invoice_id=invoice.id if invoice else None,
            invoice_created=invoice_created,
            newly_paid=payment.status == PaymentStatus.PAID
            and previous != PaymentStatus.PAID,
            refund_requested=refund_requested,
        )

    PAYMENTS_RECORDED.labels(provider, result.payment_status.value).inc()
    logger.info(
        "Recorded payment %s as %s",
        result.payment_id,
        result.payment_status.value,
        extra={"payment_id": result.payment_id, "provider": provider},
    )
    return result
