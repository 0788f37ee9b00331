"""Webhook ingestion: verify, dedupe on the log row, record, dispatch.

The ``payment_webhook_logs`` row is claimed and committed before any business
logic runs. A unique violation on ``(provider, external_id)`` is a replay and
has no downstream effect, except that a delivery whose earlier processing
failed is claimed again and reprocessed.
"""
import hashlib
import json
import logging
from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from billing_engine.db import transaction, utcnow
from billing_engine.metrics import WEBHOOKS_RECEIVED
from billing_engine.models.audit import AuditActorType
from billing_engine.models.billing import (
    Payment,
    PaymentStatus,
    PaymentWebhookLog,
    WebhookLogStatus,
)
from billing_engine.schemas.billing import WebhookResult
from billing_engine.services.billing import events
from billing_engine.services.billing.dispatch import dispatch_payment
from billing_engine.services.billing.events import BillingEventType
from billing_engine.services.billing.exceptions import (
    CheckoutSessionNotFoundError,
    InvalidPayload,
    InvalidSignature,
    ProviderMismatchError,
    ProviderNotConfiguredError,
)
from billing_engine.services.billing.payments import record_payment
from billing_engine.services.billing.providers import get_adapter
from billing_engine.services.billing.refunds import refund_payment
from billing_engine.services.common import insert_unique

logger = logging.getLogger(__name__)

SIGNATURE_COLUMN_LENGTH = 255


def _invalid_external_id(raw_body: bytes) -> str:
    return "invalid:" + hashlib.sha256(raw_body).hexdigest()


def _payload_for_log(raw_body: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(raw_body)
    except (UnicodeDecodeError, json.JSONDecodeError):
        return {"raw": raw_body.decode("utf-8", errors="replace")}
    return payload if isinstance(payload, dict) else {"raw": payload}


def _trim_signature(signature: str | None) -> str | None:
    return signature[:SIGNATURE_COLUMN_LENGTH] if signature else None


def _set_log_status(
    db: Session, log_id, status: WebhookLogStatus, **values: Any
) -> None:
    with transaction(db):
        db.execute(
            update(PaymentWebhookLog)
            .where(PaymentWebhookLog.id == log_id)
            .values(status=status, **values)
            .execution_options(synchronize_session="fetch")
        )


def _record_invalid(
    db: Session,
    provider: str,
    raw_body: bytes,
    signature: str | None,
    code: str,
    error: str,
) -> None:
    log = PaymentWebhookLog(
        provider=provider,
        external_id=_invalid_external_id(raw_body),
        signature=_trim_signature(signature),
        payload=_payload_for_log(raw_body),
        status=WebhookLogStatus.invalid,
        error_code=code,
        error_message=error,
    )
    with transaction(db):
        insert_unique(db, log)


def _claim_log(
    db: Session,
    provider: str,
    external_id: str,
    event_type: str | None,
    signature: str | None,
    payload: dict[str, Any],
) -> tuple[PaymentWebhookLog | None, PaymentWebhookLog | None]:
    """Return ``(claimed, existing)``; exactly one of them is set."""
    log = PaymentWebhookLog(
        provider=provider,
        external_id=external_id,
        event_type=event_type,
        signature=_trim_signature(signature),
        payload=payload,
        status=WebhookLogStatus.received,
    )
    with transaction(db):
        if insert_unique(db, log):
            return log, None
        existing = db.scalar(
            select(PaymentWebhookLog).where(
                PaymentWebhookLog.provider == provider,
                PaymentWebhookLog.external_id == external_id,
            )
        )
        if existing.status != WebhookLogStatus.failed:
            return None, existing
        reclaimed = db.execute(
            update(PaymentWebhookLog)
            .where(
                PaymentWebhookLog.id == existing.id,
                PaymentWebhookLog.status == WebhookLogStatus.failed,
            )
            .values(
                status=WebhookLogStatus.received, error_code=None, error_message=None
            )
            .execution_options(synchronize_session="fetch")
        ).rowcount
    if reclaimed:
        logger.info(
            "Reprocessing failed webhook %s",
            external_id,
            extra={"provider": provider, "external_id": external_id},
        )
        return existing, None
    db.refresh(existing)
    return None, existing


def ingest_webhook(
    db: Session,
    provider: str,
    raw_body: bytes,
    signature: str | None,
    now: datetime | None = None,
) -> WebhookResult:
    """Process one provider callback end to end.

    Unknown providers raise ``UnknownProviderError`` and providers without a
    webhook secret raise ``ProviderNotConfiguredError``; every other outcome
    is returned as a ``WebhookResult``.
    """
    now = now or utcnow()
    adapter = get_adapter(provider)
    if not adapter.is_configured():
        raise ProviderNotConfiguredError(f"Webhook secret for {provider} is not configured")

    try:
        payload = adapter.verify(raw_body, signature)
        normalized = adapter.normalize(payload)
    except (InvalidSignature, InvalidPayload) as exc:
        logger.warning(
            "Rejected %s webhook: %s",
            provider,
            exc.message,
            extra={"provider": provider},
        )
        _record_invalid(db, provider, raw_body, signature, exc.code, exc.message)
        WEBHOOKS_RECEIVED.labels(provider, WebhookLogStatus.invalid.value).inc()
        return WebhookResult(status=WebhookLogStatus.invalid, reason=exc.code)

    log, existing = _claim_log(
        db, provider, normalized.external_id, normalized.event_type, signature, payload
    )
    if log is None:
        logger.info(
            "Duplicate %s webhook %s (%s)",
            provider,
            normalized.external_id,
            existing.status.value,
            extra={"provider": provider, "external_id": normalized.external_id},
        )
        WEBHOOKS_RECEIVED.labels(provider, "duplicate").inc()
        return WebhookResult(
            idempotent=True,
            status=existing.status,
            reason=existing.error_code,
            log_id=existing.id,
            payment_id=existing.payment_id,
        )
    log_id = log.id

    try:
        recorded = record_payment(db, provider, normalized, payload=payload, now=now)
    except (CheckoutSessionNotFoundError, ProviderMismatchError) as exc:
        logger.warning(
            "Rejected %s webhook %s: %s",
            provider,
            normalized.external_id,
            exc.message,
            extra={"provider": provider, "external_id": normalized.external_id},
        )
        _set_log_status(
            db,
            log_id,
            WebhookLogStatus.rejected,
            error_code=exc.code,
            error_message=exc.message,
            handled_at=now,
        )
        WEBHOOKS_RECEIVED.labels(provider, WebhookLogStatus.rejected.value).inc()
        return WebhookResult(
            status=WebhookLogStatus.rejected, reason=exc.code, log_id=log_id
        )
    except Exception as exc:
        _mark_failed(db, log_id, exc)
        raise

    try:
        if recorded.refund_requested:
            refund_payment(
                db,
                recorded.payment_id,
                reason=f"Refunded by {provider}",
                now=now,
                actor_type=AuditActorType.provider,
            )
        else:
            dispatch_payment(
                db, recorded.payment_id, invoice_id=recorded.invoice_id, now=now
            )
    except Exception as exc:
        _mark_failed(db, log_id, exc)
        raise

    _set_log_status(
        db,
        log_id,
        WebhookLogStatus.handled,
        payment_id=recorded.payment_id,
        handled_at=now,
    )
    WEBHOOKS_RECEIVED.labels(provider, WebhookLogStatus.handled.value).inc()
    logger.info(
        "Handled %s webhook %s",
        provider,
        normalized.external_id,
        extra={
            "provider": provider,
            "external_id": normalized.external_id,
            "payment_id": recorded.payment_id,
        },
    )

    user_id = _payment_user(db, recorded.payment_id)
    if recorded.invoice_created:
        events.emit_new(
            BillingEventType.INVOICE_ISSUED,
            user_id,
            payment_id=str(recorded.payment_id),
            invoice_id=str(recorded.invoice_id),
        )
    if recorded.payment_status == PaymentStatus.FAILED:
        events.emit_new(
            BillingEventType.PAYMENT_FAILED,
            user_id,
            payment_id=str(recorded.payment_id),
            provider=provider,
        )

    return WebhookResult(
        status=WebhookLogStatus.handled,
        log_id=log_id,
        payment_id=recorded.payment_id,
        invoice_id=recorded.invoice_id,
    )


def _payment_user(db: Session, payment_id):
    payment = db.get(Payment, payment_id)
    return payment.user_id if payment else None


def _mark_failed(db: Session, log_id, exc: Exception) -> None:
    logger.exception("Webhook processing failed for log %s", log_id)
    try:
        _set_log_status(db, log_id, WebhookLogStatus.failed, error_message=str(exc)[:1000])
    except SQLAlchemyError:
        logger.exception("Could not mark webhook log %s as failed", log_id)
