"""Invoice creation and daily numbering (``INV-YYYYMMDD-NNNN``)."""
import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from billing_engine.db import transaction, utcnow
from billing_engine.models.billing import (
    Invoice,
    InvoiceSequence,
    InvoiceStatus,
    InvoiceType,
    Payment,
)
from billing_engine.services.billing.exceptions import InvoiceNotFoundError
from billing_engine.services.common import coerce_uuid, insert_unique

logger = logging.getLogger(__name__)

INVOICE_NUMBER_PREFIX = "INV"


def format_invoice_number(issued_at: datetime, counter: int) -> str:
    return f"{INVOICE_NUMBER_PREFIX}-{issued_at.strftime('%Y%m%d')}-{counter:04d}"


def _lock_sequence(db: Session, day: str) -> InvoiceSequence | None:
    return db.scalar(
        select(InvoiceSequence)
        .where(InvoiceSequence.sequence_date == day)
        .with_for_update()
    )


def next_sequence_value(db: Session, issued_at: datetime) -> int:
    day = issued_at.strftime("%Y%m%d")
    sequence = _lock_sequence(db, day)
    if sequence is None:
        # Another writer may create the day's row first; then lock theirs.
        insert_unique(db, InvoiceSequence(sequence_date=day, counter=0))
        sequence = _lock_sequence(db, day)
    sequence.counter += 1
    db.flush()
    return sequence.counter


def assign_number_locked(db: Session, invoice: Invoice, force: bool = False) -> Invoice:
    if invoice.number and not force:
        return invoice
    issued_at = invoice.issued_at or utcnow()
    invoice.issued_at = issued_at
    invoice.number = format_invoice_number(issued_at, next_sequence_value(db, issued_at))
    db.flush()
    return invoice


def get_or_create_sale_invoice(
    db: Session, payment: Payment, now: datetime
) -> tuple[Invoice, bool]:
    """At most one invoice per payment: the unique payment_id settles races."""
    invoice = db.scalar(select(Invoice).where(Invoice.payment_id == payment.id))
    if invoice is not None:
        return invoice, False
    invoice = Invoice(
        payment_id=payment.id,
        user_id=payment.user_id,
        type=InvoiceType.SALE,
        status=InvoiceStatus.PAID,
        total=payment.amount,
        currency=payment.currency,
        provider_ref=payment.provider_ref,
        issued_at=now,
    )
    if insert_unique(db, invoice):
        assign_number_locked(db, invoice)
        logger.info(
            "Issued invoice %s for payment %s",
            invoice.number,
            payment.id,
            extra={"payment_id": payment.id},
        )
        return invoice, True
    return db.scalar(select(Invoice).where(Invoice.payment_id == payment.id)), False


def assign_invoice_number(db: Session, invoice_id, force: bool = False) -> Invoice:
    with transaction(db):
        invoice = db.scalar(
            select(Invoice).where(Invoice.id == coerce_uuid(invoice_id)).with_for_update()
        )
        if invoice is None:
            raise InvoiceNotFoundError(f"Invoice not found: {invoice_id}")
        assign_number_locked(db, invoice, force=force)
    return invoice


def resync_invoice_number(db: Session, invoice_id) -> Invoice:
    """Re-issue the number from the invoice's own issue date."""
    return assign_invoice_number(db, invoice_id, force=True)
