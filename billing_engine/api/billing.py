from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from billing_engine.api.deps import (
    get_actor_id,
    get_current_user_id,
    get_db,
    require_operator,
)
from billing_engine.models.billing import CheckoutSession
from billing_engine.schemas.billing import (
    CancelAtPeriodEndRequest,
    CheckoutResult,
    CheckoutStartRequest,
    ConfirmCheckoutResult,
    InvoiceRead,
    PaymentRead,
    RefundRequest,
    SubscriptionRead,
    SyncSummary,
    VoidInvoiceRequest,
)
from billing_engine.services.billing import checkout as checkout_service
from billing_engine.services.billing import dispatch as dispatch_service
from billing_engine.services.billing import refunds as refund_service
from billing_engine.services.billing.entitlements import sync_all_subscriptions
from billing_engine.services.billing.exceptions import CheckoutSessionNotFoundError
from billing_engine.services.billing.subscriptions import subscriptions
from billing_engine.services.common import try_coerce_uuid

router = APIRouter(prefix="/billing", tags=["billing"])


# ── Checkout ─────────────────────────────────────────────


@router.post("/checkout", response_model=CheckoutResult)
def start_checkout(
    payload: CheckoutStartRequest,
    user_id=Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return checkout_service.start_checkout_session(
        db, user_id, payload.price_id, payload.provider, payload.return_url
    )


@router.post("/checkout/{session_id}/confirm", response_model=ConfirmCheckoutResult)
def confirm_checkout(
    session_id: str,
    user_id=Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    session_uuid = try_coerce_uuid(session_id)
    session = db.get(CheckoutSession, session_uuid) if session_uuid else None
    if session is None or session.user_id != user_id:
        raise CheckoutSessionNotFoundError(f"Checkout session not found: {session_id}")
    return dispatch_service.confirm_checkout_return(db, session.id)


# ── Subscription ─────────────────────────────────────────


@router.post("/subscription/cancel-at-period-end", response_model=SubscriptionRead)
def cancel_at_period_end(
    payload: CancelAtPeriodEndRequest,
    user_id=Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return subscriptions.set_cancel_at_period_end(db, user_id, payload.cancel)


# ── Operator ─────────────────────────────────────────────


@router.post(
    "/sync", response_model=SyncSummary, dependencies=[Depends(require_operator)]
)
def run_entitlement_sync(db: Session = Depends(get_db)):
    return sync_all_subscriptions(db)


@router.post(
    "/payments/{payment_id}/refund",
    response_model=PaymentRead,
    dependencies=[Depends(require_operator)],
)
def refund_payment(
    payment_id: str,
    payload: RefundRequest,
    actor_id=Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    return refund_service.refund_payment(
        db, payment_id, amount=payload.amount, actor_id=actor_id, reason=payload.reason
    )


@router.post(
    "/invoices/{invoice_id}/void",
    response_model=InvoiceRead,
    dependencies=[Depends(require_operator)],
)
def void_invoice(
    invoice_id: str,
    payload: VoidInvoiceRequest,
    actor_id=Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    return refund_service.void_invoice(db, invoice_id, payload.reason, actor_id=actor_id)
