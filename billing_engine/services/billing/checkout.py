"""Checkout start: persist the purchase attempt, then ask the gateway for a redirect.

The gateway call runs outside any transaction and never touches payment
state; a timeout leaves the session safe to retry.
"""
import logging
from urllib.parse import urljoin, urlsplit

from sqlalchemy.orm import Session

from billing_engine.config import settings
from billing_engine.db import transaction
from billing_engine.models.billing import (
    CheckoutSession,
    CheckoutStatus,
    Price,
    ProductType,
    Provider,
    PurchaseType,
)
from billing_engine.schemas.billing import CheckoutResult, StartCheckoutRequest
from billing_engine.services.billing.exceptions import (
    PriceNotFoundError,
    ProviderStartError,
    UnsupportedCurrencyError,
)
from billing_engine.services.billing.providers import ProviderAdapter, get_adapter
from billing_engine.services.common import coerce_uuid

logger = logging.getLogger(__name__)

PURCHASE_TYPE_BY_PRODUCT = {
    ProductType.SUBSCRIPTION: PurchaseType.subscription,
    ProductType.JOB_POST: PurchaseType.job_credit,
}


def build_return_url(return_url: str | None, fallback_path: str) -> str:
    """Absolute return URL on our own host; anything else falls back."""
    base = settings.billing_public_base_url.rstrip("/") + "/"
    candidate = (return_url or "").strip()
    if candidate.startswith("/") and not candidate.startswith("//"):
        return urljoin(base, candidate.lstrip("/"))
    if candidate:
        parsed, own = urlsplit(candidate), urlsplit(base)
        if parsed.scheme in {"http", "https"} and parsed.netloc == own.netloc:
            return candidate
    return urljoin(base, fallback_path.lstrip("/"))


def start_with_adapter(
    db: Session,
    session: CheckoutSession,
    adapter: ProviderAdapter,
    return_url: str,
) -> CheckoutSession:
    """Call the gateway and store its redirect on the session.

    ``ProviderStartError`` propagates and the session keeps its state.
    """
    result = adapter.start(
        StartCheckoutRequest(
            session_id=session.id,
            amount=session.amount,
            currency=session.currency,
            return_url=return_url,
        )
    )
    with transaction(db):
        session.redirect_url = result.redirect_url
        session.return_url = return_url
        session.status = CheckoutStatus.redirected
        session.provider_init_payload = {
            **(session.provider_init_payload or {}),
            "gateway": {"provider_ref": result.provider_ref, "response": result.raw},
        }
    logger.info(
        "Checkout %s redirected to %s",
        session.id,
        adapter.name,
        extra={"provider": adapter.name},
    )
    return session


def start_checkout_session(
    db: Session,
    user_id,
    price_id,
    provider: str | None = None,
    return_url: str | None = None,
) -> CheckoutResult:
    adapter = get_adapter(provider or settings.billing_default_provider)
    price = db.get(Price, coerce_uuid(price_id))
    if price is None or not price.is_active:
        raise PriceNotFoundError(f"Price not found: {price_id}")
    if price.currency != settings.billing_currency:
        raise UnsupportedCurrencyError(f"Unsupported currency: {price.currency}")
    product = price.resolve_product()
    purchase_type = PURCHASE_TYPE_BY_PRODUCT.get(product.type) if product else None
    if purchase_type is None:
        raise PriceNotFoundError(f"Price {price_id} is not sold through checkout")

    with transaction(db):
        session = CheckoutSession(
            user_id=coerce_uuid(user_id),
            provider=Provider(adapter.name),
            price_id=price.id,
            purchase_type=purchase_type,
            amount=price.amount,
            currency=price.currency,
            status=CheckoutStatus.started,
            provider_init_payload={},
        )
        db.add(session)
        db.flush()

    resolved_return_url = build_return_url(return_url, f"/checkout/{session.id}/success")
    try:
        start_with_adapter(db, session, adapter, resolved_return_url)
    except ProviderStartError:
        with transaction(db):
            session.status = CheckoutStatus.failed
        raise
    return CheckoutResult(
        session_id=session.id,
        redirect_url=session.redirect_url,
        return_url=session.return_url,
    )
