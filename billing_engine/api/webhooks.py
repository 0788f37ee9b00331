"""Payment provider callbacks. No user auth; the body signature is the credential."""
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from billing_engine.api.deps import get_db
from billing_engine.models.billing import WebhookLogStatus
from billing_engine.schemas.billing import WebhookResult
from billing_engine.services.billing.webhooks import ingest_webhook

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhooks", tags=["webhooks"])

REASON_STATUS = {
    "invalid_signature": 400,
    "invalid_payload": 400,
    "checkout_session_not_found": 404,
    "provider_mismatch": 409,
}


@router.post("/{provider}", response_model=WebhookResult)
async def receive_webhook(
    provider: str,
    request: Request,
    x_webhook_signature: str | None = Header(default=None),
    db: Session = Depends(get_db),
) -> WebhookResult:
    body = await request.body()
    result = ingest_webhook(db, provider, body, x_webhook_signature)
    if result.status in (WebhookLogStatus.invalid, WebhookLogStatus.rejected):
        raise HTTPException(
            status_code=REASON_STATUS.get(result.reason or "", 400),
            detail={
                "code": result.reason,
                "message": f"Webhook {result.status.value}",
                "details": {"log_id": str(result.log_id) if result.log_id else None},
            },
        )
    return result
