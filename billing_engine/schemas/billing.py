from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from billing_engine.models.billing import (
    InvoiceStatus,
    InvoiceType,
    PaymentStatus,
    PlanCycle,
    Provider,
    SubscriptionStatus,
    WebhookLogStatus,
)

# ── JSON column payloads ─────────────────────────────────


class ProductMetadata(BaseModel):
    """Known keys of Product / Price / CheckoutSession metadata."""

    model_config = ConfigDict(extra="allow")
    job_credits: int | None = Field(default=None, ge=1)


# ── Provider adapter shapes ──────────────────────────────


class StartCheckoutRequest(BaseModel):
    session_id: UUID
    amount: int = Field(gt=0)
    currency: str = Field(min_length=3, max_length=3)
    return_url: str
    description: str | None = None


class StartCheckoutResult(BaseModel):
    redirect_url: str
    provider_ref: str | None = None
    raw: dict | None = None


class NormalizedWebhook(BaseModel):
    external_id: str
    session_id: str | None = None
    provider_transaction_id: str | None = None
    outcome_status: PaymentStatus = PaymentStatus.PENDING
    amount: int | None = None
    currency: str | None = None
    event_type: str | None = None


# ── Service results ──────────────────────────────────────


class WebhookResult(BaseModel):
    idempotent: bool = False
    status: WebhookLogStatus
    reason: str | None = None
    log_id: UUID | None = None
    payment_id: UUID | None = None
    invoice_id: UUID | None = None


class RecordResult(BaseModel):
    payment_id: UUID
    payment_status: PaymentStatus
    invoice_id: UUID | None = None
    invoice_created: bool = False
    newly_paid: bool = False
    refund_requested: bool = False


class ApplyPaymentResult(BaseModel):
    applied: bool
    reason: str | None = None
    mode: str | None = None
    subscription_id: UUID | None = None
    ends_at: datetime | None = None
    credits: int | None = None


class SyncSummary(BaseModel):
    users_checked: int = 0
    expired_marked: int = 0
    entitlements_granted: int = 0
    entitlements_revoked: int = 0
    profiles_unpublished: int = 0

    def mutation_count(self) -> int:
        return (
            self.expired_marked
            + self.entitlements_granted
            + self.entitlements_revoked
            + self.profiles_unpublished
        )


class UserSyncResult(BaseModel):
    granted: bool = False
    revoked: bool = False
    profile_unpublished: bool = False


class CheckoutResult(BaseModel):
    session_id: UUID
    redirect_url: str
    return_url: str


class ConfirmCheckoutResult(BaseModel):
    session_id: UUID
    payment_id: UUID | None = None
    confirmed: bool
    dispatch: ApplyPaymentResult | None = None


# ── Requests ─────────────────────────────────────────────


class CheckoutStartRequest(BaseModel):
    price_id: UUID
    provider: str | None = None
    return_url: str | None = None


class CancelAtPeriodEndRequest(BaseModel):
    cancel: bool = True


class RefundRequest(BaseModel):
    amount: int | None = Field(default=None, gt=0)
    reason: str | None = Field(default=None, max_length=500)


class VoidInvoiceRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


# ── Reads ────────────────────────────────────────────────


class SubscriptionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: UUID
    user_id: UUID
    plan_id: UUID
    status: SubscriptionStatus
    started_at: datetime
    ends_at: datetime
    renewal_at: datetime | None = None
    cancel_at_period_end: bool


class PaymentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: UUID
    provider: Provider
    provider_ref: str
    status: PaymentStatus
    amount: int
    currency: str


class InvoiceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: UUID
    payment_id: UUID
    number: str | None = None
    type: InvoiceType
    status: InvoiceStatus
    total: int
    currency: str
    plan_cycle: PlanCycle | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None
    notes: str | None = None
