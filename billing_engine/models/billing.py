import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_engine.db import Base, TimestampMixin, UTCDateTime

# ── Enums ────────────────────────────────────────────────


class Provider(str, enum.Enum):
    zarinpal = "zarinpal"
    idpay = "idpay"
    nextpay = "nextpay"


class ProductType(str, enum.Enum):
    SUBSCRIPTION = "SUBSCRIPTION"
    JOB_POST = "JOB_POST"
    COURSE = "COURSE"


class PlanCycle(str, enum.Enum):
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    YEARLY = "YEARLY"


class PurchaseType(str, enum.Enum):
    subscription = "subscription"
    job_credit = "job_credit"
    course_semester = "course_semester"


class CheckoutStatus(str, enum.Enum):
    started = "started"
    redirected = "redirected"
    succeeded = "succeeded"
    failed = "failed"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class InvoiceType(str, enum.Enum):
    SALE = "SALE"
    REFUND = "REFUND"


class InvoiceStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    PAID = "PAID"
    VOID = "VOID"
    REFUNDED = "REFUNDED"


class SubscriptionStatus(str, enum.Enum):
    active = "active"
    renewing = "renewing"
    canceled = "canceled"
    expired = "expired"


ACTIVE_SUBSCRIPTION_STATUSES = frozenset(
    {SubscriptionStatus.active, SubscriptionStatus.renewing}
)


class EntitlementKey(str, enum.Enum):
    CAN_PUBLISH_PROFILE = "CAN_PUBLISH_PROFILE"
    JOB_POST_CREDIT = "JOB_POST_CREDIT"


class WebhookLogStatus(str, enum.Enum):
    received = "received"
    handled = "handled"
    rejected = "rejected"
    failed = "failed"
    invalid = "invalid"


# ── Catalog ──────────────────────────────────────────────


class Product(TimestampMixin, Base):
    __tablename__ = "products"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[ProductType] = mapped_column(Enum(ProductType), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON)

    plans = relationship("Plan", back_populates="product")
    prices = relationship("Price", back_populates="product")


class Plan(TimestampMixin, Base):
    __tablename__ = "plans"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    product_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("products.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    cycle: Mapped[PlanCycle] = mapped_column(Enum(PlanCycle), nullable=False)
    limits: Mapped[dict | None] = mapped_column(JSON)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    product = relationship("Product", back_populates="plans")
    prices = relationship("Price", back_populates="plan")


class Price(TimestampMixin, Base):
    __tablename__ = "prices"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    plan_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("plans.id"), index=True
    )
    product_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("products.id"), index=True
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="IRR")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON)

    plan = relationship("Plan", back_populates="prices")
    product = relationship("Product", back_populates="prices")

    def resolve_product(self) -> Product | None:
        if self.plan is not None and self.plan.product is not None:
            return self.plan.product
        return self.product


# ── Checkout & Payments ──────────────────────────────────


class CheckoutSession(TimestampMixin, Base):
    __tablename__ = "checkout_sessions"
    __table_args__ = (
        UniqueConstraint(
            "idempotency_key", name="uq_checkout_sessions_idempotency_key"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )
    provider: Mapped[Provider] = mapped_column(Enum(Provider), nullable=False)
    price_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("prices.id"), index=True
    )
    purchase_type: Mapped[PurchaseType] = mapped_column(
        Enum(PurchaseType), nullable=False
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="IRR")
    status: Mapped[CheckoutStatus] = mapped_column(
        Enum(CheckoutStatus), default=CheckoutStatus.started
    )
    enrollment_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("enrollments.id"), index=True
    )
    payment_mode: Mapped[str | None] = mapped_column(String(20))
    installment_index: Mapped[int | None] = mapped_column(Integer)
    idempotency_key: Mapped[str | None] = mapped_column(String(255))
    redirect_url: Mapped[str] = mapped_column(Text, default="")
    return_url: Mapped[str] = mapped_column(Text, default="")
    provider_init_payload: Mapped[dict | None] = mapped_column(JSON)
    provider_callback_payload: Mapped[dict | None] = mapped_column(JSON)

    price = relationship("Price")
    payments = relationship("Payment", back_populates="session")

    def derive_provider_ref(self) -> str:
        """Stable payment reference for this purchase attempt.

        Gateways may issue a new authority on every retry, so the reference
        comes from the session itself; the authority stays in
        ``provider_init_payload``.
        """
        return str(self.id)


class Payment(TimestampMixin, Base):
    __tablename__ = "payments"
    __table_args__ = (
        UniqueConstraint(
            "provider", "provider_ref", name="uq_payments_provider_provider_ref"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    provider: Mapped[Provider] = mapped_column(Enum(Provider), nullable=False)
    provider_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    provider_transaction_id: Mapped[str | None] = mapped_column(String(255))
    status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus), default=PaymentStatus.PENDING
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="IRR")
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )
    checkout_session_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("checkout_sessions.id"), nullable=False, index=True
    )

    session = relationship("CheckoutSession", back_populates="payments")
    invoice = relationship("Invoice", back_populates="payment", uselist=False)


# ── Invoicing ────────────────────────────────────────────


class Invoice(TimestampMixin, Base):
    __tablename__ = "invoices"
    __table_args__ = (
        UniqueConstraint("payment_id", name="uq_invoices_payment_id"),
        UniqueConstraint("number", name="uq_invoices_number"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    payment_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("payments.id"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )
    number: Mapped[str | None] = mapped_column(String(40))
    type: Mapped[InvoiceType] = mapped_column(
        Enum(InvoiceType), default=InvoiceType.SALE
    )
    status: Mapped[InvoiceStatus] = mapped_column(
        Enum(InvoiceStatus), default=InvoiceStatus.DRAFT
    )
    total: Mapped[int] = mapped_column(Integer, default=0)
    currency: Mapped[str] = mapped_column(String(3), default="IRR")
    provider_ref: Mapped[str | None] = mapped_column(String(255))
    issued_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    plan_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True))
    plan_name: Mapped[str | None] = mapped_column(String(255))
    plan_cycle: Mapped[PlanCycle | None] = mapped_column(Enum(PlanCycle))
    period_start: Mapped[datetime | None] = mapped_column(UTCDateTime())
    period_end: Mapped[datetime | None] = mapped_column(UTCDateTime())
    unit_amount: Mapped[int | None] = mapped_column(Integer)
    quantity: Mapped[int | None] = mapped_column(Integer)
    notes: Mapped[str | None] = mapped_column(Text)

    payment = relationship("Payment", back_populates="invoice")


class InvoiceSequence(TimestampMixin, Base):
    __tablename__ = "invoice_sequences"
    __table_args__ = (
        UniqueConstraint("sequence_date", name="uq_invoice_sequences_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    sequence_date: Mapped[str] = mapped_column(String(8), nullable=False)
    counter: Mapped[int] = mapped_column(Integer, default=0)


# ── Subscriptions & Entitlements ─────────────────────────


class Subscription(TimestampMixin, Base):
    __tablename__ = "subscriptions"
    __table_args__ = (UniqueConstraint("user_id", name="uq_subscriptions_user_id"),)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    plan_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("plans.id"), nullable=False, index=True
    )
    status: Mapped[SubscriptionStatus] = mapped_column(
        Enum(SubscriptionStatus), default=SubscriptionStatus.active
    )
    started_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    ends_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    renewal_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False)
    canceled_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    provider_ref: Mapped[str | None] = mapped_column(String(255))

    plan = relationship("Plan")


class UserEntitlement(TimestampMixin, Base):
    __tablename__ = "user_entitlements"
    __table_args__ = (
        Index("ix_user_entitlements_user_key", "user_id", "key"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    key: Mapped[EntitlementKey] = mapped_column(Enum(EntitlementKey), nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    remaining_credits: Mapped[int | None] = mapped_column(Integer)


class JobCreditGrant(TimestampMixin, Base):
    __tablename__ = "job_credit_grants"
    __table_args__ = (
        UniqueConstraint("payment_id", name="uq_job_credit_grants_payment_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )
    payment_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("payments.id"), nullable=False
    )
    credits: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(80), nullable=False)


# ── Webhook Tracking ─────────────────────────────────────


class PaymentWebhookLog(TimestampMixin, Base):
    __tablename__ = "payment_webhook_logs"
    __table_args__ = (
        UniqueConstraint(
            "provider", "external_id", name="uq_payment_webhook_logs_provider_external"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    provider: Mapped[str] = mapped_column(String(40), nullable=False)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str | None] = mapped_column(String(120))
    signature: Mapped[str | None] = mapped_column(String(255))
    payload: Mapped[dict | None] = mapped_column(JSON)
    status: Mapped[WebhookLogStatus] = mapped_column(
        Enum(WebhookLogStatus), default=WebhookLogStatus.received
    )
    error_code: Mapped[str | None] = mapped_column(String(80))
    error_message: Mapped[str | None] = mapped_column(Text)
    payment_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("payments.id"), index=True
    )
    handled_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
