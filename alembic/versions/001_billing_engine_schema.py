"""billing engine schema

Revision ID: 001_billing_engine
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "001_billing_engine"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    # Catalog
    op.create_table(
        "products",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column(
            "type",
            sa.Enum("SUBSCRIPTION", "JOB_POST", "COURSE", name="producttype"),
            nullable=False,
        ),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "plans",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("product_id", sa.UUID(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column(
            "cycle",
            sa.Enum("MONTHLY", "QUARTERLY", "YEARLY", name="plancycle"),
            nullable=False,
        ),
        sa.Column("limits", sa.JSON(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_plans_product_id", "plans", ["product_id"])

    op.create_table(
        "prices",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("plan_id", sa.UUID(), nullable=True),
        sa.Column("product_id", sa.UUID(), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["plan_id"], ["plans.id"]),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_prices_plan_id", "prices", ["plan_id"])
    op.create_index("ix_prices_product_id", "prices", ["product_id"])

    # Courses
    op.create_table(
        "courses",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column(
            "status",
            sa.Enum("draft", "published", "archived", name="coursestatus"),
            nullable=True,
        ),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "semesters",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("course_id", sa.UUID(), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column(
            "status",
            sa.Enum("draft", "open", "closed", name="semesterstatus"),
            nullable=True,
        ),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("tuition_amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=True),
        sa.Column("lump_sum_discount_amount", sa.Integer(), nullable=True),
        sa.Column("installment_plan_enabled", sa.Boolean(), nullable=True),
        sa.Column("installment_count", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["course_id"], ["courses.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_semesters_course_id", "semesters", ["course_id"])

    op.create_table(
        "enrollments",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("user_id", sa.UUID(), nullable=False),
        sa.Column("semester_id", sa.UUID(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending_payment", "active", "canceled", name="enrollmentstatus"),
            nullable=True,
        ),
        sa.Column(
            "chosen_payment_mode",
            sa.Enum("lumpsum", "installments", name="paymentmode"),
            nullable=True,
        ),
        *_timestamps(),
        sa.ForeignKeyConstraint(["semester_id"], ["semesters.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_enrollments_user_id", "enrollments", ["user_id"])
    op.create_index("ix_enrollments_semester_id", "enrollments", ["semester_id"])

    # Checkout and payments
    op.create_table(
        "checkout_sessions",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("user_id", sa.UUID(), nullable=False),
        sa.Column(
            "provider",
            sa.Enum("zarinpal", "idpay", "nextpay", name="provider"),
            nullable=False,
        ),
        sa.Column("price_id", sa.UUID(), nullable=True),
        sa.Column(
            "purchase_type",
            sa.Enum("subscription", "job_credit", "course_semester", name="purchasetype"),
            nullable=False,
        ),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column(
            "status",
            sa.Enum("started", "redirected", "succeeded", "failed", name="checkoutstatus"),
            nullable=True,
        ),
        sa.Column("enrollment_id", sa.UUID(), nullable=True),
        sa.Column("payment_mode", sa.String(length=20), nullable=True),
        sa.Column("installment_index", sa.Integer(), nullable=True),
        sa.Column("idempotency_key", sa.String(length=255), nullable=True),
        sa.Column("redirect_url", sa.Text(), nullable=True),
        sa.Column("return_url", sa.Text(), nullable=True),
        sa.Column("provider_init_payload", sa.JSON(), nullable=True),
        sa.Column("provider_callback_payload", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["price_id"], ["prices.id"]),
        sa.ForeignKeyConstraint(["enrollment_id"], ["enrollments.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "idempotency_key", name="uq_checkout_sessions_idempotency_key"
        ),
    )
    op.create_index("ix_checkout_sessions_user_id", "checkout_sessions", ["user_id"])
    op.create_index("ix_checkout_sessions_price_id", "checkout_sessions", ["price_id"])
    op.create_index(
        "ix_checkout_sessions_enrollment_id", "checkout_sessions", ["enrollment_id"]
    )

    op.create_table(
        "payments",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column(
            "provider",
            postgresql.ENUM(name="provider", create_type=False),
            nullable=False,
        ),
        sa.Column("provider_ref", sa.String(length=255), nullable=False),
        sa.Column("provider_transaction_id", sa.String(length=255), nullable=True),
        sa.Column(
            "status",
            sa.Enum("PENDING", "PAID", "FAILED", "REFUNDED", name="paymentstatus"),
            nullable=True,
        ),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("user_id", sa.UUID(), nullable=False),
        sa.Column("checkout_session_id", sa.UUID(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["checkout_session_id"], ["checkout_sessions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "provider", "provider_ref", name="uq_payments_provider_provider_ref"
        ),
    )
    op.create_index("ix_payments_user_id", "payments", ["user_id"])
    op.create_index(
        "ix_payments_checkout_session_id", "payments", ["checkout_session_id"]
    )

    # Invoicing
    op.create_table(
        "invoices",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("payment_id", sa.UUID(), nullable=False),
        sa.Column("user_id", sa.UUID(), nullable=False),
        sa.Column("number", sa.String(length=40), nullable=True),
        sa.Column(
            "type", sa.Enum("SALE", "REFUND", name="invoicetype"), nullable=True
        ),
        sa.Column(
            "status",
            sa.Enum("DRAFT", "PAID", "VOID", "REFUNDED", name="invoicestatus"),
            nullable=True,
        ),
        sa.Column("total", sa.Integer(), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=True),
        sa.Column("provider_ref", sa.String(length=255), nullable=True),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("plan_id", sa.UUID(), nullable=True),
        sa.Column("plan_name", sa.String(length=255), nullable=True),
        sa.Column(
            "plan_cycle",
            postgresql.ENUM(name="plancycle", create_type=False),
            nullable=True,
        ),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("unit_amount", sa.Integer(), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["payment_id"], ["payments.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("payment_id", name="uq_invoices_payment_id"),
        sa.UniqueConstraint("number", name="uq_invoices_number"),
    )
    op.create_index("ix_invoices_user_id", "invoices", ["user_id"])

    op.create_table(
        "invoice_sequences",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("sequence_date", sa.String(length=8), nullable=False),
        sa.Column("counter", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("sequence_date", name="uq_invoice_sequences_date"),
    )

    # Subscriptions and entitlements
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("user_id", sa.UUID(), nullable=False),
        sa.Column("plan_id", sa.UUID(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("active", "renewing", "canceled", "expired", name="subscriptionstatus"),
            nullable=True,
        ),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("renewal_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=True),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("provider_ref", sa.String(length=255), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["plan_id"], ["plans.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", name="uq_subscriptions_user_id"),
    )
    op.create_index("ix_subscriptions_plan_id", "subscriptions", ["plan_id"])

    op.create_table(
        "user_entitlements",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("user_id", sa.UUID(), nullable=False),
        sa.Column(
            "key",
            sa.Enum("CAN_PUBLISH_PROFILE", "JOB_POST_CREDIT", name="entitlementkey"),
            nullable=False,
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("remaining_credits", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_user_entitlements_user_key", "user_entitlements", ["user_id", "key"]
    )

    op.create_table(
        "job_credit_grants",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("user_id", sa.UUID(), nullable=False),
        sa.Column("payment_id", sa.UUID(), nullable=False),
        sa.Column("credits", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(length=80), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["payment_id"], ["payments.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("payment_id", name="uq_job_credit_grants_payment_id"),
    )
    op.create_index("ix_job_credit_grants_user_id", "job_credit_grants", ["user_id"])

    op.create_table(
        "payment_webhook_logs",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("provider", sa.String(length=40), nullable=False),
        sa.Column("external_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=120), nullable=True),
        sa.Column("signature", sa.String(length=255), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column(
            "status",
            sa.Enum(
                "received",
                "handled",
                "rejected",
                "failed",
                "invalid",
                name="webhooklogstatus",
            ),
            nullable=True,
        ),
        sa.Column("error_code", sa.String(length=80), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("payment_id", sa.UUID(), nullable=True),
        sa.Column("handled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["payment_id"], ["payments.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "provider", "external_id", name="uq_payment_webhook_logs_provider_external"
        ),
    )
    op.create_index(
        "ix_payment_webhook_logs_payment_id", "payment_webhook_logs", ["payment_id"]
    )

    # Course payment plans
    op.create_table(
        "course_payment_plans",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("enrollment_id", sa.UUID(), nullable=False),
        sa.Column("installment_count", sa.Integer(), nullable=False),
        sa.Column("installment_amount", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["enrollment_id"], ["enrollments.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("enrollment_id", name="uq_course_payment_plans_enrollment"),
    )

    op.create_table(
        "course_payment_installments",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("enrollment_id", sa.UUID(), nullable=False),
        sa.Column("index", sa.Integer(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("due", "paid", "failed", name="installmentstatus"),
            nullable=True,
        ),
        sa.Column("due_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid_payment_id", sa.UUID(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["enrollment_id"], ["enrollments.id"]),
        sa.ForeignKeyConstraint(["paid_payment_id"], ["payments.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "enrollment_id", "index", name="uq_course_payment_installments_index"
        ),
    )
    op.create_index(
        "ix_course_payment_installments_enrollment_id",
        "course_payment_installments",
        ["enrollment_id"],
    )

    # Collaborators
    op.create_table(
        "audit_logs",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "actor_type",
            sa.Enum("system", "user", "admin", "provider", name="auditactortype"),
            nullable=True,
        ),
        sa.Column("actor_id", sa.String(length=120), nullable=True),
        sa.Column("action", sa.String(length=80), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("resource_type", sa.String(length=80), nullable=False),
        sa.Column("resource_id", sa.String(length=120), nullable=True),
        sa.Column("before", sa.JSON(), nullable=True),
        sa.Column("after", sa.JSON(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("idempotency_key", sa.String(length=255), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_key", name="uq_audit_logs_idempotency_key"),
    )

    op.create_table(
        "profiles",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("user_id", sa.UUID(), nullable=False),
        sa.Column("display_name", sa.String(length=255), nullable=True),
        sa.Column(
            "visibility",
            sa.Enum("public", "private", name="profilevisibility"),
            nullable=True,
        ),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("unpublished_reason", sa.String(length=80), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", name="uq_profiles_user_id"),
    )


def downgrade() -> None:
    op.drop_table("profiles")
    op.drop_table("audit_logs")

    op.drop_index(
        "ix_course_payment_installments_enrollment_id",
        table_name="course_payment_installments",
    )
    op.drop_table("course_payment_installments")
    op.drop_table("course_payment_plans")

    op.drop_index(
        "ix_payment_webhook_logs_payment_id", table_name="payment_webhook_logs"
    )
    op.drop_table("payment_webhook_logs")
    op.drop_index("ix_job_credit_grants_user_id", table_name="job_credit_grants")
    op.drop_table("job_credit_grants")
    op.drop_index("ix_user_entitlements_user_key", table_name="user_entitlements")
    op.drop_table("user_entitlements")
    op.drop_index("ix_subscriptions_plan_id", table_name="subscriptions")
    op.drop_table("subscriptions")

    op.drop_table("invoice_sequences")
    op.drop_index("ix_invoices_user_id", table_name="invoices")
    op.drop_table("invoices")

    op.drop_index("ix_payments_checkout_session_id", table_name="payments")
    op.drop_index("ix_payments_user_id", table_name="payments")
    op.drop_table("payments")
    op.drop_index("ix_checkout_sessions_enrollment_id", table_name="checkout_sessions")
    op.drop_index("ix_checkout_sessions_price_id", table_name="checkout_sessions")
    op.drop_index("ix_checkout_sessions_user_id", table_name="checkout_sessions")
    op.drop_table("checkout_sessions")

    op.drop_index("ix_enrollments_semester_id", table_name="enrollments")
    op.drop_index("ix_enrollments_user_id", table_name="enrollments")
    op.drop_table("enrollments")
    op.drop_index("ix_semesters_course_id", table_name="semesters")
    op.drop_table("semesters")
    op.drop_table("courses")

    op.drop_index("ix_prices_product_id", table_name="prices")
    op.drop_index("ix_prices_plan_id", table_name="prices")
    op.drop_table("prices")
    op.drop_index("ix_plans_product_id", table_name="plans")
    op.drop_table("plans")
    op.drop_table("products")

    for enum_name in [
        "profilevisibility",
        "auditactortype",
        "installmentstatus",
        "webhooklogstatus",
        "entitlementkey",
        "subscriptionstatus",
        "invoicestatus",
        "invoicetype",
        "paymentstatus",
        "checkoutstatus",
        "purchasetype",
        "provider",
        "paymentmode",
        "enrollmentstatus",
        "semesterstatus",
        "coursestatus",
        "plancycle",
        "producttype",
    ]:
        sa.Enum(name=enum_name).drop(op.get_bind(), checkfirst=True)
