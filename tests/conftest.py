import hashlib
import hmac
import json
import os
import uuid
from datetime import UTC, datetime
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.pool import StaticPool

# Settings read the environment at import time; set it before any package import.
WEBHOOK_SECRET = "test-webhook-secret"
SWEEP_TOKEN = "test-sweep-token"
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["WEBHOOK_SHARED_SECRET"] = WEBHOOK_SECRET
os.environ["ZARINPAL_WEBHOOK_SECRET"] = ""
os.environ["IDPAY_WEBHOOK_SECRET"] = ""
os.environ["NEXTPAY_WEBHOOK_SECRET"] = ""
os.environ["BILLING_SWEEP_TOKEN"] = SWEEP_TOKEN
os.environ["BILLING_PUBLIC_BASE_URL"] = "https://app.example.test"
os.environ["BILLING_PROVIDER_SANDBOX"] = "true"
os.environ["BILLING_CURRENCY"] = "IRR"
os.environ["BILLING_DEFAULT_PROVIDER"] = "zarinpal"
os.environ["ZARINPAL_MERCHANT_ID"] = "test-merchant"
os.environ["IDPAY_API_KEY"] = "test-idpay-key"
os.environ["NEXTPAY_API_KEY"] = "test-nextpay-key"
os.environ["CORS_ORIGINS"] = ""

_test_engine = create_engine(
    "sqlite+pysqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


# pysqlite's own transaction handling breaks SAVEPOINT; let SQLAlchemy emit BEGIN.
@event.listens_for(_test_engine, "connect")
def _disable_pysqlite_transactions(dbapi_connection, connection_record):
    dbapi_connection.isolation_level = None


@event.listens_for(_test_engine, "begin")
def _emit_begin(conn):
    conn.exec_driver_sql("BEGIN")


from billing_engine import models  # noqa: E402,F401
from billing_engine.db import Base, SessionLocal, configure_session  # noqa: E402
from billing_engine.models.billing import (  # noqa: E402
    CheckoutSession,
    CheckoutStatus,
    Payment,
    PaymentStatus,
    Plan,
    PlanCycle,
    Price,
    Product,
    ProductType,
    Provider,
    PurchaseType,
)
from billing_engine.models.course import (  # noqa: E402
    Course,
    CourseStatus,
    Enrollment,
    EnrollmentStatus,
    PaymentMode,
    Semester,
    SemesterStatus,
)
from billing_engine.models.profile import Profile, ProfileVisibility  # noqa: E402
from billing_engine.services.billing import events  # noqa: E402

configure_session(_test_engine)
Base.metadata.create_all(_test_engine)


@pytest.fixture(scope="session")
def engine():
    return _test_engine


@pytest.fixture(autouse=True)
def _clean_database():
    yield
    events.clear()
    with _test_engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture()
def db_session():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture()
def user_id():
    return uuid.uuid4()


@pytest.fixture()
def jan_first():
    return datetime(2025, 1, 1, tzinfo=UTC)


# ============ Catalog ============


@pytest.fixture()
def subscription_plan(db_session):
    product = Product(name="Talent Pro", type=ProductType.SUBSCRIPTION)
    plan = Plan(product=product, name="Pro Monthly", cycle=PlanCycle.MONTHLY)
    db_session.add_all([product, plan])
    db_session.commit()
    return plan


@pytest.fixture()
def subscription_price(db_session, subscription_plan):
    price = Price(plan=subscription_plan, amount=500_000, currency="IRR")
    db_session.add(price)
    db_session.commit()
    return price


@pytest.fixture()
def job_credit_price(db_session):
    product = Product(
        name="Job post bundle",
        type=ProductType.JOB_POST,
        metadata_={"job_credits": 3},
    )
    price = Price(product=product, amount=200_000, currency="IRR")
    db_session.add_all([product, price])
    db_session.commit()
    return price


@pytest.fixture()
def make_session(db_session):
    """Build a CheckoutSession for a catalog price."""

    def _make(user_id, price, provider=Provider.zarinpal, purchase_type=None):
        if purchase_type is None:
            product = price.resolve_product()
            purchase_type = (
                PurchaseType.subscription
                if product.type == ProductType.SUBSCRIPTION
                else PurchaseType.job_credit
            )
        session = CheckoutSession(
            user_id=user_id,
            provider=provider,
            price_id=price.id,
            purchase_type=purchase_type,
            amount=price.amount,
            currency=price.currency,
            status=CheckoutStatus.redirected,
            provider_init_payload={},
        )
        db_session.add(session)
        db_session.commit()
        return session

    return _make


@pytest.fixture()
def make_paid_payment(db_session, make_session):
    """A PAID payment (no invoice) for ``price``, bypassing the webhook path."""

    def _make(user_id, price, status=PaymentStatus.PAID):
        session = make_session(user_id, price)
        payment = Payment(
            provider=session.provider,
            provider_ref=session.derive_provider_ref(),
            status=status,
            amount=session.amount,
            currency=session.currency,
            user_id=user_id,
            checkout_session_id=session.id,
        )
        db_session.add(payment)
        db_session.commit()
        return payment

    return _make


@pytest.fixture()
def public_profile(db_session, user_id):
    profile = Profile(
        user_id=user_id,
        display_name="Test Talent",
        visibility=ProfileVisibility.public,
        published_at=datetime(2024, 12, 1, tzinfo=UTC),
    )
    db_session.add(profile)
    db_session.commit()
    return profile


# ============ Courses ============


@pytest.fixture()
def semester(db_session):
    course = Course(title="Screen Acting 101", status=CourseStatus.published)
    semester = Semester(
        course=course,
        title="Spring 2025",
        status=SemesterStatus.open,
        starts_at=datetime(2025, 1, 1, tzinfo=UTC),
        tuition_amount=3_000_000,
        currency="IRR",
        lump_sum_discount_amount=300_000,
        installment_plan_enabled=True,
        installment_count=3,
    )
    db_session.add_all([course, semester])
    db_session.commit()
    return semester


@pytest.fixture()
def make_enrollment(db_session, semester):
    def _make(user_id, mode=PaymentMode.installments):
        enrollment = Enrollment(
            user_id=user_id,
            semester_id=semester.id,
            status=EnrollmentStatus.pending_payment,
            chosen_payment_mode=mode,
        )
        db_session.add(enrollment)
        db_session.commit()
        return enrollment

    return _make


# ============ Gateways and webhooks ============


def _sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def _webhook_body(payload: dict) -> tuple[bytes, str]:
    body = json.dumps(payload).encode()
    return body, _sign(body)


@pytest.fixture()
def sign():
    """Hex HMAC-SHA256 of a raw body under the shared webhook secret."""
    return _sign


@pytest.fixture()
def webhook_body():
    """Serialize a payload and sign it: returns ``(body, signature)``."""
    return _webhook_body


@pytest.fixture()
def gateway():
    """Patch outbound gateway HTTP; returns the mocked client.

    Defaults to a successful Zarinpal payment request.
    """
    response = MagicMock()
    response.status_code = 200
    response.json.return_value = {"data": {"code": 100, "authority": "A000000001"}}
    client = MagicMock()
    client.__enter__.return_value = client
    client.__exit__.return_value = False
    client.post.return_value = response
    with patch(
        "billing_engine.services.billing.providers.httpx.Client", return_value=client
    ):
        yield client


# ============ FastAPI Test Client Fixtures ============


@pytest.fixture()
def client(db_session):
    """Create a test client with database dependency override."""
    from billing_engine.api.deps import get_db as api_get_db
    from billing_engine.main import app

    def override_get_db():
        yield db_session

    app.dependency_overrides[api_get_db] = override_get_db

    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture()
def user_headers(user_id):
    return {"x-user-id": str(user_id)}


@pytest.fixture()
def operator_headers():
    return {"x-billing-sweep-token": SWEEP_TOKEN}
