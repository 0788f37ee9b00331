from billing_engine.models.audit import AuditActorType, AuditLog  # noqa: F401
from billing_engine.models.billing import (  # noqa: F401
    ACTIVE_SUBSCRIPTION_STATUSES,
    CheckoutSession,
    CheckoutStatus,
    EntitlementKey,
    Invoice,
    InvoiceSequence,
    InvoiceStatus,
    InvoiceType,
    JobCreditGrant,
    Payment,
    PaymentStatus,
    PaymentWebhookLog,
    Plan,
    PlanCycle,
    Price,
    Product,
    ProductType,
    Provider,
    PurchaseType,
    Subscription,
    SubscriptionStatus,
    UserEntitlement,
    WebhookLogStatus,
)
from billing_engine.models.course import (  # noqa: F401
    Course,
    CoursePaymentInstallment,
    CoursePaymentPlan,
    CourseStatus,
    Enrollment,
    EnrollmentStatus,
    InstallmentStatus,
    PaymentMode,
    Semester,
    SemesterStatus,
)
from billing_engine.models.profile import Profile, ProfileVisibility  # noqa: F401
