import enum
from uuid import UUID

from pydantic import BaseModel, Field

from billing_engine.models.course import PaymentMode


class CourseCheckoutReason(str, enum.Enum):
    ENROLLMENT_NOT_FOUND = "ENROLLMENT_NOT_FOUND"
    FORBIDDEN = "FORBIDDEN"
    ALREADY_PAID = "ALREADY_PAID"
    INVALID_ENROLLMENT_STATUS = "INVALID_ENROLLMENT_STATUS"
    PAYMENT_MODE_MISMATCH = "PAYMENT_MODE_MISMATCH"
    COURSE_NOT_PUBLISHED = "COURSE_NOT_PUBLISHED"
    SEMESTER_NOT_OPEN = "SEMESTER_NOT_OPEN"
    UNSUPPORTED_CURRENCY = "UNSUPPORTED_CURRENCY"
    INSTALLMENTS_DISABLED = "INSTALLMENTS_DISABLED"
    INVALID_INSTALLMENT = "INVALID_INSTALLMENT"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    UNKNOWN_PROVIDER = "UNKNOWN_PROVIDER"
    PROVIDER_UNAVAILABLE = "PROVIDER_UNAVAILABLE"


class LumpSumPricing(BaseModel):
    base: int
    discount: int
    total: int


class InstallmentPricing(BaseModel):
    count: int
    amount_per_installment: int
    last_installment_amount: int


class SemesterPricing(BaseModel):
    tuition_amount: int
    lump_sum: LumpSumPricing
    installments: InstallmentPricing | None = None

    @property
    def lump_sum_payable(self) -> int:
        return self.lump_sum.total


class CourseCheckoutRequest(BaseModel):
    payment_mode: PaymentMode
    installment_index: int | None = Field(default=None, ge=1)
    provider: str | None = None
    return_url: str | None = None


class CourseCheckoutResult(BaseModel):
    ok: bool
    reason: CourseCheckoutReason | None = None
    session_id: UUID | None = None
    redirect_url: str | None = None
    return_url: str | None = None
    amount: int | None = None
    installment_index: int | None = None
