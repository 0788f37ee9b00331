import enum
import uuid
from datetime import datetime

from sqlalchemy import Boolean, Enum, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_engine.db import Base, TimestampMixin, UTCDateTime


class CourseStatus(str, enum.Enum):
    draft = "draft"
    published = "published"
    archived = "archived"


class SemesterStatus(str, enum.Enum):
    draft = "draft"
    open = "open"
    closed = "closed"


class EnrollmentStatus(str, enum.Enum):
    pending_payment = "pending_payment"
    active = "active"
    canceled = "canceled"


class PaymentMode(str, enum.Enum):
    lumpsum = "lumpsum"
    installments = "installments"


class InstallmentStatus(str, enum.Enum):
    due = "due"
    paid = "paid"
    failed = "failed"


class Course(TimestampMixin, Base):
    __tablename__ = "courses"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[CourseStatus] = mapped_column(
        Enum(CourseStatus), default=CourseStatus.draft
    )

    semesters = relationship("Semester", back_populates="course")


class Semester(TimestampMixin, Base):
    __tablename__ = "semesters"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    course_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("courses.id"), nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[SemesterStatus] = mapped_column(
        Enum(SemesterStatus), default=SemesterStatus.draft
    )
    starts_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    tuition_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="IRR")
    lump_sum_discount_amount: Mapped[int] = mapped_column(Integer, default=0)
    installment_plan_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    installment_count: Mapped[int | None] = mapped_column(Integer)

    course = relationship("Course", back_populates="semesters")


class Enrollment(TimestampMixin, Base):
    __tablename__ = "enrollments"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )
    semester_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("semesters.id"), nullable=False, index=True
    )
    status: Mapped[EnrollmentStatus] = mapped_column(
        Enum(EnrollmentStatus), default=EnrollmentStatus.pending_payment
    )
    chosen_payment_mode: Mapped[PaymentMode] = mapped_column(
        Enum(PaymentMode), default=PaymentMode.lumpsum
    )

    semester = relationship("Semester")


class CoursePaymentPlan(TimestampMixin, Base):
    __tablename__ = "course_payment_plans"
    __table_args__ = (
        UniqueConstraint("enrollment_id", name="uq_course_payment_plans_enrollment"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    enrollment_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("enrollments.id"), nullable=False
    )
    installment_count: Mapped[int] = mapped_column(Integer, nullable=False)
    installment_amount: Mapped[int] = mapped_column(Integer, nullable=False)


class CoursePaymentInstallment(TimestampMixin, Base):
    __tablename__ = "course_payment_installments"
    __table_args__ = (
        UniqueConstraint(
            "enrollment_id", "index", name="uq_course_payment_installments_index"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    enrollment_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("enrollments.id"), nullable=False, index=True
    )
    index: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[InstallmentStatus] = mapped_column(
        Enum(InstallmentStatus), default=InstallmentStatus.due
    )
    due_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    paid_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    paid_payment_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("payments.id")
    )
