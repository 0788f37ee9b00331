from billing_engine.schemas.course import (
    InstallmentPricing,
    LumpSumPricing,
    SemesterPricing,
)

MIN_INSTALLMENTS = 2


def compute_semester_pricing(semester) -> SemesterPricing:
    """Price a semester up front or in installments.

    Installments split the undiscounted tuition; the last one absorbs the
    rounding remainder, which is zero when the split is even.
    """
    base = max(0, int(semester.tuition_amount or 0))
    discount = min(base, max(0, int(semester.lump_sum_discount_amount or 0)))
    installments = None
    if semester.installment_plan_enabled and semester.installment_count:
        count = max(MIN_INSTALLMENTS, int(semester.installment_count))
        per_installment = base // count
        remainder = base - per_installment * count
        installments = InstallmentPricing(
            count=count,
            amount_per_installment=per_installment,
            last_installment_amount=per_installment + remainder,
        )
    return SemesterPricing(
        tuition_amount=base,
        lump_sum=LumpSumPricing(base=base, discount=discount, total=base - discount),
        installments=installments,
    )


def installment_amounts(pricing: SemesterPricing) -> list[int]:
    plan = pricing.installments
    if plan is None:
        return []
    return [plan.amount_per_installment] * (plan.count - 1) + [
        plan.last_installment_amount
    ]
