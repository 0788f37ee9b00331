from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from starlette.responses import JSONResponse

from billing_engine.api.deps import get_current_user_id, get_db
from billing_engine.schemas.course import (
    CourseCheckoutReason,
    CourseCheckoutRequest,
    CourseCheckoutResult,
)
from billing_engine.services.courses.payments import create_course_checkout_session

router = APIRouter(prefix="/courses", tags=["courses"])

FAILURE_STATUS = {
    CourseCheckoutReason.ENROLLMENT_NOT_FOUND: 404,
    CourseCheckoutReason.FORBIDDEN: 403,
    CourseCheckoutReason.UNKNOWN_PROVIDER: 400,
    CourseCheckoutReason.PROVIDER_UNAVAILABLE: 502,
}


@router.post(
    "/enrollments/{enrollment_id}/checkout", response_model=CourseCheckoutResult
)
def start_course_checkout(
    enrollment_id: str,
    payload: CourseCheckoutRequest,
    user_id=Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    result = create_course_checkout_session(
        db,
        enrollment_id,
        user_id,
        payload.payment_mode,
        installment_index=payload.installment_index,
        provider=payload.provider,
        return_url=payload.return_url,
    )
    if result.ok:
        return result
    return JSONResponse(
        status_code=FAILURE_STATUS.get(result.reason, 409),
        content=result.model_dump(mode="json"),
    )
