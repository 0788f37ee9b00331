import logging
import uuid
from datetime import datetime

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from billing_engine.models.billing import EntitlementKey, UserEntitlement
from billing_engine.models.profile import Profile, ProfileVisibility

logger = logging.getLogger(__name__)

UNPUBLISH_REASON = "ENTITLEMENT_EXPIRED"


def auto_unpublish_if_no_entitlement(
    db: Session, user_id: uuid.UUID, now: datetime
) -> bool:
    """Hide a public profile whose owner lost CAN_PUBLISH_PROFILE.

    Runs inside the caller's transaction. Returns True only when a profile
    was actually flipped to private.
    """
    still_entitled = db.scalar(
        select(UserEntitlement.id)
        .where(
            UserEntitlement.user_id == user_id,
            UserEntitlement.key == EntitlementKey.CAN_PUBLISH_PROFILE,
            or_(
                UserEntitlement.expires_at.is_(None),
                UserEntitlement.expires_at > now,
            ),
        )
        .limit(1)
    )
    if still_entitled is not None:
        return False

    result = db.execute(
        update(Profile)
        .where(
            Profile.user_id == user_id,
            Profile.visibility == ProfileVisibility.public,
        )
        .values(
            visibility=ProfileVisibility.private,
            published_at=None,
            unpublished_reason=UNPUBLISH_REASON,
            updated_at=now,
        )
        .execution_options(synchronize_session="fetch")
    )
    flipped = result.rowcount > 0
    if flipped:
        logger.info("Unpublished profile of user %s", user_id, extra={"user_id": user_id})
    return flipped
