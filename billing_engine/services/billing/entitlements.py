"""Entitlement sync: CAN_PUBLISH_PROFILE mirrors the user's subscription.

``sync_single_user`` runs inside the caller's transaction;
``sync_all_subscriptions`` is the self-healing sweep and gives every user
a transaction of their own.
"""
import logging
import uuid
from datetime import datetime

from sqlalchemy import or_, select, union, update
from sqlalchemy.orm import Session

from billing_engine.db import transaction, utcnow
from billing_engine.metrics import SWEEP_MUTATIONS, SWEEP_RUNS
from billing_engine.models.billing import (
    ACTIVE_SUBSCRIPTION_STATUSES,
    EntitlementKey,
    Subscription,
    SubscriptionStatus,
    UserEntitlement,
)
from billing_engine.schemas.billing import SyncSummary, UserSyncResult
from billing_engine.services.billing.subscriptions import lock_subscription
from billing_engine.services.common import coerce_uuid
from billing_engine.services.profile import auto_unpublish_if_no_entitlement

logger = logging.getLogger(__name__)

PUBLISH_KEY = EntitlementKey.CAN_PUBLISH_PROFILE


def _active_clause(now: datetime):
    return or_(UserEntitlement.expires_at.is_(None), UserEntitlement.expires_at > now)


def has_active_entitlement(
    db: Session, user_id, key: EntitlementKey, now: datetime | None = None
) -> bool:
    now = now or utcnow()
    query = select(UserEntitlement.id).where(
        UserEntitlement.user_id == coerce_uuid(user_id),
        UserEntitlement.key == key,
        _active_clause(now),
    )
    if key == EntitlementKey.JOB_POST_CREDIT:
        query = query.where(UserEntitlement.remaining_credits > 0)
    return db.scalar(query.limit(1)) is not None


def latest_publish_entitlement(db: Session, user_id) -> UserEntitlement | None:
    return db.scalar(
        select(UserEntitlement)
        .where(
            UserEntitlement.user_id == coerce_uuid(user_id),
            UserEntitlement.key == PUBLISH_KEY,
        )
        .order_by(UserEntitlement.expires_at.desc().nulls_first())
        .limit(1)
        .with_for_update()
    )


def grant_publish_until(
    db: Session, user_id, ends_at: datetime, now: datetime
) -> tuple[UserEntitlement, str]:
    """Make CAN_PUBLISH_PROFILE active until ``ends_at``.

    Returns the row and one of ``created``, ``updated`` or ``unchanged``.
    The expiry is only ever pushed forward, and an existing row is reused.
    """
    entitlement = latest_publish_entitlement(db, user_id)
    if entitlement is None:
        entitlement = UserEntitlement(
            user_id=coerce_uuid(user_id),
            key=PUBLISH_KEY,
            expires_at=ends_at,
        )
        db.add(entitlement)
        db.flush()
        return entitlement, "created"
    if entitlement.expires_at is not None and entitlement.expires_at < ends_at:
        entitlement.expires_at = ends_at
        entitlement.remaining_credits = None
        db.flush()
        return entitlement, "updated"
    return entitlement, "unchanged"


def _revoke_publish(db: Session, user_id: uuid.UUID, now: datetime) -> bool:
    result = db.execute(
        update(UserEntitlement)
        .where(
            UserEntitlement.user_id == user_id,
            UserEntitlement.key == PUBLISH_KEY,
            _active_clause(now),
        )
        .values(expires_at=now, updated_at=now)
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount > 0


def sync_single_user(db: Session, user_id, now: datetime | None = None) -> UserSyncResult:
    now = now or utcnow()
    user_id = coerce_uuid(user_id)
    result = UserSyncResult()
    subscription = lock_subscription(db, user_id)

    if (
        subscription is not None
        and subscription.status in ACTIVE_SUBSCRIPTION_STATUSES
        and now < subscription.ends_at
    ):
        _, action = grant_publish_until(db, user_id, subscription.ends_at, now)
        result.granted = action != "unchanged"
        return result

    result.revoked = _revoke_publish(db, user_id, now)
    result.profile_unpublished = auto_unpublish_if_no_entitlement(db, user_id, now)
    if result.revoked:
        logger.info(
            "Revoked %s for user %s", PUBLISH_KEY.value, user_id, extra={"user_id": user_id}
        )
    return result


def sync_user(db: Session, user_id, now: datetime | None = None) -> UserSyncResult:
    with transaction(db):
        return sync_single_user(db, user_id, now)


def _expire_lapsed(db: Session, now: datetime) -> int:
    with transaction(db):
        result = db.execute(
            update(Subscription)
            .where(
                Subscription.ends_at < now,
                Subscription.status != SubscriptionStatus.expired,
            )
            .values(status=SubscriptionStatus.expired, updated_at=now)
            .execution_options(synchronize_session=False)
        )
    return result.rowcount


def _tracked_user_ids(db: Session) -> list[uuid.UUID]:
    query = union(
        select(Subscription.user_id),
        select(UserEntitlement.user_id).where(UserEntitlement.key == PUBLISH_KEY),
    )
    return sorted(db.execute(query).scalars().all(), key=str)


def sync_all_subscriptions(db: Session, now: datetime | None = None) -> SyncSummary:
    now = now or utcnow()
    summary = SyncSummary(expired_marked=_expire_lapsed(db, now))
    db.expire_all()

    for user_id in _tracked_user_ids(db):
        with transaction(db):
            outcome = sync_single_user(db, user_id, now)
        summary.users_checked += 1
        summary.entitlements_granted += int(outcome.granted)
        summary.entitlements_revoked += int(outcome.revoked)
        summary.profiles_unpublished += int(outcome.profile_unpublished)

    SWEEP_RUNS.inc()
    SWEEP_MUTATIONS.labels("expired_marked").inc(summary.expired_marked)
    SWEEP_MUTATIONS.labels("entitlements_granted").inc(summary.entitlements_granted)
    SWEEP_MUTATIONS.labels("entitlements_revoked").inc(summary.entitlements_revoked)
    SWEEP_MUTATIONS.labels("profiles_unpublished").inc(summary.profiles_unpublished)
    logger.info("Entitlement sweep finished: %s", summary.model_dump())
    return summary
