"""Subscription lifecycle: one row per user, driven by payments and the sweep.

State machine::

    active <-> renewing          (cancel-at-period-end toggled)
    active|renewing -> canceled  (explicit cancel)
    active|renewing -> expired   (sweep, or refund)
    expired|canceled -> active   (any later successful payment)

The ``*_locked`` helpers assume the caller holds the subscription row lock
and owns the transaction; the ``Subscriptions`` methods are complete units
of work.
"""
import calendar
import logging
import uuid
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from billing_engine.db import transaction, utcnow
from billing_engine.models.billing import (
    ACTIVE_SUBSCRIPTION_STATUSES,
    Plan,
    PlanCycle,
    Subscription,
    SubscriptionStatus,
)
from billing_engine.services.billing import events
from billing_engine.services.billing.events import BillingEventType
from billing_engine.services.billing.exceptions import (
    PlanNotFoundError,
    SubscriptionNotFoundError,
)
from billing_engine.services.common import coerce_uuid

logger = logging.getLogger(__name__)

CYCLE_MONTHS = {
    PlanCycle.MONTHLY: 1,
    PlanCycle.QUARTERLY: 3,
    PlanCycle.YEARLY: 12,
}


def add_months(value: datetime, months: int) -> datetime:
    """Calendar month arithmetic; the day is clamped to the target month."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def compute_period_end(start: datetime, cycle: PlanCycle | str) -> datetime:
    return add_months(start, CYCLE_MONTHS[PlanCycle(cycle)])


def lock_subscription(db: Session, user_id: uuid.UUID) -> Subscription | None:
    return db.scalar(
        select(Subscription)
        .where(Subscription.user_id == coerce_uuid(user_id))
        .with_for_update()
    )


def _require_plan(db: Session, plan_id) -> Plan:
    plan = db.get(Plan, coerce_uuid(plan_id))
    if plan is None:
        raise PlanNotFoundError(f"Plan not found: {plan_id}")
    return plan


def snapshot(subscription: Subscription) -> dict:
    return {
        "subscription_id": str(subscription.id),
        "plan_id": str(subscription.plan_id),
        "status": subscription.status.value,
        "started_at": subscription.started_at.isoformat(),
        "ends_at": subscription.ends_at.isoformat(),
        "cancel_at_period_end": subscription.cancel_at_period_end,
    }


class SubscriptionChange:
    """Outcome of a locked lifecycle step, emitted once the caller commits."""

    def __init__(self, subscription: Subscription, event_type: BillingEventType):
        self.subscription = subscription
        self.event_type = event_type

    def emit(self) -> None:
        events.emit_new(
            self.event_type,
            self.subscription.user_id,
            **snapshot(self.subscription),
        )


def start_or_restart_locked(
    db: Session,
    existing: Subscription | None,
    user_id: uuid.UUID,
    plan: Plan,
    provider_ref: str | None,
    now: datetime,
) -> SubscriptionChange:
    ends_at = compute_period_end(now, plan.cycle)
    if existing is None:
        subscription = Subscription(
            user_id=coerce_uuid(user_id),
            plan_id=plan.id,
            status=SubscriptionStatus.active,
            started_at=now,
            ends_at=ends_at,
            renewal_at=ends_at,
            cancel_at_period_end=False,
            provider_ref=provider_ref,
        )
        db.add(subscription)
        db.flush()
        logger.info("Activated subscription for user %s", user_id, extra={"user_id": user_id})
        return SubscriptionChange(subscription, BillingEventType.SUBSCRIPTION_ACTIVATED)

    was_running = existing.status in ACTIVE_SUBSCRIPTION_STATUSES
    existing.plan_id = plan.id
    existing.status = SubscriptionStatus.active
    existing.started_at = now
    existing.ends_at = ends_at
    existing.renewal_at = ends_at
    existing.cancel_at_period_end = False
    existing.canceled_at = None
    existing.provider_ref = provider_ref or existing.provider_ref
    db.flush()
    logger.info("Restarted subscription for user %s", user_id, extra={"user_id": user_id})
    event_type = (
        BillingEventType.SUBSCRIPTION_ACTIVATED
        if was_running
        else BillingEventType.SUBSCRIPTION_RESTARTED
    )
    return SubscriptionChange(existing, event_type)


def renew_locked(
    db: Session,
    subscription: Subscription,
    provider_ref: str | None,
    now: datetime,
    plan: Plan | None = None,
) -> SubscriptionChange:
    """Stack a new period onto ``ends_at``, or start fresh from ``now`` if lapsed."""
    if plan is not None:
        subscription.plan_id = plan.id
        cycle = plan.cycle
    else:
        cycle = subscription.plan.cycle
    anchor = subscription.ends_at if subscription.ends_at > now else now
    ends_at = compute_period_end(anchor, cycle)
    subscription.status = SubscriptionStatus.active
    subscription.started_at = anchor
    subscription.ends_at = ends_at
    subscription.renewal_at = ends_at
    subscription.cancel_at_period_end = False
    subscription.canceled_at = None
    subscription.provider_ref = provider_ref or subscription.provider_ref
    db.flush()
    logger.info(
        "Renewed subscription for user %s until %s",
        subscription.user_id,
        ends_at.isoformat(),
        extra={"user_id": subscription.user_id},
    )
    return SubscriptionChange(subscription, BillingEventType.SUBSCRIPTION_RENEWED)


class Subscriptions:
    @staticmethod
    def get_for_user(db: Session, user_id) -> Subscription | None:
        return db.scalar(
            select(Subscription).where(Subscription.user_id == coerce_uuid(user_id))
        )

    @staticmethod
    def activate_or_start(
        db: Session,
        user_id,
        plan_id,
        provider_ref: str | None = None,
        now: datetime | None = None,
    ) -> Subscription:
        now = now or utcnow()
        with transaction(db):
            plan = _require_plan(db, plan_id)
            existing = lock_subscription(db, user_id)
            change = start_or_restart_locked(
                db, existing, coerce_uuid(user_id), plan, provider_ref, now
            )
        change.emit()
        return change.subscription

    @staticmethod
    def renew(
        db: Session,
        user_id,
        provider_ref: str | None = None,
        now: datetime | None = None,
    ) -> Subscription:
        now = now or utcnow()
        with transaction(db):
            subscription = lock_subscription(db, user_id)
            if subscription is None:
                raise SubscriptionNotFoundError(f"No subscription for user {user_id}")
            change = renew_locked(db, subscription, provider_ref, now)
        change.emit()
        return change.subscription

    @staticmethod
    def set_cancel_at_period_end(db: Session, user_id, flag: bool) -> Subscription:
        with transaction(db):
            subscription = lock_subscription(db, user_id)
            if subscription is None:
                raise SubscriptionNotFoundError(f"No subscription for user {user_id}")
            if flag and subscription.status == SubscriptionStatus.active:
                subscription.status = SubscriptionStatus.renewing
            elif not flag and subscription.status == SubscriptionStatus.renewing:
                subscription.status = SubscriptionStatus.active
            subscription.cancel_at_period_end = flag
            db.flush()
        event_type = (
            BillingEventType.SUBSCRIPTION_CANCEL_AT_PERIOD_END_SET
            if flag
            else BillingEventType.SUBSCRIPTION_CANCEL_AT_PERIOD_END_CLEARED
        )
        SubscriptionChange(subscription, event_type).emit()
        logger.info(
            "Set cancel_at_period_end=%s for user %s", flag, user_id, extra={"user_id": user_id}
        )
        return subscription

    @staticmethod
    def mark_expired(db: Session, user_id) -> Subscription:
        with transaction(db):
            subscription = lock_subscription(db, user_id)
            if subscription is None:
                raise SubscriptionNotFoundError(f"No subscription for user {user_id}")
            subscription.status = SubscriptionStatus.expired
            db.flush()
        SubscriptionChange(subscription, BillingEventType.SUBSCRIPTION_EXPIRED).emit()
        return subscription

    @staticmethod
    def cancel(db: Session, user_id, now: datetime | None = None) -> Subscription:
        now = now or utcnow()
        with transaction(db):
            subscription = lock_subscription(db, user_id)
            if subscription is None:
                raise SubscriptionNotFoundError(f"No subscription for user {user_id}")
            if subscription.status not in ACTIVE_SUBSCRIPTION_STATUSES:
                return subscription
            subscription.status = SubscriptionStatus.canceled
            subscription.canceled_at = now
            db.flush()
        SubscriptionChange(subscription, BillingEventType.SUBSCRIPTION_CANCELED).emit()
        return subscription


subscriptions = Subscriptions()
