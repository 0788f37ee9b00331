"""Tests for subscription period math and lifecycle transitions."""

from datetime import UTC, datetime

import pytest

from billing_engine.models.billing import PlanCycle, SubscriptionStatus
from billing_engine.services.billing import events
from billing_engine.services.billing.events import BillingEventType
from billing_engine.services.billing.exceptions import (
    PlanNotFoundError,
    SubscriptionNotFoundError,
)
from billing_engine.services.billing.subscriptions import (
    add_months,
    compute_period_end,
    subscriptions,
)


def _dt(*args) -> datetime:
    return datetime(*args, tzinfo=UTC)


class TestPeriodMath:
    def test_monthly(self) -> None:
        assert compute_period_end(_dt(2025, 1, 1), PlanCycle.MONTHLY) == _dt(2025, 2, 1)

    def test_quarterly_and_yearly(self) -> None:
        start = _dt(2025, 11, 15, 10, 30)
        assert compute_period_end(start, PlanCycle.QUARTERLY) == _dt(2026, 2, 15, 10, 30)
        assert compute_period_end(start, "YEARLY") == _dt(2026, 11, 15, 10, 30)

    def test_day_is_clamped(self) -> None:
        assert add_months(_dt(2025, 1, 31), 1) == _dt(2025, 2, 28)
        assert add_months(_dt(2024, 1, 31), 1) == _dt(2024, 2, 29)
        assert add_months(_dt(2025, 8, 31), 1) == _dt(2025, 9, 30)


class TestLifecycle:
    def test_activate_new_subscription(
        self, db_session, user_id, subscription_plan, jan_first
    ) -> None:
        received = []
        events.on(BillingEventType.SUBSCRIPTION_ACTIVATED, received.append)

        sub = subscriptions.activate_or_start(
            db_session, user_id, subscription_plan.id, provider_ref="ref-1", now=jan_first
        )

        assert sub.status == SubscriptionStatus.active
        assert sub.started_at == jan_first
        assert sub.ends_at == _dt(2025, 2, 1)
        assert sub.renewal_at == sub.ends_at
        assert sub.provider_ref == "ref-1"
        assert len(received) == 1
        assert received[0].payload["ends_at"] == _dt(2025, 2, 1).isoformat()

    def test_restart_after_expiry(
        self, db_session, user_id, subscription_plan, jan_first
    ) -> None:
        subscriptions.activate_or_start(db_session, user_id, subscription_plan.id, now=jan_first)
        subscriptions.mark_expired(db_session, user_id)
        restarted = []
        events.on(BillingEventType.SUBSCRIPTION_RESTARTED, restarted.append)

        later = _dt(2025, 6, 10)
        sub = subscriptions.activate_or_start(db_session, user_id, subscription_plan.id, now=later)

        assert sub.status == SubscriptionStatus.active
        assert sub.started_at == later
        assert sub.ends_at == _dt(2025, 7, 10)
        assert len(restarted) == 1

    def test_renew_stacks_on_current_period(
        self, db_session, user_id, subscription_plan, jan_first
    ) -> None:
        subscriptions.activate_or_start(db_session, user_id, subscription_plan.id, now=jan_first)

        sub = subscriptions.renew(db_session, user_id, now=_dt(2025, 1, 20))

        assert sub.started_at == _dt(2025, 2, 1)
        assert sub.ends_at == _dt(2025, 3, 1)

    def test_renew_after_lapse_starts_from_now(
        self, db_session, user_id, subscription_plan, jan_first
    ) -> None:
        subscriptions.activate_or_start(db_session, user_id, subscription_plan.id, now=jan_first)

        sub = subscriptions.renew(db_session, user_id, now=_dt(2025, 4, 5))

        assert sub.started_at == _dt(2025, 4, 5)
        assert sub.ends_at == _dt(2025, 5, 5)

    def test_cancel_at_period_end_toggles_renewing(
        self, db_session, user_id, subscription_plan, jan_first
    ) -> None:
        subscriptions.activate_or_start(db_session, user_id, subscription_plan.id, now=jan_first)

        sub = subscriptions.set_cancel_at_period_end(db_session, user_id, True)
        assert sub.status == SubscriptionStatus.renewing
        assert sub.cancel_at_period_end is True

        sub = subscriptions.set_cancel_at_period_end(db_session, user_id, False)
        assert sub.status == SubscriptionStatus.active
        assert sub.cancel_at_period_end is False

    def test_renewal_clears_cancel_flag(
        self, db_session, user_id, subscription_plan, jan_first
    ) -> None:
        subscriptions.activate_or_start(db_session, user_id, subscription_plan.id, now=jan_first)
        subscriptions.set_cancel_at_period_end(db_session, user_id, True)

        sub = subscriptions.renew(db_session, user_id, now=_dt(2025, 1, 15))

        assert sub.status == SubscriptionStatus.active
        assert sub.cancel_at_period_end is False

    def test_cancel(self, db_session, user_id, subscription_plan, jan_first) -> None:
        subscriptions.activate_or_start(db_session, user_id, subscription_plan.id, now=jan_first)

        sub = subscriptions.cancel(db_session, user_id, now=_dt(2025, 1, 10))

        assert sub.status == SubscriptionStatus.canceled
        assert sub.canceled_at == _dt(2025, 1, 10)

    def test_cancel_is_noop_when_not_running(
        self, db_session, user_id, subscription_plan, jan_first
    ) -> None:
        subscriptions.activate_or_start(db_session, user_id, subscription_plan.id, now=jan_first)
        subscriptions.mark_expired(db_session, user_id)
        canceled = []
        events.on(BillingEventType.SUBSCRIPTION_CANCELED, canceled.append)

        sub = subscriptions.cancel(db_session, user_id)

        assert sub.status == SubscriptionStatus.expired
        assert canceled == []

    def test_get_for_user(self, db_session, user_id, subscription_plan) -> None:
        assert subscriptions.get_for_user(db_session, user_id) is None
        subscriptions.activate_or_start(db_session, user_id, subscription_plan.id)
        assert subscriptions.get_for_user(db_session, user_id).user_id == user_id

    def test_missing_subscription(self, db_session, user_id) -> None:
        with pytest.raises(SubscriptionNotFoundError):
            subscriptions.renew(db_session, user_id)
        with pytest.raises(SubscriptionNotFoundError):
            subscriptions.set_cancel_at_period_end(db_session, user_id, True)

    def test_missing_plan(self, db_session, user_id) -> None:
        with pytest.raises(PlanNotFoundError):
            subscriptions.activate_or_start(
                db_session, user_id, "7f0c1c52-0000-4000-8000-000000000000"
            )

    def test_failing_listener_does_not_break_activation(
        self, db_session, user_id, subscription_plan
    ) -> None:
        def _boom(event):
            raise RuntimeError("listener down")

        events.on(BillingEventType.SUBSCRIPTION_ACTIVATED, _boom)

        sub = subscriptions.activate_or_start(db_session, user_id, subscription_plan.id)

        assert sub.status == SubscriptionStatus.active
