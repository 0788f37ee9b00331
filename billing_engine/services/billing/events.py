"""In-process billing event registry.

Listeners run synchronously after the state change they describe has been
committed. A failing listener is logged and never reaches the emitter.
"""
from __future__ import annotations

import enum
import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from billing_engine.db import utcnow

logger = logging.getLogger(__name__)


class BillingEventType(str, enum.Enum):
    SUBSCRIPTION_ACTIVATED = "SUBSCRIPTION_ACTIVATED"
    SUBSCRIPTION_RESTARTED = "SUBSCRIPTION_RESTARTED"
    SUBSCRIPTION_RENEWED = "SUBSCRIPTION_RENEWED"
    SUBSCRIPTION_EXPIRED = "SUBSCRIPTION_EXPIRED"
    SUBSCRIPTION_CANCELED = "SUBSCRIPTION_CANCELED"
    SUBSCRIPTION_CANCEL_AT_PERIOD_END_SET = "SUBSCRIPTION_CANCEL_AT_PERIOD_END_SET"
    SUBSCRIPTION_CANCEL_AT_PERIOD_END_CLEARED = (
        "SUBSCRIPTION_CANCEL_AT_PERIOD_END_CLEARED"
    )
    INVOICE_ISSUED = "INVOICE_ISSUED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    PAYMENT_REFUNDED = "PAYMENT_REFUNDED"


@dataclass(frozen=True)
class BillingEvent:
    type: BillingEventType
    user_id: Any
    payload: dict = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)


Handler = Callable[[BillingEvent], None]

_handlers: dict[BillingEventType, list[Handler]] = defaultdict(list)


def on(event_type: BillingEventType, handler: Handler) -> Callable[[], None]:
    """Register ``handler``; the returned callable unregisters it."""
    _handlers[event_type].append(handler)

    def _unsubscribe() -> None:
        if handler in _handlers[event_type]:
            _handlers[event_type].remove(handler)

    return _unsubscribe


def clear() -> None:
    _handlers.clear()


def emit(event: BillingEvent) -> None:
    for handler in list(_handlers.get(event.type, ())):
        try:
            handler(event)
        except Exception:
            logger.exception("Billing event listener failed for %s", event.type.value)


def emit_new(event_type: BillingEventType, user_id: Any, **payload: Any) -> None:
    emit(BillingEvent(type=event_type, user_id=user_id, payload=payload))
