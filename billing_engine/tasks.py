"""Celery tasks. The entitlement sweep runs single-flight under a Redis lock."""
import logging

import redis as redis_lib

from billing_engine.celery_app import SWEEP_TASK_NAME, celery_app
from billing_engine.config import settings
from billing_engine.db import SessionLocal, configure_session
from billing_engine.services.billing.entitlements import sync_all_subscriptions

logger = logging.getLogger(__name__)

SWEEP_LOCK_NAME = "billing:entitlement-sweep"


def _redis():
    return redis_lib.Redis.from_url(settings.redis_url, socket_timeout=5)


@celery_app.task(name=SWEEP_TASK_NAME)
def sync_entitlements() -> dict:
    lock = _redis().lock(
        SWEEP_LOCK_NAME,
        timeout=settings.entitlement_sweep_lock_timeout_seconds,
        blocking=False,
    )
    if not lock.acquire():
        logger.info("Entitlement sweep already running; skipping")
        return {"skipped": True}
    try:
        configure_session()
        db = SessionLocal()
        try:
            summary = sync_all_subscriptions(db)
        finally:
            db.close()
    finally:
        lock.release()
    logger.info("Entitlement sweep finished: %s", summary.model_dump())
    return {"skipped": False, **summary.model_dump()}
