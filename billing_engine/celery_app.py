from datetime import timedelta

from celery import Celery

from billing_engine.config import settings

SWEEP_TASK_NAME = "billing_engine.tasks.sync_entitlements"


def get_celery_config() -> dict:
    return {
        "broker_url": settings.celery_broker_url,
        "result_backend": settings.celery_result_backend,
        "timezone": settings.celery_timezone,
        "task_ignore_result": True,
    }


def build_beat_schedule() -> dict:
    interval_seconds = max(settings.entitlement_sweep_interval_seconds, 1)
    return {
        "entitlement_sweep": {
            "task": SWEEP_TASK_NAME,
            "schedule": timedelta(seconds=interval_seconds),
        }
    }


celery_app = Celery("billing_engine", include=["billing_engine.tasks"])
celery_app.conf.update(get_celery_config())
celery_app.conf.beat_schedule = build_beat_schedule()
