from datetime import timedelta

from celery import Celery

from files_control.config import settings


def get_celery_config() -> dict:
    return {
        "broker_url": settings.celery_broker_url,
        "result_backend": settings.celery_result_backend,
        "timezone": "UTC",
    }


def build_beat_schedule() -> dict:
    return {
        "sweep_expired_records": {
            "task": "files_control.tasks.cleanup.sweep_expired_records",
            "schedule": timedelta(seconds=max(settings.sweep_interval_seconds, 1)),
        }
    }


celery_app = Celery("files_control", include=["files_control.tasks.cleanup"])
celery_app.conf.update(get_celery_config())
celery_app.conf.beat_schedule = build_beat_schedule()
