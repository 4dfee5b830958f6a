"""Celery application factory for the notification scheduler."""
from __future__ import annotations

import os
from celery import Celery
from celery.schedules import crontab

DEFAULT_BROKER_URL = os.getenv("CELERY_BROKER_URL", os.getenv("REDIS_URL", "redis://localhost:6379/0"))
DEFAULT_BACKEND_URL = os.getenv("CELERY_RESULT_BACKEND", DEFAULT_BROKER_URL)


def create_celery_app() -> Celery:
    """Create and configure the Celery app that drives the notification engine."""
    celery_app = Celery(
        "notification_engine",
        broker=DEFAULT_BROKER_URL,
        backend=DEFAULT_BACKEND_URL,
        include=["notification_engine.tasks"],
    )

    tick_minutes = int(os.getenv("NOTIFY_TICK_MINUTES", "5"))
    celery_app.conf.update(
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        timezone=os.getenv("CELERY_TIMEZONE", "UTC"),
        enable_utc=True,
        beat_schedule={
            "process-due-batches": {
                "task": "notification_engine.tasks.process_due_batches",
                "schedule": crontab(minute=f"*/{tick_minutes}"),
            },
            "check-escalations": {
                "task": "notification_engine.tasks.check_escalations",
                "schedule": crontab(minute=0),
            },
        },
    )

    return celery_app


celery_app = create_celery_app()
