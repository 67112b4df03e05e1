from __future__ import annotations

from celery import Celery

from app.core.config import settings

celery = Celery(
    "campaign_messaging",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.tasks.delivery_tasks"],
)

celery.conf.update(
    task_always_eager=settings.CELERY_TASK_ALWAYS_EAGER,
    task_eager_propagates=True,
    task_default_queue="default",
)

if settings.STUCK_SWEEP_INTERVAL_S > 0:
    celery.conf.beat_schedule = {
        "sweep-stuck-communications": {
            "task": "app.tasks.delivery_tasks.sweep_stuck_communications",
            "schedule": float(settings.STUCK_SWEEP_INTERVAL_S),
        },
    }
