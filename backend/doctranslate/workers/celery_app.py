from __future__ import annotations

from celery import Celery

from doctranslate.core.settings import get_settings

settings = get_settings()

celery_app = Celery(
    "doctranslate",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["doctranslate.workers.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    task_track_started=True,
    # One document per worker slot; a lost worker puts the job back on the queue.
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=50,
    task_soft_time_limit=settings.task_soft_time_limit_sec,
    task_time_limit=settings.task_time_limit_sec,
    result_expires=settings.job_ttl_minutes * 60,
    broker_connection_retry_on_startup=True,
    timezone="UTC",
    task_default_queue=settings.translation_queue,
    task_routes={
        "doctranslate.workers.tasks.translate_job_task": {"queue": settings.translation_queue},
    },
)
