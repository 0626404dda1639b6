"""Celery application for the payments worker and beat scheduler."""
from __future__ import annotations

import os

from celery import Celery
from kombu import Queue

from core.config import settings
from core.logging_config import get_logger
from .beat import CELERY_BEAT_SCHEDULE


logger = get_logger(__name__)

TASK_PACKAGES = ("infrastructure.tasks.tasks",)

# Redis is only the broker/result store; payment state lives in the database
_BROKER = settings.redis.url or os.getenv("CELERY_BROKER_URL")
_BACKEND = settings.redis.url or os.getenv("CELERY_RESULT_BACKEND")


celery_app = Celery("payments_service", broker=_BROKER, backend=_BACKEND)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # A refund task lost with its worker is redelivered; the provider call is keyed by refund attempt
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_track_started=True,
    result_expires=3600,
    worker_prefetch_multiplier=1,
    task_default_queue="default",
    task_default_retry_delay=10,
    task_queues=(
        Queue("high"),
        Queue("default"),
        Queue("low"),
    ),
    task_routes={
        "payments.relay_outbox": {"queue": "high"},
        "payments.reconcile": {"queue": "low"},
        "payments.*": {"queue": "default"},
    },
    beat_schedule=CELERY_BEAT_SCHEDULE,
    imports=TASK_PACKAGES,
)

if (settings.ENVIRONMENT or "").lower() in {"test", "testing"}:
    celery_app.conf.task_always_eager = True

celery_app.autodiscover_tasks(packages=TASK_PACKAGES)


@celery_app.on_after_configure.connect
def _log_configuration(sender, **kwargs):
    logger.info(
        "celery_configured",
        broker=sender.conf.broker_url,
        queues=[q.name for q in sender.conf.task_queues],
        beat=sorted(sender.conf.beat_schedule),
    )
