"""
Celery Application

Durable work queue for photo analysis jobs.
"""
from celery import Celery
from celery.signals import setup_logging

from photobatch.config import configure_logging, settings

celery_app = Celery(
    "photobatch",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["photobatch.queue.tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    task_default_queue=settings.PHOTO_ANALYZE_QUEUE,
    worker_concurrency=settings.WORKER_CONCURRENCY,

    # Rate limiting - be nice to the vision provider
    task_default_rate_limit="10/s",

    # At-least-once: ack after the task body, redeliver if the worker dies
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,

    # Result expiration
    result_expires=86400,  # 24 hours
)


@setup_logging.connect
def _configure_worker_logging(**kwargs):
    configure_logging()
