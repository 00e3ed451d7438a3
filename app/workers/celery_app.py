"""
Celery application for durable download processing.

Run a worker pool with:
    celery -A app.workers.celery_app worker --loglevel=info

Dependencies: celery, redis
"""

from celery import Celery
from celery.signals import setup_logging

from app.config import Settings, settings
from app.observability.logging import configure_logging

QUEUE_NAME = "download-jobs"
TASK_NAME = "downloads.process"


def create_celery_app(config: Settings) -> Celery:
    app = Celery(
        "download_jobs",
        broker=config.redis_url or "redis://localhost:6379/0",
        include=["app.workers.tasks"],
    )
    app.conf.update(
        task_serializer="json",
        accept_content=["json"],
        timezone="UTC",
        task_ignore_result=True,
        task_default_queue=QUEUE_NAME,
        # ack only after the job body ran; a lost worker means redelivery
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,
        worker_concurrency=config.worker_concurrency,
        broker_connection_retry_on_startup=True,
        # must outlast the longest job or Redis redelivers it mid-flight
        broker_transport_options={
            "visibility_timeout": max(3600, 2 * config.download_delay_max_ms // 1000),
        },
    )
    return app


@setup_logging.connect
def _configure_worker_logging(**kwargs):
    configure_logging(settings.log_level)


celery_app = create_celery_app(settings)
