"""Durable job dispatcher publishing to the Celery broker."""

import asyncio
import functools
import logging

from celery import Celery
from kombu.exceptions import OperationalError

from app.core.errors import TransientInfraError
from app.jobs.dispatcher import JobDispatcher
from app.jobs.models import WorkItem

logger = logging.getLogger(__name__)

# Keep submission fast when the broker is down: fail after ~1s instead of
# kombu's default of retrying for much longer.
PUBLISH_RETRY_POLICY = {
    "max_retries": 2,
    "interval_start": 0,
    "interval_step": 0.2,
    "interval_max": 0.5,
}


class CeleryQueue(JobDispatcher):
    """Publishes work items as Celery tasks. Workers run in separate processes."""

    def __init__(self, celery_app: Celery, task_name: str):
        self._app = celery_app
        self._task_name = task_name

    async def submit(self, item: WorkItem) -> None:
        publish = functools.partial(
            self._app.send_task,
            self._task_name,
            args=[item.job_id, item.file_id],
            task_id=item.job_id,
            retry=True,
            retry_policy=PUBLISH_RETRY_POLICY,
        )
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, publish)
        except (OperationalError, ConnectionError) as e:
            raise TransientInfraError(f"Broker unavailable: {e}") from e

    async def start(self) -> None:
        logger.info("Publishing download jobs to Celery task '%s'", self._task_name)

    async def stop(self) -> None:
        # unacknowledged tasks stay on the broker and are redelivered
        self._app.close()
