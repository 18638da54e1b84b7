import logging

from celery import Celery

from coverscan.celery_app import celery_app, queue_name, task_name
from coverscan.services.pipeline.base import StageQueue


class CeleryStageQueue(StageQueue):
    """Hand an upload to the next stage by name; stages never import one another."""

    def __init__(self, app: Celery | None = None) -> None:
        self._app = app or celery_app
        self._logger = logging.getLogger(__name__)

    def enqueue(self, stage_name: str, upload_id: str, **payload) -> None:
        self._app.send_task(
            task_name(stage_name),
            args=[upload_id],
            kwargs=payload,
            queue=queue_name(stage_name),
        )
        self._logger.info("Enqueued %s for upload %s", stage_name, upload_id)
