from celery import Celery

from coverscan.config import get_settings
from coverscan.services.pipeline.base import STAGE_ORDER

settings = get_settings()


def task_name(stage_name: str) -> str:
    return f"coverscan.stages.{stage_name}"


def queue_name(stage_name: str) -> str:
    return f"coverscan.{stage_name}"


celery_app = Celery("coverscan", broker=settings.redis_url, include=["coverscan.worker"])

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    worker_prefetch_multiplier=1,     # one upload per worker slot
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_ignore_result=True,
    task_soft_time_limit=int(settings.download_timeout_seconds) + 300,
    task_time_limit=int(settings.download_timeout_seconds) + 600,
)

celery_app.conf.task_routes = {task_name(stage): {"queue": queue_name(stage)} for stage in STAGE_ORDER}
