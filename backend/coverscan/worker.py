"""Celery tasks, one per pipeline stage.

Run a worker with::

    celery -A coverscan.worker worker -Q coverscan.ingest,coverscan.vision,coverscan.identity,coverscan.acquisition,coverscan.extraction
"""

import base64

from celery.signals import worker_process_init

from coverscan.celery_app import celery_app, settings, task_name
from coverscan.db.session import init_db
from coverscan.dependencies import stage_handlers
from coverscan.services.pipeline.base import (
    STAGE_ACQUISITION,
    STAGE_EXTRACTION,
    STAGE_IDENTITY,
    STAGE_INGEST,
    STAGE_VISION,
)
from coverscan.utils.logging_config import configure_logging

RETRY_POLICY = {
    "autoretry_for": (Exception,),
    "retry_backoff": True,
    "retry_backoff_max": settings.stage_retry_backoff_max,
    "retry_jitter": True,
    "max_retries": settings.stage_max_retries,
}


@worker_process_init.connect
def _init_worker(**_kwargs) -> None:
    configure_logging()
    init_db()


def _run(stage_name: str, upload_id: str, **kwargs) -> str:
    outcome = stage_handlers()[stage_name](upload_id, **kwargs)
    return outcome.kind.value


@celery_app.task(name=task_name(STAGE_INGEST), **RETRY_POLICY)
def ingest(upload_id: str, image_b64: str = "", file_name: str = "upload") -> str:
    return _run(STAGE_INGEST, upload_id, image=base64.b64decode(image_b64), file_name=file_name)


@celery_app.task(name=task_name(STAGE_VISION), **RETRY_POLICY)
def vision(upload_id: str) -> str:
    return _run(STAGE_VISION, upload_id)


@celery_app.task(name=task_name(STAGE_IDENTITY), **RETRY_POLICY)
def identity(upload_id: str) -> str:
    return _run(STAGE_IDENTITY, upload_id)


@celery_app.task(name=task_name(STAGE_ACQUISITION), **RETRY_POLICY)
def acquisition(upload_id: str) -> str:
    return _run(STAGE_ACQUISITION, upload_id)


@celery_app.task(name=task_name(STAGE_EXTRACTION), **RETRY_POLICY)
def extraction(upload_id: str) -> str:
    return _run(STAGE_EXTRACTION, upload_id)
