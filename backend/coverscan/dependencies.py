from collections.abc import Callable
from functools import lru_cache

from sqlalchemy.orm import Session, sessionmaker

from coverscan.config import get_settings
from coverscan.db.session import SessionLocal
from coverscan.services.google_books import GoogleBooksService
from coverscan.services.libgen import LibgenService
from coverscan.services.llm.openai import OpenAIService
from coverscan.services.locator import ContentLocator
from coverscan.services.pipeline.acquisition import AcquisitionStage
from coverscan.services.pipeline.base import Stage, StageOutcome, StageQueue, with_stage_logging
from coverscan.services.pipeline.extraction import ExtractionStage
from coverscan.services.pipeline.identity import IdentityStage
from coverscan.services.pipeline.ingest import IngestStage
from coverscan.services.pipeline.queue import CeleryStageQueue
from coverscan.services.pipeline.vision import VisionStage
from coverscan.services.storage import S3BlobStore


@lru_cache
def _blob_store() -> S3BlobStore:
    return S3BlobStore()


@lru_cache
def _openai_service() -> OpenAIService:
    return OpenAIService()


@lru_cache
def _google_books_service() -> GoogleBooksService:
    return GoogleBooksService()


@lru_cache
def _libgen_service() -> LibgenService:
    return LibgenService()


@lru_cache
def _stage_queue() -> CeleryStageQueue:
    return CeleryStageQueue()


def stage_queue() -> StageQueue:
    return _stage_queue()


def build_stages(
    session_factory: sessionmaker[Session] = SessionLocal,
    queue: StageQueue | None = None,
) -> dict[str, Stage]:
    queue = queue or stage_queue()
    openai_service = _openai_service()
    reformatter = openai_service if get_settings().reformat_snippets else None
    stages: list[Stage] = [
        IngestStage(session_factory, queue, _blob_store()),
        VisionStage(session_factory, queue, _blob_store(), openai_service),
        IdentityStage(session_factory, queue, _google_books_service()),
        AcquisitionStage(session_factory, queue, _libgen_service()),
        ExtractionStage(session_factory, queue, ContentLocator(openai_service), reformatter),
    ]
    return {stage.name: stage for stage in stages}


@lru_cache
def stage_handlers() -> dict[str, Callable[..., StageOutcome]]:
    return {name: with_stage_logging(name, stage.handle) for name, stage in build_stages().items()}
