"""
Application wiring: builds the pipeline components from settings.

This is the only place that reads the global settings; every component
below receives its configuration through its constructor.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import HTTPException
from sqlalchemy.orm import Session

from config import settings
from database import SessionLocal
from knowledge_graph.candidates import CandidateFinder
from knowledge_graph.config import DeduplicationConfig, RetryPolicy
from knowledge_graph.deduplication import CampaignLocks, DeduplicationEngine
from knowledge_graph.embedding_service import EmbeddingService
from knowledge_graph.extraction import ExtractionStage
from knowledge_graph.graph_store import GraphStore
from knowledge_graph.llm_service import LLMService
from knowledge_graph.merge import MergeResolver
from knowledge_graph.pipeline import NotePipeline
from knowledge_graph.sync import SyncCoordinator
from knowledge_graph.vector_store import VectorStore
from notes.service import NoteService
from notes.worker_pool import NoteWorkerPool

logger = logging.getLogger(__name__)


@dataclass
class NotesServices:
    pipeline: NotePipeline
    pool: NoteWorkerPool
    notes: NoteService
    sync: SyncCoordinator
    graph_store: GraphStore


def retry_policy() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.SYNC_RETRY_MAX_ATTEMPTS,
        base_delay=settings.SYNC_RETRY_BASE_DELAY,
        max_delay=settings.SYNC_RETRY_MAX_DELAY,
    )


def build_embedding_service() -> EmbeddingService:
    return EmbeddingService(
        api_key=settings.OPENAI_API_KEY,
        model=settings.EMBEDDING_MODEL,
        timeout=settings.EMBEDDING_TIMEOUT,
    )


def build_graph_store() -> GraphStore:
    return GraphStore(settings.NEO4J_URI, settings.NEO4J_USER, settings.NEO4J_PASSWORD)


def build_sync_coordinator(
    embedding_service: Optional[EmbeddingService] = None,
    vector_store: Optional[VectorStore] = None,
    graph_store: Optional[GraphStore] = None,
) -> SyncCoordinator:
    return SyncCoordinator(
        embedding_service=embedding_service or build_embedding_service(),
        vector_store=vector_store or VectorStore(settings.CHROMA_DB_PATH),
        graph_store=graph_store or build_graph_store(),
        policy=retry_policy(),
        vector_timeout=settings.VECTOR_STORE_TIMEOUT,
        graph_timeout=settings.GRAPH_STORE_TIMEOUT,
        stale_after=settings.SYNC_STALE_AFTER,
    )


def build_services(session_factory: Callable[[], Session] = SessionLocal) -> NotesServices:
    dedup_config = DeduplicationConfig.from_env()
    embedding_service = build_embedding_service()
    vector_store = VectorStore(settings.CHROMA_DB_PATH)
    graph_store = build_graph_store()
    llm = LLMService(
        base_url=settings.AI_API_URL,
        api_key=settings.INTERNAL_API_KEY,
        route=settings.LLM_MODEL_ROUTE,
        timeout=settings.LLM_TIMEOUT,
    )

    sync = build_sync_coordinator(embedding_service, vector_store, graph_store)
    pipeline = NotePipeline(
        session_factory=session_factory,
        extraction=ExtractionStage(llm),
        engine=DeduplicationEngine(
            embedding_service,
            CandidateFinder(vector_store, dedup_config, timeout=settings.VECTOR_STORE_TIMEOUT),
            llm,
            dedup_config,
        ),
        resolver=MergeResolver(),
        sync=sync,
        locks=CampaignLocks(),
    )
    pool = NoteWorkerPool(
        pipeline.process_note,
        core_workers=settings.NOTE_WORKERS_CORE,
        max_workers=settings.NOTE_WORKERS_MAX,
        queue_depth=settings.NOTE_QUEUE_DEPTH,
        submit_timeout=settings.NOTE_SUBMIT_TIMEOUT,
    )
    notes = NoteService(
        pipeline, pool, sync, embedding_service, vector_store, graph_store,
        vector_timeout=settings.VECTOR_STORE_TIMEOUT,
        graph_timeout=settings.GRAPH_STORE_TIMEOUT,
    )
    logger.info("Note services built")
    return NotesServices(pipeline=pipeline, pool=pool, notes=notes, sync=sync, graph_store=graph_store)


_services: Optional[NotesServices] = None


def set_services(services: Optional[NotesServices]) -> None:
    global _services
    _services = services


def get_services() -> NotesServices:
    """FastAPI dependency"""
    if _services is None:
        raise HTTPException(status_code=503, detail="Note services are not running")
    return _services
