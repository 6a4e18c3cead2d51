"""
Note Service

Business logic behind the note routes: validation, note identity,
processing task bookkeeping, and the read side (status, graph, search).
"""

import asyncio
import logging
import uuid
from typing import Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from exceptions import ConflictError, ExternalServiceError, NotFoundError, QueueFullError, SyncError, ValidationError
from knowledge_graph.embedding_service import EmbeddingService
from knowledge_graph.graph_store import GraphStore, campaign_label
from knowledge_graph.models import NoteStatus, ProcessingPhase, SyncStore
from knowledge_graph.pipeline import NotePipeline, artifact_response, latest_task, proposal_response
from knowledge_graph.sync import SyncCoordinator, note_ready_for_sync, sync_state
from knowledge_graph.vector_store import DOC_TYPE_NOTE, VectorStore
from models import (
    Artifact,
    ArtifactResponse,
    Campaign,
    GraphEdgeResponse,
    GraphNodeResponse,
    GraphResponse,
    MergeProposalResponse,
    Note,
    NoteCreateRequest,
    NoteCreateResponse,
    NoteOverride,
    NoteProcessingTask,
    NoteResponse,
    NoteStatusResponse,
    SearchRequest,
    SearchResultResponse,
    SyncRetryResponse,
    SyncStateResponse,
)
from notes.worker_pool import NoteWorkerPool

logger = logging.getLogger(__name__)

MAX_NOTE_WORDS = 500
PREVIEW_LENGTH = 200


def count_words(text: str) -> int:
    return len((text or "").split())


def note_identity(title: str, content: str) -> str:
    """Deterministic note id: identical title and content map to the same id"""
    return str(uuid.uuid5(uuid.NAMESPACE_DNS, f"{title}\n\n{content}"))


def sync_state_response(note: Note, store: SyncStore) -> SyncStateResponse:
    return SyncStateResponse(**sync_state(note, store))


def note_response(note: Note) -> NoteResponse:
    return NoteResponse(
        note_id=note.note_uuid,
        campaign_uuid=note.campaign_uuid,
        title=note.title,
        content=note.content,
        word_count=note.word_count or 0,
        is_override=bool(note.is_override),
        override_reason=note.override_reason,
        created_at=note.created_at,
        updated_at=note.updated_at,
        vector_sync=sync_state_response(note, SyncStore.VECTOR),
        graph_sync=sync_state_response(note, SyncStore.GRAPH),
    )


class NoteService:
    def __init__(
        self,
        pipeline: NotePipeline,
        pool: NoteWorkerPool,
        sync: SyncCoordinator,
        embedding_service: EmbeddingService,
        vector_store: VectorStore,
        graph_store: GraphStore,
        vector_timeout: float = 15.0,
        graph_timeout: float = 15.0,
    ):
        self.pipeline = pipeline
        self.pool = pool
        self.sync = sync
        self.embedding_service = embedding_service
        self.vector_store = vector_store
        self.graph_store = graph_store
        self.vector_timeout = vector_timeout
        self.graph_timeout = graph_timeout

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _campaign(self, db: Session, campaign_uuid: str) -> Campaign:
        campaign = db.query(Campaign).filter(Campaign.uuid == campaign_uuid).first()
        if campaign is None:
            raise NotFoundError(f"Campaign {campaign_uuid} not found")
        return campaign

    def _note(self, db: Session, campaign_uuid: str, note_uuid: str) -> Note:
        note = db.query(Note).filter(
            Note.campaign_uuid == campaign_uuid,
            Note.note_uuid == note_uuid,
            Note.is_active.is_(True),
        ).first()
        if note is None:
            raise NotFoundError(f"Note {note_uuid} not found in campaign {campaign_uuid}")
        return note

    # ------------------------------------------------------------------
    # Write side
    # ------------------------------------------------------------------

    def validate(self, db: Session, campaign_uuid: str, request: NoteCreateRequest) -> None:
        """
        Reject bad input before any pipeline work.

        Raises:
            ValidationError: blank fields, too many words, invalid override
        """
        if not request.title or not request.title.strip():
            raise ValidationError("Title is required")
        if not request.content or not request.content.strip():
            raise ValidationError("Content is required")
        words = count_words(request.content)
        if words > MAX_NOTE_WORDS:
            raise ValidationError(f"Content has {words} words, maximum is {MAX_NOTE_WORDS}")

        if request.overrides_note_ids and not request.is_override:
            raise ValidationError("overridesNoteIds requires isOverride")
        if not request.is_override:
            return
        if not request.override_reason or not request.override_reason.strip():
            raise ValidationError("An override note requires an overrideReason")

        existing = db.query(Note).filter(Note.campaign_uuid == campaign_uuid, Note.is_active.is_(True))
        if existing.count() == 0:
            raise ValidationError("An override note needs at least one existing note in the campaign")
        if request.overrides_note_ids:
            found = {
                n.note_uuid for n in existing.filter(Note.note_uuid.in_(request.overrides_note_ids)).all()
            }
            missing = [i for i in request.overrides_note_ids if i not in found]
            if missing:
                raise ValidationError(f"Overridden note(s) not in campaign: {', '.join(missing)}")

    def _new_task(self, db: Session, campaign_uuid: str, note_uuid: str) -> NoteProcessingTask:
        task = NoteProcessingTask(
            task_id=str(uuid.uuid4()),
            campaign_uuid=campaign_uuid,
            note_uuid=note_uuid,
            status=NoteStatus.PENDING.value,
            current_phase=ProcessingPhase.QUEUED.value,
            progress=0,
            deferred_relationships=[],
        )
        db.add(task)
        return task

    async def _submit(self, db: Session, task: NoteProcessingTask) -> None:
        try:
            await self.pool.submit(task.task_id)
        except QueueFullError as e:
            task.status = NoteStatus.FAILED.value
            task.error = str(e)
            db.commit()
            logger.warning(f"⚠️ Task {task.task_id} for note {task.note_uuid} rejected: {e}")
            raise

    async def create_note(self, db: Session, campaign_uuid: str, request: NoteCreateRequest) -> NoteCreateResponse:
        """
        Store the note with both store statuses pending and queue its processing.

        The relational record is committed before the task is submitted, so a
        rejected submission leaves a failed, retryable task behind.
        """
        self._campaign(db, campaign_uuid)
        self.validate(db, campaign_uuid, request)

        title = request.title.strip()
        content = request.content.strip()
        note_uuid = note_identity(title, content)
        if db.query(Note).filter(Note.campaign_uuid == campaign_uuid, Note.note_uuid == note_uuid).first():
            raise ConflictError(f"Note {note_uuid} already exists in campaign {campaign_uuid}")

        note = Note(
            campaign_uuid=campaign_uuid,
            note_uuid=note_uuid,
            title=title,
            content=content,
            word_count=count_words(content),
            is_override=request.is_override,
            override_reason=request.override_reason if request.is_override else None,
        )
        db.add(note)
        for overridden in request.overrides_note_ids:
            db.add(NoteOverride(
                campaign_uuid=campaign_uuid,
                note_uuid=note_uuid,
                overridden_note_uuid=overridden,
                reason=request.override_reason,
            ))
        task = self._new_task(db, campaign_uuid, note_uuid)
        try:
            db.commit()
        except IntegrityError as e:
            db.rollback()
            raise ConflictError(f"Note {note_uuid} already exists in campaign {campaign_uuid}") from e

        logger.info(f"📝 Note {note_uuid} stored ({note.word_count} words), task {task.task_id}")
        await self._submit(db, task)
        return NoteCreateResponse(
            note_id=note_uuid,
            success=True,
            message="Note accepted for processing",
            status=NoteStatus.PENDING.value,
        )

    async def retry_processing(self, db: Session, campaign_uuid: str, note_uuid: str) -> NoteStatusResponse:
        note = self._note(db, campaign_uuid, note_uuid)
        task = latest_task(db, campaign_uuid, note_uuid)
        if task is not None and task.status != NoteStatus.FAILED.value:
            raise ConflictError(f"Note {note_uuid} is {task.status}; only failed processing can be retried")

        task = self._new_task(db, campaign_uuid, note.note_uuid)
        db.commit()
        logger.info(f"🔄 Retrying processing of note {note_uuid} as task {task.task_id}")
        await self._submit(db, task)
        return self.status(db, campaign_uuid, note_uuid)

    async def retry_sync(self, db: Session, campaign_uuid: str, note_uuid: str) -> SyncRetryResponse:
        """Re-queue stores in error and run them if the note is ready"""
        note = self._note(db, campaign_uuid, note_uuid)
        requeued = [store.value for store in SyncStore if self.sync.requeue(db, note, store)]
        if note_ready_for_sync(db, note):
            results = await self.sync.fan_out(db, note)
        else:
            results = {store.value: sync_state(note, store)["status"] for store in SyncStore}
        return SyncRetryResponse(note_id=note_uuid, requeued=requeued, results=results)

    async def confirm_deduplication(
        self, db: Session, campaign_uuid: str, note_uuid: str, decisions: Dict[str, bool]
    ) -> NoteCreateResponse:
        self._note(db, campaign_uuid, note_uuid)
        return await self.pipeline.confirm_deduplication(campaign_uuid, note_uuid, decisions)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def status(self, db: Session, campaign_uuid: str, note_uuid: str) -> NoteStatusResponse:
        note = self._note(db, campaign_uuid, note_uuid)
        task = latest_task(db, campaign_uuid, note_uuid)
        return NoteStatusResponse(
            note_id=note.note_uuid,
            status=task.status if task else NoteStatus.PENDING.value,
            stage=task.current_phase if task else None,
            progress=(task.progress or 0) if task else 0,
            error=task.error if task else None,
            result=self.pipeline.stored_result(task) if task else None,
            vector_sync=sync_state_response(note, SyncStore.VECTOR),
            graph_sync=sync_state_response(note, SyncStore.GRAPH),
            fully_processed=note.fully_processed,
        )

    def list_notes(self, db: Session, campaign_uuid: str) -> List[NoteResponse]:
        self._campaign(db, campaign_uuid)
        notes = (
            db.query(Note)
            .filter(Note.campaign_uuid == campaign_uuid, Note.is_active.is_(True))
            .order_by(Note.created_at.desc())
            .all()
        )
        return [note_response(n) for n in notes]

    def get_note(self, db: Session, campaign_uuid: str, note_uuid: str) -> NoteResponse:
        return note_response(self._note(db, campaign_uuid, note_uuid))

    def pending_proposals(self, db: Session, campaign_uuid: str, note_uuid: str) -> List[MergeProposalResponse]:
        self._note(db, campaign_uuid, note_uuid)
        return [proposal_response(p) for p in self.pipeline.resolver.pending_proposals(db, note_uuid)]

    def list_artifacts(self, db: Session, campaign_uuid: str, artifact_type: Optional[str] = None) -> List[ArtifactResponse]:
        self._campaign(db, campaign_uuid)
        query = db.query(Artifact).filter(Artifact.campaign_uuid == campaign_uuid)
        if artifact_type:
            query = query.filter(Artifact.artifact_type == artifact_type)
        return [artifact_response(a) for a in query.order_by(Artifact.name).all()]

    def _artifact(self, db: Session, campaign_uuid: str, artifact_uuid: str) -> Artifact:
        artifact = db.query(Artifact).filter(
            Artifact.campaign_uuid == campaign_uuid,
            Artifact.artifact_uuid == artifact_uuid,
        ).first()
        if artifact is None:
            raise NotFoundError(f"Artifact {artifact_uuid} not found in campaign {campaign_uuid}")
        return artifact

    def get_artifact(self, db: Session, campaign_uuid: str, artifact_uuid: str) -> ArtifactResponse:
        return artifact_response(self._artifact(db, campaign_uuid, artifact_uuid))

    def artifact_notes(self, db: Session, campaign_uuid: str, artifact_uuid: str) -> List[NoteResponse]:
        """Active notes the artifact was extracted from, newest first"""
        artifact = self._artifact(db, campaign_uuid, artifact_uuid)
        if not artifact.note_ids:
            return []
        notes = (
            db.query(Note)
            .filter(
                Note.campaign_uuid == campaign_uuid,
                Note.note_uuid.in_(list(artifact.note_ids)),
                Note.is_active.is_(True),
            )
            .order_by(Note.created_at.desc())
            .all()
        )
        return [note_response(n) for n in notes]

    async def _graph_call(self, fn, *args):
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self.graph_timeout)
        except asyncio.TimeoutError as e:
            raise ExternalServiceError(f"Graph store timed out after {self.graph_timeout}s") from e
        except SyncError as e:
            raise ExternalServiceError(f"Graph store unavailable: {e.message}") from e

    @staticmethod
    def _graph_response(campaign_uuid: str, nodes: List[dict], edges: List[dict]) -> GraphResponse:
        return GraphResponse(
            nodes=[
                GraphNodeResponse(
                    id=n["id"],
                    name=n.get("name", ""),
                    type=n.get("type", ""),
                    description=n.get("description") or "",
                    campaign_uuid=n.get("campaign_uuid") or campaign_uuid,
                    note_ids=list(n.get("note_ids") or []),
                )
                for n in nodes
            ],
            edges=[
                GraphEdgeResponse(
                    id=e["id"],
                    source=e["source"],
                    target=e["target"],
                    label=e.get("label", ""),
                    description=e.get("description") or "",
                    reasoning=e.get("reasoning") or "",
                )
                for e in edges
            ],
        )

    async def graph(self, db: Session, campaign_uuid: str, note_uuid: Optional[str] = None) -> GraphResponse:
        campaign = self._campaign(db, campaign_uuid)
        label = campaign_label(campaign_uuid, campaign.graph_label)
        nodes, edges = await self._graph_call(self.graph_store.get_graph, label, note_uuid)
        return self._graph_response(campaign_uuid, nodes, edges)

    async def artifact_neighbors(self, db: Session, campaign_uuid: str, artifact_uuid: str) -> GraphResponse:
        self.get_artifact(db, campaign_uuid, artifact_uuid)
        campaign = self._campaign(db, campaign_uuid)
        label = campaign_label(campaign_uuid, campaign.graph_label)
        nodes, edges = await self._graph_call(self.graph_store.get_neighbors, label, artifact_uuid)
        return self._graph_response(campaign_uuid, nodes, edges)

    async def search(self, db: Session, campaign_uuid: str, request: SearchRequest) -> List[SearchResultResponse]:
        """Semantic note search; hits without an active relational note are dropped"""
        self._campaign(db, campaign_uuid)
        if not request.query or not request.query.strip():
            raise ValidationError("Search query is required")

        embedding = await self.embedding_service.embed(request.query.strip())
        try:
            hits = await asyncio.wait_for(
                asyncio.to_thread(
                    self.vector_store.query_similar, campaign_uuid, embedding.vector, DOC_TYPE_NOTE, request.limit
                ),
                timeout=self.vector_timeout,
            )
        except asyncio.TimeoutError as e:
            raise ExternalServiceError(f"Vector store timed out after {self.vector_timeout}s") from e
        except Exception as e:
            raise ExternalServiceError(f"Vector store query failed: {e}") from e

        if not hits:
            return []
        notes = {
            n.note_uuid: n for n in db.query(Note).filter(
                Note.campaign_uuid == campaign_uuid,
                Note.note_uuid.in_([h["id"] for h in hits]),
                Note.is_active.is_(True),
            ).all()
        }
        results = []
        for hit in hits:
            note = notes.get(hit["id"])
            if note is None:
                continue
            results.append(SearchResultResponse(
                note_id=note.note_uuid,
                title=note.title,
                content_preview=note.content[:PREVIEW_LENGTH],
                score=round(hit["similarity"], 4),
            ))
        return results
