"""
Multi-Store Sync Coordinator

Drives each note's vector and graph projections to eventual consistency with
its relational record. Status is tracked per note and per store:

    pending -> syncing -> synced
                       -> error -> retry -> syncing -> ...

Every transition is committed immediately, so a crash mid-sync leaves a row
that recover() can find again. The two stores are independent: a failure in
one never blocks or rolls back the other.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import String, cast, or_
from sqlalchemy.orm import Session

from exceptions import ExternalServiceError, SyncError
from knowledge_graph.config import RetryPolicy
from knowledge_graph.embedding_service import EmbeddingService
from knowledge_graph.graph_store import GraphStore, campaign_label
from knowledge_graph.models import NoteStatus, ProposalStatus, SyncStatus, SyncStore
from knowledge_graph.vector_store import (
    DOC_TYPE_ARTIFACT,
    DOC_TYPE_NOTE,
    DOC_TYPE_RELATIONSHIP,
    VectorStore,
)
from models import Artifact, Campaign, MergeProposalRecord, Note, NoteProcessingTask, Relationship

logger = logging.getLogger(__name__)

COLUMN_PREFIX = {
    SyncStore.VECTOR: "qdrant",
    SyncStore.GRAPH: "neo4j",
}

ALLOWED_TRANSITIONS = {
    SyncStatus.PENDING: {SyncStatus.SYNCING},
    SyncStatus.SYNCING: {SyncStatus.SYNCED, SyncStatus.ERROR},
    SyncStatus.ERROR: {SyncStatus.RETRY},
    SyncStatus.RETRY: {SyncStatus.SYNCING},
    SyncStatus.SYNCED: set(),
}


class InvalidTransition(ValueError):
    pass


def get_status(note: Note, store: SyncStore) -> SyncStatus:
    return SyncStatus(getattr(note, f"{COLUMN_PREFIX[store]}_sync_status"))


def sync_state(note: Note, store: SyncStore) -> Dict[str, Any]:
    prefix = COLUMN_PREFIX[store]
    return {
        "status": getattr(note, f"{prefix}_sync_status"),
        "error": getattr(note, f"{prefix}_sync_error"),
        "last_sync_at": getattr(note, f"{prefix}_last_sync_at"),
        "attempts": getattr(note, f"{prefix}_sync_attempts") or 0,
    }


def transition(db: Session, note: Note, store: SyncStore, target: SyncStatus, error: Optional[str] = None) -> None:
    """Move one store's status and commit"""
    prefix = COLUMN_PREFIX[store]
    current = get_status(note, store)
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransition(f"{store.value} sync of note {note.note_uuid}: {current.value} -> {target.value}")

    values = {f"{prefix}_sync_status": target.value}
    if target == SyncStatus.SYNCING:
        values[f"{prefix}_sync_attempts"] = (getattr(note, f"{prefix}_sync_attempts") or 0) + 1
        values[f"{prefix}_last_sync_at"] = datetime.utcnow()
    elif target == SyncStatus.SYNCED:
        values[f"{prefix}_sync_error"] = None
        values[f"{prefix}_last_sync_at"] = datetime.utcnow()
    elif target == SyncStatus.ERROR:
        values[f"{prefix}_sync_error"] = error

    # Compare-and-set so concurrent workers cannot both claim the same transition
    updated = db.query(Note).filter(
        Note.id == note.id,
        getattr(Note, f"{prefix}_sync_status") == current.value,
    ).update(values, synchronize_session="fetch")
    db.commit()
    if updated != 1:
        raise InvalidTransition(f"{store.value} sync of note {note.note_uuid} changed concurrently")
    logger.debug(f"{store.value} sync of note {note.note_uuid}: {current.value} -> {target.value}")


def note_ready_for_sync(db: Session, note: Note) -> bool:
    """Processing finished and no merge proposals are waiting on the user"""
    task = (
        db.query(NoteProcessingTask)
        .filter(NoteProcessingTask.note_uuid == note.note_uuid,
                NoteProcessingTask.campaign_uuid == note.campaign_uuid)
        .order_by(NoteProcessingTask.id.desc())
        .first()
    )
    if task is None or task.status != NoteStatus.COMPLETED.value:
        return False
    pending = db.query(MergeProposalRecord).filter(
        MergeProposalRecord.note_uuid == note.note_uuid,
        MergeProposalRecord.status == ProposalStatus.PENDING.value,
    ).count()
    return pending == 0


def _provenance_mentions(column, note_uuid: str):
    """LIKE prefilter on the stored JSON text of a provenance list"""
    escaped = note_uuid.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return cast(column, String).like(f'%"{escaped}"%', escape="\\")


def linked_artifacts(db: Session, note: Note) -> List[Artifact]:
    rows = db.query(Artifact).filter(
        Artifact.campaign_uuid == note.campaign_uuid,
        _provenance_mentions(Artifact.note_ids, note.note_uuid),
    ).order_by(Artifact.id).all()
    return [a for a in rows if note.note_uuid in (a.note_ids or [])]


def linked_relationships(db: Session, note: Note) -> List[Relationship]:
    rows = db.query(Relationship).filter(
        Relationship.campaign_uuid == note.campaign_uuid,
        _provenance_mentions(Relationship.note_ids, note.note_uuid),
    ).order_by(Relationship.id).all()
    return [r for r in rows if note.note_uuid in (r.note_ids or [])]


class SyncCoordinator:
    def __init__(
        self,
        embedding_service: EmbeddingService,
        vector_store: VectorStore,
        graph_store: GraphStore,
        policy: RetryPolicy,
        vector_timeout: float = 15.0,
        graph_timeout: float = 15.0,
        stale_after: float = 900.0,
    ):
        self.embedding_service = embedding_service
        self.vector_store = vector_store
        self.graph_store = graph_store
        self.policy = policy
        self.vector_timeout = vector_timeout
        self.graph_timeout = graph_timeout
        self.stale_after = stale_after

    async def _call(self, store: SyncStore, timeout: float, fn: Callable, *args) -> Any:
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise SyncError(store.value, f"timed out after {timeout}s") from e
        except SyncError:
            raise
        except Exception as e:
            raise SyncError(store.value, str(e)) from e

    # ------------------------------------------------------------------
    # Projection writers
    # ------------------------------------------------------------------

    async def _vector(self, text: str, cache: Dict[str, List[float]]) -> List[float]:
        if text in cache:
            return cache[text]
        try:
            embedding = await self.embedding_service.embed(text)
        except ExternalServiceError as e:
            raise SyncError(SyncStore.VECTOR.value, str(e)) from e
        cache[text] = embedding.vector
        return embedding.vector

    async def _push_vector(self, db: Session, note: Note, cache: Dict[str, List[float]]) -> None:
        es = self.embedding_service
        documents = [(
            note.note_uuid, DOC_TYPE_NOTE, es.note_text(note.title, note.content),
            {"note_id": note.note_uuid, "title": note.title, "is_override": bool(note.is_override)},
        )]
        artifacts = linked_artifacts(db, note)
        names = {a.artifact_uuid: a.name for a in artifacts}
        for a in artifacts:
            documents.append((
                a.artifact_uuid, DOC_TYPE_ARTIFACT,
                es.artifact_text(a.name, a.artifact_type, a.short_description, a.description),
                {"artifact_id": a.artifact_uuid, "name": a.name, "artifact_type": a.artifact_type,
                 "note_ids": a.note_ids},
            ))
        relationships = linked_relationships(db, note)
        missing = {r.source_artifact_uuid for r in relationships} | {r.target_artifact_uuid for r in relationships}
        missing -= set(names)
        if missing:
            names.update({
                a.artifact_uuid: a.name
                for a in db.query(Artifact).filter(Artifact.artifact_uuid.in_(list(missing))).all()
            })
        for r in relationships:
            source = names.get(r.source_artifact_uuid, r.source_artifact_uuid)
            target = names.get(r.target_artifact_uuid, r.target_artifact_uuid)
            documents.append((
                r.relationship_uuid, DOC_TYPE_RELATIONSHIP,
                es.relationship_text(source, r.label, target, r.description, r.reasoning),
                {"relationship_id": r.relationship_uuid, "source": r.source_artifact_uuid,
                 "target": r.target_artifact_uuid, "label": r.label, "note_ids": r.note_ids},
            ))

        for item_id, doc_type, text, metadata in documents:
            vector = await self._vector(text, cache)
            await self._call(
                SyncStore.VECTOR, self.vector_timeout, self.vector_store.upsert,
                note.campaign_uuid, item_id, doc_type, vector, text, metadata,
            )

    async def _push_graph(self, db: Session, note: Note) -> None:
        campaign = db.query(Campaign).filter(Campaign.uuid == note.campaign_uuid).first()
        label = campaign_label(note.campaign_uuid, campaign.graph_label if campaign else None)

        artifacts = {a.artifact_uuid: a for a in linked_artifacts(db, note)}
        relationships = linked_relationships(db, note)
        endpoints = {r.source_artifact_uuid for r in relationships} | {r.target_artifact_uuid for r in relationships}
        endpoints -= set(artifacts)
        if endpoints:
            for a in db.query(Artifact).filter(Artifact.artifact_uuid.in_(list(endpoints))).all():
                artifacts[a.artifact_uuid] = a

        for a in artifacts.values():
            await self._call(SyncStore.GRAPH, self.graph_timeout, self.graph_store.upsert_artifact, label, {
                "id": a.artifact_uuid,
                "name": a.name,
                "type": a.artifact_type,
                "description": a.description,
                "short_description": a.short_description,
                "campaign_uuid": a.campaign_uuid,
                "note_ids": list(a.note_ids or []),
            })
        for r in relationships:
            await self._call(SyncStore.GRAPH, self.graph_timeout, self.graph_store.upsert_relationship, label, {
                "id": r.relationship_uuid,
                "source": r.source_artifact_uuid,
                "target": r.target_artifact_uuid,
                "label": r.label,
                "description": r.description,
                "reasoning": r.reasoning,
                "campaign_uuid": r.campaign_uuid,
                "note_ids": list(r.note_ids or []),
            })

    # ------------------------------------------------------------------
    # State machine drivers
    # ------------------------------------------------------------------

    async def sync(self, db: Session, note: Note, store: SyncStore,
                   embeddings: Optional[Dict[str, List[float]]] = None) -> bool:
        """
        Run one store sync for a note in pending or retry state.

        Returns True when the store ends up synced.
        """
        status = get_status(note, store)
        if status == SyncStatus.SYNCED:
            return True
        if status not in (SyncStatus.PENDING, SyncStatus.RETRY):
            logger.info(f"Skipping {store.value} sync of note {note.note_uuid}: status {status.value}")
            return False

        try:
            transition(db, note, store, SyncStatus.SYNCING)
        except InvalidTransition as e:
            logger.info(f"Skipping {store.value} sync of note {note.note_uuid}: {e}")
            return False
        try:
            if store == SyncStore.VECTOR:
                await self._push_vector(db, note, embeddings if embeddings is not None else {})
            else:
                await self._push_graph(db, note)
        except SyncError as e:
            logger.error(f"❌ {store.value} sync failed for note {note.note_uuid}: {e.message}")
            transition(db, note, store, SyncStatus.ERROR, error=e.message)
            return False

        transition(db, note, store, SyncStatus.SYNCED)
        logger.info(f"✅ {store.value} sync complete for note {note.note_uuid}")
        return True

    async def fan_out(self, db: Session, note: Note,
                      embeddings: Optional[Dict[str, List[float]]] = None) -> Dict[str, str]:
        """Sync both projections; each store's outcome is independent"""
        for store in SyncStore:
            await self.sync(db, note, store, embeddings)
        return {store.value: get_status(note, store).value for store in SyncStore}

    def record_failure(self, db: Session, note: Note, store: SyncStore, message: str) -> bool:
        """
        Record a failure observed outside a sync run (e.g. the vector store
        being unreachable during candidate retrieval).

        Returns False when the store is already synced and the status is left alone.
        """
        status = get_status(note, store)
        if status == SyncStatus.SYNCED:
            logger.warning(f"{store.value} failure for already-synced note {note.note_uuid}: {message}")
            return False
        if status == SyncStatus.ERROR:
            transition(db, note, store, SyncStatus.RETRY)
            status = SyncStatus.RETRY
        if status in (SyncStatus.PENDING, SyncStatus.RETRY):
            transition(db, note, store, SyncStatus.SYNCING)
        transition(db, note, store, SyncStatus.ERROR, error=message)
        return True

    def requeue(self, db: Session, note: Note, store: SyncStore) -> bool:
        """Explicit error -> retry re-queue. Returns False if the store is not in error."""
        if get_status(note, store) != SyncStatus.ERROR:
            return False
        transition(db, note, store, SyncStatus.RETRY)
        logger.info(f"🔄 Re-queued {store.value} sync of note {note.note_uuid}")
        return True

    async def recover(self, db: Session, campaign_uuid: Optional[str] = None,
                      now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Re-scan unsynced rows and drive them forward.

        - syncing rows older than stale_after are marked error (interrupted)
        - error rows are re-queued when the retry policy allows
        - pending/retry rows of notes that finished processing are synced
        """
        now = now or datetime.utcnow()
        stale_before = now - timedelta(seconds=self.stale_after)
        summary = {"stale": 0, "requeued": 0, "synced": 0, "failed": 0, "skipped": 0}

        unsynced = [s.value for s in SyncStatus if s != SyncStatus.SYNCED]
        query = db.query(Note).filter(
            Note.is_active.is_(True),
            or_(Note.qdrant_sync_status.in_(unsynced), Note.neo4j_sync_status.in_(unsynced)),
        )
        if campaign_uuid:
            query = query.filter(Note.campaign_uuid == campaign_uuid)

        for note in query.order_by(Note.id).all():
            ready = note_ready_for_sync(db, note)
            for store in SyncStore:
                try:
                    outcome = await self._recover_store(db, note, store, ready, now, stale_before)
                except InvalidTransition as e:
                    logger.info(f"Recovery skipped {store.value} sync of note {note.note_uuid}: {e}")
                    outcome = ["skipped"]
                for key in outcome:
                    summary[key] += 1

        logger.info(f"Sync recovery: {summary}")
        return summary

    async def _recover_store(self, db: Session, note: Note, store: SyncStore, ready: bool,
                             now: datetime, stale_before: datetime) -> List[str]:
        outcome = []
        state = sync_state(note, store)
        status = SyncStatus(state["status"])

        if status == SyncStatus.SYNCING and (state["last_sync_at"] is None or state["last_sync_at"] < stale_before):
            transition(db, note, store, SyncStatus.ERROR, error="sync interrupted")
            outcome.append("stale")
            status = SyncStatus.ERROR

        if status == SyncStatus.SYNCED:
            return outcome
        if not ready:
            return outcome + ["skipped"]

        if status == SyncStatus.ERROR:
            if not self.policy.is_eligible(state["attempts"], state["last_sync_at"], now):
                return outcome + ["skipped"]
            transition(db, note, store, SyncStatus.RETRY)
            outcome.append("requeued")
            status = SyncStatus.RETRY

        if status in (SyncStatus.PENDING, SyncStatus.RETRY):
            outcome.append("synced" if await self.sync(db, note, store) else "failed")
        return outcome
