"""
Knowledge Graph Pipeline

Orchestrates the processing of one campaign note into knowledge graph entries.

Pipeline flow:
1. Extract artifacts (NAE) and relationships (ARE) from the note text
2. Under the campaign lock: retrieve candidates and adjudicate artifacts, plan
   the artifact ids, resolve relationship endpoints against that plan
   (relationships touching an artifact that waits for user confirmation are
   deferred), then deduplicate the relationships
3. Apply every write of the note in one short transaction, after the last
   external call, so no database write lock is held across an await
4. Fan out to the vector and graph stores once nothing waits on the user

Every step is recorded on the note's NoteProcessingTask row so callers can
poll progress instead of blocking on the whole pipeline.
"""

import json
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from exceptions import CandidateRetrievalError, ConflictError, NotFoundError, NotesPipelineError
from knowledge_graph.deduplication import CampaignLocks, DeduplicationEngine
from knowledge_graph.extraction import ExtractionStage, KnownArtifact
from knowledge_graph.merge import ApplyReport, MergeResolver
from knowledge_graph.models import (
    ArtifactDraft,
    DeduplicationResult,
    ItemType,
    NoteStatus,
    ProcessingPhase,
    ProposalStatus,
    RejectedRelationship,
    RelationshipDraft,
    SyncStore,
    name_key,
)
from knowledge_graph.sync import SyncCoordinator, linked_artifacts, linked_relationships
from models import (
    Artifact,
    ArtifactResponse,
    DeduplicationSummary,
    MergeProposalRecord,
    MergeProposalResponse,
    Note,
    NoteCreateResponse,
    NoteProcessingTask,
    RejectedRelationshipResponse,
)

logger = logging.getLogger(__name__)

PHASE_PROGRESS = {
    ProcessingPhase.QUEUED: 0,
    ProcessingPhase.EXTRACTING_ARTIFACTS: 10,
    ProcessingPhase.EXTRACTING_RELATIONSHIPS: 30,
    ProcessingPhase.DEDUPLICATING: 50,
    ProcessingPhase.MERGING: 70,
    ProcessingPhase.AWAITING_CONFIRMATION: 90,
    ProcessingPhase.SYNCING: 90,
    ProcessingPhase.COMPLETE: 100,
}


def artifact_response(artifact: Artifact) -> ArtifactResponse:
    return ArtifactResponse(
        id=artifact.artifact_uuid,
        campaign_uuid=artifact.campaign_uuid,
        name=artifact.name,
        type=artifact.artifact_type,
        description=artifact.description or "",
        short_description=artifact.short_description or "",
        note_ids=list(artifact.note_ids or []),
    )


def proposal_response(record: MergeProposalRecord) -> MergeProposalResponse:
    approved = None
    if record.status != ProposalStatus.PENDING.value:
        approved = record.status == ProposalStatus.APPROVED.value
    return MergeProposalResponse(
        proposal_id=record.proposal_uuid,
        new_item_id=record.new_item_id,
        new_item_name=record.new_item_name,
        existing_item_id=record.existing_item_id,
        existing_item_name=record.existing_item_name,
        item_type=record.item_type,
        confidence=record.confidence or 0,
        reasoning=record.reasoning or "",
        auto_merge=bool(record.auto_merge),
        approved=approved,
    )


def summarize(results: Sequence[DeduplicationResult]) -> Optional[DeduplicationSummary]:
    if not results:
        return None
    return DeduplicationSummary(
        processed_count=sum(len(r.outcomes) for r in results),
        auto_merged_count=sum(len(r.auto_merged) for r in results),
        pending_count=sum(len(r.pending) for r in results),
        created_new_count=sum(len(r.created_new) for r in results),
        candidate_retrieval_degraded=any(r.retrieval_error for r in results),
        phase1_duration_ms=round(sum(r.phase1_duration_ms for r in results), 1),
        phase2_duration_ms=round(sum(r.phase2_duration_ms for r in results), 1),
        tokens_used=sum(r.tokens_used for r in results),
    )


def latest_task(db: Session, campaign_uuid: str, note_uuid: str) -> Optional[NoteProcessingTask]:
    return (
        db.query(NoteProcessingTask)
        .filter(NoteProcessingTask.campaign_uuid == campaign_uuid,
                NoteProcessingTask.note_uuid == note_uuid)
        .order_by(NoteProcessingTask.id.desc())
        .first()
    )


class NotePipeline:
    """
    Runs processing tasks end to end.

    Each call opens its own session from ``session_factory``; the pipeline
    is shared by all workers of the note worker pool.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        extraction: ExtractionStage,
        engine: DeduplicationEngine,
        resolver: MergeResolver,
        sync: SyncCoordinator,
        locks: Optional[CampaignLocks] = None,
        context_limit: int = 50,
    ):
        self.session_factory = session_factory
        self.extraction = extraction
        self.engine = engine
        self.resolver = resolver
        self.sync = sync
        self.locks = locks or CampaignLocks()
        self.context_limit = context_limit

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _note(self, db: Session, campaign_uuid: str, note_uuid: str) -> Note:
        note = db.query(Note).filter(Note.campaign_uuid == campaign_uuid, Note.note_uuid == note_uuid).first()
        if note is None:
            raise NotFoundError(f"Note {note_uuid} not found in campaign {campaign_uuid}")
        return note

    def _set_phase(self, db: Session, task: NoteProcessingTask, phase: ProcessingPhase, commit: bool = True) -> None:
        task.current_phase = phase.value
        task.progress = PHASE_PROGRESS[phase]
        if commit:
            db.commit()
        logger.info(f"📊 Task {task.task_id}: {phase.value} ({task.progress}%)")

    def _known_artifacts(self, db: Session, campaign_uuid: str) -> List[KnownArtifact]:
        rows = (
            db.query(Artifact)
            .filter(Artifact.campaign_uuid == campaign_uuid)
            .order_by(Artifact.updated_at.desc())
            .limit(self.context_limit)
            .all()
        )
        return [KnownArtifact(a.name, a.artifact_type, a.short_description or "") for a in rows]

    def _lookup_artifact(self, db: Session, campaign_uuid: str, name: str) -> Optional[str]:
        row = db.query(Artifact).filter(
            Artifact.campaign_uuid == campaign_uuid,
            Artifact.name_key == name_key(name),
        ).first()
        return row.artifact_uuid if row else None

    def _resolve_endpoints(
        self,
        db: Session,
        campaign_uuid: str,
        drafts: Sequence[RelationshipDraft],
        resolved_names: Dict[str, Optional[str]],
    ) -> Tuple[List[RelationshipDraft], List[RelationshipDraft], List[RejectedRelationship]]:
        """
        Map endpoint names onto artifact ids.

        Returns (ready, deferred, rejected). A name resolved to None belongs to
        an artifact waiting on a merge proposal; its relationship is deferred.
        """
        ready, deferred, rejected = [], [], []
        for draft in drafts:
            reason = None
            waiting = False
            for side in ("source", "target"):
                if getattr(draft, f"{side}_id"):
                    continue
                name = getattr(draft, f"{side}_name")
                key = name_key(name)
                if key in resolved_names:
                    artifact_id = resolved_names[key]
                    waiting = waiting or artifact_id is None
                else:
                    artifact_id = self._lookup_artifact(db, campaign_uuid, name)
                    if artifact_id is None:
                        reason = f"artifact '{name}' not found"
                        break
                setattr(draft, f"{side}_id", artifact_id)

            if reason is None and not waiting and draft.source_id == draft.target_id:
                reason = "both endpoints resolve to the same artifact"
            if reason:
                rejected.append(RejectedRelationship(draft.source_name, draft.target_name, draft.label, reason))
            elif waiting:
                deferred.append(draft)
            else:
                ready.append(draft)
        return ready, deferred, rejected

    def _response(
        self,
        db: Session,
        note: Note,
        report: ApplyReport,
        rejected: Sequence[RejectedRelationship],
        results: Sequence[DeduplicationResult],
        message: str,
    ) -> NoteCreateResponse:
        artifacts = linked_artifacts(db, note)
        relationships = linked_relationships(db, note)
        proposals = db.query(MergeProposalRecord).filter(
            MergeProposalRecord.campaign_uuid == note.campaign_uuid,
            MergeProposalRecord.note_uuid == note.note_uuid,
        ).order_by(MergeProposalRecord.id).all()
        pending = [p for p in proposals if p.status == ProposalStatus.PENDING.value]
        merged_artifacts = {a.artifact_uuid for a in report.merged_artifacts}
        merged_relationships = {r.relationship_uuid for r in report.merged_relationships}

        return NoteCreateResponse(
            note_id=note.note_uuid,
            success=True,
            message=message,
            status=NoteStatus.COMPLETED.value,
            artifacts=[artifact_response(a) for a in artifacts],
            artifact_count=len(artifacts),
            relationship_count=len(relationships),
            merged_artifact_count=len(merged_artifacts),
            merged_relationship_count=len(merged_relationships),
            rejected_relationships=[
                RejectedRelationshipResponse(source=r.source_name, target=r.target_name, label=r.label, reason=r.reason)
                for r in rejected
            ],
            deduplication_result=summarize(results),
            requires_user_confirmation=bool(pending),
            artifact_merge_proposals=[proposal_response(p) for p in proposals],
        )

    async def _finish(self, db: Session, task: NoteProcessingTask, note: Note,
                      response: NoteCreateResponse, embeddings: Optional[Dict[str, List[float]]] = None) -> None:
        """Store the result and fan out when nothing waits on the user"""
        task.status = NoteStatus.COMPLETED.value
        task.result = response.model_dump_json(by_alias=True)
        task.error = None
        task.completed_at = datetime.utcnow()
        if response.requires_user_confirmation:
            self._set_phase(db, task, ProcessingPhase.AWAITING_CONFIRMATION)
            logger.info(f"⏸️ Note {note.note_uuid} awaiting confirmation; store sync held")
            return

        self._set_phase(db, task, ProcessingPhase.SYNCING)
        states = await self.sync.fan_out(db, note, embeddings)
        self._set_phase(db, task, ProcessingPhase.COMPLETE)
        logger.info(f"✅ Note {note.note_uuid} processed, sync: {states}")

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process_note(self, task_id: str) -> Optional[NoteCreateResponse]:
        """
        Run one processing task.

        Pipeline failures are recorded on the task (status failed, error
        text) and None is returned. Unexpected errors are recorded the same
        way and re-raised.
        """
        db = self.session_factory()
        try:
            task = db.query(NoteProcessingTask).filter(NoteProcessingTask.task_id == task_id).first()
            if task is None:
                logger.warning(f"Processing task {task_id} not found, skipping")
                return None
            if task.status == NoteStatus.COMPLETED.value:
                logger.info(f"Processing task {task_id} already completed, skipping")
                return None
            note = self._note(db, task.campaign_uuid, task.note_uuid)

            try:
                task.status = NoteStatus.PROCESSING.value
                task.error = None
                task.started_at = datetime.utcnow()
                self._set_phase(db, task, ProcessingPhase.QUEUED)

                # A re-run starts from a clean slate for stores left in error
                for store in SyncStore:
                    self.sync.requeue(db, note, store)

                return await self._run(db, task, note)
            except NotesPipelineError as e:
                self._fail(db, task, note, e)
                return None
            except Exception as e:
                self._fail(db, task, note, e)
                raise
        finally:
            db.close()

    async def _run(self, db: Session, task: NoteProcessingTask, note: Note) -> NoteCreateResponse:
        campaign_uuid = note.campaign_uuid
        extraction = await self.extraction.run(
            note.title,
            note.content,
            self._known_artifacts(db, campaign_uuid),
            on_phase=lambda phase: self._set_phase(db, task, phase),
        )

        embeddings: Dict[str, List[float]] = {}
        async with self.locks.hold(campaign_uuid):
            self._set_phase(db, task, ProcessingPhase.DEDUPLICATING)
            artifact_result = await self.engine.deduplicate_artifacts(
                db, campaign_uuid, extraction.artifacts, embeddings
            )
            planned = self.resolver.plan_artifacts(db, artifact_result)
            ready, deferred, unresolved = self._resolve_endpoints(
                db, campaign_uuid, extraction.relationships, planned
            )
            relationship_result = await self.engine.deduplicate_relationships(db, campaign_uuid, ready, embeddings)

            # All writes of this note go into one transaction with no await inside it
            self._set_phase(db, task, ProcessingPhase.MERGING, commit=False)
            report = self.resolver.apply_artifacts(db, campaign_uuid, note.note_uuid, artifact_result)
            report.extend(self.resolver.apply_relationships(db, campaign_uuid, note.note_uuid, relationship_result))

            task.deferred_relationships = [d.to_dict() for d in deferred]
            task.tokens_used = (
                extraction.tokens_used + artifact_result.tokens_used + relationship_result.tokens_used
            )
            db.commit()

        if deferred:
            logger.info(f"Deferred {len(deferred)} relationship(s) of note {note.note_uuid} until confirmation")

        retrieval_error = artifact_result.retrieval_error or relationship_result.retrieval_error
        if retrieval_error:
            self.sync.record_failure(db, note, SyncStore.VECTOR, f"candidate retrieval failed: {retrieval_error}")

        message = "Note processed"
        if report.pending:
            message = f"Note processed; {len(report.pending)} merge proposal(s) need confirmation"
        response = self._response(
            db, note, report, list(extraction.rejected) + unresolved,
            [artifact_result, relationship_result], message,
        )
        await self._finish(db, task, note, response, embeddings)
        return response

    def _fail(self, db: Session, task: NoteProcessingTask, note: Note, error: Exception) -> None:
        db.rollback()
        if isinstance(error, NotesPipelineError):
            logger.error(f"❌ Processing task {task.task_id} failed: {error}")
        else:
            logger.exception(f"❌ Processing task {task.task_id} failed unexpectedly")
        if isinstance(error, CandidateRetrievalError):
            self.sync.record_failure(db, note, SyncStore.VECTOR, str(error))
        task.status = NoteStatus.FAILED.value
        task.error = str(error) or error.__class__.__name__
        task.completed_at = datetime.utcnow()
        db.commit()

    # ------------------------------------------------------------------
    # Confirmation
    # ------------------------------------------------------------------

    async def confirm_deduplication(
        self, campaign_uuid: str, note_uuid: str, decisions: Dict[str, bool]
    ) -> NoteCreateResponse:
        """
        Resolve the note's pending merge proposals.

        ``decisions`` maps proposal id -> approved. Pending proposals not
        mentioned are rejected, i.e. their items are created as distinct
        entities. Proposals already resolved are left untouched, so a repeated
        confirmation is a no-op.
        """
        db = self.session_factory()
        try:
            note = self._note(db, campaign_uuid, note_uuid)
            task = latest_task(db, campaign_uuid, note_uuid)
            if task is None or task.status != NoteStatus.COMPLETED.value:
                raise ConflictError(f"Note {note_uuid} has not finished processing")

            known = {
                p.proposal_uuid for p in db.query(MergeProposalRecord).filter(
                    MergeProposalRecord.note_uuid == note_uuid,
                    MergeProposalRecord.campaign_uuid == campaign_uuid,
                ).all()
            }
            unknown = sorted(set(decisions) - known)
            if unknown:
                raise NotFoundError(f"Unknown merge proposal(s) for note {note_uuid}: {', '.join(unknown)}")

            results: List[DeduplicationResult] = []
            rejected: List[RejectedRelationship] = []
            async with self.locks.hold(campaign_uuid):
                report = ApplyReport()
                pending = self.resolver.pending_proposals(db, note_uuid)
                # Artifacts first so deferred relationships can see their endpoints
                pending.sort(key=lambda p: p.item_type != ItemType.ARTIFACT.value)
                approvals = {p.proposal_uuid: decisions.get(p.proposal_uuid, False) for p in pending}
                planned = {
                    ArtifactDraft.from_dict(p.new_item).key: self.resolver.plan_proposal(db, p, approvals[p.proposal_uuid])
                    for p in pending if p.item_type == ItemType.ARTIFACT.value
                }

                result = None
                deferred = [RelationshipDraft.from_dict(d) for d in (task.deferred_relationships or [])]
                if deferred:
                    ready, still_deferred, rejected = self._resolve_endpoints(db, campaign_uuid, deferred, planned)
                    for draft in still_deferred:
                        rejected.append(RejectedRelationship(
                            draft.source_name, draft.target_name, draft.label, "endpoint artifact was not resolved"
                        ))
                    result = await self.engine.deduplicate_relationships(db, campaign_uuid, ready)

                # All writes go into one transaction with no await inside it
                for record in pending:
                    self.resolver.resolve_proposal(db, record.proposal_uuid, approvals[record.proposal_uuid], report)
                if result is not None:
                    report.extend(self.resolver.apply_relationships(db, campaign_uuid, note_uuid, result))
                    results.append(result)
                    task.deferred_relationships = []
                db.commit()

            logger.info(
                f"Confirmed deduplication for note {note_uuid}: {len(pending)} proposal(s) resolved, "
                f"{len(report.merged_artifacts)} merged, {len(report.created_artifacts)} created"
            )
            response = self._response(db, note, report, rejected, results, "Deduplication confirmed")
            await self._finish(db, task, note, response)
            return response
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    def interrupted_tasks(self) -> List[str]:
        """
        Task ids to resubmit after a restart: pending tasks plus tasks that
        were mid-processing when the previous process stopped.
        """
        db = self.session_factory()
        try:
            tasks = db.query(NoteProcessingTask).filter(
                NoteProcessingTask.status.in_([NoteStatus.PENDING.value, NoteStatus.PROCESSING.value])
            ).order_by(NoteProcessingTask.id).all()
            for task in tasks:
                if task.status == NoteStatus.PROCESSING.value:
                    logger.warning(f"Task {task.task_id} was interrupted at {task.current_phase}, resubmitting")
                    task.status = NoteStatus.PENDING.value
                    self._set_phase(db, task, ProcessingPhase.QUEUED, commit=False)
            db.commit()
            return [t.task_id for t in tasks]
        finally:
            db.close()

    @staticmethod
    def stored_result(task: NoteProcessingTask) -> Optional[NoteCreateResponse]:
        if not task.result:
            return None
        return NoteCreateResponse.model_validate(json.loads(task.result))
