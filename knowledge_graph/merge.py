"""
Merge Resolution

Applies deduplication decisions to the relational store:

- CreatedNew: a new Artifact/Relationship row with this note as provenance
- AutoMerged: provenance and description folded into the existing row
- PendingConfirmation: a MergeProposalRecord holding the new item's payload;
  nothing else is written until the user approves (merge) or rejects
  (create as a distinct entity)

Resolving a proposal is idempotent by proposal id: once it is no longer
pending, further approvals or rejections leave every row untouched.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from exceptions import NotFoundError
from knowledge_graph.models import (
    ArtifactDraft,
    DedupState,
    DeduplicationResult,
    ItemType,
    MergeProposal,
    ProposalStatus,
    RelationshipDraft,
    name_key,
)
from models import Artifact, MergeProposalRecord, Relationship

logger = logging.getLogger(__name__)

DESCRIPTION_SEPARATOR = " | "


def union_provenance(existing: Optional[Iterable[str]], incoming: Iterable[str]) -> List[str]:
    """Ordered union without duplicates"""
    merged: List[str] = []
    for note_id in list(existing or []) + list(incoming):
        if note_id and note_id not in merged:
            merged.append(note_id)
    return merged


def merge_description(existing: Optional[str], incoming: Optional[str]) -> str:
    existing = (existing or "").strip()
    incoming = (incoming or "").strip()
    if not existing:
        return incoming
    if not incoming or incoming in existing:
        return existing
    return f"{existing}{DESCRIPTION_SEPARATOR}{incoming}"


@dataclass
class ApplyReport:
    """What merge resolution wrote for one note"""
    created_artifacts: List[Artifact] = field(default_factory=list)
    merged_artifacts: List[Artifact] = field(default_factory=list)
    created_relationships: List[Relationship] = field(default_factory=list)
    merged_relationships: List[Relationship] = field(default_factory=list)
    pending: List[MergeProposalRecord] = field(default_factory=list)
    resolved_names: Dict[str, Optional[str]] = field(default_factory=dict)  # name key -> artifact uuid, None while pending

    def extend(self, other: "ApplyReport") -> None:
        self.created_artifacts.extend(other.created_artifacts)
        self.merged_artifacts.extend(other.merged_artifacts)
        self.created_relationships.extend(other.created_relationships)
        self.merged_relationships.extend(other.merged_relationships)
        self.pending.extend(other.pending)
        self.resolved_names.update(other.resolved_names)

    @property
    def artifacts(self) -> List[Artifact]:
        seen = {}
        for artifact in self.created_artifacts + self.merged_artifacts:
            seen.setdefault(artifact.artifact_uuid, artifact)
        return list(seen.values())

    @property
    def relationships(self) -> List[Relationship]:
        seen = {}
        for rel in self.created_relationships + self.merged_relationships:
            seen.setdefault(rel.relationship_uuid, rel)
        return list(seen.values())


class MergeResolver:
    # ------------------------------------------------------------------
    # Single-entity operations
    # ------------------------------------------------------------------

    def create_artifact(self, db: Session, campaign_uuid: str, note_uuid: str, draft: ArtifactDraft) -> Artifact:
        artifact = Artifact(
            artifact_uuid=draft.draft_id,
            campaign_uuid=campaign_uuid,
            name=draft.name,
            name_key=name_key(draft.name),
            artifact_type=draft.category,
            description=draft.description or "",
            short_description=draft.short_description or "",
            note_ids=[note_uuid],
        )
        db.add(artifact)
        db.flush()
        logger.info(f"Created artifact '{artifact.name}' ({artifact.artifact_uuid})")
        return artifact

    def merge_artifact(self, artifact: Artifact, draft: ArtifactDraft, note_uuid: str) -> Artifact:
        # JSON columns are replaced, never mutated in place
        artifact.note_ids = union_provenance(artifact.note_ids, [note_uuid])
        artifact.description = merge_description(artifact.description, draft.description)
        if not artifact.short_description and draft.short_description:
            artifact.short_description = draft.short_description
        artifact.updated_at = datetime.utcnow()
        logger.info(f"Merged '{draft.name}' into artifact '{artifact.name}' ({artifact.artifact_uuid})")
        return artifact

    def create_relationship(
        self, db: Session, campaign_uuid: str, note_uuid: str, draft: RelationshipDraft
    ) -> Relationship:
        rel = Relationship(
            relationship_uuid=draft.draft_id,
            campaign_uuid=campaign_uuid,
            source_artifact_uuid=draft.source_id,
            target_artifact_uuid=draft.target_id,
            label=draft.label,
            description=draft.description or "",
            reasoning=draft.reasoning or "",
            note_ids=[note_uuid],
        )
        db.add(rel)
        db.flush()
        logger.info(f"Created relationship {draft.name} ({rel.relationship_uuid})")
        return rel

    def merge_relationship(self, rel: Relationship, draft: RelationshipDraft, note_uuid: str) -> Relationship:
        rel.note_ids = union_provenance(rel.note_ids, [note_uuid])
        rel.description = merge_description(rel.description, draft.description)
        rel.reasoning = merge_description(rel.reasoning, draft.reasoning)
        rel.updated_at = datetime.utcnow()
        return rel

    # ------------------------------------------------------------------
    # Existence re-checks
    # ------------------------------------------------------------------

    def find_artifact_by_name(
        self, db: Session, campaign_uuid: str, draft: ArtifactDraft, exclude: Optional[str] = None
    ) -> Optional[Artifact]:
        query = db.query(Artifact).filter(Artifact.campaign_uuid == campaign_uuid, Artifact.name_key == draft.key)
        if exclude:
            query = query.filter(Artifact.artifact_uuid != exclude)
        return query.order_by(Artifact.id).first()

    def find_relationship(
        self, db: Session, campaign_uuid: str, draft: RelationshipDraft, exclude: Optional[str] = None
    ) -> Optional[Relationship]:
        if not draft.source_id or not draft.target_id:
            return None
        query = db.query(Relationship).filter(
            Relationship.campaign_uuid == campaign_uuid,
            Relationship.source_artifact_uuid == draft.source_id,
            Relationship.target_artifact_uuid == draft.target_id,
            func.lower(Relationship.label) == draft.label.lower(),
        )
        if exclude:
            query = query.filter(Relationship.relationship_uuid != exclude)
        return query.order_by(Relationship.id).first()

    def _artifact_target(
        self, db: Session, record: MergeProposalRecord, approved: bool
    ) -> Tuple[ArtifactDraft, Optional[Artifact]]:
        """
        Artifact a resolved proposal folds into, or None when a new one is created.

        A rejected proposal still merges into an artifact of the same name
        created after the proposal was recorded (e.g. by another note's
        rejection), so one entity is never created twice.
        """
        draft = ArtifactDraft.from_dict(record.new_item)
        if approved:
            existing = db.query(Artifact).filter(Artifact.artifact_uuid == record.existing_item_id).first()
            if existing is not None:
                return draft, existing
        return draft, self.find_artifact_by_name(db, record.campaign_uuid, draft, exclude=record.existing_item_id)

    # ------------------------------------------------------------------
    # Proposals
    # ------------------------------------------------------------------

    def record_proposal(
        self, db: Session, campaign_uuid: str, note_uuid: str, proposal: MergeProposal, payload: dict
    ) -> MergeProposalRecord:
        record = MergeProposalRecord(
            proposal_uuid=proposal.proposal_id,
            campaign_uuid=campaign_uuid,
            note_uuid=note_uuid,
            item_type=proposal.item_type.value,
            new_item_id=proposal.new_item_id,
            new_item_name=proposal.new_item_name,
            new_item=payload,
            existing_item_id=proposal.existing_item_id,
            existing_item_name=proposal.existing_item_name,
            confidence=proposal.confidence,
            reasoning=proposal.reasoning,
            auto_merge=proposal.auto_merge,
            status=ProposalStatus.APPROVED.value if proposal.auto_merge else ProposalStatus.PENDING.value,
            resolved_at=datetime.utcnow() if proposal.auto_merge else None,
            resolved_item_id=proposal.existing_item_id if proposal.auto_merge else None,
        )
        db.add(record)
        db.flush()
        return record

    def pending_proposals(self, db: Session, note_uuid: str) -> List[MergeProposalRecord]:
        return db.query(MergeProposalRecord).filter(
            MergeProposalRecord.note_uuid == note_uuid,
            MergeProposalRecord.status == ProposalStatus.PENDING.value,
        ).order_by(MergeProposalRecord.id).all()

    def plan_proposal(self, db: Session, record: MergeProposalRecord, approved: bool) -> Optional[str]:
        """Artifact id an artifact proposal will resolve to, without writing"""
        if record.status != ProposalStatus.PENDING.value:
            return record.resolved_item_id
        draft, target = self._artifact_target(db, record, approved)
        return target.artifact_uuid if target is not None else draft.draft_id

    def resolve_proposal(
        self, db: Session, proposal_uuid: str, approved: bool, report: Optional[ApplyReport] = None
    ) -> MergeProposalRecord:
        """
        Approve (merge into existing) or reject (create distinct entity).

        A proposal that is no longer pending is returned unchanged.
        """
        record = db.query(MergeProposalRecord).filter(MergeProposalRecord.proposal_uuid == proposal_uuid).first()
        if record is None:
            raise NotFoundError(f"Merge proposal {proposal_uuid} not found")
        if record.status != ProposalStatus.PENDING.value:
            logger.info(f"Proposal {proposal_uuid} already {record.status}, nothing to apply")
            return record

        report = report if report is not None else ApplyReport()
        if record.item_type == ItemType.ARTIFACT.value:
            draft, target = self._artifact_target(db, record, approved)
            if approved and (target is None or target.artifact_uuid != record.existing_item_id):
                logger.warning(f"Proposal {proposal_uuid} target vanished")
            if target is not None:
                report.merged_artifacts.append(self.merge_artifact(target, draft, record.note_uuid))
                record.resolved_item_id = target.artifact_uuid
            else:
                created = self.create_artifact(db, record.campaign_uuid, record.note_uuid, draft)
                report.created_artifacts.append(created)
                record.resolved_item_id = created.artifact_uuid
            report.resolved_names[draft.key] = record.resolved_item_id
        else:
            draft = RelationshipDraft.from_dict(record.new_item)
            target = None
            if approved:
                target = db.query(Relationship).filter(
                    Relationship.relationship_uuid == record.existing_item_id
                ).first()
            if target is None:
                target = self.find_relationship(db, record.campaign_uuid, draft, exclude=record.existing_item_id)
            if target is not None:
                report.merged_relationships.append(self.merge_relationship(target, draft, record.note_uuid))
                record.resolved_item_id = target.relationship_uuid
            else:
                created = self.create_relationship(db, record.campaign_uuid, record.note_uuid, draft)
                report.created_relationships.append(created)
                record.resolved_item_id = created.relationship_uuid

        record.status = ProposalStatus.APPROVED.value if approved else ProposalStatus.REJECTED.value
        record.resolved_at = datetime.utcnow()
        db.flush()
        logger.info(f"Proposal {proposal_uuid} {record.status}: {record.new_item_name} -> {record.resolved_item_id}")
        return record

    # ------------------------------------------------------------------
    # Applying a deduplication result
    # ------------------------------------------------------------------

    def plan_artifacts(self, db: Session, result: DeduplicationResult) -> Dict[str, Optional[str]]:
        """
        Name key -> artifact id each extracted artifact resolves to once
        ``result`` is applied (None while a proposal is pending). Writes nothing.
        """
        planned: Dict[str, Optional[str]] = {}
        for outcome in result.outcomes:
            draft: ArtifactDraft = outcome.item
            if outcome.state == DedupState.PENDING_CONFIRMATION:
                planned[draft.key] = None
            elif outcome.state == DedupState.AUTO_MERGED and db.query(Artifact.id).filter(
                Artifact.artifact_uuid == outcome.proposal.existing_item_id
            ).first() is not None:
                planned[draft.key] = outcome.proposal.existing_item_id
            else:
                planned[draft.key] = draft.draft_id
        return planned

    def apply_artifacts(
        self, db: Session, campaign_uuid: str, note_uuid: str, result: DeduplicationResult
    ) -> ApplyReport:
        report = ApplyReport()
        for outcome in result.outcomes:
            draft: ArtifactDraft = outcome.item
            if outcome.state == DedupState.AUTO_MERGED:
                existing = db.query(Artifact).filter(
                    Artifact.artifact_uuid == outcome.proposal.existing_item_id
                ).first()
                if existing is None:
                    created = self.create_artifact(db, campaign_uuid, note_uuid, draft)
                    report.created_artifacts.append(created)
                    report.resolved_names[draft.key] = created.artifact_uuid
                    continue
                self.record_proposal(db, campaign_uuid, note_uuid, outcome.proposal, draft.to_dict())
                report.merged_artifacts.append(self.merge_artifact(existing, draft, note_uuid))
                report.resolved_names[draft.key] = existing.artifact_uuid
            elif outcome.state == DedupState.PENDING_CONFIRMATION:
                report.pending.append(
                    self.record_proposal(db, campaign_uuid, note_uuid, outcome.proposal, draft.to_dict())
                )
                report.resolved_names[draft.key] = None
            else:
                created = self.create_artifact(db, campaign_uuid, note_uuid, draft)
                report.created_artifacts.append(created)
                report.resolved_names[draft.key] = created.artifact_uuid
        return report

    def apply_relationships(
        self, db: Session, campaign_uuid: str, note_uuid: str, result: DeduplicationResult
    ) -> ApplyReport:
        report = ApplyReport()
        for outcome in result.outcomes:
            draft: RelationshipDraft = outcome.item
            if outcome.state == DedupState.AUTO_MERGED:
                existing = db.query(Relationship).filter(
                    Relationship.relationship_uuid == outcome.proposal.existing_item_id
                ).first()
                if existing is None:
                    report.created_relationships.append(self.create_relationship(db, campaign_uuid, note_uuid, draft))
                    continue
                self.record_proposal(db, campaign_uuid, note_uuid, outcome.proposal, draft.to_dict())
                report.merged_relationships.append(self.merge_relationship(existing, draft, note_uuid))
            elif outcome.state == DedupState.PENDING_CONFIRMATION:
                report.pending.append(
                    self.record_proposal(db, campaign_uuid, note_uuid, outcome.proposal, draft.to_dict())
                )
            else:
                report.created_relationships.append(self.create_relationship(db, campaign_uuid, note_uuid, draft))
        return report
