from sqlalchemy import (
    Column, Integer, String, Boolean, Text, DateTime, ForeignKey, JSON,
    Index, CheckConstraint, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Optional, List, Dict

Base = declarative_base()

SYNC_STATUS_VALUES = ("pending", "syncing", "synced", "error", "retry")
_SYNC_STATUS_SQL = ", ".join(f"'{v}'" for v in SYNC_STATUS_VALUES)


# SQLAlchemy Models
class Campaign(Base):
    """Campaign rows are owned by the campaign service; notes only reference them."""
    __tablename__ = "campaigns"

    id = Column(Integer, primary_key=True, index=True)
    uuid = Column(String(36), unique=True, index=True, nullable=False)
    name = Column(String, nullable=False)
    graph_label = Column(String, nullable=True)  # Neo4j label prefix, derived from uuid when empty
    created_at = Column(DateTime, default=datetime.utcnow)


class Note(Base):
    __tablename__ = "campaign_notes"
    __table_args__ = (
        UniqueConstraint("campaign_uuid", "note_uuid", name="uq_campaign_note"),
        CheckConstraint(f"qdrant_sync_status IN ({_SYNC_STATUS_SQL})", name="ck_qdrant_sync_status"),
        CheckConstraint(f"neo4j_sync_status IN ({_SYNC_STATUS_SQL})", name="ck_neo4j_sync_status"),
        Index("idx_notes_qdrant_status", "qdrant_sync_status"),
        Index("idx_notes_neo4j_status", "neo4j_sync_status"),
    )

    id = Column(Integer, primary_key=True, index=True)
    campaign_uuid = Column(String(36), ForeignKey("campaigns.uuid"), index=True, nullable=False)
    note_uuid = Column(String(36), index=True, nullable=False)  # uuid5 of title + content
    title = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    word_count = Column(Integer, default=0)
    is_override = Column(Boolean, default=False)
    override_reason = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Vector store (projection) sync tracking
    qdrant_sync_status = Column(String(20), default="pending", nullable=False)
    qdrant_sync_error = Column(Text, nullable=True)
    qdrant_last_sync_at = Column(DateTime, nullable=True)
    qdrant_sync_attempts = Column(Integer, default=0, nullable=False)

    # Graph store (projection) sync tracking
    neo4j_sync_status = Column(String(20), default="pending", nullable=False)
    neo4j_sync_error = Column(Text, nullable=True)
    neo4j_last_sync_at = Column(DateTime, nullable=True)
    neo4j_sync_attempts = Column(Integer, default=0, nullable=False)

    @property
    def full_text(self) -> str:
        return f"{self.title}\n\n{self.content}"

    @property
    def fully_processed(self) -> bool:
        return self.qdrant_sync_status == "synced" and self.neo4j_sync_status == "synced"


class NoteOverride(Base):
    __tablename__ = "note_overrides"

    id = Column(Integer, primary_key=True, index=True)
    campaign_uuid = Column(String(36), index=True, nullable=False)
    note_uuid = Column(String(36), index=True, nullable=False)  # the overriding note
    overridden_note_uuid = Column(String(36), index=True, nullable=False)
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class Artifact(Base):
    __tablename__ = "artifacts"
    __table_args__ = (
        Index("idx_artifacts_campaign_name", "campaign_uuid", "name_key"),
    )

    id = Column(Integer, primary_key=True, index=True)
    artifact_uuid = Column(String(36), unique=True, index=True, nullable=False)
    campaign_uuid = Column(String(36), ForeignKey("campaigns.uuid"), index=True, nullable=False)
    name = Column(String, nullable=False)
    name_key = Column(String, nullable=False)  # casefolded name for exact-match lookups
    artifact_type = Column(String, nullable=False)
    description = Column(Text, default="")
    short_description = Column(Text, default="")
    note_ids = Column(JSON, default=list)  # provenance, ordered, no duplicates
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Relationship(Base):
    __tablename__ = "relationships"
    __table_args__ = (
        Index("idx_relationships_endpoints", "campaign_uuid", "source_artifact_uuid", "target_artifact_uuid"),
    )

    id = Column(Integer, primary_key=True, index=True)
    relationship_uuid = Column(String(36), unique=True, index=True, nullable=False)
    campaign_uuid = Column(String(36), ForeignKey("campaigns.uuid"), index=True, nullable=False)
    source_artifact_uuid = Column(String(36), ForeignKey("artifacts.artifact_uuid"), nullable=False)
    target_artifact_uuid = Column(String(36), ForeignKey("artifacts.artifact_uuid"), nullable=False)
    label = Column(String, nullable=False)
    description = Column(Text, default="")
    reasoning = Column(Text, default="")
    note_ids = Column(JSON, default=list)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class MergeProposalRecord(Base):
    __tablename__ = "merge_proposals"

    id = Column(Integer, primary_key=True, index=True)
    proposal_uuid = Column(String(36), unique=True, index=True, nullable=False)
    campaign_uuid = Column(String(36), index=True, nullable=False)
    note_uuid = Column(String(36), index=True, nullable=False)
    item_type = Column(String(20), nullable=False)  # artifact, relationship
    new_item_id = Column(String(36), nullable=False)
    new_item_name = Column(String, nullable=False)
    new_item = Column(JSON, nullable=False)  # draft payload, materialised on reject
    existing_item_id = Column(String(36), nullable=False)
    existing_item_name = Column(String, nullable=False)
    confidence = Column(Integer, default=0)
    reasoning = Column(Text, default="")
    auto_merge = Column(Boolean, default=False)
    status = Column(String(20), default="pending", index=True)  # pending, approved, rejected
    resolved_item_id = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    resolved_at = Column(DateTime, nullable=True)


class NoteProcessingTask(Base):
    __tablename__ = "note_processing_tasks"

    id = Column(Integer, primary_key=True, index=True)
    task_id = Column(String(36), unique=True, index=True)
    campaign_uuid = Column(String(36), index=True, nullable=False)
    note_uuid = Column(String(36), index=True, nullable=False)
    status = Column(String(20), default="pending")  # pending, processing, completed, failed
    current_phase = Column(String, nullable=True)
    progress = Column(Integer, default=0)  # 0-100
    error = Column(Text, nullable=True)
    result = Column(Text, nullable=True)  # JSON string
    deferred_relationships = Column(JSON, default=list)  # waiting on unresolved proposals
    tokens_used = Column(Integer, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)


# Pydantic Models for API
class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class NoteCreateRequest(CamelModel):
    title: str
    content: str
    is_override: bool = False
    override_reason: Optional[str] = None
    overrides_note_ids: List[str] = Field(default_factory=list)


class ArtifactResponse(CamelModel):
    id: str
    campaign_uuid: str
    name: str
    type: str
    description: str = ""
    short_description: str = ""
    note_ids: List[str] = Field(default_factory=list)


class MergeProposalResponse(CamelModel):
    proposal_id: str
    new_item_id: str
    new_item_name: str
    existing_item_id: str
    existing_item_name: str
    item_type: str
    confidence: int
    reasoning: str = ""
    auto_merge: bool = False
    approved: Optional[bool] = None


class RejectedRelationshipResponse(CamelModel):
    source: str
    target: str
    label: str
    reason: str


class DeduplicationSummary(CamelModel):
    processed_count: int = 0
    auto_merged_count: int = 0
    pending_count: int = 0
    created_new_count: int = 0
    candidate_retrieval_degraded: bool = False
    phase1_duration_ms: float = 0.0
    phase2_duration_ms: float = 0.0
    tokens_used: int = 0


class NoteCreateResponse(CamelModel):
    note_id: str
    success: bool
    message: str = ""
    status: str = "pending"
    artifacts: List[ArtifactResponse] = Field(default_factory=list)
    artifact_count: int = 0
    relationship_count: int = 0
    merged_artifact_count: int = 0
    merged_relationship_count: int = 0
    rejected_relationships: List[RejectedRelationshipResponse] = Field(default_factory=list)
    deduplication_result: Optional[DeduplicationSummary] = None
    requires_user_confirmation: bool = False
    artifact_merge_proposals: List[MergeProposalResponse] = Field(default_factory=list)


class ProposalDecision(CamelModel):
    proposal_id: str
    approved: bool = True


class ConfirmDeduplicationRequest(CamelModel):
    approved_merge_proposals: List[ProposalDecision] = Field(default_factory=list)


class SyncStateResponse(CamelModel):
    status: str
    error: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    attempts: int = 0


class NoteStatusResponse(CamelModel):
    note_id: str
    status: str
    stage: Optional[str] = None
    progress: int = 0
    error: Optional[str] = None
    result: Optional[NoteCreateResponse] = None
    vector_sync: SyncStateResponse
    graph_sync: SyncStateResponse
    fully_processed: bool = False


class NoteResponse(CamelModel):
    note_id: str
    campaign_uuid: str
    title: str
    content: str
    word_count: int
    is_override: bool = False
    override_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    vector_sync: SyncStateResponse
    graph_sync: SyncStateResponse


class SyncRetryResponse(CamelModel):
    note_id: str
    requeued: List[str] = Field(default_factory=list)
    results: Dict[str, str] = Field(default_factory=dict)


class GraphNodeResponse(CamelModel):
    id: str
    name: str
    type: str
    description: str = ""
    campaign_uuid: str
    note_ids: List[str] = Field(default_factory=list)


class GraphEdgeResponse(CamelModel):
    id: str
    source: str
    target: str
    label: str
    description: str = ""
    reasoning: str = ""


class GraphResponse(CamelModel):
    nodes: List[GraphNodeResponse] = Field(default_factory=list)
    edges: List[GraphEdgeResponse] = Field(default_factory=list)


class SearchRequest(CamelModel):
    query: str
    limit: int = Field(default=10, ge=1, le=50)


class SearchResultResponse(CamelModel):
    note_id: str
    title: str
    content_preview: str
    score: float
