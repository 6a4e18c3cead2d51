"""
Knowledge Graph Domain Models

Transient types that flow through the extraction and deduplication
pipeline. Persistent records live in the top-level models module.
"""

import uuid
from typing import List, Dict, Any, Optional, Union
from datetime import datetime
from dataclasses import dataclass, field, asdict
from enum import Enum


class SyncStatus(str, Enum):
    """Per-store propagation state of a note"""
    PENDING = "pending"
    SYNCING = "syncing"
    SYNCED = "synced"
    ERROR = "error"
    RETRY = "retry"


class SyncStore(str, Enum):
    """Projection stores tracked per note"""
    VECTOR = "vector"
    GRAPH = "graph"


class NoteStatus(str, Enum):
    """Processing task status"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ProcessingPhase(str, Enum):
    """Processing phase enum"""
    QUEUED = "queued"
    EXTRACTING_ARTIFACTS = "extracting_artifacts"
    EXTRACTING_RELATIONSHIPS = "extracting_relationships"
    DEDUPLICATING = "deduplicating"
    MERGING = "merging"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    SYNCING = "syncing"
    COMPLETE = "complete"


class ItemType(str, Enum):
    ARTIFACT = "artifact"
    RELATIONSHIP = "relationship"


class DedupState(str, Enum):
    """States an extracted item moves through during deduplication"""
    EXTRACTED = "extracted"
    CANDIDATES_RETRIEVED = "candidates_retrieved"
    ADJUDICATED = "adjudicated"
    AUTO_MERGED = "auto_merged"
    PENDING_CONFIRMATION = "pending_confirmation"
    CREATED_NEW = "created_new"


class ProposalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


def clamp_confidence(value: Any) -> int:
    try:
        value = int(round(float(value)))
    except (TypeError, ValueError):
        return 0
    return max(0, min(100, value))


def name_key(name: str) -> str:
    """Case- and whitespace-insensitive key used for exact name matches"""
    return " ".join((name or "").split()).casefold()


def _new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class ArtifactDraft:
    """An artifact as extracted from a note, before deduplication"""
    name: str
    category: str
    description: str = ""
    short_description: str = ""
    draft_id: str = field(default_factory=_new_id)

    @property
    def key(self) -> str:
        return name_key(self.name)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ArtifactDraft":
        return cls(**{k: data[k] for k in ("name", "category", "description", "short_description", "draft_id") if k in data})


@dataclass
class RelationshipDraft:
    """
    A relationship as extracted from a note.

    Endpoint names are the canonical names of artifacts known at extraction
    time. Endpoint ids are filled in once artifact deduplication has decided
    which artifact each name refers to.
    """
    source_name: str
    target_name: str
    label: str
    description: str = ""
    reasoning: str = ""
    source_id: Optional[str] = None
    target_id: Optional[str] = None
    draft_id: str = field(default_factory=_new_id)

    @property
    def name(self) -> str:
        return f"{self.source_name} -[{self.label}]-> {self.target_name}"

    @property
    def is_resolved(self) -> bool:
        return bool(self.source_id and self.target_id)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RelationshipDraft":
        fields = ("source_name", "target_name", "label", "description", "reasoning",
                  "source_id", "target_id", "draft_id")
        return cls(**{k: data[k] for k in fields if k in data})


@dataclass
class RejectedRelationship:
    source_name: str
    target_name: str
    label: str
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ArtifactCandidate:
    """Existing artifact returned by candidate retrieval. Never persisted."""
    artifact_id: str
    name: str
    category: str
    description: str
    short_description: str
    note_ids: List[str]
    similarity: float

    @property
    def candidate_id(self) -> str:
        return self.artifact_id


@dataclass
class RelationshipCandidate:
    """Existing relationship returned by candidate retrieval. Never persisted."""
    relationship_id: str
    source_id: str
    target_id: str
    source_name: str
    target_name: str
    label: str
    description: str
    reasoning: str
    note_ids: List[str]
    similarity: float

    @property
    def candidate_id(self) -> str:
        return self.relationship_id

    @property
    def name(self) -> str:
        return f"{self.source_name} -[{self.label}]-> {self.target_name}"


Candidate = Union[ArtifactCandidate, RelationshipCandidate]
Draft = Union[ArtifactDraft, RelationshipDraft]


@dataclass
class CandidateJudgement:
    """Model verdict on whether a new item and one candidate are the same entity"""
    candidate_id: str
    is_same: bool
    confidence: int
    reasoning: str = ""

    def __post_init__(self):
        self.confidence = clamp_confidence(self.confidence)


@dataclass
class MergeProposal:
    """Decision record linking a new item to an existing item"""
    item_type: ItemType
    new_item_id: str
    new_item_name: str
    existing_item_id: str
    existing_item_name: str
    confidence: int
    reasoning: str = ""
    auto_merge: bool = False
    approved: Optional[bool] = None
    proposal_id: str = field(default_factory=_new_id)

    def __post_init__(self):
        self.confidence = clamp_confidence(self.confidence)

    def to_dict(self) -> Dict[str, Any]:
        return {k: v.value if isinstance(v, Enum) else v for k, v in asdict(self).items()}


@dataclass
class DeduplicationDecision:
    state: DedupState
    candidate: Optional[Candidate] = None
    judgement: Optional[CandidateJudgement] = None
    reasoning: str = ""

    @property
    def confidence(self) -> int:
        return self.judgement.confidence if self.judgement else 0


@dataclass
class DeduplicationOutcome:
    """One extracted item's path through the deduplication state machine"""
    item: Draft
    candidates: List[Candidate] = field(default_factory=list)
    decision: Optional[DeduplicationDecision] = None
    proposal: Optional[MergeProposal] = None
    history: List[DedupState] = field(default_factory=lambda: [DedupState.EXTRACTED])

    @property
    def state(self) -> DedupState:
        return self.history[-1]

    def advance(self, state: DedupState) -> None:
        self.history.append(state)


@dataclass
class DeduplicationResult:
    item_type: ItemType
    outcomes: List[DeduplicationOutcome] = field(default_factory=list)
    phase1_duration_ms: float = 0.0
    phase2_duration_ms: float = 0.0
    tokens_used: int = 0
    retrieval_error: Optional[str] = None  # set when candidates were skipped after a vector store failure

    def _in_state(self, state: DedupState) -> List[DeduplicationOutcome]:
        return [o for o in self.outcomes if o.state == state]

    @property
    def auto_merged(self) -> List[DeduplicationOutcome]:
        return self._in_state(DedupState.AUTO_MERGED)

    @property
    def pending(self) -> List[DeduplicationOutcome]:
        return self._in_state(DedupState.PENDING_CONFIRMATION)

    @property
    def created_new(self) -> List[DeduplicationOutcome]:
        return self._in_state(DedupState.CREATED_NEW)

    @property
    def proposals(self) -> List[MergeProposal]:
        return [o.proposal for o in self.outcomes if o.proposal is not None]

    def summary(self) -> Dict[str, Any]:
        return {
            "item_type": self.item_type.value,
            "processed": len(self.outcomes),
            "auto_merged": len(self.auto_merged),
            "pending": len(self.pending),
            "created_new": len(self.created_new),
            "phase1_duration_ms": round(self.phase1_duration_ms, 1),
            "phase2_duration_ms": round(self.phase2_duration_ms, 1),
            "tokens_used": self.tokens_used,
            "retrieval_error": self.retrieval_error,
        }


@dataclass
class ExtractionResult:
    artifacts: List[ArtifactDraft] = field(default_factory=list)
    relationships: List[RelationshipDraft] = field(default_factory=list)
    rejected: List[RejectedRelationship] = field(default_factory=list)
    tokens_used: int = 0
    duration_ms: float = 0.0


@dataclass
class Parsed:
    """Model output that matched the expected schema"""
    value: Any


@dataclass
class Unparsed:
    """Model output that did not match the expected schema"""
    raw_text: str
    error: str


ParseResult = Union[Parsed, Unparsed]


@dataclass
class EmbeddingResult:
    vector: List[float]
    tokens_used: int = 0
    model: str = ""


@dataclass
class LLMResponse:
    content: str
    model: str = ""
    tokens_used: int = 0
    duration_ms: float = 0.0
    created_at: Optional[datetime] = None

    def __post_init__(self):
        if self.created_at is None:
            self.created_at = datetime.utcnow()
