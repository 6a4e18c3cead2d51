"""Test configuration: in-memory database and fake external collaborators."""
import hashlib
import json
import os
import re
import sys
import tempfile
from pathlib import Path
from typing import Dict, List, Optional

import pytest

# Keep the module-level engine away from the real data directory
os.environ.setdefault("NOTES_DATA_DIR", tempfile.mkdtemp(prefix="campaign-notes-test-"))
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import create_tables
from exceptions import ExternalServiceError, SyncError
from knowledge_graph.candidates import CandidateFinder
from knowledge_graph.config import DeduplicationConfig, RetryPolicy
from knowledge_graph.deduplication import CampaignLocks, DeduplicationEngine
from knowledge_graph.embedding_service import EmbeddingService
from knowledge_graph.extraction import ExtractionStage
from knowledge_graph.llm_service import LLMService
from knowledge_graph.merge import MergeResolver
from knowledge_graph.models import EmbeddingResult, LLMResponse, NoteStatus, ProcessingPhase
from knowledge_graph.pipeline import NotePipeline
from knowledge_graph.sync import SyncCoordinator
from models import Artifact, Campaign, Note, NoteProcessingTask

CAMPAIGN_UUID = "5f1c7a52-9d1e-4c1a-8d7e-2b7d1f0c9a11"


# ============================================================================
# Fakes
# ============================================================================

class FakeEmbeddingService(EmbeddingService):
    """Deterministic 8-dimensional vectors derived from the text hash"""

    def __init__(self):
        super().__init__(api_key="test-key", model="fake-embedding", timeout=1.0)
        self.calls: List[str] = []
        self.fail = False

    async def embed(self, text: str) -> EmbeddingResult:
        self.calls.append(text)
        if self.fail:
            raise ExternalServiceError("embedding service unavailable")
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        return EmbeddingResult(vector=[b / 255.0 for b in digest[:8]], tokens_used=3, model=self.model)


class FakeLLM(LLMService):
    """
    Replays scripted replies in order.

    Dicts are sent as JSON text, exceptions are raised, and callables are
    called with the prompt to build the reply.
    """

    def __init__(self, replies: Optional[list] = None):
        super().__init__("http://ai.test", "test-key", route="fake")
        self.replies = list(replies or [])
        self.prompts: List[str] = []

    def script(self, *replies) -> None:
        self.replies.extend(replies)

    async def generate(self, prompt: str) -> LLMResponse:
        self.prompts.append(prompt)
        if not self.replies:
            raise ExternalServiceError("no scripted reply left")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            reply = reply(prompt)
        content = reply if isinstance(reply, str) else json.dumps(reply)
        return LLMResponse(content=content, model="fake", tokens_used=10)


class FakeVectorStore:
    """
    In-memory stand-in for VectorStore.

    Similarity of a stored document is taken from ``similarities`` (by id),
    defaulting to ``default_similarity``.
    """

    def __init__(self):
        self.documents: Dict[str, Dict[str, dict]] = {}
        self.similarities: Dict[str, float] = {}
        self.default_similarity = 0.0
        self.unavailable = False
        self.queries = 0

    def _check(self):
        if self.unavailable:
            raise ConnectionError("vector store unreachable")

    def upsert(self, campaign_uuid, item_id, item_type, vector, document, metadata=None):
        self._check()
        self.documents.setdefault(campaign_uuid, {})[item_id] = {
            "type": item_type, "vector": list(vector), "document": document, "metadata": dict(metadata or {}),
        }

    def query_similar(self, campaign_uuid, vector, item_type, limit=5):
        self._check()
        self.queries += 1
        docs = self.documents.get(campaign_uuid, {})
        hits = [
            {
                "id": item_id,
                "similarity": self.similarities.get(item_id, self.default_similarity),
                "metadata": doc["metadata"],
                "document": doc["document"],
            }
            for item_id, doc in docs.items()
            if doc["type"] == item_type
        ]
        hits.sort(key=lambda h: h["similarity"], reverse=True)
        return hits[:limit]

    def delete(self, campaign_uuid, item_id):
        self.documents.get(campaign_uuid, {}).pop(item_id, None)

    def count(self, campaign_uuid):
        return len(self.documents.get(campaign_uuid, {}))


class FakeGraphStore:
    def __init__(self):
        self.nodes: Dict[str, dict] = {}
        self.edges: Dict[str, dict] = {}
        self.labels = set()
        self.unavailable = False
        self.closed = False

    def _check(self):
        if self.unavailable:
            raise SyncError("graph", "connection refused")

    def upsert_artifact(self, label, artifact):
        self._check()
        self.labels.add(label)
        self.nodes[artifact["id"]] = dict(artifact)

    def upsert_relationship(self, label, relationship):
        self._check()
        if relationship["source"] not in self.nodes or relationship["target"] not in self.nodes:
            raise SyncError("graph", f"endpoints missing for relationship {relationship['id']}")
        self.edges[relationship["id"]] = dict(relationship)

    def get_graph(self, label, note_id=None):
        self._check()
        nodes = [n for n in self.nodes.values() if note_id is None or note_id in n.get("note_ids", [])]
        edges = [e for e in self.edges.values() if note_id is None or note_id in e.get("note_ids", [])]
        return nodes, edges

    def get_neighbors(self, label, artifact_id):
        self._check()
        edges = [e for e in self.edges.values() if artifact_id in (e["source"], e["target"])]
        ids = {artifact_id} | {e["source"] for e in edges} | {e["target"] for e in edges}
        return [self.nodes[i] for i in ids if i in self.nodes], edges

    def close(self):
        self.closed = True

    def health_check(self):
        return not self.unavailable


# ============================================================================
# Database fixtures
# ============================================================================

@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_tables(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def campaign(db):
    row = Campaign(uuid=CAMPAIGN_UUID, name="Dragons of Autumn Twilight", graph_label="Krynn")
    db.add(row)
    db.commit()
    return row


# ============================================================================
# Collaborator fixtures
# ============================================================================

@pytest.fixture
def embedding_service():
    return FakeEmbeddingService()


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def vector_store():
    return FakeVectorStore()


@pytest.fixture
def graph_store():
    return FakeGraphStore()


@pytest.fixture
def dedup_config():
    return DeduplicationConfig()


@pytest.fixture
def sync_coordinator(embedding_service, vector_store, graph_store):
    return SyncCoordinator(
        embedding_service, vector_store, graph_store,
        policy=RetryPolicy(max_attempts=3, base_delay=10, max_delay=60),
        vector_timeout=2.0, graph_timeout=2.0, stale_after=300,
    )


@pytest.fixture
def make_pipeline(session_factory, embedding_service, llm, vector_store, sync_coordinator):
    """Factory so tests can pick their own deduplication config"""

    def _make(config: Optional[DeduplicationConfig] = None) -> NotePipeline:
        config = config or DeduplicationConfig()
        engine = DeduplicationEngine(
            embedding_service, CandidateFinder(vector_store, config, timeout=2.0), llm, config,
        )
        return NotePipeline(
            session_factory=session_factory,
            extraction=ExtractionStage(llm),
            engine=engine,
            resolver=MergeResolver(),
            sync=sync_coordinator,
            locks=CampaignLocks(),
        )

    return _make


# ============================================================================
# Row helpers
# ============================================================================

def add_note(db, note_uuid: str, title: str = "Session note", content: str = "Something happened.",
             campaign_uuid: str = CAMPAIGN_UUID) -> Note:
    note = Note(
        campaign_uuid=campaign_uuid,
        note_uuid=note_uuid,
        title=title,
        content=content,
        word_count=len(content.split()),
    )
    db.add(note)
    db.commit()
    return note


def add_task(db, note_uuid: str, status: str = NoteStatus.PENDING.value, task_id: Optional[str] = None,
             campaign_uuid: str = CAMPAIGN_UUID) -> NoteProcessingTask:
    task = NoteProcessingTask(
        task_id=task_id or f"task-{note_uuid}",
        campaign_uuid=campaign_uuid,
        note_uuid=note_uuid,
        status=status,
        current_phase=ProcessingPhase.QUEUED.value,
        progress=0,
        deferred_relationships=[],
    )
    db.add(task)
    db.commit()
    return task


def add_artifact(db, artifact_uuid: str, name: str, note_ids: List[str], description: str = "",
                 artifact_type: str = "characters", campaign_uuid: str = CAMPAIGN_UUID) -> Artifact:
    from knowledge_graph.models import name_key

    artifact = Artifact(
        artifact_uuid=artifact_uuid,
        campaign_uuid=campaign_uuid,
        name=name,
        name_key=name_key(name),
        artifact_type=artifact_type,
        description=description,
        short_description="",
        note_ids=list(note_ids),
    )
    db.add(artifact)
    db.commit()
    return artifact


# ============================================================================
# Scripted model replies
# ============================================================================

CANDIDATE_ID = re.compile(r"\[candidate_id: ([^\]]+)\]")


def nae(*artifacts) -> dict:
    """Artifact extraction reply from (name, category[, description]) tuples"""
    return {"artifacts": [
        {"name": a[0], "category": a[1], "short_description": "", "description": a[2] if len(a) > 2 else ""}
        for a in artifacts
    ]}


def are(*relationships) -> dict:
    """Relationship extraction reply from (source, target, label) tuples"""
    return {"relationships": [
        {"source": s, "target": t, "label": label, "description": "", "reasoning": "stated in the note"}
        for s, t, label in relationships
    ]}


def judged_same(confidence: int):
    """Adjudication reply judging every candidate in the prompt the same entity"""

    def reply(prompt: str) -> dict:
        return {"judgements": [
            {"candidate_id": cid, "is_same": True, "confidence": confidence, "reasoning": "same entity"}
            for cid in CANDIDATE_ID.findall(prompt)
        ]}

    return reply
