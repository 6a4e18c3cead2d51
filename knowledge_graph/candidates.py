"""
Candidate Retrieval Stage

Phase 1 of deduplication: narrow the search space with an ANN query against
the campaign's vector collection. Hits are resolved against the relational
store, which is authoritative for existence; vector documents whose entity
no longer exists are ignored. Exact name matches from the relational store
are added as well, so entities whose vector projection has not caught up
yet are still found.
"""

import asyncio
import logging
from typing import Dict, List, Sequence

from sqlalchemy import func
from sqlalchemy.orm import Session

from exceptions import CandidateRetrievalError
from knowledge_graph.config import DeduplicationConfig
from knowledge_graph.models import (
    ArtifactCandidate,
    ArtifactDraft,
    RelationshipCandidate,
    RelationshipDraft,
    name_key,
)
from knowledge_graph.vector_store import DOC_TYPE_ARTIFACT, DOC_TYPE_RELATIONSHIP, VectorStore
from models import Artifact, Relationship

logger = logging.getLogger(__name__)

EXACT_MATCH_SIMILARITY = 1.0


class CandidateFinder:
    def __init__(self, vector_store: VectorStore, config: DeduplicationConfig, timeout: float = 15.0):
        self.vector_store = vector_store
        self.config = config
        self.timeout = timeout

    async def _query(self, campaign_uuid: str, vector: Sequence[float], item_type: str) -> List[dict]:
        try:
            hits = await asyncio.wait_for(
                asyncio.to_thread(
                    self.vector_store.query_similar,
                    campaign_uuid, list(vector), item_type, self.config.candidate_limit,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise CandidateRetrievalError(f"Vector store query timed out after {self.timeout}s") from e
        except Exception as e:
            raise CandidateRetrievalError(f"Vector store query failed: {e}") from e
        return [h for h in hits if h["similarity"] >= self.config.similarity_threshold]

    async def find_artifact_candidates(
        self, db: Session, campaign_uuid: str, draft: ArtifactDraft, vector: Sequence[float]
    ) -> List[ArtifactCandidate]:
        hits = await self._query(campaign_uuid, vector, DOC_TYPE_ARTIFACT)
        similarity: Dict[str, float] = {h["id"]: h["similarity"] for h in hits}

        exact = db.query(Artifact).filter(
            Artifact.campaign_uuid == campaign_uuid,
            Artifact.name_key == draft.key,
        ).all()
        for artifact in exact:
            similarity[artifact.artifact_uuid] = EXACT_MATCH_SIMILARITY

        if not similarity:
            return []

        rows = db.query(Artifact).filter(
            Artifact.campaign_uuid == campaign_uuid,
            Artifact.artifact_uuid.in_(list(similarity)),
        ).all()
        candidates = [
            ArtifactCandidate(
                artifact_id=row.artifact_uuid,
                name=row.name,
                category=row.artifact_type,
                description=row.description or "",
                short_description=row.short_description or "",
                note_ids=list(row.note_ids or []),
                similarity=similarity[row.artifact_uuid],
            )
            for row in rows
        ]
        stale = len(similarity) - len(candidates)
        if stale:
            logger.info(f"Ignored {stale} vector hit(s) with no relational record")
        candidates.sort(key=lambda c: c.similarity, reverse=True)
        return candidates[:self.config.candidate_limit]

    async def find_relationship_candidates(
        self, db: Session, campaign_uuid: str, draft: RelationshipDraft, vector: Sequence[float]
    ) -> List[RelationshipCandidate]:
        hits = await self._query(campaign_uuid, vector, DOC_TYPE_RELATIONSHIP)
        similarity: Dict[str, float] = {h["id"]: h["similarity"] for h in hits}

        if draft.is_resolved:
            exact = db.query(Relationship).filter(
                Relationship.campaign_uuid == campaign_uuid,
                Relationship.source_artifact_uuid == draft.source_id,
                Relationship.target_artifact_uuid == draft.target_id,
                func.lower(Relationship.label) == name_key(draft.label),
            ).all()
            for rel in exact:
                similarity[rel.relationship_uuid] = EXACT_MATCH_SIMILARITY

        if not similarity:
            return []

        rows = db.query(Relationship).filter(
            Relationship.campaign_uuid == campaign_uuid,
            Relationship.relationship_uuid.in_(list(similarity)),
        ).all()
        endpoint_ids = {r.source_artifact_uuid for r in rows} | {r.target_artifact_uuid for r in rows}
        names = {
            a.artifact_uuid: a.name
            for a in db.query(Artifact).filter(Artifact.artifact_uuid.in_(list(endpoint_ids))).all()
        } if endpoint_ids else {}

        candidates = [
            RelationshipCandidate(
                relationship_id=row.relationship_uuid,
                source_id=row.source_artifact_uuid,
                target_id=row.target_artifact_uuid,
                source_name=names.get(row.source_artifact_uuid, row.source_artifact_uuid),
                target_name=names.get(row.target_artifact_uuid, row.target_artifact_uuid),
                label=row.label,
                description=row.description or "",
                reasoning=row.reasoning or "",
                note_ids=list(row.note_ids or []),
                similarity=similarity[row.relationship_uuid],
            )
            for row in rows
        ]
        candidates.sort(key=lambda c: c.similarity, reverse=True)
        return candidates[:self.config.candidate_limit]
