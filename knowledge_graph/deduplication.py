"""
Deduplication Engine

Two-phase decision process for every extracted artifact and relationship:

    Extracted -> CandidatesRetrieved -> Adjudicated -> AutoMerged
                                                     | PendingConfirmation
                                                     | CreatedNew

Phase 1 embeds the item and retrieves nearby existing entities (cheap).
Phase 2 asks the language model once per item to judge every candidate.
The decision rule maps the best "same" verdict onto a merge, a proposal for
the user, or a new entity. A failed adjudication always means a new entity:
duplicates can be merged later, wrong merges are hard to undo.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel
from sqlalchemy.orm import Session

from exceptions import AdjudicationError, CandidateRetrievalError, ExternalServiceError
from knowledge_graph.candidates import CandidateFinder
from knowledge_graph.config import DeduplicationConfig
from knowledge_graph.embedding_service import EmbeddingService
from knowledge_graph.llm_service import LLMService
from knowledge_graph.models import (
    ArtifactCandidate,
    ArtifactDraft,
    Candidate,
    CandidateJudgement,
    DedupState,
    DeduplicationDecision,
    DeduplicationOutcome,
    DeduplicationResult,
    Draft,
    ItemType,
    MergeProposal,
    RelationshipDraft,
    Unparsed,
)
from knowledge_graph.prompts import (
    ARTIFACT_ADJUDICATION_PROMPT,
    NO_HISTORY,
    RELATIONSHIP_ADJUDICATION_PROMPT,
)
from models import Note

logger = logging.getLogger(__name__)


class JudgementPayload(BaseModel):
    candidate_id: str
    is_same: bool
    confidence: float = 0
    reasoning: str = ""


class AdjudicationPayload(BaseModel):
    judgements: List[JudgementPayload]


class CampaignLocks:
    """One asyncio lock per campaign; serialises deduplication within a campaign"""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def get(self, campaign_uuid: str) -> asyncio.Lock:
        lock = self._locks.get(campaign_uuid)
        if lock is None:
            lock = self._locks.setdefault(campaign_uuid, asyncio.Lock())
        return lock

    @asynccontextmanager
    async def hold(self, campaign_uuid: str):
        lock = self.get(campaign_uuid)
        async with lock:
            yield


def decide(
    candidates: Sequence[Candidate],
    judgements: Sequence[CandidateJudgement],
    config: DeduplicationConfig,
) -> DeduplicationDecision:
    """
    Apply the decision rule.

    Only "same" verdicts with confidence > 0 for a known candidate count. The
    highest confidence wins, ties go to the higher ANN similarity. Auto-merge
    needs confidence >= threshold and a threshold below 100.
    """
    by_id = {c.candidate_id: c for c in candidates}
    same = [j for j in judgements if j.is_same and j.confidence > 0 and j.candidate_id in by_id]
    if not same:
        return DeduplicationDecision(DedupState.CREATED_NEW, reasoning="no candidate judged the same entity")

    best = max(same, key=lambda j: (j.confidence, by_id[j.candidate_id].similarity))
    candidate = by_id[best.candidate_id]
    if config.is_auto_merge_enabled() and best.confidence >= config.llm_confidence_threshold:
        state = DedupState.AUTO_MERGED
    else:
        state = DedupState.PENDING_CONFIRMATION
    return DeduplicationDecision(state, candidate=candidate, judgement=best, reasoning=best.reasoning)


class DeduplicationEngine:
    def __init__(
        self,
        embedding_service: EmbeddingService,
        finder: CandidateFinder,
        llm: LLMService,
        config: DeduplicationConfig,
        history_limit: int = 3,
    ):
        self.embedding_service = embedding_service
        self.finder = finder
        self.llm = llm
        self.config = config
        self.history_limit = history_limit

    # ------------------------------------------------------------------
    # Text representations
    # ------------------------------------------------------------------

    def item_text(self, item: Draft) -> str:
        if isinstance(item, ArtifactDraft):
            return self.embedding_service.artifact_text(
                item.name, item.category, item.short_description, item.description
            )
        return self.embedding_service.relationship_text(
            item.source_name, item.label, item.target_name, item.description, item.reasoning
        )

    async def _embed(self, text: str, cache: Dict[str, List[float]], result: DeduplicationResult) -> List[float]:
        if text in cache:
            return cache[text]
        try:
            embedding = await self.embedding_service.embed(text)
        except ExternalServiceError as e:
            raise CandidateRetrievalError(f"Could not embed item for candidate search: {e}") from e
        cache[text] = embedding.vector
        result.tokens_used += embedding.tokens_used
        return embedding.vector

    # ------------------------------------------------------------------
    # Phase 2: adjudication
    # ------------------------------------------------------------------

    def _history(self, db: Session, note_ids: Sequence[str]) -> str:
        if not note_ids:
            return NO_HISTORY
        notes = (
            db.query(Note)
            .filter(Note.note_uuid.in_(list(note_ids)), Note.is_active.is_(True))
            .order_by(Note.created_at.desc())
            .limit(self.history_limit)
            .all()
        )
        if not notes:
            return NO_HISTORY
        return "\n".join(f"    - {n.title}: {n.content[:300]}" for n in notes)

    def _describe_new(self, item: Draft) -> str:
        if isinstance(item, ArtifactDraft):
            return (
                f"name: {item.name}\ncategory: {item.category}\n"
                f"summary: {item.short_description or '-'}\ndescription: {item.description or '-'}"
            )
        return (
            f"{item.source_name} -[{item.label}]-> {item.target_name}\n"
            f"description: {item.description or '-'}\nreasoning: {item.reasoning or '-'}"
        )

    def _describe_candidate(self, db: Session, candidate: Candidate) -> str:
        if isinstance(candidate, ArtifactCandidate):
            body = (
                f"name: {candidate.name}\ncategory: {candidate.category}\n"
                f"summary: {candidate.short_description or '-'}\ndescription: {candidate.description or '-'}"
            )
        else:
            body = (
                f"{candidate.name}\ndescription: {candidate.description or '-'}\n"
                f"reasoning: {candidate.reasoning or '-'}"
            )
        return (
            f"[candidate_id: {candidate.candidate_id}] (similarity {candidate.similarity:.2f})\n{body}\n"
            f"recent notes:\n{self._history(db, candidate.note_ids)}"
        )

    async def adjudicate(
        self, db: Session, item: Draft, candidates: Sequence[Candidate]
    ) -> Tuple[List[CandidateJudgement], int]:
        """
        One model call judging ``item`` against all ``candidates``.

        Raises:
            AdjudicationError: call failed or output unparsable
        """
        template = ARTIFACT_ADJUDICATION_PROMPT if isinstance(item, ArtifactDraft) else RELATIONSHIP_ADJUDICATION_PROMPT
        prompt = template.format(
            new_item=self._describe_new(item),
            candidates="\n\n".join(self._describe_candidate(db, c) for c in candidates),
        )
        try:
            parsed, response = await self.llm.generate_structured(prompt, AdjudicationPayload)
        except ExternalServiceError as e:
            raise AdjudicationError(str(e)) from e
        if isinstance(parsed, Unparsed):
            raise AdjudicationError(f"unparsable adjudication output ({parsed.error})")

        judgements = [
            CandidateJudgement(j.candidate_id, j.is_same, j.confidence, j.reasoning)
            for j in parsed.value.judgements
        ]
        return judgements, response.tokens_used

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def _retrieve(self, db: Session, campaign_uuid: str, item: Draft, vector: List[float]) -> List[Candidate]:
        if isinstance(item, ArtifactDraft):
            return await self.finder.find_artifact_candidates(db, campaign_uuid, item, vector)
        return await self.finder.find_relationship_candidates(db, campaign_uuid, item, vector)

    def _proposal(self, item_type: ItemType, item: Draft, decision: DeduplicationDecision) -> MergeProposal:
        return MergeProposal(
            item_type=item_type,
            new_item_id=item.draft_id,
            new_item_name=item.name,
            existing_item_id=decision.candidate.candidate_id,
            existing_item_name=decision.candidate.name,
            confidence=decision.confidence,
            reasoning=decision.reasoning,
            auto_merge=decision.state == DedupState.AUTO_MERGED,
            approved=True if decision.state == DedupState.AUTO_MERGED else None,
        )

    async def _run(
        self,
        db: Session,
        campaign_uuid: str,
        item_type: ItemType,
        drafts: Sequence[Draft],
        embeddings: Optional[Dict[str, List[float]]],
    ) -> DeduplicationResult:
        cache = embeddings if embeddings is not None else {}
        result = DeduplicationResult(item_type=item_type)
        result.outcomes = [DeduplicationOutcome(item=d) for d in drafts]

        # Phase 1: ANN filter
        started = time.perf_counter()
        for outcome in result.outcomes:
            if result.retrieval_error is None:
                try:
                    vector = await self._embed(self.item_text(outcome.item), cache, result)
                    outcome.candidates = await self._retrieve(db, campaign_uuid, outcome.item, vector)
                except CandidateRetrievalError as e:
                    if not self.config.degrade_on_vector_failure:
                        raise
                    logger.warning(f"Candidate retrieval failed, continuing without candidates: {e}")
                    result.retrieval_error = str(e)
            outcome.advance(DedupState.CANDIDATES_RETRIEVED)
        result.phase1_duration_ms = (time.perf_counter() - started) * 1000

        # Phase 2: LLM adjudication
        started = time.perf_counter()
        for outcome in result.outcomes:
            if not outcome.candidates:
                decision = DeduplicationDecision(DedupState.CREATED_NEW, reasoning="no candidates above similarity threshold")
            else:
                try:
                    judgements, tokens = await self.adjudicate(db, outcome.item, outcome.candidates)
                    result.tokens_used += tokens
                    decision = decide(outcome.candidates, judgements, self.config)
                except AdjudicationError as e:
                    logger.warning(f"Adjudication failed for '{outcome.item.name}', treating as new: {e}")
                    decision = DeduplicationDecision(DedupState.CREATED_NEW, reasoning=f"adjudication failed: {e}")

            outcome.decision = decision
            outcome.advance(DedupState.ADJUDICATED)
            outcome.advance(decision.state)
            if decision.candidate is not None:
                outcome.proposal = self._proposal(item_type, outcome.item, decision)
        result.phase2_duration_ms = (time.perf_counter() - started) * 1000

        logger.info(
            f"Deduplicated {len(result.outcomes)} {item_type.value}(s): "
            f"{len(result.auto_merged)} auto-merged, {len(result.pending)} pending, "
            f"{len(result.created_new)} new "
            f"(phase1 {result.phase1_duration_ms:.0f}ms, phase2 {result.phase2_duration_ms:.0f}ms, "
            f"{result.tokens_used} tokens)"
        )
        return result

    async def deduplicate_artifacts(
        self,
        db: Session,
        campaign_uuid: str,
        drafts: Sequence[ArtifactDraft],
        embeddings: Optional[Dict[str, List[float]]] = None,
    ) -> DeduplicationResult:
        return await self._run(db, campaign_uuid, ItemType.ARTIFACT, drafts, embeddings)

    async def deduplicate_relationships(
        self,
        db: Session,
        campaign_uuid: str,
        drafts: Sequence[RelationshipDraft],
        embeddings: Optional[Dict[str, List[float]]] = None,
    ) -> DeduplicationResult:
        return await self._run(db, campaign_uuid, ItemType.RELATIONSHIP, drafts, embeddings)
