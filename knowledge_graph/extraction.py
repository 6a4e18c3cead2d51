"""
Extraction Stage

Two sequential language-model calls per note:

1. NAE (artifact extraction): note text -> candidate artifacts
2. ARE (relationship extraction): note text + known artifacts -> candidate
   relationships between them

Output that does not match the expected schema raises ExtractionError.
Relationships naming an artifact that is not in the known list are
rejected and reported back, never guessed.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from pydantic import AliasChoices, BaseModel, Field

from exceptions import ExternalServiceError, ExtractionError
from knowledge_graph.llm_service import LLMService
from knowledge_graph.models import (
    ArtifactDraft,
    ExtractionResult,
    ProcessingPhase,
    RejectedRelationship,
    RelationshipDraft,
    Unparsed,
    name_key,
)
from knowledge_graph.prompts import (
    ARTIFACT_EXTRACTION_PROMPT,
    DEFAULT_CATEGORIES,
    RELATIONSHIP_EXTRACTION_PROMPT,
    format_categories,
)

logger = logging.getLogger(__name__)


class ArtifactPayload(BaseModel):
    name: str
    category: str = Field(validation_alias=AliasChoices("category", "type", "artifact_type"))
    description: str = ""
    short_description: str = Field("", validation_alias=AliasChoices("short_description", "shortDescription"))


class ArtifactListPayload(BaseModel):
    artifacts: List[ArtifactPayload]


class RelationshipPayload(BaseModel):
    source: str = Field(validation_alias=AliasChoices("source", "source_name", "sourceName"))
    target: str = Field(validation_alias=AliasChoices("target", "target_name", "targetName"))
    label: str
    description: str = ""
    reasoning: str = ""


class RelationshipListPayload(BaseModel):
    relationships: List[RelationshipPayload]


@dataclass
class KnownArtifact:
    """Artifact context handed to relationship extraction"""
    name: str
    category: str
    short_description: str = ""


class ExtractionStage:
    def __init__(self, llm: LLMService, categories: Optional[Dict[str, str]] = None):
        self.llm = llm
        self.categories = categories or DEFAULT_CATEGORIES

    def _normalise_category(self, category: str) -> str:
        value = (category or "").strip().lower()
        if value in self.categories:
            return value
        # Models often answer with the singular form
        plural = f"{value}s"
        if plural in self.categories:
            return plural
        return value or "other"

    async def extract_artifacts(self, title: str, content: str) -> Tuple[List[ArtifactDraft], int]:
        """
        NAE. Returns (drafts, tokens_used).

        Drafts are de-duplicated by case-insensitive name within the note;
        the first occurrence wins and later descriptions are appended.
        """
        prompt = ARTIFACT_EXTRACTION_PROMPT.format(
            categories=format_categories(self.categories),
            title=title,
            content=content,
        )
        try:
            parsed, response = await self.llm.generate_structured(prompt, ArtifactListPayload)
        except ExternalServiceError as e:
            raise ExtractionError(f"Artifact extraction call failed: {e}") from e

        if isinstance(parsed, Unparsed):
            logger.warning(f"Unparsable artifact extraction output: {parsed.error}")
            raise ExtractionError(f"Artifact extraction output unparsable ({parsed.error})", parsed.raw_text)

        drafts: Dict[str, ArtifactDraft] = {}
        for item in parsed.value.artifacts:
            name = " ".join(item.name.split())
            if not name:
                logger.warning("Skipping extracted artifact without a name")
                continue
            key = name_key(name)
            if key in drafts:
                existing = drafts[key]
                if item.description and item.description not in existing.description:
                    existing.description = " ".join(filter(None, [existing.description, item.description]))
                continue
            drafts[key] = ArtifactDraft(
                name=name,
                category=self._normalise_category(item.category),
                description=item.description.strip(),
                short_description=item.short_description.strip(),
            )
        return list(drafts.values()), response.tokens_used

    async def extract_relationships(
        self, content: str, known: List[KnownArtifact]
    ) -> Tuple[List[RelationshipDraft], List[RejectedRelationship], int]:
        """
        ARE. Returns (drafts, rejected, tokens_used).

        Endpoint names are resolved case-insensitively against ``known`` and
        rewritten to the canonical spelling.
        """
        if not known:
            return [], [], 0

        lookup = {name_key(a.name): a.name for a in known}
        listing = "\n".join(
            f"- {a.name} ({a.category})" + (f": {a.short_description}" if a.short_description else "")
            for a in known
        )
        prompt = RELATIONSHIP_EXTRACTION_PROMPT.format(artifacts=listing, content=content)
        try:
            parsed, response = await self.llm.generate_structured(prompt, RelationshipListPayload)
        except ExternalServiceError as e:
            raise ExtractionError(f"Relationship extraction call failed: {e}") from e

        if isinstance(parsed, Unparsed):
            logger.warning(f"Unparsable relationship extraction output: {parsed.error}")
            raise ExtractionError(f"Relationship extraction output unparsable ({parsed.error})", parsed.raw_text)

        drafts: List[RelationshipDraft] = []
        rejected: List[RejectedRelationship] = []
        seen = set()
        for item in parsed.value.relationships:
            label = " ".join(item.label.split())
            source = lookup.get(name_key(item.source))
            target = lookup.get(name_key(item.target))

            reason = None
            if not label:
                reason = "empty label"
            elif source is None and target is None:
                reason = f"unknown artifacts '{item.source}' and '{item.target}'"
            elif source is None:
                reason = f"unknown source artifact '{item.source}'"
            elif target is None:
                reason = f"unknown target artifact '{item.target}'"
            elif name_key(source) == name_key(target):
                reason = "source and target are the same artifact"

            if reason:
                logger.info(f"Rejected relationship {item.source} -[{item.label}]-> {item.target}: {reason}")
                rejected.append(RejectedRelationship(item.source, item.target, item.label, reason))
                continue

            identity = (name_key(source), name_key(label), name_key(target))
            if identity in seen:
                continue
            seen.add(identity)
            drafts.append(RelationshipDraft(
                source_name=source,
                target_name=target,
                label=label,
                description=item.description.strip(),
                reasoning=item.reasoning.strip(),
            ))
        return drafts, rejected, response.tokens_used

    async def run(
        self,
        title: str,
        content: str,
        existing: Optional[List[KnownArtifact]] = None,
        on_phase: Optional[Callable[[ProcessingPhase], None]] = None,
    ) -> ExtractionResult:
        """NAE then ARE over the new artifacts plus ``existing`` campaign artifacts"""
        started = time.perf_counter()
        if on_phase:
            on_phase(ProcessingPhase.EXTRACTING_ARTIFACTS)
        artifacts, nae_tokens = await self.extract_artifacts(title, content)

        relationships: List[RelationshipDraft] = []
        rejected: List[RejectedRelationship] = []
        are_tokens = 0
        if artifacts:
            if on_phase:
                on_phase(ProcessingPhase.EXTRACTING_RELATIONSHIPS)
            known = {name_key(a.name): KnownArtifact(a.name, a.category, a.short_description) for a in artifacts}
            for artifact in existing or []:
                known.setdefault(name_key(artifact.name), artifact)
            relationships, rejected, are_tokens = await self.extract_relationships(content, list(known.values()))

        duration_ms = (time.perf_counter() - started) * 1000
        logger.info(
            f"Extraction: {len(artifacts)} artifacts, {len(relationships)} relationships, "
            f"{len(rejected)} rejected, {nae_tokens + are_tokens} tokens, {duration_ms:.0f}ms"
        )
        return ExtractionResult(
            artifacts=artifacts,
            relationships=relationships,
            rejected=rejected,
            tokens_used=nae_tokens + are_tokens,
            duration_ms=duration_ms,
        )
