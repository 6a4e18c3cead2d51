"""
Embedding Service

Generates semantic vector embeddings using OpenAI embedding models, and
builds the text that represents notes, artifacts and relationships.
"""

import asyncio
import logging
from typing import Optional

from openai import AsyncOpenAI, OpenAIError

from exceptions import ExternalServiceError
from knowledge_graph.models import EmbeddingResult

logger = logging.getLogger(__name__)


class EmbeddingService:
    """
    Service for generating semantic embeddings.

    The OpenAI client is created on first use so that constructing the
    service never requires credentials.
    """

    def __init__(self, api_key: Optional[str], model: str = "text-embedding-3-small",
                 timeout: float = 30.0, client: Optional[AsyncOpenAI] = None):
        self.model = model
        self.timeout = timeout
        self._api_key = api_key
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self._api_key)
        return self._client

    async def embed(self, text: str) -> EmbeddingResult:
        """
        Generate embedding vector from text.

        Raises:
            ValueError: text is empty
            ExternalServiceError: the API call failed or timed out
        """
        if not text or not text.strip():
            raise ValueError("Text cannot be empty")

        try:
            response = await asyncio.wait_for(
                self.client.embeddings.create(model=self.model, input=text),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise ExternalServiceError(f"Embedding request timed out after {self.timeout}s") from e
        except OpenAIError as e:
            raise ExternalServiceError(f"Embedding request failed: {e}") from e

        usage = getattr(response, "usage", None)
        tokens = getattr(usage, "total_tokens", 0) or 0
        logger.debug(f"Embedded {len(text)} chars with {self.model} ({tokens} tokens)")
        return EmbeddingResult(vector=list(response.data[0].embedding), tokens_used=tokens, model=self.model)

    @staticmethod
    def note_text(title: str, content: str) -> str:
        return f"{title}\n\n{content}"

    @staticmethod
    def artifact_text(name: str, category: str, short_description: str = "", description: str = "") -> str:
        parts = [f"Artifact: {name}", f"Type: {category}"]
        if short_description:
            parts.append(f"Description: {short_description}")
        if description:
            parts.append(f"Details: {description}")
        return " | ".join(parts)

    @staticmethod
    def relationship_text(source: str, label: str, target: str, description: str = "", reasoning: str = "") -> str:
        parts = [f"Relationship: {source} -[{label}]-> {target}"]
        if description:
            parts.append(f"Description: {description}")
        if reasoning:
            parts.append(f"Reasoning: {reasoning}")
        return " | ".join(parts)
