"""
Vector Store

ChromaDB integration for storing and querying campaign embeddings.

Each campaign owns one collection. Notes, artifacts and relationships share
it and are told apart by the ``type`` metadata field. The collection uses
cosine space so that similarity = 1 - distance lands in [0, 1].
"""

import logging
from pathlib import Path
from typing import List, Dict, Any, Optional

import chromadb
from chromadb.config import Settings

logger = logging.getLogger(__name__)

DOC_TYPE_NOTE = "note"
DOC_TYPE_ARTIFACT = "artifact"
DOC_TYPE_RELATIONSHIP = "relationship"


def collection_name(campaign_uuid: str) -> str:
    """Chroma-safe collection name for a campaign"""
    return f"campaign_{campaign_uuid.replace('-', '')}"


def _clean_metadata(metadata: Dict[str, Any]) -> Dict[str, Any]:
    """Chroma metadata values must be scalars"""
    cleaned = {}
    for key, value in metadata.items():
        if value is None:
            continue
        if isinstance(value, (list, tuple, set)):
            cleaned[key] = ",".join(str(v) for v in value)
        elif isinstance(value, (str, int, float, bool)):
            cleaned[key] = value
        else:
            cleaned[key] = str(value)
    return cleaned


class VectorStore:
    """
    ChromaDB-based vector store for campaign embeddings.

    All writes are upserts keyed by entity id, so concurrent pipelines and
    retried syncs converge on the same document.
    """

    def __init__(self, persist_directory: Optional[str] = None, client=None):
        """
        Initialize ChromaDB client.

        Args:
            persist_directory: Directory to persist ChromaDB data. Ignored when
                              a client is passed in.
            client: Pre-built chromadb client (e.g. an EphemeralClient)
        """
        if client is None:
            persist_path = Path(persist_directory or "./chroma_db")
            persist_path.mkdir(parents=True, exist_ok=True)
            client = chromadb.PersistentClient(
                path=str(persist_path),
                settings=Settings(anonymized_telemetry=False)
            )
        self.client = client

    def _collection(self, campaign_uuid: str):
        return self.client.get_or_create_collection(
            name=collection_name(campaign_uuid),
            metadata={"hnsw:space": "cosine", "campaign_uuid": campaign_uuid}
        )

    def upsert(
        self,
        campaign_uuid: str,
        item_id: str,
        item_type: str,
        vector: List[float],
        document: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """Store or update one embedding"""
        payload = _clean_metadata({
            **(metadata or {}),
            "type": item_type,
            "campaign_uuid": campaign_uuid,
        })
        self._collection(campaign_uuid).upsert(
            ids=[item_id],
            embeddings=[vector],
            metadatas=[payload],
            documents=[document]
        )

    def query_similar(
        self,
        campaign_uuid: str,
        vector: List[float],
        item_type: str,
        limit: int = 5
    ) -> List[Dict[str, Any]]:
        """
        Nearest neighbours of ``vector`` among documents of ``item_type``.

        Returns:
            List ordered by similarity:
            [
                {"id": "...", "similarity": 0.92, "metadata": {...}, "document": "..."},
                ...
            ]
        """
        collection = self._collection(campaign_uuid)
        total = collection.count()
        if total == 0:
            return []

        similar = collection.query(
            query_embeddings=[vector],
            n_results=min(limit, total),
            where={"type": item_type},
            include=["distances", "metadatas", "documents"]
        )

        results = []
        for i, item_id in enumerate(similar["ids"][0]):
            distance = similar["distances"][0][i]
            results.append({
                "id": item_id,
                "similarity": max(0.0, min(1.0, 1.0 - distance)),
                "metadata": similar["metadatas"][0][i],
                "document": similar["documents"][0][i]
            })
        return results

    def delete(self, campaign_uuid: str, item_id: str) -> None:
        self._collection(campaign_uuid).delete(ids=[item_id])

    def count(self, campaign_uuid: str) -> int:
        """Get total number of embeddings in the campaign collection"""
        return self._collection(campaign_uuid).count()
