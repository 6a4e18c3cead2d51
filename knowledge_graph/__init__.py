"""
Knowledge Graph Module

Turns campaign notes into a deduplicated per-campaign knowledge graph.

Architecture:
- models: Domain types (drafts, candidates, proposals, sync enums)
- extraction: NAE and ARE language-model stages
- candidates: ANN candidate retrieval against the vector store
- deduplication: Per-item state machine, adjudication, decision rule
- merge: Applies merges, persists proposals, resolves confirmations
- sync: Per-note, per-store sync state machine and recovery
- pipeline: Orchestrator for one note processing task
- vector_store / graph_store: ChromaDB and Neo4j projections
"""

__all__ = []
