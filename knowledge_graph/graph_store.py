"""
Graph Store

Neo4j projection of the campaign knowledge graph. Artifacts become nodes
labelled ``<CampaignLabel>_<campaign id>_Artifact`` and relationships become
typed edges between them. Every write is a MERGE on the entity id so retries and
concurrent pipelines converge.
"""

import contextlib
import logging
import re
import threading
from contextlib import contextmanager
from typing import Any, Dict, Generator, List, Optional, Tuple

from neo4j import GraphDatabase
from neo4j.exceptions import AuthError, Neo4jError, ServiceUnavailable

from exceptions import SyncError

logger = logging.getLogger(__name__)

STORE_NAME = "graph"


def sanitize_identifier(value: str, fallback: str = "RELATED_TO") -> str:
    """Upper-case, non-alphanumerics to underscores, runs collapsed"""
    cleaned = re.sub(r"[^A-Za-z0-9]", "_", value or "").upper()
    cleaned = re.sub(r"_+", "_", cleaned).strip("_")
    if not cleaned:
        return fallback
    if cleaned[0].isdigit():
        cleaned = f"_{cleaned}"
    return cleaned


def campaign_label(campaign_uuid: str, graph_label: Optional[str] = None) -> str:
    """
    Node label for a campaign's artifacts.

    Graph labels are not unique across campaigns, so the campaign id is
    always part of the label.
    """
    campaign_hex = campaign_uuid.replace("-", "").lower()
    base = f"{graph_label}_{campaign_hex}" if graph_label else f"Campaign_{campaign_hex}"
    base = re.sub(r"_+", "_", re.sub(r"[^A-Za-z0-9]", "_", base)).strip("_")
    if base[0].isdigit():
        base = f"C_{base}"
    return f"{base}_Artifact"


class GraphStore:
    """
    Neo4j graph store.

    The driver is created lazily on first use. Connection failures raise
    SyncError so callers can record them against the note's sync status.
    """

    def __init__(self, uri: str, user: str, password: str, driver=None):
        self._uri = uri
        self._user = user
        self._password = password
        self._driver = driver
        self._lock = threading.Lock()
        logger.info(f"GraphStore configured: {self._uri}")

    def _get_driver(self):
        """Neo4j driver (lazy)"""
        if self._driver is None:
            with self._lock:
                if self._driver is None:
                    self._driver = GraphDatabase.driver(
                        self._uri,
                        auth=(self._user, self._password),
                        max_connection_lifetime=3600,
                        max_connection_pool_size=50,
                    )
        return self._driver

    @contextmanager
    def _session(self) -> Generator:
        session = None
        try:
            session = self._get_driver().session()
            yield session
        except (ServiceUnavailable, AuthError) as e:
            logger.error(f"Neo4j connection failed: {e}")
            raise SyncError(STORE_NAME, f"connection failed: {e}") from e
        except Neo4jError as e:
            logger.error(f"Neo4j query failed: {e}")
            raise SyncError(STORE_NAME, str(e)) from e
        finally:
            if session is not None:
                with contextlib.suppress(Exception):
                    session.close()

    def close(self) -> None:
        if self._driver is not None:
            try:
                self._driver.close()
                logger.info("Neo4j connection closed")
            except Neo4jError as e:
                logger.warning(f"Error closing Neo4j connection: {e}")
            finally:
                self._driver = None

    def health_check(self) -> bool:
        try:
            with self._session() as session:
                session.run("RETURN 1").consume()
            return True
        except SyncError:
            return False

    def upsert_artifact(self, label: str, artifact: Dict[str, Any]) -> None:
        """
        Create or update an artifact node.

        Args:
            label: Campaign node label from campaign_label()
            artifact: {id, name, type, description, short_description, campaign_uuid, note_ids}
        """
        query = (
            f"MERGE (a:`{label}` {{id: $id}}) "
            "SET a.name = $name, a.type = $type, a.description = $description, "
            "a.short_description = $short_description, a.campaign_uuid = $campaign_uuid, "
            "a.note_ids = $note_ids, a.updated_at = datetime()"
        )
        with self._session() as session:
            session.run(query, **{
                "id": artifact["id"],
                "name": artifact["name"],
                "type": artifact["type"],
                "description": artifact.get("description") or "",
                "short_description": artifact.get("short_description") or "",
                "campaign_uuid": artifact["campaign_uuid"],
                "note_ids": list(artifact.get("note_ids") or []),
            }).consume()

    def upsert_relationship(self, label: str, relationship: Dict[str, Any]) -> None:
        """
        Create or update a relationship edge. Both endpoint nodes must exist.

        Args:
            label: Campaign node label from campaign_label()
            relationship: {id, source, target, label, description, reasoning, campaign_uuid, note_ids}
        """
        rel_type = sanitize_identifier(relationship["label"])
        query = (
            f"MATCH (s:`{label}` {{id: $source}}), (t:`{label}` {{id: $target}}) "
            f"MERGE (s)-[r:`{rel_type}` {{id: $id}}]->(t) "
            "SET r.label = $label, r.description = $description, r.reasoning = $reasoning, "
            "r.campaign_uuid = $campaign_uuid, r.note_ids = $note_ids, r.updated_at = datetime() "
            "RETURN count(r) AS written"
        )
        with self._session() as session:
            record = session.run(query, **{
                "id": relationship["id"],
                "source": relationship["source"],
                "target": relationship["target"],
                "label": relationship["label"],
                "description": relationship.get("description") or "",
                "reasoning": relationship.get("reasoning") or "",
                "campaign_uuid": relationship["campaign_uuid"],
                "note_ids": list(relationship.get("note_ids") or []),
            }).single()
        if not record or record["written"] == 0:
            raise SyncError(STORE_NAME, f"endpoints missing for relationship {relationship['id']}")

    def get_graph(self, label: str, note_id: Optional[str] = None) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
        """
        Nodes and edges of one campaign, optionally only those a note contributed to.

        Returns:
            (nodes, edges) as plain dicts
        """
        node_query = (
            f"MATCH (a:`{label}`) "
            "WHERE $note_id IS NULL OR $note_id IN a.note_ids "
            "RETURN a ORDER BY a.name"
        )
        edge_query = (
            f"MATCH (s:`{label}`)-[r]->(t:`{label}`) "
            "WHERE $note_id IS NULL OR $note_id IN r.note_ids "
            "RETURN s.id AS source, t.id AS target, r"
        )
        with self._session() as session:
            nodes = [dict(record["a"]) for record in session.run(node_query, note_id=note_id)]
            edges = []
            for record in session.run(edge_query, note_id=note_id):
                props = dict(record["r"])
                edges.append({**props, "source": record["source"], "target": record["target"]})
        return nodes, edges

    def get_neighbors(self, label: str, artifact_id: str) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
        """Direct neighbours of one artifact, in either direction"""
        query = (
            f"MATCH (a:`{label}` {{id: $id}})-[r]-(b:`{label}`) "
            "RETURN a, b, r, startNode(r).id AS source, endNode(r).id AS target"
        )
        nodes: Dict[str, Dict[str, Any]] = {}
        edges = []
        with self._session() as session:
            for record in session.run(query, id=artifact_id):
                for key in ("a", "b"):
                    node = dict(record[key])
                    nodes[node["id"]] = node
                edges.append({**dict(record["r"]), "source": record["source"], "target": record["target"]})
        return list(nodes.values()), edges
