"""Tests for the per-store sync state machine, fan-out and recovery."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from conftest import CAMPAIGN_UUID, add_artifact, add_note, add_task
from knowledge_graph.models import NoteStatus, SyncStatus, SyncStore
from knowledge_graph.sync import (
    InvalidTransition,
    get_status,
    linked_artifacts,
    linked_relationships,
    note_ready_for_sync,
    sync_state,
    transition,
)
from models import MergeProposalRecord, Relationship


@pytest.fixture
def note(db, campaign):
    return add_note(db, "note-s", title="Xak Tsaroth", content="Goldmoon finds the Disks of Mishakal.")


@pytest.fixture
def ready_note(db, note):
    add_task(db, note.note_uuid, status=NoteStatus.COMPLETED.value)
    add_artifact(db, "goldmoon", "Goldmoon", [note.note_uuid])
    return note


# ============================================================================
# Transitions
# ============================================================================

def test_legal_path_and_attempt_counter(db, note):
    transition(db, note, SyncStore.VECTOR, SyncStatus.SYNCING)
    transition(db, note, SyncStore.VECTOR, SyncStatus.ERROR, error="boom")
    db.refresh(note)
    assert sync_state(note, SyncStore.VECTOR)["error"] == "boom"

    transition(db, note, SyncStore.VECTOR, SyncStatus.RETRY)
    transition(db, note, SyncStore.VECTOR, SyncStatus.SYNCING)
    transition(db, note, SyncStore.VECTOR, SyncStatus.SYNCED)
    db.refresh(note)

    state = sync_state(note, SyncStore.VECTOR)
    assert state["status"] == "synced"
    assert state["error"] is None
    assert state["attempts"] == 2
    assert state["last_sync_at"] is not None
    assert get_status(note, SyncStore.GRAPH) == SyncStatus.PENDING


@pytest.mark.parametrize("path", [
    [SyncStatus.SYNCED],
    [SyncStatus.ERROR],
    [SyncStatus.RETRY],
    [SyncStatus.SYNCING, SyncStatus.RETRY],
    [SyncStatus.SYNCING, SyncStatus.SYNCED, SyncStatus.SYNCING],
    [SyncStatus.SYNCING, SyncStatus.ERROR, SyncStatus.SYNCING],
])
def test_illegal_transitions_raise(db, note, path):
    *legal, illegal = path
    for status in legal:
        transition(db, note, SyncStore.GRAPH, status)
    with pytest.raises(InvalidTransition):
        transition(db, note, SyncStore.GRAPH, illegal)


def test_concurrent_change_is_detected(db, session_factory, note):
    assert note.qdrant_sync_status == "pending"
    other = session_factory()
    other.execute(
        text("UPDATE campaign_notes SET qdrant_sync_status = 'syncing' WHERE note_uuid = :n"),
        {"n": "note-s"},
    )
    other.commit()
    other.close()

    # note still believes it is pending; the guarded update matches no row
    with pytest.raises(InvalidTransition):
        transition(db, note, SyncStore.VECTOR, SyncStatus.SYNCING)


def test_invalid_status_value_is_rejected_by_the_database(db, note):
    with pytest.raises(IntegrityError):
        db.execute(
            text("UPDATE campaign_notes SET neo4j_sync_status = 'done' WHERE note_uuid = :n"),
            {"n": note.note_uuid},
        )
        db.commit()
    db.rollback()


# ============================================================================
# Readiness
# ============================================================================

def test_ready_requires_completed_task_and_no_pending_proposals(db, note):
    assert note_ready_for_sync(db, note) is False

    add_task(db, note.note_uuid, status=NoteStatus.COMPLETED.value)
    assert note_ready_for_sync(db, note) is True

    db.add(MergeProposalRecord(
        proposal_uuid="p-1", campaign_uuid=CAMPAIGN_UUID, note_uuid=note.note_uuid, item_type="artifact",
        new_item_id="d-1", new_item_name="Goldmoon", new_item={"name": "Goldmoon", "category": "characters"},
        existing_item_id="goldmoon", existing_item_name="Goldmoon", confidence=70, status="pending",
    ))
    db.commit()
    assert note_ready_for_sync(db, note) is False


# ============================================================================
# Linked rows
# ============================================================================

def test_linked_rows_match_whole_note_ids_only(db, ready_note):
    add_artifact(db, "riverwind", "Riverwind", ["note-0", ready_note.note_uuid])
    add_artifact(db, "tasslehoff", "Tasslehoff", ["note-s2"])
    add_artifact(db, "fizban", "Fizban", ["note-%"])
    db.add_all([
        Relationship(relationship_uuid="loves", campaign_uuid=CAMPAIGN_UUID, source_artifact_uuid="riverwind",
                     target_artifact_uuid="goldmoon", label="loves", note_ids=[ready_note.note_uuid]),
        Relationship(relationship_uuid="teases", campaign_uuid=CAMPAIGN_UUID, source_artifact_uuid="tasslehoff",
                     target_artifact_uuid="fizban", label="teases", note_ids=["note-s2"]),
    ])
    db.commit()

    assert [a.artifact_uuid for a in linked_artifacts(db, ready_note)] == ["goldmoon", "riverwind"]
    assert [r.relationship_uuid for r in linked_relationships(db, ready_note)] == ["loves"]

    wildcard = add_note(db, "note-%", content="Fizban loses his hat.")
    assert [a.artifact_uuid for a in linked_artifacts(db, wildcard)] == ["fizban"]


# ============================================================================
# Sync and fan-out
# ============================================================================

@pytest.mark.asyncio
async def test_fan_out_syncs_both_stores(db, ready_note, sync_coordinator, vector_store, graph_store):
    states = await sync_coordinator.fan_out(db, ready_note)

    assert states == {"vector": "synced", "graph": "synced"}
    assert set(vector_store.documents[CAMPAIGN_UUID]) == {"note-s", "goldmoon"}
    assert vector_store.documents[CAMPAIGN_UUID]["note-s"]["type"] == "note"
    assert graph_store.nodes["goldmoon"]["note_ids"] == ["note-s"]


@pytest.mark.asyncio
async def test_store_failures_are_independent(db, ready_note, sync_coordinator, graph_store):
    graph_store.unavailable = True

    states = await sync_coordinator.fan_out(db, ready_note)

    assert states == {"vector": "synced", "graph": "error"}
    db.refresh(ready_note)
    assert "connection refused" in ready_note.neo4j_sync_error
    assert ready_note.neo4j_sync_attempts == 1


@pytest.mark.asyncio
async def test_embedding_failure_marks_vector_error(db, ready_note, sync_coordinator, embedding_service):
    embedding_service.fail = True

    assert await sync_coordinator.sync(db, ready_note, SyncStore.VECTOR) is False

    db.refresh(ready_note)
    assert ready_note.qdrant_sync_status == "error"
    assert "embedding service unavailable" in ready_note.qdrant_sync_error


@pytest.mark.asyncio
async def test_sync_skips_error_and_syncing_rows(db, ready_note, sync_coordinator, vector_store):
    transition(db, ready_note, SyncStore.VECTOR, SyncStatus.SYNCING)
    assert await sync_coordinator.sync(db, ready_note, SyncStore.VECTOR) is False
    transition(db, ready_note, SyncStore.VECTOR, SyncStatus.ERROR, error="x")
    assert await sync_coordinator.sync(db, ready_note, SyncStore.VECTOR) is False
    assert vector_store.count(CAMPAIGN_UUID) == 0


def test_requeue_only_moves_error_rows(db, note, sync_coordinator):
    assert sync_coordinator.requeue(db, note, SyncStore.VECTOR) is False
    transition(db, note, SyncStore.VECTOR, SyncStatus.SYNCING)
    transition(db, note, SyncStore.VECTOR, SyncStatus.ERROR, error="x")

    assert sync_coordinator.requeue(db, note, SyncStore.VECTOR) is True
    db.refresh(note)
    assert note.qdrant_sync_status == "retry"


def test_record_failure_leaves_synced_store_alone(db, note, sync_coordinator):
    transition(db, note, SyncStore.VECTOR, SyncStatus.SYNCING)
    transition(db, note, SyncStore.VECTOR, SyncStatus.SYNCED)

    assert sync_coordinator.record_failure(db, note, SyncStore.VECTOR, "down") is False
    assert sync_coordinator.record_failure(db, note, SyncStore.GRAPH, "down") is True

    db.refresh(note)
    assert note.qdrant_sync_status == "synced"
    assert note.neo4j_sync_status == "error"
    assert note.neo4j_sync_error == "down"


# ============================================================================
# Recovery
# ============================================================================

@pytest.mark.asyncio
async def test_recover_syncs_pending_rows_of_ready_notes(db, ready_note, sync_coordinator):
    summary = await sync_coordinator.recover(db)

    assert summary["synced"] == 2
    db.refresh(ready_note)
    assert ready_note.fully_processed


@pytest.mark.asyncio
async def test_recover_skips_notes_still_processing(db, note, sync_coordinator, vector_store):
    add_task(db, note.note_uuid, status=NoteStatus.PROCESSING.value)

    summary = await sync_coordinator.recover(db)

    assert summary["skipped"] == 2
    assert summary["synced"] == 0
    assert vector_store.count(CAMPAIGN_UUID) == 0


@pytest.mark.asyncio
async def test_recover_marks_stale_syncing_rows(db, ready_note, sync_coordinator):
    transition(db, ready_note, SyncStore.GRAPH, SyncStatus.SYNCING)
    db.refresh(ready_note)
    started = ready_note.neo4j_last_sync_at

    summary = await sync_coordinator.recover(db, now=started + timedelta(seconds=301))

    db.refresh(ready_note)
    assert summary["stale"] == 1
    assert summary["requeued"] == 1
    assert summary["synced"] == 2
    assert ready_note.neo4j_sync_attempts == 2
    assert ready_note.fully_processed


@pytest.mark.asyncio
async def test_interrupted_sync_waits_for_store(db, ready_note, sync_coordinator, graph_store):
    transition(db, ready_note, SyncStore.GRAPH, SyncStatus.SYNCING)
    db.refresh(ready_note)
    graph_store.unavailable = True

    summary = await sync_coordinator.recover(db, now=ready_note.neo4j_last_sync_at + timedelta(seconds=301))

    db.refresh(ready_note)
    assert summary["stale"] == 1
    assert summary["failed"] == 1
    assert ready_note.neo4j_sync_status == "error"
    assert "connection refused" in ready_note.neo4j_sync_error


@pytest.mark.asyncio
async def test_recover_leaves_fresh_syncing_rows(db, ready_note, sync_coordinator):
    transition(db, ready_note, SyncStore.GRAPH, SyncStatus.SYNCING)

    summary = await sync_coordinator.recover(db)

    db.refresh(ready_note)
    assert summary["stale"] == 0
    assert ready_note.neo4j_sync_status == "syncing"


@pytest.mark.asyncio
async def test_recover_respects_backoff_and_max_attempts(db, ready_note, sync_coordinator, graph_store):
    graph_store.unavailable = True
    await sync_coordinator.sync(db, ready_note, SyncStore.GRAPH)
    db.refresh(ready_note)
    failed_at = ready_note.neo4j_last_sync_at

    # attempt 1 failed; backoff is 10s
    summary = await sync_coordinator.recover(db, now=failed_at + timedelta(seconds=5))
    assert summary["requeued"] == 0

    summary = await sync_coordinator.recover(db, now=failed_at + timedelta(seconds=11))
    assert summary["requeued"] == 1
    assert summary["failed"] == 1

    db.refresh(ready_note)
    assert ready_note.neo4j_sync_attempts == 2
    summary = await sync_coordinator.recover(db, now=datetime.utcnow() + timedelta(minutes=5))
    assert summary["failed"] == 1
    db.refresh(ready_note)
    assert ready_note.neo4j_sync_attempts == 3

    # max_attempts reached: stays in error until requeued explicitly
    graph_store.unavailable = False
    summary = await sync_coordinator.recover(db, now=datetime.utcnow() + timedelta(hours=1))
    assert summary["requeued"] == 0
    db.refresh(ready_note)
    assert ready_note.neo4j_sync_status == "error"

    assert sync_coordinator.requeue(db, ready_note, SyncStore.GRAPH) is True
    assert await sync_coordinator.sync(db, ready_note, SyncStore.GRAPH) is True


@pytest.mark.asyncio
async def test_recover_is_scoped_to_campaign(db, ready_note, sync_coordinator):
    summary = await sync_coordinator.recover(db, campaign_uuid="other-campaign")
    assert summary == {"stale": 0, "requeued": 0, "synced": 0, "failed": 0, "skipped": 0}
