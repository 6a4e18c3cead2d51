"""
End-to-end processing scenarios against the in-memory database and fake
stores: new entities, auto-merge, user confirmation, vector store outages
and concurrent notes in one campaign.
"""

import asyncio
from datetime import datetime, timedelta

import pytest

from conftest import CAMPAIGN_UUID, add_artifact, add_note, add_task, are, judged_same, nae
from exceptions import ConflictError, NotFoundError
from knowledge_graph.config import DeduplicationConfig
from knowledge_graph.models import NoteStatus, ProcessingPhase, ProposalStatus
from knowledge_graph.pipeline import NotePipeline
from models import Artifact, MergeProposalRecord, Note, NoteProcessingTask, Relationship


def _task(db, task_id):
    db.expire_all()
    return db.query(NoteProcessingTask).filter(NoteProcessingTask.task_id == task_id).one()


def _note(db, note_uuid):
    db.expire_all()
    return db.query(Note).filter(Note.note_uuid == note_uuid).one()


def _artifacts(db, name_key=None):
    db.expire_all()
    query = db.query(Artifact).filter(Artifact.campaign_uuid == CAMPAIGN_UUID)
    if name_key:
        query = query.filter(Artifact.name_key == name_key)
    return query.order_by(Artifact.id).all()


# ============================================================================
# A: everything new
# ============================================================================

@pytest.mark.asyncio
async def test_new_note_creates_artifacts_and_syncs(db, campaign, llm, vector_store, graph_store, make_pipeline):
    add_note(db, "note-a", title="Solace", content="Tanis meets Flint at the Inn of the Last Home.")
    add_task(db, "note-a")
    llm.script(
        nae(("Tanis Half-Elven", "characters"), ("Flint Fireforge", "character")),
        are(("Tanis Half-Elven", "Flint Fireforge", "friend_of")),
    )

    response = await make_pipeline().process_note("task-note-a")

    assert response.artifact_count == 2
    assert response.relationship_count == 1
    assert response.requires_user_confirmation is False
    assert response.deduplication_result.created_new_count == 3
    assert {a.type for a in response.artifacts} == {"characters"}

    task = _task(db, "task-note-a")
    assert task.status == NoteStatus.COMPLETED.value
    assert task.current_phase == ProcessingPhase.COMPLETE.value
    assert task.progress == 100
    assert task.tokens_used > 0
    assert NotePipeline.stored_result(task).note_id == "note-a"

    note = _note(db, "note-a")
    assert note.qdrant_sync_status == "synced"
    assert note.neo4j_sync_status == "synced"
    assert note.fully_processed

    # note + 2 artifacts + 1 relationship
    assert vector_store.count(CAMPAIGN_UUID) == 4
    assert len(graph_store.nodes) == 2
    edge = next(iter(graph_store.edges.values()))
    assert edge["label"] == "friend_of"
    assert graph_store.labels == {"Krynn_5f1c7a529d1e4c1a8d7e2b7d1f0c9a11_Artifact"}


@pytest.mark.asyncio
async def test_note_without_artifacts_skips_relationship_extraction(db, campaign, llm, make_pipeline):
    add_note(db, "note-empty", content="We rested and nothing happened.")
    add_task(db, "note-empty")
    llm.script(nae())

    response = await make_pipeline().process_note("task-note-empty")

    assert response.artifact_count == 0
    assert len(llm.prompts) == 1
    assert _note(db, "note-empty").fully_processed


# ============================================================================
# B: high-confidence duplicate merges automatically
# ============================================================================

@pytest.mark.asyncio
async def test_high_confidence_duplicate_is_auto_merged(db, campaign, llm, make_pipeline):
    add_note(db, "note-0", title="Arrival", content="Otik runs the inn.")
    add_artifact(db, "otik", "Otik Sandath", ["note-0"], description="Innkeeper")
    add_note(db, "note-b", title="Potatoes", content="Otik Sandath serves spiced potatoes.")
    add_task(db, "note-b")
    llm.script(
        nae(("Otik Sandath", "characters", "Cooks spiced potatoes")),
        are(),
        judged_same(97),
    )

    response = await make_pipeline().process_note("task-note-b")

    assert response.merged_artifact_count == 1
    assert response.requires_user_confirmation is False
    [proposal] = response.artifact_merge_proposals
    assert proposal.auto_merge is True
    assert proposal.approved is True
    assert proposal.existing_item_id == "otik"
    assert proposal.confidence == 97

    [otik] = _artifacts(db)
    assert otik.note_ids == ["note-0", "note-b"]
    assert "Innkeeper" in otik.description
    assert "spiced potatoes" in otik.description

    record = db.query(MergeProposalRecord).one()
    assert record.status == ProposalStatus.APPROVED.value
    assert record.resolved_item_id == "otik"
    assert _note(db, "note-b").fully_processed


@pytest.mark.asyncio
async def test_repeated_relationship_merges_into_existing(db, campaign, llm, make_pipeline):
    pipeline = make_pipeline()
    add_note(db, "note-1", content="Tanis and Flint are old friends.")
    add_task(db, "note-1")
    llm.script(
        nae(("Tanis", "characters"), ("Flint", "characters")),
        are(("Tanis", "Flint", "friend_of")),
    )
    await pipeline.process_note("task-note-1")

    add_note(db, "note-2", content="Flint grumbles, but Tanis is still his friend.")
    add_task(db, "note-2")
    llm.script(
        nae(("Tanis", "characters"), ("Flint", "characters")),
        are(("Tanis", "Flint", "friend_of")),
        judged_same(99),
        judged_same(99),
        judged_same(99),
    )
    response = await pipeline.process_note("task-note-2")

    assert response.merged_artifact_count == 2
    assert response.merged_relationship_count == 1
    assert len(_artifacts(db)) == 2
    [rel] = db.query(Relationship).all()
    assert rel.note_ids == ["note-1", "note-2"]


# ============================================================================
# C: medium-confidence duplicate waits for the user
# ============================================================================

@pytest.fixture
def pending_note(db, campaign, llm, make_pipeline):
    """note-c mentions Otik (pending proposal) and Tika (new), Tika works for Otik"""
    add_note(db, "note-0", title="Arrival", content="Otik runs the inn.")
    add_artifact(db, "otik", "Otik", ["note-0"], description="Innkeeper")
    add_note(db, "note-c", title="The Inn", content="Tika works for Otik at the inn.")
    add_task(db, "note-c")
    llm.script(
        nae(("Otik", "characters"), ("Tika Waylan", "characters", "Barmaid")),
        are(("Tika Waylan", "Otik", "works_for")),
        judged_same(70),
    )
    return make_pipeline()


@pytest.mark.asyncio
async def test_medium_confidence_holds_sync_until_confirmed(db, pending_note, vector_store, graph_store):
    response = await pending_note.process_note("task-note-c")

    assert response.requires_user_confirmation is True
    [proposal] = response.artifact_merge_proposals
    assert proposal.approved is None
    assert proposal.auto_merge is False
    assert proposal.existing_item_id == "otik"
    assert [a.name for a in response.artifacts] == ["Tika Waylan"]
    assert response.relationship_count == 0

    task = _task(db, "task-note-c")
    assert task.status == NoteStatus.COMPLETED.value
    assert task.current_phase == ProcessingPhase.AWAITING_CONFIRMATION.value
    assert len(task.deferred_relationships) == 1

    note = _note(db, "note-c")
    assert note.qdrant_sync_status == "pending"
    assert note.neo4j_sync_status == "pending"
    assert vector_store.count(CAMPAIGN_UUID) == 0
    assert graph_store.nodes == {}


@pytest.mark.asyncio
async def test_approving_proposal_merges_and_resolves_deferred_relationship(db, pending_note, graph_store):
    processed = await pending_note.process_note("task-note-c")
    proposal_id = processed.artifact_merge_proposals[0].proposal_id

    response = await pending_note.confirm_deduplication(CAMPAIGN_UUID, "note-c", {proposal_id: True})

    assert response.requires_user_confirmation is False
    assert response.merged_artifact_count == 1
    assert response.artifact_count == 2
    assert response.relationship_count == 1
    assert response.artifact_merge_proposals[0].approved is True

    otik = _artifacts(db, "otik")
    assert [a.artifact_uuid for a in otik] == ["otik"]
    assert otik[0].note_ids == ["note-0", "note-c"]
    [rel] = db.query(Relationship).all()
    assert rel.target_artifact_uuid == "otik"
    assert rel.label == "works_for"

    task = _task(db, "task-note-c")
    assert task.current_phase == ProcessingPhase.COMPLETE.value
    assert task.deferred_relationships == []
    assert _note(db, "note-c").fully_processed
    assert "otik" in graph_store.nodes
    assert len(graph_store.edges) == 1


@pytest.mark.asyncio
async def test_confirmation_is_idempotent(db, pending_note):
    processed = await pending_note.process_note("task-note-c")
    proposal_id = processed.artifact_merge_proposals[0].proposal_id

    await pending_note.confirm_deduplication(CAMPAIGN_UUID, "note-c", {proposal_id: True})
    again = await pending_note.confirm_deduplication(CAMPAIGN_UUID, "note-c", {proposal_id: False})

    assert again.merged_artifact_count == 0
    assert again.artifact_merge_proposals[0].approved is True
    assert len(_artifacts(db)) == 2
    assert _artifacts(db, "otik")[0].note_ids == ["note-0", "note-c"]
    assert db.query(Relationship).count() == 1


@pytest.mark.asyncio
async def test_unmentioned_proposals_are_rejected(db, pending_note):
    await pending_note.process_note("task-note-c")

    response = await pending_note.confirm_deduplication(CAMPAIGN_UUID, "note-c", {})

    assert response.artifact_merge_proposals[0].approved is False
    otiks = _artifacts(db, "otik")
    assert len(otiks) == 2
    assert otiks[0].note_ids == ["note-0"]
    created = otiks[1]
    assert created.note_ids == ["note-c"]
    [rel] = db.query(Relationship).all()
    assert rel.target_artifact_uuid == created.artifact_uuid
    assert db.query(MergeProposalRecord).one().status == ProposalStatus.REJECTED.value


@pytest.mark.asyncio
async def test_confirm_rejects_unknown_proposal(db, pending_note):
    await pending_note.process_note("task-note-c")
    with pytest.raises(NotFoundError):
        await pending_note.confirm_deduplication(CAMPAIGN_UUID, "note-c", {"no-such-proposal": True})
    assert db.query(MergeProposalRecord).one().status == ProposalStatus.PENDING.value


@pytest.mark.asyncio
async def test_confirm_before_processing_finishes_conflicts(db, pending_note):
    with pytest.raises(ConflictError):
        await pending_note.confirm_deduplication(CAMPAIGN_UUID, "note-c", {})


@pytest.mark.asyncio
async def test_rejected_proposals_from_two_notes_create_one_entity(db, campaign, llm, vector_store, make_pipeline):
    pipeline = make_pipeline()
    add_note(db, "note-0", content="Sturm Brightblade keeps the Measure.")
    add_artifact(db, "sturm-b", "Sturm Brightblade", ["note-0"])
    vector_store.upsert(CAMPAIGN_UUID, "sturm-b", "artifact", [0.5] * 8, "Artifact: Sturm Brightblade")
    vector_store.similarities["sturm-b"] = 0.9

    for note_uuid in ("note-1", "note-2"):
        add_note(db, note_uuid, content="Sturm polishes his armour.")
        add_task(db, note_uuid)
        llm.script(nae(("Sturm", "characters")), are(), judged_same(60))
        response = await pipeline.process_note(f"task-{note_uuid}")
        assert response.artifact_merge_proposals[0].existing_item_id == "sturm-b"

    first = await pipeline.confirm_deduplication(CAMPAIGN_UUID, "note-1", {})
    second = await pipeline.confirm_deduplication(CAMPAIGN_UUID, "note-2", {})

    [sturm] = _artifacts(db, "sturm")
    assert sturm.note_ids == ["note-1", "note-2"]
    assert _artifacts(db, "sturm brightblade")[0].note_ids == ["note-0"]
    assert first.artifact_merge_proposals[0].approved is False
    assert second.artifact_merge_proposals[0].approved is False
    records = db.query(MergeProposalRecord).order_by(MergeProposalRecord.id).all()
    assert [r.resolved_item_id for r in records] == [sturm.artifact_uuid, sturm.artifact_uuid]


# ============================================================================
# D: vector store unavailable
# ============================================================================

@pytest.mark.asyncio
async def test_vector_outage_fails_task_then_retry_recovers(db, campaign, llm, vector_store, make_pipeline):
    pipeline = make_pipeline()
    add_note(db, "note-d", content="Sturm keeps vigil.")
    add_task(db, "note-d")
    vector_store.unavailable = True
    llm.script(nae(("Sturm Brightblade", "characters")), are())

    assert await pipeline.process_note("task-note-d") is None

    task = _task(db, "task-note-d")
    assert task.status == NoteStatus.FAILED.value
    assert "vector store unreachable" in task.error
    note = _note(db, "note-d")
    assert note.qdrant_sync_status == "error"
    assert "vector store unreachable" in note.qdrant_sync_error
    assert note.neo4j_sync_status == "pending"
    assert _artifacts(db) == []

    vector_store.unavailable = False
    add_task(db, "note-d", task_id="task-note-d-retry")
    llm.script(nae(("Sturm Brightblade", "characters")), are())

    response = await pipeline.process_note("task-note-d-retry")

    assert response.artifact_count == 1
    note = _note(db, "note-d")
    assert note.qdrant_sync_status == "synced"
    assert note.qdrant_sync_error is None
    assert note.qdrant_sync_attempts == 2
    assert note.neo4j_sync_status == "synced"


@pytest.mark.asyncio
async def test_vector_outage_degrades_when_configured(
    db, campaign, llm, vector_store, graph_store, sync_coordinator, make_pipeline
):
    pipeline = make_pipeline(DeduplicationConfig(degrade_on_vector_failure=True))
    add_note(db, "note-d", content="Sturm keeps vigil.")
    add_task(db, "note-d")
    vector_store.unavailable = True
    llm.script(nae(("Sturm Brightblade", "characters")), are())

    response = await pipeline.process_note("task-note-d")

    assert response.deduplication_result.candidate_retrieval_degraded is True
    assert response.artifact_count == 1
    task = _task(db, "task-note-d")
    assert task.status == NoteStatus.COMPLETED.value
    note = _note(db, "note-d")
    assert note.qdrant_sync_status == "error"
    assert "candidate retrieval failed" in note.qdrant_sync_error
    assert note.neo4j_sync_status == "synced"
    assert len(graph_store.nodes) == 1

    # Store comes back; the periodic recovery pass finishes the vector side
    vector_store.unavailable = False
    db.expire_all()
    summary = await sync_coordinator.recover(db, now=datetime.utcnow() + timedelta(minutes=5))

    assert summary["requeued"] == 1
    assert summary["synced"] == 1
    assert _note(db, "note-d").fully_processed
    assert vector_store.count(CAMPAIGN_UUID) == 2


# ============================================================================
# E: concurrent notes in one campaign
# ============================================================================

@pytest.mark.asyncio
async def test_deduplication_waits_for_campaign_lock(db, campaign, llm, make_pipeline):
    pipeline = make_pipeline()
    add_note(db, "note-e1", content="Raistlin coughs.")
    add_note(db, "note-e2", content="Raistlin casts sleep.")
    add_task(db, "note-e1")
    add_task(db, "note-e2")

    llm.script(nae(("Raistlin Majere", "characters")), are())
    async with pipeline.locks.hold(CAMPAIGN_UUID):
        running = asyncio.create_task(pipeline.process_note("task-note-e1"))
        for _ in range(20):
            await asyncio.sleep(0)
        assert not running.done()
        assert _task(db, "task-note-e1").current_phase == ProcessingPhase.EXTRACTING_RELATIONSHIPS.value
        assert _artifacts(db) == []
    await running

    llm.script(nae(("Raistlin Majere", "characters")), are(), judged_same(99))
    response = await pipeline.process_note("task-note-e2")

    assert response.merged_artifact_count == 1
    [raistlin] = _artifacts(db)
    assert raistlin.note_ids == ["note-e1", "note-e2"]


# ============================================================================
# Failures and bookkeeping
# ============================================================================

@pytest.mark.asyncio
async def test_unparsable_extraction_fails_task(db, campaign, llm, make_pipeline):
    add_note(db, "note-x")
    add_task(db, "note-x")
    llm.script("Sure! Here are the artifacts: Tanis, Flint.")

    assert await make_pipeline().process_note("task-note-x") is None

    task = _task(db, "task-note-x")
    assert task.status == NoteStatus.FAILED.value
    assert "unparsable" in task.error
    note = _note(db, "note-x")
    assert note.qdrant_sync_status == "pending"
    assert note.neo4j_sync_status == "pending"


@pytest.mark.asyncio
async def test_unknown_and_completed_tasks_are_skipped(db, campaign, llm, make_pipeline):
    add_note(db, "note-done")
    add_task(db, "note-done", status=NoteStatus.COMPLETED.value)
    pipeline = make_pipeline()

    assert await pipeline.process_note("missing-task") is None
    assert await pipeline.process_note("task-note-done") is None
    assert llm.prompts == []


def test_interrupted_tasks_are_reset(db, campaign, make_pipeline):
    add_note(db, "note-p")
    add_note(db, "note-q")
    add_note(db, "note-r")
    add_task(db, "note-p", status=NoteStatus.PROCESSING.value)
    add_task(db, "note-q", status=NoteStatus.PENDING.value)
    add_task(db, "note-r", status=NoteStatus.FAILED.value)

    assert make_pipeline().interrupted_tasks() == ["task-note-p", "task-note-q"]
    assert _task(db, "task-note-p").status == NoteStatus.PENDING.value
    assert _task(db, "task-note-r").status == NoteStatus.FAILED.value
