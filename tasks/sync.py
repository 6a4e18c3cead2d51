"""
Store Sync Tasks for Campaign Notes API

Handles:
- Periodic recovery sweep (pending/retry rows, eligible error rows, stale syncing rows)
- Explicit re-queue of one note's vector or graph sync
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from celery_app import app
from knowledge_graph.models import SyncStore
from knowledge_graph.sync import get_status, note_ready_for_sync
from models import Note
from notes.dependencies import build_sync_coordinator
from tasks.base import BaseSyncTask

logger = logging.getLogger(__name__)


@app.task(base=BaseSyncTask, bind=True, name='tasks.sync.recover_note_syncs')
def recover_note_syncs(self, campaign_uuid: Optional[str] = None) -> Dict[str, int]:
    """
    Drive unsynced notes forward.

    Args:
        campaign_uuid: Limit the sweep to one campaign (all campaigns when None)

    Returns:
        Counts of stale, requeued, synced, failed and skipped store syncs
    """
    db = self.get_db_session()
    coordinator = build_sync_coordinator()
    try:
        return asyncio.run(coordinator.recover(db, campaign_uuid=campaign_uuid))
    finally:
        coordinator.graph_store.close()


@app.task(base=BaseSyncTask, bind=True, name='tasks.sync.sync_note')
def sync_note(self, note_uuid: str, store: Optional[str] = None) -> Dict[str, Any]:
    """
    Re-queue and run the sync of one note.

    Args:
        note_uuid: Note id
        store: "vector" or "graph"; both stores when None

    Returns:
        Per-store status after the run
    """
    db = self.get_db_session()
    note = db.query(Note).filter(Note.note_uuid == note_uuid, Note.is_active.is_(True)).first()
    if note is None:
        raise ValueError(f"Note {note_uuid} not found")
    stores = [SyncStore(store)] if store else list(SyncStore)

    if not note_ready_for_sync(db, note):
        logger.info(f"⏸️ Note {note_uuid} is not ready for sync (processing or awaiting confirmation)")
        return {"note_id": note_uuid, "ready": False}

    coordinator = build_sync_coordinator()

    async def run() -> Dict[str, Any]:
        results = {}
        for s in stores:
            coordinator.requeue(db, note, s)
            await coordinator.sync(db, note, s)
            results[s.value] = get_status(note, s).value
        return results

    try:
        results = asyncio.run(run())
    finally:
        coordinator.graph_store.close()
    return {"note_id": note_uuid, "ready": True, **results}
