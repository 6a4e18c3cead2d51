import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import asyncio
from database import SessionLocal
from knowledge_graph.models import SyncStore
from knowledge_graph.sync import sync_state
from models import Note
from notes.dependencies import build_sync_coordinator


async def requeue_sync(campaign_uuid: str, note_uuid: str = None):
    """Re-queue failed store syncs of a campaign (or one note) and run a recovery pass."""
    db = SessionLocal()
    coordinator = build_sync_coordinator()

    try:
        query = db.query(Note).filter(Note.campaign_uuid == campaign_uuid, Note.is_active.is_(True))
        if note_uuid:
            query = query.filter(Note.note_uuid == note_uuid)
        notes = query.all()

        if not notes:
            print(f"❌ No notes found for campaign '{campaign_uuid}'" + (f" and note {note_uuid}" if note_uuid else ""))
            return

        requeued = 0
        for note in notes:
            for store in SyncStore:
                state = sync_state(note, store)
                if coordinator.requeue(db, note, store):
                    requeued += 1
                    print(f"  🔄 {note.note_uuid} {store.value}: error -> retry (last error: {state['error']})")

        print(f"Re-queued {requeued} store sync(s), running recovery for campaign '{campaign_uuid}'")
        summary = await coordinator.recover(db, campaign_uuid=campaign_uuid)
        print(f"  ✅ {summary}")

    finally:
        coordinator.graph_store.close()
        db.close()


if __name__ == "__main__":
    if len(sys.argv) not in (2, 3):
        print("Usage: python3 requeue_sync.py <campaign_uuid> [note_uuid]")
        sys.exit(1)

    campaign_uuid = sys.argv[1]
    note_uuid = sys.argv[2] if len(sys.argv) == 3 else None
    asyncio.run(requeue_sync(campaign_uuid, note_uuid))
