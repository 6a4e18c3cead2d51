"""
Task Registry for Campaign Notes API Celery Tasks
"""

from .sync import (
    recover_note_syncs,
    sync_note,
)

__all__ = [
    'recover_note_syncs',
    'sync_note',
]
