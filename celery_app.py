"""
Celery Application for Campaign Notes API

Task queue for store sync maintenance:
- Periodic recovery sweep of pending/retry/error/stale syncs
- Explicit re-queue of one note's store sync
"""

from celery import Celery
from celery.schedules import crontab
from config import settings

# Celery Application Singleton
app = Celery(
    'campaign_notes',
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        'tasks.sync',
    ]
)

# Celery Configuration
app.conf.update(
    # Task Settings
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,

    # Worker Settings
    worker_prefetch_multiplier=1,  # Sync sweeps are long-running, fetch one at a time
    worker_max_tasks_per_child=50,

    # Acknowledge after completion; store retries themselves follow the sync retry policy
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    # Result Backend
    result_expires=3600,

    # Monitoring
    task_track_started=True,
    task_send_sent_event=True,
)

# Task Routes
app.conf.task_routes = {
    'tasks.sync.recover_note_syncs': {'queue': 'sync'},
    'tasks.sync.sync_note': {'queue': 'sync'},
}

# Beat Schedule
app.conf.beat_schedule = {
    'recover-note-syncs': {
        'task': 'tasks.sync.recover_note_syncs',
        'schedule': crontab(minute='*/5'),
    },
}

app.conf.task_default_priority = 5  # 0 (highest) - 9 (lowest)

if __name__ == '__main__':
    app.start()
