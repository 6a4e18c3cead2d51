"""
Base Task for the store sync maintenance tasks

One SQLAlchemy session per task run, opened lazily and released by the
Celery lifecycle hooks.
"""

import logging
from typing import Any, Optional

from celery import Task
from sqlalchemy.orm import Session

from database import SessionLocal

logger = logging.getLogger(__name__)


def _describe(retval: Any) -> str:
    if isinstance(retval, dict):
        return ", ".join(f"{k}={v}" for k, v in retval.items())
    return repr(retval)


class BaseSyncTask(Task):
    """
    Base class for sync maintenance tasks.

    No broker-level autoretry: failed store syncs stay in the error state
    and the next recovery sweep re-queues them per the retry policy.
    """

    def __init__(self):
        super().__init__()
        self._db_session: Optional[Session] = None

    def before_start(self, task_id: str, args: tuple, kwargs: dict) -> None:
        scope = kwargs.get("campaign_uuid") or (args[0] if args else "all campaigns")
        logger.info(f"🔄 {self.name} started for {scope} (ID: {task_id})")

    def on_success(self, retval: Any, task_id: str, args: tuple, kwargs: dict) -> None:
        logger.info(f"✅ {self.name} finished (ID: {task_id}): {_describe(retval)}")
        self._release_session()

    def on_failure(self, exc: Exception, task_id: str, args: tuple, kwargs: dict, einfo) -> None:
        logger.error(f"❌ {self.name} failed (ID: {task_id}): {exc}")
        logger.debug(f"   Exception info: {einfo}")
        self._release_session(rollback=True)

    def get_db_session(self) -> Session:
        """Session for the current run, shared by every store the run touches"""
        if self._db_session is None:
            self._db_session = SessionLocal()
        return self._db_session

    def _release_session(self, rollback: bool = False) -> None:
        session, self._db_session = self._db_session, None
        if session is None:
            return
        try:
            if rollback:
                session.rollback()
        finally:
            session.close()

