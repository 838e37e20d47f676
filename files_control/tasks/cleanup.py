"""Expiry sweep for pending uploads, download grants and files."""

import time

from files_control.celery_app import celery_app
from files_control.db import SessionLocal
from files_control.logging import get_logger
from files_control.metrics import observe_job
from files_control.services.access_grants import sweeper
from files_control.services.object_storage import blob_stores

logger = get_logger(__name__)


def _requeue(limit: int | None) -> None:
    sweep_expired_records.delay(limit=limit)


@celery_app.task(name="files_control.tasks.cleanup.sweep_expired_records")
def sweep_expired_records(limit: int | None = None) -> dict:
    """Delete every record whose expiry has passed, one batch per run.

    Blobs of deleted files are released after the transaction commits. When a
    table filled its batch the task queues itself again to drain the rest.

    Returns:
        Dict with per-table deletion counts and ``has_more``
    """
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    try:
        result = sweeper.sweep_expired(session, limit=limit)
        released = blob_stores.release_all(result.released_blobs)
        logger.info(
            "sweep_task_completed deleted=%d released_blobs=%d has_more=%s",
            result.deleted_count,
            released,
            result.has_more,
        )
        if result.has_more:
            _requeue(limit)
        return {
            "pending_uploads": result.pending_uploads,
            "download_grants": result.download_grants,
            "files": result.files,
            "released_blobs": released,
            "has_more": result.has_more,
        }
    except Exception:
        status = "error"
        session.rollback()
        logger.exception("sweep_task_failed")
        raise
    finally:
        session.close()
        observe_job("sweep_expired_records", status, time.monotonic() - start)
