"""Tests for the expiry sweep task."""

from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from files_control.celery_app import build_beat_schedule, celery_app
from files_control.models.files import StorageProvider
from files_control.services import access_grants
from files_control.services.access_grants import SweepResult
from files_control.services.common import now_utc
from files_control.tasks.cleanup import sweep_expired_records


class TestSweepExpiredRecordsTask:
    """Tests for cleanup.sweep_expired_records."""

    def test_sweep_releases_blobs_and_closes_session(self):
        mock_session = MagicMock()
        result = SweepResult(
            pending_uploads=2,
            files=1,
            released_blobs=[("blob-1", StorageProvider.primary)],
        )

        with patch("files_control.tasks.cleanup.SessionLocal", return_value=mock_session):
            with patch(
                "files_control.tasks.cleanup.sweeper.sweep_expired", return_value=result
            ) as mock_sweep:
                with patch(
                    "files_control.tasks.cleanup.blob_stores.release_all", return_value=1
                ) as mock_release:
                    with patch("files_control.tasks.cleanup._requeue") as mock_requeue:
                        summary = sweep_expired_records(limit=50)

        mock_sweep.assert_called_once_with(mock_session, limit=50)
        mock_release.assert_called_once_with([("blob-1", StorageProvider.primary)])
        mock_requeue.assert_not_called()
        mock_session.close.assert_called_once()
        assert summary == {
            "pending_uploads": 2,
            "download_grants": 0,
            "files": 1,
            "released_blobs": 1,
            "has_more": False,
        }

    def test_sweep_requeues_when_batch_is_full(self):
        mock_session = MagicMock()
        result = SweepResult(download_grants=10, has_more=True)

        with patch("files_control.tasks.cleanup.SessionLocal", return_value=mock_session):
            with patch(
                "files_control.tasks.cleanup.sweeper.sweep_expired", return_value=result
            ):
                with patch("files_control.tasks.cleanup._requeue") as mock_requeue:
                    summary = sweep_expired_records(limit=10)

        mock_requeue.assert_called_once_with(10)
        assert summary["has_more"] is True

    def test_sweep_exception_rollback(self):
        mock_session = MagicMock()

        with patch("files_control.tasks.cleanup.SessionLocal", return_value=mock_session):
            with patch(
                "files_control.tasks.cleanup.sweeper.sweep_expired",
                side_effect=Exception("Sweep error"),
            ):
                with pytest.raises(Exception, match="Sweep error"):
                    sweep_expired_records()

        mock_session.rollback.assert_called_once()
        mock_session.close.assert_called_once()

    def test_sweep_against_database(self, db_session, local_store):
        now = now_utc()
        file = access_grants.stored_files.register(
            db_session,
            "blob-expired",
            access_keys=["k"],
            expires_at=now - timedelta(minutes=1),
            now=now - timedelta(hours=1),
        )
        local_store.put(file.storage_id, b"x", None)

        with patch("files_control.tasks.cleanup.SessionLocal", return_value=db_session):
            with patch.object(db_session, "close"):
                summary = sweep_expired_records()

        assert summary["files"] == 1
        assert summary["released_blobs"] == 1
        assert not local_store.exists("blob-expired")


def test_beat_schedule_registers_sweep():
    schedule = build_beat_schedule()
    assert schedule["sweep_expired_records"]["task"] == (
        "files_control.tasks.cleanup.sweep_expired_records"
    )
    assert "files_control.tasks.cleanup.sweep_expired_records" in celery_app.tasks
