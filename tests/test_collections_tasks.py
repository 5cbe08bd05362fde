"""Tests for the collections Celery tasks."""

import uuid
from datetime import date
from unittest.mock import MagicMock, patch

import pytest

from app.models.collections import FileBatchStatus
from app.schemas.collections import (
    AnchorRunError,
    AnchorSummary,
    ExportPendingError,
    ExportPendingResult,
    ExportPresentmentResult,
    PreparePresentmentResult,
)

ANCHOR = date(2026, 3, 10)


class TestRunAnchorTask:
    """Tests for collections.run_anchor task."""

    def test_run_anchor_success(self):
        """Test the summary is returned as JSON and the session closed."""
        mock_session = MagicMock()
        summary = AnchorSummary(anchor_date=ANCHOR, override_fx=False, charges_created=2)

        with patch("app.tasks.collections.SessionLocal", return_value=mock_session):
            with patch(
                "app.tasks.collections.collections_service.anchor_runner.run",
                return_value=summary,
            ) as mock_run:
                with patch("app.tasks.collections.observe_job") as mock_observe:
                    from app.tasks.collections import run_anchor

                    result = run_anchor()

        assert result["charges_created"] == 2
        assert result["anchor_date"] == "2026-03-10"
        payload = mock_run.call_args.args[1]
        assert payload.actor_user_id == "scheduler"
        assert payload.anchor_date is None
        mock_session.close.assert_called_once()
        assert mock_observe.call_args.args[:2] == ("collections_anchor_run", "success")

    def test_run_anchor_with_errors_is_partial(self):
        """Test per-subscription errors mark the job partial."""
        mock_session = MagicMock()
        summary = AnchorSummary(
            anchor_date=ANCHOR,
            override_fx=False,
            errors=[AnchorRunError(tenant_id=uuid.uuid4(), code="fx_rate_missing", message="x")],
        )

        with patch("app.tasks.collections.SessionLocal", return_value=mock_session):
            with patch(
                "app.tasks.collections.collections_service.anchor_runner.run",
                return_value=summary,
            ):
                with patch("app.tasks.collections.observe_job") as mock_observe:
                    from app.tasks.collections import run_anchor

                    run_anchor()

        assert mock_observe.call_args.args[1] == "partial"

    def test_run_anchor_exception_rollback(self):
        """Test exception triggers rollback."""
        mock_session = MagicMock()

        with patch("app.tasks.collections.SessionLocal", return_value=mock_session):
            with patch(
                "app.tasks.collections.collections_service.anchor_runner.run",
                side_effect=Exception("Anchor error"),
            ):
                with patch("app.tasks.collections.observe_job") as mock_observe:
                    from app.tasks.collections import run_anchor

                    with pytest.raises(Exception, match="Anchor error"):
                        run_anchor()

        mock_session.rollback.assert_called_once()
        mock_session.close.assert_called_once()
        assert mock_observe.call_args.args[1] == "error"


class TestPresentmentTasks:
    """Tests for the presentment batch tasks."""

    def _prepared(self, batch_id=None):
        return PreparePresentmentResult(
            no_op=batch_id is None,
            batch_id=batch_id,
            business_date=ANCHOR,
            adapter="debug_csv",
            record_count=1 if batch_id else 0,
            status=FileBatchStatus.ready if batch_id else None,
        )

    def test_prepare_exports_when_auto_export_enabled(self):
        """Test a prepared batch is exported in the same run."""
        mock_session = MagicMock()
        batch_id = uuid.uuid4()
        exported = ExportPresentmentResult(
            batch_id=batch_id, already_exported=False, status=FileBatchStatus.exported
        )

        with patch("app.tasks.collections.SessionLocal", return_value=mock_session):
            with patch(
                "app.tasks.collections.collections_service.presentment_batches.prepare",
                return_value=self._prepared(batch_id),
            ):
                with patch(
                    "app.tasks.collections.collections_service.presentment_batches.export",
                    return_value=exported,
                ) as mock_export:
                    with patch(
                        "app.tasks.collections.load_collections_config",
                        return_value=MagicMock(batch_auto_export=True),
                    ):
                        from app.tasks.collections import prepare_presentment_batch

                        result = prepare_presentment_batch()

        mock_export.assert_called_once_with(mock_session, batch_id, "scheduler")
        assert result["export"]["status"] == "exported"
        mock_session.close.assert_called_once()

    def test_prepare_without_auto_export(self):
        """Test the batch stays READY when auto-export is off."""
        mock_session = MagicMock()

        with patch("app.tasks.collections.SessionLocal", return_value=mock_session):
            with patch(
                "app.tasks.collections.collections_service.presentment_batches.prepare",
                return_value=self._prepared(uuid.uuid4()),
            ):
                with patch(
                    "app.tasks.collections.collections_service.presentment_batches.export"
                ) as mock_export:
                    with patch(
                        "app.tasks.collections.load_collections_config",
                        return_value=MagicMock(batch_auto_export=False),
                    ):
                        from app.tasks.collections import prepare_presentment_batch

                        result = prepare_presentment_batch()

        mock_export.assert_not_called()
        assert result["export"] is None

    def test_prepare_no_op_skips_export(self):
        """Test nothing is exported when no batch was created."""
        mock_session = MagicMock()

        with patch("app.tasks.collections.SessionLocal", return_value=mock_session):
            with patch(
                "app.tasks.collections.collections_service.presentment_batches.prepare",
                return_value=self._prepared(),
            ):
                with patch(
                    "app.tasks.collections.collections_service.presentment_batches.export"
                ) as mock_export:
                    from app.tasks.collections import prepare_presentment_batch

                    result = prepare_presentment_batch()

        mock_export.assert_not_called()
        assert result["prepare"]["no_op"] is True

    def test_export_pending_reports_partial_failures(self):
        """Test export failures are counted without failing the task."""
        mock_session = MagicMock()
        batch_id = uuid.uuid4()
        pending = ExportPendingResult(
            no_op=False,
            batches_considered=1,
            errors=[ExportPendingError(batch_id=batch_id, message="Failed to upload object")],
        )

        with patch("app.tasks.collections.SessionLocal", return_value=mock_session):
            with patch(
                "app.tasks.collections.collections_service.presentment_batches.export_pending",
                return_value=pending,
            ):
                with patch("app.tasks.collections.observe_job") as mock_observe:
                    from app.tasks.collections import export_pending_batches

                    result = export_pending_batches()

        assert result["errors"][0]["batch_id"] == str(batch_id)
        assert mock_observe.call_args.args[1] == "partial"
        mock_session.close.assert_called_once()

    def test_export_pending_exception_rollback(self):
        """Test exception triggers rollback."""
        mock_session = MagicMock()

        with patch("app.tasks.collections.SessionLocal", return_value=mock_session):
            with patch(
                "app.tasks.collections.collections_service.presentment_batches.export_pending",
                side_effect=Exception("Storage down"),
            ):
                from app.tasks.collections import export_pending_batches

                with pytest.raises(Exception, match="Storage down"):
                    export_pending_batches()

        mock_session.rollback.assert_called_once()
        mock_session.close.assert_called_once()


class TestBeatSchedule:
    """Tests for the collections beat schedule."""

    def test_jobs_registered_when_enabled(self):
        mock_session = MagicMock()

        with patch("app.services.scheduler_config.SessionLocal", return_value=mock_session):
            with patch(
                "app.services.scheduler_config.load_collections_config",
                return_value=MagicMock(jobs_enabled=True),
            ):
                from app.services.scheduler_config import build_beat_schedule

                schedule = build_beat_schedule()

        assert {entry["task"] for entry in schedule.values()} == {
            "app.tasks.collections.run_anchor",
            "app.tasks.collections.prepare_presentment_batch",
            "app.tasks.collections.export_pending_batches",
        }
        mock_session.close.assert_called_once()

    def test_jobs_disabled_by_default(self, db_session):
        with patch("app.services.scheduler_config.SessionLocal", return_value=db_session):
            from app.services.scheduler_config import build_beat_schedule

            assert build_beat_schedule() == {}
