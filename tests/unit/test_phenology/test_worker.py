import pytest
from unittest.mock import MagicMock, patch

from phenology.config import FeatureFlags, PipelineConfig
from phenology.models import ParcelContext, PipelineResult, RunStatus
from phenology.reprocess_queue import ItemStatus, ReprocessItem
from phenology.worker import ReprocessWorker


@pytest.fixture
def mock_worker():
    queue = MagicMock()
    pipeline = MagicMock()
    pipeline.config = PipelineConfig()
    provider = MagicMock(return_value=MagicMock(spec=ParcelContext))
    worker = ReprocessWorker(queue, pipeline, provider, store=MagicMock(), worker_id="test-worker")
    yield worker


def test_worker_initialization(mock_worker):
    assert mock_worker.worker_id == "test-worker"
    assert not mock_worker._running


def test_run_once_without_items(mock_worker):
    mock_worker.queue.claim_next.return_value = None
    assert mock_worker.run_once() is None


def test_process_item_success(mock_worker):
    """Verify a successful run completes the item."""
    mock_worker.queue.claim_next.return_value = ReprocessItem(id=1, analysis_key="p1:default", parcel_id="p1")
    mock_worker.pipeline.run.return_value = PipelineResult(parcel_id="p1", status=RunStatus.SUCCESS)

    assert mock_worker.run_once() == "DONE"
    mock_worker.queue.complete.assert_called_with(1)
    mock_worker.queue.fail.assert_not_called()


def test_process_item_error_result_fails_item(mock_worker):
    """Verify an ERROR result is retried through the queue."""
    mock_worker.queue.claim_next.return_value = ReprocessItem(id=2, analysis_key="p1:default", parcel_id="p1")
    mock_worker.pipeline.run.return_value = PipelineResult(
        parcel_id="p1", status=RunStatus.ERROR, error_message="index: service down"
    )
    mock_worker.queue.fail.return_value = ItemStatus.PENDING

    assert mock_worker.run_once() == ItemStatus.PENDING
    mock_worker.queue.fail.assert_called_with(2, "index: service down")


def test_process_item_parcel_not_found(mock_worker):
    mock_worker.queue.claim_next.return_value = ReprocessItem(id=3, analysis_key="p9:default", parcel_id="p9")
    mock_worker.context_provider.return_value = None

    mock_worker.run_once()
    mock_worker.queue.fail.assert_called_with(3, "Parcel p9 not found")
    mock_worker.pipeline.run.assert_not_called()


def test_process_item_exception_fails_item(mock_worker):
    mock_worker.queue.claim_next.return_value = ReprocessItem(id=4, analysis_key="p1:default", parcel_id="p1")
    mock_worker.pipeline.run.side_effect = RuntimeError("boom")

    mock_worker.run_once()
    mock_worker.queue.fail.assert_called_with(4, "boom")


def test_ai_validation_disabled_by_default(mock_worker):
    mock_worker.queue.claim_next.return_value = ReprocessItem(id=5, analysis_key="p1:default", parcel_id="p1")
    mock_worker.pipeline.run.return_value = PipelineResult(parcel_id="p1", status=RunStatus.SUCCESS)

    with patch("validation.orchestrator.validate_persisted") as mock_validate:
        mock_worker.run_once()
    mock_validate.assert_not_called()


def test_ai_validation_failure_does_not_fail_item(mock_worker):
    """Verify AI trouble after a successful run leaves the item DONE."""
    mock_worker.pipeline.config = PipelineConfig(flags=FeatureFlags(enable_ai_validation=True))
    mock_worker.queue.claim_next.return_value = ReprocessItem(id=6, analysis_key="p1:default", parcel_id="p1")
    mock_worker.pipeline.run.return_value = PipelineResult(parcel_id="p1", status=RunStatus.SUCCESS)

    with patch("validation.orchestrator.validate_persisted", side_effect=RuntimeError("quota")) as mock_validate:
        assert mock_worker.run_once() == "DONE"
    mock_validate.assert_called_once()
    mock_worker.queue.fail.assert_not_called()


def test_stop(mock_worker):
    mock_worker.stop()
    assert mock_worker._shutdown_requested
