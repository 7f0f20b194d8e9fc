import pytest
from datetime import date

from conftest import soybean_observations
from phenology.config import PipelineConfig, QueueSettings
from phenology.models import RawObservation, RunStatus
from phenology.pipeline import Pipeline
from phenology.reprocess_queue import ItemStatus, ReprocessQueue
from phenology.store import AnalysisStore
from phenology.worker import ReprocessWorker


@pytest.fixture
def workspace(tmp_path):
    config = PipelineConfig()
    config.queue = QueueSettings(initial_retry_delay_seconds=0.0, max_retry_delay_seconds=0.0)
    store = AnalysisStore(db_path=str(tmp_path / "test_flow_analysis.db"))
    queue = ReprocessQueue(db_path=str(tmp_path / "test_flow_queue.db"), settings=config.queue)
    return config, store, queue


def test_queue_to_stored_result(workspace, soybean_parcel):
    """Verify an enqueued parcel is processed and its result persisted."""
    config, store, queue = workspace
    pipeline = Pipeline(config, store=store)
    worker = ReprocessWorker(queue, pipeline, {"parcel-1": soybean_parcel}.get, store, worker_id="flow-worker")

    item_id = queue.enqueue("parcel-1:default", "parcel-1")
    assert worker.run_once() == "DONE"

    assert queue.get_item(item_id).status == ItemStatus.DONE
    assert store.get_status("parcel-1") == RunStatus.SUCCESS
    stored = store.get_result("parcel-1")
    assert stored["cycle"]["sos_date"] == "2025-10-05"
    assert stored["estimate"]["confidence"] > 0
    assert store.get_validation("parcel-1") is None
    assert worker.run_once() is None


def test_failing_parcel_exhausts_retries(workspace, soybean_parcel):
    """Verify an unusable series is retried and then parked as ERROR."""
    config, store, queue = workspace
    soybean_parcel.observations = [RawObservation(date=date(2025, 10, 1), raw=0.4)]
    worker = ReprocessWorker(queue, Pipeline(config, store=store), lambda _: soybean_parcel, store)

    item_id = queue.enqueue("parcel-1:default", "parcel-1")
    statuses = [worker.run_once() for _ in range(3)]

    assert statuses == [ItemStatus.PENDING, ItemStatus.PENDING, ItemStatus.ERROR]
    item = queue.get_item(item_id)
    assert item.attempts == 3
    assert "usable points" in item.last_error
    assert store.get_status("parcel-1") == RunStatus.ERROR
    assert worker.run_once() is None


def test_ai_validation_degrades_without_key(workspace, soybean_parcel):
    """Verify the worker stores a degraded validation next to the result."""
    config, store, queue = workspace
    config.flags.enable_ai_validation = True
    worker = ReprocessWorker(queue, Pipeline(config, store=store), lambda _: soybean_parcel, store)

    queue.enqueue("parcel-1:default", "parcel-1")
    assert worker.run_once() == "DONE"

    validation = store.get_validation("parcel-1")
    assert validation["degraded"] is True
    assert validation["degraded_reason"] == "AI API key not configured"
    assert store.get_status("parcel-1") == RunStatus.SUCCESS


def test_reprocess_replaces_previous_result(workspace, soybean_parcel):
    """Verify a forced reprocess with more history overwrites the stored result."""
    config, store, queue = workspace
    soybean_parcel.historical = []
    parcels = {"parcel-1": soybean_parcel}
    worker = ReprocessWorker(queue, Pipeline(config, store=store), parcels.get, store)

    queue.enqueue("parcel-1:default", "parcel-1")
    worker.run_once()
    first = store.get_result("parcel-1")["estimate"]["confidence"]

    soybean_parcel.historical = [soybean_observations(-1), soybean_observations(-2)]
    queue.force_reprocess("parcel-1:default", "parcel-1")
    assert worker.run_once() == "DONE"
    second = store.get_result("parcel-1")["estimate"]["confidence"]

    assert second > first
