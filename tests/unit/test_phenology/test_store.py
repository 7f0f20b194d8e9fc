import pytest

from phenology.models import PipelineResult, RunStatus
from phenology.store import AnalysisStore


@pytest.fixture
def store(tmp_path):
    return AnalysisStore(db_path=str(tmp_path / "test_analysis.db"))


def test_mark_processing_then_result(store):
    """Verify the status moves from PROCESSING to the final result status."""
    store.mark_processing("p1", {"parcel_id": "p1", "crop_type": "SOJA"})
    assert store.get_status("p1") == RunStatus.PROCESSING
    assert store.get_result("p1") is None

    store.save_result(PipelineResult(parcel_id="p1", status=RunStatus.PARTIAL))
    assert store.get_status("p1") == RunStatus.PARTIAL
    assert store.get_result("p1")["status"] == RunStatus.PARTIAL


def test_request_kept_across_reruns(store):
    """Verify a rerun without a request keeps the stored one."""
    store.mark_processing("p1", {"parcel_id": "p1", "crop_type": "SOJA"})
    store.mark_processing("p1")
    assert store.get_request("p1")["crop_type"] == "SOJA"


def test_error_message_stored(store):
    store.save_result(PipelineResult(parcel_id="p1", status=RunStatus.ERROR, error_message="current: down"))
    assert store.get_result("p1")["error_message"] == "current: down"


def test_validation_stored_separately(store):
    """Verify a validation never overwrites the pipeline result."""
    store.save_result(PipelineResult(parcel_id="p1", status=RunStatus.SUCCESS))
    store.save_validation("p1", {"agreement": "CONFIRMED"})
    store.save_validation("p1", {"agreement": "QUESTIONED"})

    assert store.get_validation("p1") == {"agreement": "QUESTIONED"}
    assert store.get_result("p1")["status"] == RunStatus.SUCCESS


def test_missing_parcel(store):
    assert store.get_status("nope") is None
    assert store.get_request("nope") is None
    assert store.get_validation("nope") is None
