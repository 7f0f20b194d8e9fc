import pytest
from datetime import datetime, timedelta

from phenology.config import QueueSettings
from phenology.reprocess_queue import ItemStatus, ReprocessQueue


@pytest.fixture
def queue(tmp_path):
    db_file = tmp_path / "test_reprocess.db"
    return ReprocessQueue(db_path=str(db_file), settings=QueueSettings(initial_retry_delay_seconds=0))


def test_enqueue_and_claim(queue):
    """Verify adding and picking up items."""
    item_id = queue.enqueue("parcel-1:default", "parcel-1")
    assert item_id > 0

    item = queue.claim_next("worker-1")
    assert item is not None
    assert item.id == item_id
    assert item.parcel_id == "parcel-1"
    assert item.status == ItemStatus.PROCESSING
    assert item.worker_id == "worker-1"


def test_enqueue_does_not_duplicate_pending(queue):
    """Verify a key with a pending item is not queued twice."""
    first = queue.enqueue("parcel-1:default", "parcel-1")
    second = queue.enqueue("parcel-1:default", "parcel-1")
    assert first == second
    assert queue.get_queue_stats() == {ItemStatus.PENDING: 1}


def test_one_item_in_flight_per_key(queue):
    """Verify a key being processed blocks its next item until completion."""
    first = queue.enqueue("parcel-1:default", "parcel-1")
    queue.claim_next("worker-1")
    second = queue.enqueue("parcel-1:default", "parcel-1")
    assert second != first

    assert queue.claim_next("worker-2") is None

    queue.complete(first)
    claimed = queue.claim_next("worker-2")
    assert claimed.id == second


def test_other_keys_not_blocked(queue):
    queue.enqueue("parcel-1:default", "parcel-1")
    queue.claim_next("worker-1")
    queue.enqueue("parcel-2:default", "parcel-2")
    assert queue.claim_next("worker-2").parcel_id == "parcel-2"


def test_fail_retries_then_errors(queue):
    """Verify failures back off and the item errors out after max attempts."""
    item_id = queue.enqueue("parcel-1:default", "parcel-1")
    for attempt in range(1, 3):
        queue.claim_next("worker-1")
        assert queue.fail(item_id, f"timeout {attempt}") == ItemStatus.PENDING

    queue.claim_next("worker-1")
    assert queue.fail(item_id, "timeout 3") == ItemStatus.ERROR

    item = queue.get_item(item_id)
    assert item.attempts == 3
    assert item.last_error == "timeout 3"
    assert queue.get_status("parcel-1:default") == ItemStatus.ERROR
    assert queue.claim_next("worker-1") is None


def test_backoff_delays_next_claim(tmp_path):
    queue = ReprocessQueue(db_path=str(tmp_path / "backoff.db"), settings=QueueSettings())
    item_id = queue.enqueue("parcel-1:default", "parcel-1")
    queue.claim_next("worker-1")
    queue.fail(item_id, "boom")

    item = queue.get_item(item_id)
    assert datetime.fromisoformat(item.next_attempt_at) > datetime.now()
    assert queue.claim_next("worker-1") is None


def test_retry_delay_is_bounded(tmp_path):
    bounded = ReprocessQueue(db_path=str(tmp_path / "delay.db"))
    assert bounded.retry_delay(1) == 5
    assert bounded.retry_delay(2) == 10
    assert bounded.retry_delay(10) == 30


def test_items_survive_reopen(tmp_path):
    """Verify pending items are still there after a restart."""
    db_file = str(tmp_path / "persist.db")
    ReprocessQueue(db_path=db_file).enqueue("parcel-1:default", "parcel-1")

    reopened = ReprocessQueue(db_path=db_file)
    item = reopened.claim_next("worker-1")
    assert item is not None
    assert item.analysis_key == "parcel-1:default"


def test_cleanup_stale_items(queue):
    item_id = queue.enqueue("parcel-1:default", "parcel-1")
    queue.claim_next("worker-1")

    conn = queue._get_connection()
    stale = (datetime.now() - timedelta(hours=25)).isoformat()
    conn.execute("UPDATE reprocess_items SET started_at = ? WHERE id = ?", (stale, item_id))
    conn.commit()
    conn.close()

    assert queue.cleanup_stale_items(max_age_hours=24) == 1
    assert queue.get_item(item_id).status == ItemStatus.PENDING


def test_force_reprocess_clears_backoff(tmp_path):
    queue = ReprocessQueue(db_path=str(tmp_path / "force.db"))
    item_id = queue.enqueue("parcel-1:default", "parcel-1")
    queue.claim_next("worker-1")
    queue.fail(item_id, "boom")
    assert queue.claim_next("worker-1") is None

    forced = queue.force_reprocess("parcel-1:default", "parcel-1")
    assert queue.claim_next("worker-1").id == forced
