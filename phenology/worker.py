"""
Reprocess Worker - Background process that re-runs parcel analyses.

The worker:
1. Claims items from the reprocess queue
2. Builds the parcel context and runs the pipeline
3. Marks the item complete, or failed (with backoff) on ERROR results
4. Shuts down gracefully on SIGINT/SIGTERM
"""

import logging
import signal
import threading
import time
import uuid
from typing import Callable, Optional

from phenology.config import PipelineConfig
from phenology.models import ParcelContext, RunStatus
from phenology.pipeline import Pipeline
from phenology.reprocess_queue import ReprocessItem, ReprocessQueue
from phenology.store import AnalysisStore

log = logging.getLogger(__name__)


class ReprocessWorker:
    """
    Background worker that processes reprocess items.

    Usage:
        worker = ReprocessWorker(queue, pipeline, context_provider)
        worker.run_once()   # one item
        worker.run()        # until shutdown
    """

    def __init__(
        self,
        queue: ReprocessQueue,
        pipeline: Pipeline,
        context_provider: Callable[[str], Optional[ParcelContext]],
        store: Optional[AnalysisStore] = None,
        worker_id: str = None,
    ):
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:6]}"
        self.queue = queue
        self.pipeline = pipeline
        self.context_provider = context_provider
        self.store = store

        self._running = False
        self._current_item: Optional[ReprocessItem] = None
        self._shutdown_requested = False

        # Signal handlers can only be installed from the main thread
        if threading.current_thread() is threading.main_thread():
            signal.signal(signal.SIGINT, self._handle_shutdown)
            signal.signal(signal.SIGTERM, self._handle_shutdown)

        log.info(f"Worker {self.worker_id} initialized")

    def _handle_shutdown(self, signum, frame):
        log.info(f"Worker {self.worker_id} received shutdown signal")
        self._shutdown_requested = True

    def run(self):
        """Main worker loop. Processes items until shutdown."""
        log.info(f"Worker {self.worker_id} starting")
        self._running = True
        self.queue.cleanup_stale_items()

        while self._running and not self._shutdown_requested:
            if self.run_once() is None:
                time.sleep(self.queue.settings.poll_interval_seconds)

        log.info(f"Worker {self.worker_id} stopped")

    def run_once(self) -> Optional[str]:
        """
        Claim and process one item.

        Returns:
            The item's resulting status, or None if nothing was due
        """
        item = self.queue.claim_next(self.worker_id)
        if item is None:
            return None
        self._current_item = item
        try:
            return self._process_item(item)
        finally:
            self._current_item = None

    def _process_item(self, item: ReprocessItem) -> str:
        log.info(f"Processing item {item.id} for parcel {item.parcel_id}")
        try:
            context = self.context_provider(item.parcel_id)
            if context is None:
                return self.queue.fail(item.id, f"Parcel {item.parcel_id} not found")

            result = self.pipeline.run(context)
            if result.status == RunStatus.ERROR:
                return self.queue.fail(item.id, result.error_message or "pipeline returned ERROR")

            self.queue.complete(item.id)
            self._run_ai_validation(item.parcel_id, result.status)
            return "DONE"
        except Exception as e:
            log.exception(f"Item {item.id} failed")
            return self.queue.fail(item.id, str(e))

    def _run_ai_validation(self, parcel_id: str, status: str):
        """Optional second opinion on the fresh result; never fails the item."""
        if self.store is None or not self.pipeline.config.flags.enable_ai_validation:
            return
        if status != RunStatus.SUCCESS:
            return
        from validation.orchestrator import validate_persisted
        try:
            validation = validate_persisted(parcel_id, self.store, self.pipeline.config)
        except Exception:
            log.exception(f"AI validation for {parcel_id} failed")
            return
        if validation is not None:
            log.info(f"AI validation for {parcel_id}: {validation.agreement or 'degraded'}")

    def stop(self):
        """Stop the worker gracefully."""
        self._shutdown_requested = True


def main():
    """Run the worker as a standalone process."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    config = PipelineConfig.from_env()
    store = AnalysisStore(config.analysis_db_path)
    queue = ReprocessQueue(config.queue_db_path, config.queue)
    pipeline = Pipeline(config, store=store)

    def context_provider(parcel_id: str) -> Optional[ParcelContext]:
        request = store.get_request(parcel_id)
        if not request:
            log.warning(f"No stored request for parcel {parcel_id}")
            return None
        return ParcelContext.from_dict(request)

    worker = ReprocessWorker(queue, pipeline, context_provider, store)

    print(f"Worker {worker.worker_id} starting...")
    print("Press Ctrl+C to stop")

    try:
        worker.run()
    except KeyboardInterrupt:
        print("\nShutting down...")
        worker.stop()


if __name__ == "__main__":
    main()
