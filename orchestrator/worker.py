"""Background worker for dispatching stage jobs."""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Dict, List, Optional, Set

import sqlalchemy
from sqlalchemy.orm import Session

from orchestrator.queue import QueueManager
from orchestrator.runtime import build_runtime

logger = logging.getLogger(__name__)


class Worker:
    """Background worker that feeds each stage queue into its own thread pool.

    A queue never runs more jobs than its configured concurrency, counting
    both this worker's in-flight jobs and running jobs claimed by other
    worker processes.
    """

    def __init__(self, queue_manager: QueueManager):
        """Initialize worker."""
        self.queue_manager = queue_manager
        self.settings = queue_manager.settings
        self.poll_interval = self.settings.WORKER_POLL_INTERVAL
        self.monitor_interval = self.settings.MONITOR_INTERVAL_SECONDS

        # One pool per queue, sized by its concurrency
        self.executors: Dict[str, ThreadPoolExecutor] = {
            queue_name: ThreadPoolExecutor(
                max_workers=policy.concurrency,
                thread_name_prefix=f"worker-{queue_name}",
            )
            for queue_name, policy in queue_manager.policies.items()
        }
        self.inflight: Dict[str, Set[Future]] = {queue_name: set() for queue_name in queue_manager.policies}
        self.last_maintenance: Optional[float] = None

    def free_slots(self, queue_name: str, db: Session) -> int:
        """Jobs this queue may start right now."""
        self.inflight[queue_name] = {f for f in self.inflight[queue_name] if not f.done()}
        local = len(self.inflight[queue_name])
        durable = self.queue_manager.running_count(queue_name, db)
        concurrency = self.queue_manager.policy(queue_name).concurrency
        return max(concurrency - max(local, durable), 0)

    def dispatch_once(self) -> List[Future]:
        """Claim ready jobs up to each queue's free slots and submit them."""
        futures = []
        db = self.queue_manager.session_factory()
        try:
            for queue_name in self.queue_manager.policies:
                slots = self.free_slots(queue_name, db)
                for _ in range(slots):
                    job = self.queue_manager.claim_next(queue_name, db)
                    if job is None:
                        break
                    future = self.executors[queue_name].submit(self.queue_manager.execute, job.job_id)
                    self.inflight[queue_name].add(future)
                    futures.append(future)
        finally:
            db.close()

        if futures:
            logger.info(f"Dispatched {len(futures)} jobs")
        return futures

    def run_maintenance(self, force: bool = False):
        """Reap stale jobs, prune finished ones and check queue health."""
        now = time.monotonic()
        if not force and self.last_maintenance is not None and now - self.last_maintenance < self.monitor_interval:
            return
        self.last_maintenance = now

        self.queue_manager.reap_stale_jobs()
        self.queue_manager.prune_finished()
        self.queue_manager.check_queue_health()

    def wait_for_database(self, max_wait: int = 60):
        """Block until the jobs table is queryable or max_wait elapses."""
        logger.info("Worker started - waiting for database to be ready...")

        waited = 0
        while waited < max_wait:
            db = self.queue_manager.session_factory()
            try:
                # Try to query jobs table to verify it exists
                db.execute(sqlalchemy.text("SELECT 1 FROM jobs LIMIT 1"))
                logger.info("Database is ready, starting worker loop")
                return
            except sqlalchemy.exc.SQLAlchemyError as e:
                logger.info(f"Waiting for migrations to complete... ({waited}s): {e}")
                time.sleep(2)
                waited += 2
            finally:
                db.close()

        logger.error(f"Database not ready after {max_wait} seconds, starting anyway...")

    def run(self, stop_event: Optional[threading.Event] = None):
        """Main worker loop.

        Args:
            stop_event: Optional threading.Event to signal worker to stop
        """
        self.wait_for_database()

        try:
            while True:
                # Check if stop signal received
                if stop_event and stop_event.is_set():
                    logger.info("Worker stop signal received")
                    break

                try:
                    self.run_maintenance()
                    dispatched = self.dispatch_once()
                    if not dispatched:
                        self._sleep(stop_event)

                except KeyboardInterrupt:
                    logger.info("Worker shutting down")
                    break
                except Exception as e:
                    logger.error(f"Worker error: {e}", exc_info=True)
                    self._sleep(stop_event)
        finally:
            self.shutdown()

    def shutdown(self, wait: bool = True):
        """Stop the thread pools, letting running jobs finish."""
        for executor in self.executors.values():
            executor.shutdown(wait=wait)
        logger.info("Worker stopped")

    def _sleep(self, stop_event: Optional[threading.Event]):
        if stop_event:
            stop_event.wait(self.poll_interval)
        else:
            time.sleep(self.poll_interval)


def worker_loop(stop_event=None, runtime=None):
    """Run worker loop (for use as background thread).

    Args:
        stop_event: Optional threading.Event to signal worker to stop
        runtime: Runtime to use; built from settings when omitted
    """
    if runtime is None:
        runtime = build_runtime()

    worker = Worker(runtime.queue_manager)
    worker.run(stop_event=stop_event)


def main():
    """Entry point for standalone worker."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    worker_loop()


if __name__ == "__main__":
    main()
