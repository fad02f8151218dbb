"""
Queue-based job execution using ThreadPoolExecutor.

This module manages a queue of transcription jobs and processes them
asynchronously with a bounded worker pool. On start it reconciles jobs left
behind by a previous process: pending jobs are queued again and jobs whose
worker stopped reporting are failed. Stopping the queue interrupts running jobs
and leaves jobs that never started pending for the next worker.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import timedelta
from queue import Empty, Queue
from typing import Any, Dict, List, Optional, Set

from ..errors import JobCancelledError
from .job_manager import DEFAULT_HEARTBEAT_TIMEOUT, DEFAULT_MAX_JOB_AGE, JobManager
from .processor import CancelSignal, TranscriptionProcessor

logger = logging.getLogger(__name__)


class ProcessingQueue:
    """Manages a queue of transcription jobs using ThreadPoolExecutor."""

    def __init__(
        self,
        job_manager: JobManager,
        processor: TranscriptionProcessor,
        max_workers: int = 2,
        queue_check_interval: float = 1.0,
        heartbeat_timeout: timedelta = DEFAULT_HEARTBEAT_TIMEOUT,
        max_job_age: timedelta = DEFAULT_MAX_JOB_AGE,
    ):
        """
        Initialize the processing queue.

        Args:
            job_manager: JobManager instance for state management
            processor: Runs the stages of one job
            max_workers: Maximum number of concurrently processed jobs
            queue_check_interval: How often to check for new jobs (seconds)
            heartbeat_timeout: Silence after which another worker's in-flight job counts as abandoned
            max_job_age: Age after which an unfinished job is failed
        """
        self.job_manager = job_manager
        self.processor = processor
        self.max_workers = max_workers
        self.queue_check_interval = queue_check_interval
        self.heartbeat_timeout = heartbeat_timeout
        self.max_job_age = max_job_age

        # Threading components
        self.job_queue: Queue = Queue()
        self.executor: Optional[ThreadPoolExecutor] = None
        self.running_jobs: Dict[str, Future] = {}
        self.cancel_events: Dict[str, CancelSignal] = {}
        self.queued_jobs: Set[str] = set()
        self.is_running = False
        self.queue_thread: Optional[threading.Thread] = None

        # Lock for thread safety
        self._lock = threading.Lock()

    def start(self, recover: bool = True):
        """
        Start the processing queue.

        Args:
            recover: Re-queue pending jobs and fail abandoned and stale ones first
        """
        if self.is_running:
            logger.warning("Processing queue is already running")
            return

        self.executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="job")
        self.is_running = True
        self.queue_thread = threading.Thread(target=self._queue_worker, daemon=True)
        self.queue_thread.start()
        logger.info(f"Processing queue started with {self.max_workers} workers")

        if recover:
            self.job_manager.fail_stale_jobs(self.max_job_age)
            pending, _ = self.job_manager.recover_interrupted_jobs(self.heartbeat_timeout)
            for job_id in pending:
                self.enqueue_job(job_id)

    def sweep(self) -> List[str]:
        """
        Fail abandoned and over-age jobs in the shared store.

        Returns:
            Ids of the jobs that were failed
        """
        failed = self.job_manager.fail_abandoned_jobs(self.heartbeat_timeout)
        failed.extend(self.job_manager.fail_stale_jobs(self.max_job_age))
        if failed:
            logger.info(f"Sweep failed {len(failed)} abandoned or stale job(s)")
        return failed

    def stop(self, wait: bool = True):
        """
        Stop the processing queue.

        Running jobs are interrupted at their next stage boundary and failed. Jobs
        that have not started are dropped from this queue and stay pending.
        """
        if not self.is_running:
            return

        logger.info("Stopping processing queue...")
        self.is_running = False

        # Wait for queue thread to finish
        if self.queue_thread:
            self.queue_thread.join(timeout=5.0)

        # Futures still waiting for a worker are cancelled here; their jobs stay pending
        if self.executor:
            self.executor.shutdown(wait=False, cancel_futures=True)

        with self._lock:
            for job_id in self.running_jobs:
                event = self.cancel_events.get(job_id)
                if event is not None and not event.is_set():
                    logger.info(f"Interrupting job {job_id}")
                    event.interrupt()

            left_pending = list(self.queued_jobs)
            self.queued_jobs.clear()
            for job_id in left_pending:
                self.cancel_events.pop(job_id, None)

        while True:
            try:
                self.job_queue.get_nowait()
            except Empty:
                break
        if left_pending:
            logger.info(f"{len(left_pending)} queued job(s) left pending")

        if self.executor and wait:
            self.executor.shutdown(wait=True)
        logger.info("Processing queue stopped")

    def enqueue_job(self, job_id: str) -> bool:
        """
        Add a job to the processing queue.

        Args:
            job_id: Job identifier

        Returns:
            True if job was enqueued, False if it is already queued or running
        """
        if not self.is_running:
            logger.error("Cannot enqueue job: processing queue is not running")
            return False

        with self._lock:
            if job_id in self.running_jobs or job_id in self.queued_jobs:
                logger.warning(f"Job {job_id} is already queued or running")
                return False
            self.queued_jobs.add(job_id)
            self.cancel_events[job_id] = CancelSignal()

        self.job_queue.put(job_id)
        logger.info(f"Job {job_id} enqueued")
        return True

    def cancel_job(self, job_id: str) -> bool:
        """
        Cancel a queued or running job.

        A queued job is failed immediately and never starts. A running job stops at
        its next stage boundary and is then failed.

        Args:
            job_id: Job identifier

        Returns:
            True if cancellation was requested, False if the job is not queued or running
        """
        with self._lock:
            event = self.cancel_events.get(job_id)
            if event is None:
                return False
            event.set()
            was_queued = job_id in self.queued_jobs

        if was_queued:
            self.job_manager.fail(job_id, str(JobCancelledError()))
        logger.info(f"Cancellation requested for job {job_id}")
        return True

    def wait_for_job(self, job_id: str, timeout: Optional[float] = None, poll_interval: float = 0.5) -> bool:
        """Block until a job is neither queued nor running. Returns False on timeout."""
        deadline = None if timeout is None else time.time() + timeout
        while True:
            with self._lock:
                active = job_id in self.queued_jobs or job_id in self.running_jobs
            if not active:
                return True
            if deadline is not None and time.time() >= deadline:
                return False
            time.sleep(poll_interval)

    def get_queue_status(self) -> Dict[str, Any]:
        """Get status information about the processing queue."""
        with self._lock:
            running_jobs = list(self.running_jobs.keys())
            queued_jobs = list(self.queued_jobs)

        return {
            "is_running": self.is_running,
            "queue_size": len(queued_jobs),
            "queued_jobs": queued_jobs,
            "running_jobs": running_jobs,
            "max_workers": self.max_workers,
        }

    def _queue_worker(self):
        """Main queue worker thread that dispatches jobs to the executor."""
        logger.info("Queue worker thread started")

        while self.is_running:
            try:
                job_id = self.job_queue.get(timeout=self.queue_check_interval)
            except Empty:
                continue

            with self._lock:
                self.queued_jobs.discard(job_id)
                event = self.cancel_events.get(job_id)
                if event is None or event.is_set():
                    # Cancelled while queued
                    self.cancel_events.pop(job_id, None)
                    continue

                logger.info(f"Starting processing for job {job_id}")
                future = self.executor.submit(self.processor.process_job, job_id, event)
                self.running_jobs[job_id] = future

            # Add callback to clean up when job completes
            future.add_done_callback(lambda f, jid=job_id: self._job_completed(jid, f))

        logger.info("Queue worker thread stopped")

    def _job_completed(self, job_id: str, future: Future):
        """Callback called when a job completes."""
        with self._lock:
            self.running_jobs.pop(job_id, None)
            event = self.cancel_events.pop(job_id, None)

        if future.cancelled():
            if event is not None and event.is_set() and not event.interrupted:
                logger.info(f"Job {job_id} was cancelled before it started")
                self.job_manager.fail(job_id, str(JobCancelledError()))
            else:
                logger.info(f"Job {job_id} did not start before shutdown; left pending")
        elif future.exception():
            # The processor has already recorded the failure
            logger.error(f"Job {job_id} failed with error: {future.exception()}")
        elif future.result() is None:
            logger.info(f"Job {job_id} was not run by this worker")
        else:
            logger.info(f"Job {job_id} completed successfully")
