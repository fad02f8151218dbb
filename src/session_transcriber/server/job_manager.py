"""
Job state management for transcription jobs.

JobManager is the only writer of job records. It enforces the lifecycle:

    pending -> downloading -> preprocessing -> transcribing -> analyzing -> saving -> completed

with ``failed`` reachable from any non-terminal state. ``completed`` and ``failed``
are terminal; terminal records are never written again. Each transition stores the
status, progress and message in one write, and progress never decreases.

Several processes may share one store. A worker starts a job by claiming it, which
records its worker id on the job; while it runs the job it refreshes the job's
heartbeat. Recovery only fails in-flight jobs whose heartbeat has gone quiet.
"""

import logging
import os
import socket
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from ..errors import InvalidTransitionError, JobNotFoundError
from .job_store import JobStore
from .models import STAGE_MESSAGES, STAGE_PROGRESS, JobOptions, JobStatus, TranscriptionJob, now_iso

logger = logging.getLogger(__name__)

NEXT_STATUS = {
    JobStatus.PENDING: JobStatus.DOWNLOADING,
    JobStatus.DOWNLOADING: JobStatus.PREPROCESSING,
    JobStatus.PREPROCESSING: JobStatus.TRANSCRIBING,
    JobStatus.TRANSCRIBING: JobStatus.ANALYZING,
    JobStatus.ANALYZING: JobStatus.SAVING,
    JobStatus.SAVING: JobStatus.COMPLETED,
}

IN_FLIGHT_STATUSES = (
    JobStatus.DOWNLOADING,
    JobStatus.PREPROCESSING,
    JobStatus.TRANSCRIBING,
    JobStatus.ANALYZING,
    JobStatus.SAVING,
)

INTERRUPTED_MESSAGE = "Process interrupted before completion (restart)"

DEFAULT_HEARTBEAT_TIMEOUT = timedelta(minutes=3)
DEFAULT_MAX_JOB_AGE = timedelta(hours=3)


def make_worker_id() -> str:
    """Identify this process: host, pid and a random suffix."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    """Check whether the lifecycle allows ``current -> target``."""
    if current.is_terminal:
        return False
    if target == JobStatus.FAILED:
        return True
    return NEXT_STATUS.get(current) == target


class JobManager:
    """Creates jobs and applies every change to their records."""

    def __init__(self, store: JobStore, worker_id: Optional[str] = None):
        """
        Initialize the job manager.

        Args:
            store: Durable job store
            worker_id: Identity recorded on jobs this manager claims (generated when omitted)
        """
        self.store = store
        self.worker_id = worker_id or make_worker_id()
        self._lock = threading.RLock()

    def create_job(
        self, owner_id: str, source_url: str, title: str = "", options: Optional[JobOptions] = None
    ) -> TranscriptionJob:
        """
        Create a new pending job.

        Args:
            owner_id: Owner of the job
            source_url: Source locator (remote URL or local path)
            title: Display title
            options: Processing options

        Returns:
            The persisted job
        """
        if not source_url or not source_url.strip():
            raise ValueError("A source URL is required")

        job = TranscriptionJob(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            source_url=source_url.strip(),
            title=title.strip(),
            options=options or JobOptions(),
        )
        self.store.save(job)
        logger.info(f"Created job {job.id} for {job.source_url}")
        return job

    def get_job(self, job_id: str) -> Optional[TranscriptionJob]:
        return self.store.get(job_id)

    def require_job(self, job_id: str) -> TranscriptionJob:
        job = self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} does not exist")
        return job

    def list_jobs_for_owner(self, owner_id: str, limit: int = 100) -> List[TranscriptionJob]:
        """List an owner's jobs, newest first."""
        return self.store.list_jobs(owner_id=owner_id)[:limit]

    def transition(
        self, job_id: str, status: JobStatus, message: Optional[str] = None, progress: Optional[int] = None
    ) -> TranscriptionJob:
        """
        Move a job to its next status.

        Args:
            job_id: Job identifier
            status: Target status (must be the next status in the lifecycle)
            message: Progress message (defaults to the stage message)
            progress: Progress value (defaults to the stage checkpoint)

        Returns:
            The persisted job

        Raises:
            InvalidTransitionError: If the lifecycle does not allow the change
        """
        if status == JobStatus.FAILED:
            return self.fail(job_id, message or "Job failed")

        with self._lock:
            job = self.require_job(job_id)
            if not can_transition(job.status, status):
                raise InvalidTransitionError(f"Job {job_id} cannot move from {job.status.value} to {status.value}")

            target = progress if progress is not None else STAGE_PROGRESS[status]
            updated = replace(
                job,
                status=status,
                progress=max(job.progress, min(100, int(target))),
                progress_message=message or STAGE_MESSAGES[status],
                updated_at=now_iso(),
            )
            self.store.save(updated)

        logger.info(f"Job {job_id}: {job.status.value} -> {status.value} ({updated.progress}%)")
        return updated

    def claim(self, job_id: str) -> Optional[TranscriptionJob]:
        """
        Start a pending job on behalf of this worker.

        The claim is exclusive across every process sharing the store: the winner
        moves the job to downloading and records its worker id and heartbeat.

        Returns:
            The started job, or None if the job is no longer pending or another
            worker claimed it first
        """
        with self._lock:
            job = self.require_job(job_id)
            if job.status != JobStatus.PENDING:
                logger.info(f"Job {job_id} is {job.status.value}; not claiming it")
                return None
            if not self.store.claim(job_id, self.worker_id):
                logger.info(f"Job {job_id} was claimed by another worker")
                return None

            # Re-read: another process may have failed the job before the claim
            job = self.require_job(job_id)
            if job.status != JobStatus.PENDING:
                return None

            timestamp = now_iso()
            started = replace(
                job,
                status=JobStatus.DOWNLOADING,
                progress=max(job.progress, STAGE_PROGRESS[JobStatus.DOWNLOADING]),
                progress_message=STAGE_MESSAGES[JobStatus.DOWNLOADING],
                worker_id=self.worker_id,
                heartbeat_at=timestamp,
                updated_at=timestamp,
            )
            self.store.save(started)

        logger.info(f"Job {job_id} claimed by worker {self.worker_id}")
        return started

    def heartbeat(self, job_id: str) -> None:
        """Refresh the heartbeat of a running job owned by this worker."""
        with self._lock:
            job = self.store.get(job_id)
            if job is None or job.is_terminal or job.worker_id != self.worker_id:
                return
            self.store.save(replace(job, heartbeat_at=now_iso()))

    def update_progress(self, job_id: str, progress: int, message: Optional[str] = None) -> TranscriptionJob:
        """
        Update progress within the current status.

        Lower values than the stored progress are ignored. Completion (100) is only
        reached through ``complete``.

        Raises:
            InvalidTransitionError: If the job is terminal
        """
        with self._lock:
            job = self.require_job(job_id)
            if job.is_terminal:
                raise InvalidTransitionError(f"Job {job_id} is {job.status.value}; progress cannot change")

            updated = replace(
                job,
                progress=max(job.progress, min(99, int(progress))),
                progress_message=message or job.progress_message,
                updated_at=now_iso(),
            )
            self.store.save(updated)
            return updated

    def update_metadata(self, job_id: str, audio_issues: Optional[List[str]] = None, **metadata: Any) -> TranscriptionJob:
        """Merge fields into a running job's metadata (and optionally set its audio issue tags)."""
        with self._lock:
            job = self.require_job(job_id)
            if job.is_terminal:
                raise InvalidTransitionError(f"Job {job_id} is {job.status.value}; metadata cannot change")

            merged: Dict[str, Any] = dict(job.metadata)
            merged.update(metadata)
            updated = replace(
                job,
                metadata=merged,
                audio_issues=list(audio_issues) if audio_issues is not None else job.audio_issues,
                updated_at=now_iso(),
            )
            self.store.save(updated)
            return updated

    def complete(self, job_id: str, result_id: str, result: Dict[str, Any], **metadata: Any) -> TranscriptionJob:
        """
        Store the job result and mark the job completed.

        Args:
            job_id: Job identifier
            result_id: Opaque document id returned by the knowledge store
            result: Result payload (enhanced transcript and document)
            **metadata: Final metadata fields

        Returns:
            The completed job
        """
        with self._lock:
            job = self.require_job(job_id)
            if not can_transition(job.status, JobStatus.COMPLETED):
                raise InvalidTransitionError(f"Job {job_id} cannot complete from {job.status.value}")

            self.store.save_result(job_id, result)
            merged = dict(job.metadata)
            merged.update(metadata)
            timestamp = now_iso()
            completed = replace(
                job,
                status=JobStatus.COMPLETED,
                progress=100,
                progress_message=STAGE_MESSAGES[JobStatus.COMPLETED],
                result_id=result_id,
                metadata=merged,
                updated_at=timestamp,
                completed_at=timestamp,
            )
            self.store.save(completed)

        logger.info(f"Job {job_id} completed (document {result_id})")
        return completed

    def fail(self, job_id: str, error: str) -> TranscriptionJob:
        """
        Mark a job failed with an error message.

        Progress keeps its last value. A job that is already terminal is returned
        unchanged.
        """
        with self._lock:
            job = self.require_job(job_id)
            if job.is_terminal:
                logger.warning(f"Job {job_id} is already {job.status.value}; ignoring failure: {error}")
                return job

            timestamp = now_iso()
            failed = replace(
                job,
                status=JobStatus.FAILED,
                error=error,
                progress_message=f"Failed: {error}",
                updated_at=timestamp,
                completed_at=timestamp,
            )
            self.store.save(failed)

        logger.error(f"Job {job_id} failed during {job.status.value}: {error}")
        return failed

    def get_result(self, job_id: str) -> Optional[Dict[str, Any]]:
        return self.store.get_result(job_id)

    def pending_job_ids(self) -> List[str]:
        """Ids of jobs waiting to start, oldest first."""
        return [job.id for job in reversed(self.store.list_jobs(statuses=[JobStatus.PENDING]))]

    def recover_interrupted_jobs(
        self, heartbeat_timeout: timedelta = DEFAULT_HEARTBEAT_TIMEOUT
    ) -> Tuple[List[str], List[str]]:
        """
        Reconcile jobs left behind by a previous process.

        Pending jobs never started and can be queued again. In-flight jobs are
        failed only when their worker is gone.

        Returns:
            (pending job ids to re-queue, ids of jobs that were failed)
        """
        pending = self.pending_job_ids()
        failed = self.fail_abandoned_jobs(heartbeat_timeout)

        if pending or failed:
            logger.info(f"Recovery: {len(pending)} pending job(s) to re-queue, {len(failed)} interrupted job(s) failed")
        return pending, failed

    def fail_abandoned_jobs(self, heartbeat_timeout: timedelta = DEFAULT_HEARTBEAT_TIMEOUT) -> List[str]:
        """
        Fail in-flight jobs whose worker stopped reporting.

        A job is abandoned when neither a write nor a heartbeat reached its record
        within ``heartbeat_timeout``. Jobs owned by this worker are never abandoned.
        """
        cutoff = (datetime.now() - heartbeat_timeout).isoformat()
        abandoned = [
            job
            for job in self.store.list_jobs(statuses=IN_FLIGHT_STATUSES)
            if job.worker_id != self.worker_id and job.last_activity < cutoff
        ]
        for job in abandoned:
            self.fail(job.id, INTERRUPTED_MESSAGE)
        return [job.id for job in abandoned]

    def fail_stale_jobs(self, max_age: timedelta = DEFAULT_MAX_JOB_AGE) -> List[str]:
        """Fail non-terminal jobs created more than ``max_age`` ago."""
        cutoff = (datetime.now() - max_age).isoformat()
        stale = [
            job
            for job in self.store.list_jobs(statuses=(JobStatus.PENDING,) + IN_FLIGHT_STATUSES)
            if job.created_at < cutoff
        ]
        for job in stale:
            self.fail(job.id, f"Job exceeded the maximum age of {max_age}")
        return [job.id for job in stale]
