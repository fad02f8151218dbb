"""
Durable storage for job records and results.

``FileJobStore`` keeps one directory per job:
- job.json: the job record
- result.json: the enhanced transcript and rendered document (completed jobs only)
- claim: the id of the worker that started the job, created exclusively

Every write goes to a temporary file first and is moved into place with
``os.replace``, so a reader never observes a half-written record.
"""

import json
import logging
import os
import shutil
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .models import JobStatus, TranscriptionJob

logger = logging.getLogger(__name__)


class JobStore(ABC):
    """Storage interface for job records."""

    @abstractmethod
    def save(self, job: TranscriptionJob) -> None:
        """Persist the full job record, replacing any previous version."""

    @abstractmethod
    def get(self, job_id: str) -> Optional[TranscriptionJob]:
        """Load a job record (a fresh copy), or None if it does not exist."""

    @abstractmethod
    def list_jobs(self, owner_id: Optional[str] = None, statuses: Optional[Iterable[JobStatus]] = None) -> List[TranscriptionJob]:
        """List job records, newest first."""

    @abstractmethod
    def save_result(self, job_id: str, result: Dict[str, Any]) -> None:
        """Persist the result payload of a job."""

    @abstractmethod
    def get_result(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Load the result payload of a job."""

    @abstractmethod
    def delete(self, job_id: str) -> bool:
        """Delete a job and its result. Returns False if it did not exist."""

    @abstractmethod
    def claim(self, job_id: str, worker_id: str) -> bool:
        """
        Record ``worker_id`` as the one worker allowed to run a job.

        Returns:
            True for the first caller; False if the job was already claimed or does not exist
        """

    @staticmethod
    def _filter(jobs: Iterable[TranscriptionJob], owner_id: Optional[str], statuses: Optional[Iterable[JobStatus]]):
        wanted = set(statuses) if statuses is not None else None
        selected = [
            job
            for job in jobs
            if (owner_id is None or job.owner_id == owner_id) and (wanted is None or job.status in wanted)
        ]
        # Sort by created_at (newest first)
        selected.sort(key=lambda job: job.created_at, reverse=True)
        return selected


class FileJobStore(JobStore):
    """Filesystem-backed job store."""

    JOB_FILE = "job.json"
    RESULT_FILE = "result.json"
    CLAIM_FILE = "claim"

    def __init__(self, jobs_dir: str = "transcription_jobs"):
        """
        Initialize the store.

        Args:
            jobs_dir: Directory holding one subdirectory per job
        """
        self.jobs_dir = Path(jobs_dir)
        self.jobs_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def get_job_dir(self, job_id: str) -> Path:
        """Get the directory path for a job."""
        return self.jobs_dir / job_id

    def save(self, job: TranscriptionJob) -> None:
        job_dir = self.get_job_dir(job.id)
        job_dir.mkdir(exist_ok=True)
        self._write_json(job_dir / self.JOB_FILE, job.to_dict())

    def get(self, job_id: str) -> Optional[TranscriptionJob]:
        data = self._read_json(self.get_job_dir(job_id) / self.JOB_FILE)
        if data is None:
            return None
        try:
            return TranscriptionJob.from_dict(data)
        except (KeyError, ValueError) as e:
            logger.error(f"Corrupt job record {job_id}: {e}")
            return None

    def list_jobs(self, owner_id: Optional[str] = None, statuses: Optional[Iterable[JobStatus]] = None) -> List[TranscriptionJob]:
        jobs = []
        for job_dir in self.jobs_dir.iterdir():
            if not job_dir.is_dir():
                continue
            job = self.get(job_dir.name)
            if job is not None:
                jobs.append(job)
        return self._filter(jobs, owner_id, statuses)

    def save_result(self, job_id: str, result: Dict[str, Any]) -> None:
        job_dir = self.get_job_dir(job_id)
        if not job_dir.exists():
            raise ValueError(f"Job {job_id} does not exist")
        self._write_json(job_dir / self.RESULT_FILE, result)

    def get_result(self, job_id: str) -> Optional[Dict[str, Any]]:
        return self._read_json(self.get_job_dir(job_id) / self.RESULT_FILE)

    def delete(self, job_id: str) -> bool:
        job_dir = self.get_job_dir(job_id)
        if not job_dir.exists():
            return False
        shutil.rmtree(job_dir)
        return True

    def claim(self, job_id: str, worker_id: str) -> bool:
        # O_EXCL makes the create atomic across processes sharing the directory
        path = self.get_job_dir(job_id) / self.CLAIM_FILE
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except (FileExistsError, FileNotFoundError):
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(worker_id)
        return True

    def _write_json(self, path: Path, data: Any) -> None:
        """Write JSON atomically (temporary file + rename)."""
        with self._lock:
            fd, tmp_path = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(data, f, ensure_ascii=False, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.remove(tmp_path)
                raise

    def _read_json(self, path: Path) -> Optional[Any]:
        if not path.exists():
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            logger.error(f"Could not read {path}: {e}")
            return None


class InMemoryJobStore(JobStore):
    """Process-local job store holding serialized copies of each record."""

    def __init__(self):
        self._jobs: Dict[str, Dict[str, Any]] = {}
        self._results: Dict[str, Dict[str, Any]] = {}
        self._claims: Dict[str, str] = {}
        self._lock = threading.Lock()

    def save(self, job: TranscriptionJob) -> None:
        with self._lock:
            self._jobs[job.id] = json.loads(json.dumps(job.to_dict()))

    def get(self, job_id: str) -> Optional[TranscriptionJob]:
        with self._lock:
            data = self._jobs.get(job_id)
        return TranscriptionJob.from_dict(json.loads(json.dumps(data))) if data else None

    def list_jobs(self, owner_id: Optional[str] = None, statuses: Optional[Iterable[JobStatus]] = None) -> List[TranscriptionJob]:
        with self._lock:
            records = list(self._jobs.values())
        return self._filter((TranscriptionJob.from_dict(json.loads(json.dumps(r))) for r in records), owner_id, statuses)

    def save_result(self, job_id: str, result: Dict[str, Any]) -> None:
        with self._lock:
            if job_id not in self._jobs:
                raise ValueError(f"Job {job_id} does not exist")
            self._results[job_id] = json.loads(json.dumps(result))

    def get_result(self, job_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            result = self._results.get(job_id)
        return json.loads(json.dumps(result)) if result is not None else None

    def delete(self, job_id: str) -> bool:
        with self._lock:
            self._results.pop(job_id, None)
            self._claims.pop(job_id, None)
            return self._jobs.pop(job_id, None) is not None

    def claim(self, job_id: str, worker_id: str) -> bool:
        with self._lock:
            if job_id not in self._jobs or job_id in self._claims:
                return False
            self._claims[job_id] = worker_id
            return True
