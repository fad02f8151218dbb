"""
Data models for transcription jobs.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

# Re-export transcript types so job consumers need a single import
from ..audio.transcript import EnhancedTranscript, ParticipantRosterEntry, TranscriptSegment, TranscriptSummary


class JobStatus(Enum):
    """Lifecycle states of a transcription job, in processing order."""

    PENDING = "pending"
    DOWNLOADING = "downloading"
    PREPROCESSING = "preprocessing"
    TRANSCRIBING = "transcribing"
    ANALYZING = "analyzing"
    SAVING = "saving"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


# Progress checkpoint reached when a job enters each status
STAGE_PROGRESS = {
    JobStatus.PENDING: 0,
    JobStatus.DOWNLOADING: 10,
    JobStatus.PREPROCESSING: 20,
    JobStatus.TRANSCRIBING: 35,
    JobStatus.ANALYZING: 60,
    JobStatus.SAVING: 85,
    JobStatus.COMPLETED: 100,
}

STAGE_MESSAGES = {
    JobStatus.PENDING: "Job created, waiting in queue...",
    JobStatus.DOWNLOADING: "Downloading audio...",
    JobStatus.PREPROCESSING: "Analysing and normalising audio...",
    JobStatus.TRANSCRIBING: "Transcribing audio (may take several minutes)...",
    JobStatus.ANALYZING: "Identifying speakers and analysing sentiment...",
    JobStatus.SAVING: "Saving to knowledge base...",
    JobStatus.COMPLETED: "Transcript completed and saved",
}


def now_iso() -> str:
    return datetime.now().isoformat()


@dataclass
class JobOptions:
    """Caller options for one job."""

    association_id: Optional[str] = None
    include_sentiment: bool = True
    identify_speakers: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "association_id": self.association_id,
            "include_sentiment": self.include_sentiment,
            "identify_speakers": self.identify_speakers,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "JobOptions":
        data = data or {}
        return cls(
            association_id=data.get("association_id"),
            include_sentiment=bool(data.get("include_sentiment", True)),
            identify_speakers=bool(data.get("identify_speakers", True)),
        )


@dataclass
class TranscriptionJob:
    """Persisted record of one transcription job."""

    id: str
    owner_id: str
    source_url: str
    title: str
    options: JobOptions = field(default_factory=JobOptions)
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    progress_message: str = STAGE_MESSAGES[JobStatus.PENDING]
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)
    completed_at: Optional[str] = None
    error: Optional[str] = None
    result_id: Optional[str] = None
    audio_issues: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    worker_id: Optional[str] = None
    heartbeat_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def last_activity(self) -> str:
        """Latest of the last write and the owner's last heartbeat."""
        return max(stamp for stamp in (self.updated_at, self.heartbeat_at) if stamp)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "source_url": self.source_url,
            "title": self.title,
            "association_id": self.options.association_id,
            "include_sentiment": self.options.include_sentiment,
            "identify_speakers": self.options.identify_speakers,
            "status": self.status.value,
            "progress": self.progress,
            "progress_message": self.progress_message,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
            "error": self.error,
            "result_id": self.result_id,
            "audio_issues": list(self.audio_issues),
            "metadata": dict(self.metadata),
            "worker_id": self.worker_id,
            "heartbeat_at": self.heartbeat_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TranscriptionJob":
        return cls(
            id=data["id"],
            owner_id=data["owner_id"],
            source_url=data["source_url"],
            title=data.get("title", ""),
            options=JobOptions.from_dict(data),
            status=JobStatus(data.get("status", JobStatus.PENDING.value)),
            progress=int(data.get("progress", 0)),
            progress_message=data.get("progress_message", ""),
            created_at=data.get("created_at") or now_iso(),
            updated_at=data.get("updated_at") or now_iso(),
            completed_at=data.get("completed_at"),
            error=data.get("error"),
            result_id=data.get("result_id"),
            audio_issues=list(data.get("audio_issues") or []),
            metadata=dict(data.get("metadata") or {}),
            worker_id=data.get("worker_id"),
            heartbeat_at=data.get("heartbeat_at"),
        )


__all__ = [
    "JobStatus",
    "JobOptions",
    "TranscriptionJob",
    "STAGE_PROGRESS",
    "STAGE_MESSAGES",
    "EnhancedTranscript",
    "ParticipantRosterEntry",
    "TranscriptSegment",
    "TranscriptSummary",
]
