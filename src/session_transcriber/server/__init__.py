"""
Transcription job server package.

This package tracks transcription jobs durably and runs them through the audio
pipeline on a Queue/ThreadPoolExecutor worker pool.
"""

from .job_manager import JobManager
from .job_store import FileJobStore, InMemoryJobStore, JobStore
from .models import JobOptions, JobStatus, TranscriptionJob
from .orchestrator import JobOrchestrator
from .processing_queue import ProcessingQueue
from .processor import TranscriptionProcessor
from .roster import JsonRosterProvider, RosterProvider, StaticRosterProvider
from .sinks import HttpKnowledgeSink, KnowledgeSink, LocalDirectorySink

__all__ = [
    "JobManager",
    "JobStore",
    "FileJobStore",
    "InMemoryJobStore",
    "JobOptions",
    "JobStatus",
    "TranscriptionJob",
    "JobOrchestrator",
    "ProcessingQueue",
    "TranscriptionProcessor",
    "RosterProvider",
    "StaticRosterProvider",
    "JsonRosterProvider",
    "KnowledgeSink",
    "HttpKnowledgeSink",
    "LocalDirectorySink",
]
