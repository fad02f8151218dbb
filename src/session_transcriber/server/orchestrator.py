"""
Job orchestration facade.

JobOrchestrator is the entry point callers use: it creates jobs, answers status
queries, cancels jobs and hands jobs to the processing queue. ``from_settings``
builds the complete pipeline (store, tools, providers, sink, roster) from
configuration.
"""

import logging
import os
import threading
from datetime import timedelta
from typing import Any, Dict, List, Optional

from ..audio import (
    ChunkTranscriber,
    FilterChainApplier,
    LanguageModelProvider,
    MediaAcquirer,
    SegmentSplitter,
    SignalAnalyzer,
    SpeechToTextProvider,
    TranscriptEnhancer,
    build_language_provider,
    build_speech_provider,
)
from ..config import PipelineSettings
from ..errors import JobCancelledError
from .job_manager import JobManager
from .job_store import FileJobStore, JobStore
from .models import JobOptions, JobStatus, TranscriptionJob
from .processing_queue import ProcessingQueue
from .processor import TranscriptionProcessor
from .roster import JsonRosterProvider, RosterProvider, StaticRosterProvider
from .sinks import HttpKnowledgeSink, KnowledgeSink, LocalDirectorySink

logger = logging.getLogger(__name__)


class JobOrchestrator:
    """Create, run, query and cancel transcription jobs."""

    def __init__(
        self,
        job_manager: JobManager,
        processor: Optional[TranscriptionProcessor] = None,
        queue: Optional[ProcessingQueue] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            job_manager: JobManager owning all job records
            processor: Runs the stages of one job (omit for a query-only orchestrator)
            queue: Worker pool for asynchronous execution (jobs stay pending without one)
        """
        self.job_manager = job_manager
        self.processor = processor
        self.queue = queue

    @classmethod
    def from_settings(
        cls,
        settings: Optional[PipelineSettings] = None,
        store: Optional[JobStore] = None,
        sink: Optional[KnowledgeSink] = None,
        speech_provider: Optional[SpeechToTextProvider] = None,
        language_provider: Optional[LanguageModelProvider] = None,
        roster_provider: Optional[RosterProvider] = None,
    ) -> "JobOrchestrator":
        """
        Build a fully wired orchestrator.

        Every collaborator not given explicitly is constructed from ``settings``.

        Args:
            settings: Resolved settings (read from the environment when omitted)
            store: Job store (FileJobStore under ``jobs_dir`` by default)
            sink: Knowledge store (HTTP when a sink URL is configured, else a local directory)
            speech_provider: Speech-to-text provider
            language_provider: Language-model provider
            roster_provider: Participant roster source

        Returns:
            JobOrchestrator with a processing queue that has not been started
        """
        settings = settings or PipelineSettings.from_env()
        store = store or FileJobStore(settings.jobs_dir)
        speech_provider = speech_provider or build_speech_provider(settings)
        language_provider = language_provider or build_language_provider(settings)

        if sink is None:
            if settings.knowledge_sink_url:
                sink = HttpKnowledgeSink(
                    settings.knowledge_sink_url, settings.knowledge_sink_token or None, timeout=settings.sink_timeout
                )
            else:
                sink = LocalDirectorySink(os.path.join(settings.jobs_dir, "documents"))

        if roster_provider is None:
            if settings.roster_file:
                roster_provider = JsonRosterProvider(settings.roster_file)
            else:
                roster_provider = StaticRosterProvider()

        # Shared across all jobs of this process
        provider_slots = threading.Semaphore(max(1, settings.provider_concurrency))
        acquisition_slots = threading.Semaphore(max(1, settings.acquisition_concurrency))

        job_manager = JobManager(store)
        processor = TranscriptionProcessor(
            job_manager=job_manager,
            acquirer=MediaAcquirer(
                ytdlp_path=settings.ytdlp_path,
                ffmpeg_path=settings.ffmpeg_path,
                ffprobe_path=settings.ffprobe_path,
                max_filesize=settings.max_source_filesize,
                timeout=settings.acquisition_timeout,
            ),
            analyzer=SignalAnalyzer(settings.ffmpeg_path, settings.ffprobe_path, timeout=settings.analysis_timeout),
            filter_applier=FilterChainApplier(settings.ffmpeg_path, timeout=settings.filter_timeout),
            splitter=SegmentSplitter(
                settings.ffmpeg_path,
                settings.ffprobe_path,
                segment_seconds=settings.segment_seconds,
                max_upload_bytes=settings.max_upload_bytes,
                extraction_timeout=settings.segment_extraction_timeout,
            ),
            transcriber=ChunkTranscriber(
                speech_provider,
                chunk_timeout=settings.chunk_timeout,
                whole_file_timeout=settings.whole_file_timeout,
                max_workers=settings.segment_workers,
                provider_slots=provider_slots,
            ),
            enhancer=TranscriptEnhancer(language_provider, timeout=settings.llm_timeout, provider_slots=provider_slots),
            sink=sink,
            roster_provider=roster_provider,
            work_root=settings.work_dir,
            acquisition_slots=acquisition_slots,
            sink_timeout=settings.sink_timeout,
            heartbeat_interval=settings.heartbeat_interval,
        )
        queue = ProcessingQueue(
            job_manager,
            processor,
            max_workers=max(1, settings.max_concurrent_jobs),
            heartbeat_timeout=timedelta(seconds=settings.heartbeat_timeout),
            max_job_age=timedelta(hours=settings.max_job_age_hours),
        )

        logger.info(
            f"Pipeline configured: stt={settings.stt_provider}/{settings.stt_model}, "
            f"llm={settings.llm_model}, jobs_dir={settings.jobs_dir}"
        )
        return cls(job_manager, processor, queue)

    def start(self, recover: bool = True):
        """Start the processing queue (re-queueing pending jobs when ``recover`` is set)."""
        if self.queue is None:
            raise RuntimeError("No processing queue configured")
        self.queue.start(recover=recover)

    def stop(self, wait: bool = True):
        if self.queue is not None:
            self.queue.stop(wait=wait)

    def create_job(
        self,
        owner_id: str,
        source_url: str,
        title: str = "",
        options: Optional[JobOptions] = None,
    ) -> TranscriptionJob:
        """
        Create a job and queue it when the processing queue is running.

        Args:
            owner_id: Owner of the job
            source_url: Remote URL or local file path
            title: Display title (the source title is used when empty)
            options: Processing options

        Returns:
            The new pending job
        """
        job = self.job_manager.create_job(owner_id, source_url, title, options)
        if self.queue is not None and self.queue.is_running:
            self.queue.enqueue_job(job.id)
        return job

    def enqueue_pending_jobs(self) -> List[str]:
        """Queue pending jobs that were created by other processes. Returns the ids queued."""
        if self.queue is None or not self.queue.is_running:
            return []
        status = self.queue.get_queue_status()
        active = set(status["queued_jobs"]) | set(status["running_jobs"])
        return [
            job_id
            for job_id in self.job_manager.pending_job_ids()
            if job_id not in active and self.queue.enqueue_job(job_id)
        ]

    def sweep_jobs(self) -> List[str]:
        """Fail abandoned and over-age jobs. Returns the ids that were failed."""
        if self.queue is None:
            return self.job_manager.fail_abandoned_jobs() + self.job_manager.fail_stale_jobs()
        return self.queue.sweep()

    def run_job(self, job_id: str, cancel_event: Optional[threading.Event] = None) -> Optional[TranscriptionJob]:
        """Process a pending job synchronously in the calling thread (None if another worker owns it)."""
        if self.processor is None:
            raise RuntimeError("No processor configured")
        return self.processor.process_job(job_id, cancel_event)

    def get_job(self, job_id: str) -> Optional[TranscriptionJob]:
        return self.job_manager.get_job(job_id)

    def list_jobs_for_owner(self, owner_id: str, limit: int = 100) -> List[TranscriptionJob]:
        return self.job_manager.list_jobs_for_owner(owner_id, limit)

    def get_result(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Return the stored result of a completed job, or None."""
        job = self.job_manager.get_job(job_id)
        if job is None or job.status != JobStatus.COMPLETED:
            return None
        return self.job_manager.get_result(job_id)

    def cancel_job(self, job_id: str) -> bool:
        """
        Cancel a job that has not reached a terminal status.

        Returns:
            True if the job was failed or will fail at its next stage boundary
        """
        if self.queue is not None and self.queue.cancel_job(job_id):
            return True

        job = self.job_manager.require_job(job_id)
        if job.status == JobStatus.PENDING:
            # Not held by this process's queue; nothing will start it here
            self.job_manager.fail(job_id, str(JobCancelledError()))
            return True

        logger.warning(f"Job {job_id} is {job.status.value} and not running in this process; cannot cancel")
        return False
