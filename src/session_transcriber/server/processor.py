"""
Per-job processing: the stage sequence of one transcription job.

Stages run strictly in order, each starting with a persisted transition:
1. downloading: claim the job for this worker, fetch the source and extract a
   mono 16 kHz track (fatal on failure)
2. preprocessing: analyse the signal and apply the adaptive filter chain
   (analysis or filter failure falls back to the default chain or the unfiltered track)
3. transcribing: whole-file or chunked speech-to-text
4. analyzing: correction, classification and speaker resolution
5. saving: hand the rendered document to the knowledge store, then complete

Any other exception fails the job. The job's scratch directory is removed on every exit path.
A job claimed by another worker is left alone, and so is a job a shutdown reached
before it started.
"""

import logging
import os
import shutil
import tempfile
import threading
import time
from typing import List, Optional

from ..audio import (
    ChunkTranscriber,
    FilterChainApplier,
    MediaAcquirer,
    SegmentSplitter,
    SignalAnalyzer,
    TranscriptEnhancer,
    default_filter_chain,
    format_transcript_markdown,
    plan_filter_chain,
)
from ..audio.acquisition import AcquiredMedia
from ..audio.transcript import EnhancedTranscript
from ..audio.transcription import TranscriptFragment
from ..audio.utils import call_with_timeout
from ..errors import AnalysisError, FilterError, JobCancelledError, PersistenceError
from .job_manager import JobManager
from .models import STAGE_PROGRESS, JobStatus, TranscriptionJob
from .roster import RosterProvider
from .sinks import KnowledgeSink

logger = logging.getLogger(__name__)

DOCUMENT_CATEGORY = "meeting_transcript"

SHUTDOWN_MESSAGE = "Worker shut down before the job finished"


class CancelSignal(threading.Event):
    """
    Cancellation flag for one job.

    ``set()`` is an owner's cancellation. ``interrupt()`` is a worker shutdown: a
    running job fails with ``reason``, a job that has not started stays pending.
    """

    def __init__(self):
        super().__init__()
        self.reason: Optional[str] = None

    @property
    def interrupted(self) -> bool:
        return self.reason is not None

    def interrupt(self, reason: str = SHUTDOWN_MESSAGE) -> None:
        self.reason = reason
        self.set()


class TranscriptionProcessor:
    """Runs one job through every stage."""

    def __init__(
        self,
        job_manager: JobManager,
        acquirer: MediaAcquirer,
        analyzer: SignalAnalyzer,
        filter_applier: FilterChainApplier,
        splitter: SegmentSplitter,
        transcriber: ChunkTranscriber,
        enhancer: TranscriptEnhancer,
        sink: KnowledgeSink,
        roster_provider: Optional[RosterProvider] = None,
        work_root: Optional[str] = None,
        acquisition_slots: Optional[threading.Semaphore] = None,
        sink_timeout: float = 60,
        heartbeat_interval: float = 30,
    ):
        """
        Initialize the processor.

        Args:
            job_manager: JobManager for all record changes
            acquirer: Source retrieval
            analyzer: Signal analysis
            filter_applier: Filtered extraction
            splitter: Segment splitting
            transcriber: Speech-to-text
            enhancer: Language-model enhancement
            sink: Knowledge store for the finished document
            roster_provider: Known participants for speaker resolution
            work_root: Parent directory for per-job scratch directories
            acquisition_slots: Semaphore limiting concurrent downloads across jobs
            sink_timeout: Deadline for the knowledge-store call
            heartbeat_interval: Seconds between heartbeats while a job runs
        """
        self.job_manager = job_manager
        self.acquirer = acquirer
        self.analyzer = analyzer
        self.filter_applier = filter_applier
        self.splitter = splitter
        self.transcriber = transcriber
        self.enhancer = enhancer
        self.sink = sink
        self.roster_provider = roster_provider
        self.work_root = work_root
        self.acquisition_slots = acquisition_slots or threading.Semaphore(1)
        self.sink_timeout = sink_timeout
        self.heartbeat_interval = heartbeat_interval

    def process_job(self, job_id: str, cancel_event: Optional[threading.Event] = None) -> Optional[TranscriptionJob]:
        """
        Process a job from pending to completed.

        Args:
            job_id: Job identifier
            cancel_event: Set to request cancellation at the next stage boundary

        Returns:
            The completed job, or None if the job was not started here (claimed by
            another worker, or interrupted by a shutdown before it started)

        Raises:
            Exception: Whatever failed the job, after the failure has been recorded
        """
        start_time = time.time()
        self.job_manager.require_job(job_id)

        if getattr(cancel_event, "interrupted", False):
            logger.info(f"Job {job_id} not started before shutdown; left pending")
            return None
        if cancel_event is not None and cancel_event.is_set():
            logger.info(f"Job {job_id} cancelled before it started")
            self.job_manager.fail(job_id, str(JobCancelledError()))
            raise JobCancelledError()

        job = self.job_manager.claim(job_id)
        if job is None:
            logger.warning(f"Job {job_id} is not pending or is owned by another worker; skipping")
            return None

        heartbeat = self._start_heartbeat(job_id)
        work_dir = None

        try:
            logger.info(f"Starting processing for job {job_id}")
            if self.work_root:
                os.makedirs(self.work_root, exist_ok=True)
            work_dir = tempfile.mkdtemp(prefix=f"job_{job_id[:8]}_", dir=self.work_root)

            media = self._acquire(job, work_dir)
            audio_path = self._preprocess(job, media, work_dir, cancel_event)
            fragments = self._transcribe(job, audio_path, media.duration, work_dir, cancel_event)
            enhanced = self._enhance(job, fragments, media.duration, cancel_event)
            completed = self._save(job, media, enhanced, start_time, cancel_event)

            logger.info(f"Job {job_id} completed in {time.time() - start_time:.2f} seconds")
            return completed

        except Exception as e:
            logger.error(f"Processing failed for job {job_id}: {e}")
            self.job_manager.fail(job_id, str(e))
            raise
        finally:
            heartbeat.set()
            if work_dir:
                shutil.rmtree(work_dir, ignore_errors=True)

    def _start_heartbeat(self, job_id: str) -> threading.Event:
        """Refresh the job's heartbeat until the returned event is set."""
        stop = threading.Event()

        def beat():
            while not stop.wait(self.heartbeat_interval):
                try:
                    self.job_manager.heartbeat(job_id)
                except Exception as e:
                    logger.warning(f"Heartbeat for job {job_id} failed: {e}")

        threading.Thread(target=beat, name=f"heartbeat-{job_id[:8]}", daemon=True).start()
        return stop

    def _check_cancelled(self, job_id: str, cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            logger.info(f"Job {job_id} cancelled")
            raise JobCancelledError(getattr(cancel_event, "reason", None))

    def _acquire(self, job: TranscriptionJob, work_dir: str) -> AcquiredMedia:
        with self.acquisition_slots:
            media = self.acquirer.acquire(job.source_url, os.path.join(work_dir, "source"))

        self.job_manager.update_metadata(
            job.id, source_title=media.title, duration=round(media.duration, 2), source_bytes=media.size_bytes
        )
        return media

    def _preprocess(self, job: TranscriptionJob, media: AcquiredMedia, work_dir: str, cancel_event) -> str:
        """Analyse and filter; returns the path of the audio to transcribe."""
        self._check_cancelled(job.id, cancel_event)
        self.job_manager.transition(job.id, JobStatus.PREPROCESSING)

        issues: List[str] = []
        try:
            analysis = self.analyzer.analyze(media.path, work_dir)
            chain = plan_filter_chain(analysis)
            issues = list(analysis.issue_tags)
            analysis_data = analysis.to_dict()
        except AnalysisError as e:
            logger.warning(f"Audio analysis failed for job {job.id}, using default filter chain: {e}")
            chain = default_filter_chain()
            analysis_data = {"error": str(e)}

        self._check_cancelled(job.id, cancel_event)
        filtered_path = os.path.join(work_dir, "filtered.wav")
        try:
            audio_path = self.filter_applier.apply(media.path, filtered_path, chain)
            filter_applied = True
        except FilterError as e:
            logger.warning(f"Filtering failed for job {job.id}, transcribing unfiltered audio: {e}")
            audio_path = media.path
            filter_applied = False

        self.job_manager.update_metadata(
            job.id,
            audio_issues=issues,
            analysis=analysis_data,
            filter_chain=chain.render(),
            filter_applied=filter_applied,
        )
        return audio_path

    def _transcribe(
        self, job: TranscriptionJob, audio_path: str, duration: float, work_dir: str, cancel_event
    ) -> List[TranscriptFragment]:
        self._check_cancelled(job.id, cancel_event)
        self.job_manager.transition(job.id, JobStatus.TRANSCRIBING)

        split = self.splitter.split(audio_path, os.path.join(work_dir, "segments"), duration)
        if split.bypassed:
            fragments = self.transcriber.transcribe_whole(audio_path, duration)
            self.job_manager.update_metadata(job.id, chunked=False, segment_count=1, failed_segments=[])
            return fragments

        start = STAGE_PROGRESS[JobStatus.TRANSCRIBING]
        end = STAGE_PROGRESS[JobStatus.ANALYZING]

        def on_segment_done(done: int, total: int) -> None:
            progress = min(start + (end - start) * done // total, end - 1)
            self.job_manager.update_progress(job.id, progress, f"Transcribed segment {done}/{total}...")
            self._check_cancelled(job.id, cancel_event)

        fragments = self.transcriber.transcribe_segments(split.segments, progress_callback=on_segment_done)
        self.job_manager.update_metadata(
            job.id,
            chunked=True,
            segment_count=len(split.segments),
            failed_segments=[f.index + 1 for f in fragments if f.is_gap],
        )
        return fragments

    def _enhance(
        self, job: TranscriptionJob, fragments: List[TranscriptFragment], duration: float, cancel_event
    ) -> EnhancedTranscript:
        self._check_cancelled(job.id, cancel_event)
        self.job_manager.transition(job.id, JobStatus.ANALYZING)

        roster = []
        if job.options.identify_speakers and self.roster_provider is not None:
            try:
                roster = self.roster_provider.get_roster(job.options.association_id)
            except (OSError, ValueError) as e:
                logger.warning(f"Could not load participant roster for job {job.id}: {e}")

        return self.enhancer.enhance(
            fragments,
            include_sentiment=job.options.include_sentiment,
            identify_speakers=job.options.identify_speakers,
            roster=roster,
            duration=duration or None,
        )

    def _save(
        self, job: TranscriptionJob, media: AcquiredMedia, enhanced: EnhancedTranscript, start_time: float, cancel_event
    ) -> TranscriptionJob:
        self._check_cancelled(job.id, cancel_event)
        current = self.job_manager.transition(job.id, JobStatus.SAVING)

        title = job.title or media.title
        document = format_transcript_markdown(enhanced, title, job.source_url, current.audio_issues)
        summary = enhanced.summary
        document_metadata = {
            "category": DOCUMENT_CATEGORY,
            "job_id": job.id,
            "association_id": job.options.association_id,
            "source_url": job.source_url,
            "duration": summary.duration,
            "speaker_count": summary.speaker_count,
            "speakers": list(summary.speakers),
            "audio_issues": current.audio_issues,
        }
        if enhanced.include_sentiment:
            document_metadata.update(
                dominant_sentiment=summary.dominant_sentiment,
                average_tension=summary.average_tension,
                overall_credibility=summary.overall_credibility,
            )

        try:
            result_id = call_with_timeout(
                self.sink.store, self.sink_timeout, title, document, document_metadata, description="knowledge store"
            )
        except Exception as e:
            raise PersistenceError(str(e))

        if not result_id:
            raise PersistenceError("Knowledge store returned no document id")

        return self.job_manager.complete(
            job.id,
            result_id,
            {"transcript": enhanced.to_dict(), "document": document},
            segment_total=len(enhanced.segments),
            gap_count=enhanced.gap_count,
            degraded_steps=list(enhanced.degraded_steps),
            stt_model=getattr(self.transcriber.provider, "model", ""),
            llm_model=getattr(self.enhancer.provider, "model", ""),
            processing_time=round(time.time() - start_time, 2),
        )

