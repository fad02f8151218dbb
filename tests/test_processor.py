import os
import threading
import time

import pytest

from conftest import FakeAcquirer, FakeAnalyzer, FakeApplier, FakeLanguageProvider, FakeSink, FakeSpeechProvider, FakeSplitter
from session_transcriber.audio.enhancement import TranscriptEnhancer
from session_transcriber.audio.filters import default_filter_chain
from session_transcriber.audio.transcription import ChunkTranscriber
from session_transcriber.errors import (
    AcquisitionError,
    AnalysisError,
    CommandTimeoutError,
    EnhancementError,
    FilterError,
    JobCancelledError,
    PersistenceError,
)
from session_transcriber.server.job_manager import JobManager
from session_transcriber.server.models import JobOptions, JobStatus
from session_transcriber.server.processor import SHUTDOWN_MESSAGE, CancelSignal
from session_transcriber.server.roster import RosterProvider

FULL_LIFECYCLE = ["pending", "downloading", "preprocessing", "transcribing", "analyzing", "saving", "completed"]


class BrokenRoster(RosterProvider):
    def get_roster(self, association_id=None):
        raise OSError("roster file missing")


def create(job_manager, **options):
    return job_manager.create_job("user-1", "https://example.org/v/council", "", JobOptions(**options))


def test_short_recording_completes(make_processor, job_manager, store, sink, speech_provider):
    job = create(job_manager, association_id="meeting-42")

    done = make_processor().process_job(job.id)

    assert done.status == JobStatus.COMPLETED
    assert store.statuses(job.id) == FULL_LIFECYCLE
    assert done.progress == 100
    assert done.result_id == "doc-1"
    assert done.metadata["chunked"] is False
    assert done.metadata["gap_count"] == 0
    assert done.metadata["stt_model"] == "fake-stt"
    assert done.metadata["llm_model"] == "fake-llm"
    assert speech_provider.calls == ["filtered.wav"]

    result = job_manager.get_result(job.id)
    assert result["transcript"]["segments"][0]["text"] == "Speech."
    assert result["document"].startswith("# Council meeting\n")
    assert sink.documents[0]["title"] == "Council meeting"


def test_progress_is_monotonic(make_processor, job_manager, store):
    job = create(job_manager)
    make_processor(splitter=FakeSplitter(segment_count=4)).process_job(job.id)

    values = store.progress_values(job.id)
    assert values == sorted(values)
    assert values[-1] == 100


def test_segment_timeout_leaves_gap(make_processor, job_manager):
    provider = FakeSpeechProvider(
        responses={"segment_002.mp3": CommandTimeoutError("segment 3 transcription", 300)}, default="Discussion."
    )
    job = create(job_manager)
    processor = make_processor(
        splitter=FakeSplitter(segment_count=5),
        transcriber=ChunkTranscriber(provider, chunk_timeout=5, max_workers=1),
    )

    done = processor.process_job(job.id)

    assert done.status == JobStatus.COMPLETED
    assert done.metadata["failed_segments"] == [3]
    assert done.metadata["segment_count"] == 5
    assert done.metadata["gap_count"] == 1

    segments = job_manager.get_result(job.id)["transcript"]["segments"]
    assert len(segments) == 5
    gap = segments[2]
    assert gap["is_gap"]
    assert gap["timestamp"] == 960.0
    assert gap["text"] == "[segment 3 failed: segment 3 transcription timed out after 300s]"
    assert [s["timestamp"] for s in segments] == sorted(s["timestamp"] for s in segments)


def test_download_failure_fails_job(make_processor, job_manager, store, sink):
    job = create(job_manager)
    processor = make_processor(acquirer=FakeAcquirer(error=AcquisitionError("Download failed: HTTP Error 404: Not Found")))

    with pytest.raises(AcquisitionError):
        processor.process_job(job.id)

    failed = job_manager.get_job(job.id)
    assert store.statuses(job.id) == ["pending", "downloading", "failed"]
    assert failed.error == "Download failed: HTTP Error 404: Not Found"
    assert failed.progress == 10
    assert sink.documents == []


def test_unparsable_classification_still_completes(make_processor, job_manager):
    enhancer = TranscriptEnhancer(FakeLanguageProvider(classification=EnhancementError("not valid JSON")), timeout=5)
    job = create(job_manager, identify_speakers=False)

    done = make_processor(enhancer=enhancer).process_job(job.id)

    assert done.status == JobStatus.COMPLETED
    assert done.metadata["degraded_steps"] == ["classification"]
    segments = job_manager.get_result(job.id)["transcript"]["segments"]
    assert len(segments) == 1
    assert segments[0]["sentiment"] == "neutral"
    assert segments[0]["text"] == "Speech."


def test_analysis_failure_uses_default_chain(make_processor, job_manager):
    applier = FakeApplier()
    job = create(job_manager)

    done = make_processor(analyzer=FakeAnalyzer(error=AnalysisError("ffprobe timed out after 30s")), filter_applier=applier).process_job(job.id)

    assert done.status == JobStatus.COMPLETED
    assert applier.chains == [default_filter_chain()]
    assert done.metadata["analysis"] == {"error": "ffprobe timed out after 30s"}
    assert done.metadata["filter_chain"] == default_filter_chain().render()
    assert done.audio_issues == []


def test_filter_failure_transcribes_unfiltered_audio(make_processor, job_manager, speech_provider):
    job = create(job_manager)

    done = make_processor(filter_applier=FakeApplier(error=FilterError("ffmpeg exited with 1"))).process_job(job.id)

    assert done.status == JobStatus.COMPLETED
    assert done.metadata["filter_applied"] is False
    assert speech_provider.calls == ["source.mp3"]


def test_sink_failure_fails_job(make_processor, job_manager, store):
    job = create(job_manager)

    with pytest.raises(PersistenceError):
        make_processor(sink=FakeSink(error=RuntimeError("503 Service Unavailable"))).process_job(job.id)

    failed = job_manager.get_job(job.id)
    assert failed.status == JobStatus.FAILED
    assert failed.error == "503 Service Unavailable"
    assert store.statuses(job.id)[-2:] == ["saving", "failed"]
    assert job_manager.get_result(job.id) is None


def test_sink_without_document_id_fails_job(make_processor, job_manager):
    job = create(job_manager)

    with pytest.raises(PersistenceError, match="no document id"):
        make_processor(sink=FakeSink(document_id="")).process_job(job.id)


def test_cancelled_before_start(make_processor, job_manager, store):
    job = create(job_manager)
    event = threading.Event()
    event.set()

    with pytest.raises(JobCancelledError):
        make_processor().process_job(job.id, event)

    assert store.statuses(job.id) == ["pending", "failed"]
    assert job_manager.get_job(job.id).error == "Job cancelled by user"


def test_job_owned_by_another_worker_is_left_alone(make_processor, job_manager, store):
    job = create(job_manager)
    JobManager(store, worker_id="other-host:7:abcd").claim(job.id)

    assert make_processor().process_job(job.id) is None

    untouched = job_manager.get_job(job.id)
    assert untouched.status == JobStatus.DOWNLOADING
    assert untouched.worker_id == "other-host:7:abcd"
    assert untouched.error is None


def test_job_already_started_elsewhere_is_not_failed(make_processor, job_manager):
    job = create(job_manager)
    job_manager.transition(job.id, JobStatus.DOWNLOADING)

    assert make_processor().process_job(job.id) is None
    assert job_manager.get_job(job.id).status == JobStatus.DOWNLOADING


def test_shutdown_before_start_leaves_job_pending(make_processor, job_manager, store):
    job = create(job_manager)
    signal = CancelSignal()
    signal.interrupt()

    assert make_processor().process_job(job.id, signal) is None
    assert store.statuses(job.id) == ["pending"]


def test_shutdown_interrupts_running_job(make_processor, job_manager):
    signal = CancelSignal()

    class InterruptingProvider(FakeSpeechProvider):
        def transcribe_audio(self, audio_path):
            signal.interrupt()
            return super().transcribe_audio(audio_path)

    job = create(job_manager)
    processor = make_processor(
        splitter=FakeSplitter(segment_count=3),
        transcriber=ChunkTranscriber(InterruptingProvider(), chunk_timeout=5, max_workers=1),
    )

    with pytest.raises(JobCancelledError, match="shut down"):
        processor.process_job(job.id, signal)

    assert job_manager.get_job(job.id).error == SHUTDOWN_MESSAGE


def test_heartbeat_refreshes_while_running(make_processor, job_manager, store):
    class SlowAcquirer(FakeAcquirer):
        def acquire(self, source, work_dir):
            time.sleep(0.3)
            return super().acquire(source, work_dir)

    job = create(job_manager)

    make_processor(acquirer=SlowAcquirer(), heartbeat_interval=0.02).process_job(job.id)

    beats = {saved.heartbeat_at for saved in store.history if saved.id == job.id and saved.heartbeat_at}
    assert len(beats) > 2
    assert store.get(job.id).worker_id == job_manager.worker_id


def test_cancelled_between_segments(make_processor, job_manager):
    event = threading.Event()

    class CancellingProvider(FakeSpeechProvider):
        def transcribe_audio(self, audio_path):
            event.set()
            return super().transcribe_audio(audio_path)

    provider = CancellingProvider()
    job = create(job_manager)
    processor = make_processor(
        splitter=FakeSplitter(segment_count=3),
        transcriber=ChunkTranscriber(provider, chunk_timeout=5, max_workers=1),
    )

    with pytest.raises(JobCancelledError):
        processor.process_job(job.id, event)

    assert provider.calls == ["segment_000.mp3"]
    assert job_manager.get_job(job.id).status == JobStatus.FAILED


def test_work_directory_is_removed(make_processor, job_manager, tmp_path):
    ok = create(job_manager)
    bad = create(job_manager)

    make_processor(splitter=FakeSplitter(segment_count=2)).process_job(ok.id)
    with pytest.raises(AcquisitionError):
        make_processor(acquirer=FakeAcquirer(error=AcquisitionError("unreachable"))).process_job(bad.id)

    assert os.listdir(tmp_path / "work") == []


def test_document_metadata(make_processor, job_manager, sink):
    job = create(job_manager, association_id="meeting-42")
    make_processor().process_job(job.id)

    metadata = sink.documents[0]["metadata"]
    assert metadata["category"] == "meeting_transcript"
    assert metadata["job_id"] == job.id
    assert metadata["association_id"] == "meeting-42"
    assert metadata["duration"] == 180.0
    assert metadata["dominant_sentiment"] == "positive"


def test_without_sentiment_document_has_no_affect(make_processor, job_manager, sink):
    job = create(job_manager, include_sentiment=False)
    make_processor().process_job(job.id)

    metadata = sink.documents[0]["metadata"]
    assert "dominant_sentiment" not in metadata
    assert "Dominant sentiment" not in sink.documents[0]["content"]


def test_roster_failure_is_not_fatal(make_processor, job_manager, language_provider):
    job = create(job_manager)

    done = make_processor(roster_provider=BrokenRoster()).process_job(job.id)

    assert done.status == JobStatus.COMPLETED
    assert language_provider.resolve_calls == []


def test_speaker_resolution_uses_roster(make_processor, job_manager, language_provider):
    language_provider.resolution = [{"originalSpeaker": "Speaker 1", "identifiedName": "Mayor", "role": "Mayor"}]
    job = create(job_manager)

    make_processor().process_job(job.id)

    segments = job_manager.get_result(job.id)["transcript"]["segments"]
    assert segments[0]["speaker"] == "Mayor"
    assert len(language_provider.resolve_calls) == 1
