import os
import shutil
import subprocess
from typing import Any, Dict, List, Optional

import pytest

from session_transcriber.audio.acquisition import AcquiredMedia
from session_transcriber.audio.analysis import SignalMeasurements, build_analysis
from session_transcriber.audio.enhancement import TranscriptEnhancer
from session_transcriber.audio.providers import LanguageModelProvider, SpeechToTextProvider
from session_transcriber.audio.splitter import AudioSegment, SplitResult
from session_transcriber.audio.transcription import ChunkTranscriber
from session_transcriber.server.job_manager import JobManager
from session_transcriber.server.job_store import InMemoryJobStore
from session_transcriber.server.processor import TranscriptionProcessor
from session_transcriber.server.roster import StaticRosterProvider
from session_transcriber.server.sinks import KnowledgeSink


def completed(args=None, returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(args or [], returncode, stdout=stdout, stderr=stderr)


class FakeSpeechProvider(SpeechToTextProvider):
    """Returns canned text keyed by file name; an Exception value is raised instead."""

    model = "fake-stt"

    def __init__(self, responses: Optional[Dict[str, Any]] = None, default: str = "Speech."):
        self.responses = responses or {}
        self.default = default
        self.calls: List[str] = []

    def transcribe_audio(self, audio_path: str) -> str:
        name = os.path.basename(audio_path)
        self.calls.append(name)
        response = self.responses.get(name, self.default)
        if isinstance(response, Exception):
            raise response
        return response


class FakeLanguageProvider(LanguageModelProvider):
    """Echoes corrections and labels each classification block as one utterance."""

    model = "fake-llm"

    def __init__(self, correction=None, classification=None, resolution=None):
        self.correction = correction
        self.classification = classification
        self.resolution = resolution if resolution is not None else []
        self.correct_calls: List[str] = []
        self.classify_calls: List[tuple] = []
        self.resolve_calls: List[tuple] = []

    def correct_text(self, text: str) -> str:
        self.correct_calls.append(text)
        if isinstance(self.correction, Exception):
            raise self.correction
        if callable(self.correction):
            return self.correction(text)
        return text

    def classify_utterances(self, text: str, offset_seconds: float = 0.0) -> List[Dict[str, Any]]:
        self.classify_calls.append((text, offset_seconds))
        if isinstance(self.classification, Exception):
            raise self.classification
        if callable(self.classification):
            return self.classification(text, offset_seconds)
        if self.classification is not None:
            return self.classification
        return [
            {
                "timestamp": offset_seconds,
                "speaker": "Speaker 1",
                "text": text,
                "sentiment": "positive",
                "emotion": "calm",
                "emotionEmoji": "🙂",
                "tension": 3,
                "credibility": 80,
            }
        ]

    def resolve_speakers(self, roster, sample, transcript):
        self.resolve_calls.append((roster, sample, transcript))
        if isinstance(self.resolution, Exception):
            raise self.resolution
        return self.resolution


class FakeAcquirer:
    """Writes a placeholder track of ``size`` bytes, or raises ``error``."""

    def __init__(self, size: int = 1024, duration: float = 180.0, title: str = "Council meeting", error=None):
        self.size = size
        self.duration = duration
        self.title = title
        self.error = error

    def acquire(self, source: str, work_dir: str) -> AcquiredMedia:
        if self.error is not None:
            raise self.error
        os.makedirs(work_dir, exist_ok=True)
        path = os.path.join(work_dir, "source.mp3")
        with open(path, "wb") as f:
            f.write(b"\0" * self.size)
        return AcquiredMedia(path=path, title=self.title, duration=self.duration, source=source)


class FakeAnalyzer:
    def __init__(self, measurements: Optional[SignalMeasurements] = None, error=None):
        self.measurements = measurements or SignalMeasurements(sample_rate=16000, bit_rate_kbps=128)
        self.error = error

    def analyze(self, audio_path: str, work_dir: Optional[str] = None):
        if self.error is not None:
            raise self.error
        return build_analysis(self.measurements)


class FakeApplier:
    def __init__(self, error=None):
        self.error = error
        self.chains = []

    def apply(self, input_path: str, output_path: str, chain) -> str:
        self.chains.append(chain)
        if self.error is not None:
            raise self.error
        shutil.copyfile(input_path, output_path)
        return output_path


class FakeSplitter:
    """Bypasses splitting, or cuts ``segment_count`` placeholder segments of ``segment_seconds``."""

    def __init__(self, segment_count: int = 0, segment_seconds: float = 480.0, failed: Optional[Dict[int, str]] = None):
        self.segment_count = segment_count
        self.segment_seconds = segment_seconds
        self.failed = failed or {}

    def split(self, audio_path: str, work_dir: str, duration: Optional[float] = None, force: bool = False):
        if not self.segment_count:
            return SplitResult(segments=[], total_duration=duration or 0.0)

        os.makedirs(work_dir, exist_ok=True)
        segments = []
        for index in range(self.segment_count):
            start = index * self.segment_seconds
            end = start + self.segment_seconds
            if index in self.failed:
                segments.append(AudioSegment(index, None, start, end, error=self.failed[index]))
                continue
            path = os.path.join(work_dir, f"segment_{index:03d}.mp3")
            with open(path, "wb") as f:
                f.write(b"\0" * 16)
            segments.append(AudioSegment(index, path, start, end, size_bytes=16))
        return SplitResult(segments=segments, total_duration=self.segment_count * self.segment_seconds)


class FakeSink(KnowledgeSink):
    def __init__(self, error=None, document_id: str = "doc-1"):
        self.error = error
        self.document_id = document_id
        self.documents: List[Dict[str, Any]] = []

    def store(self, title: str, content: str, metadata: Dict[str, Any]) -> str:
        if self.error is not None:
            raise self.error
        self.documents.append({"title": title, "content": content, "metadata": metadata})
        return self.document_id


class RecordingJobStore(InMemoryJobStore):
    """In-memory store that keeps every saved version of each job."""

    def __init__(self):
        super().__init__()
        self.history: List[Any] = []

    def save(self, job) -> None:
        super().save(job)
        self.history.append(job)

    def statuses(self, job_id: str) -> List[str]:
        seen: List[str] = []
        for job in self.history:
            if job.id == job_id and (not seen or seen[-1] != job.status.value):
                seen.append(job.status.value)
        return seen

    def progress_values(self, job_id: str) -> List[int]:
        return [job.progress for job in self.history if job.id == job_id]


@pytest.fixture
def store():
    return RecordingJobStore()


@pytest.fixture
def job_manager(store):
    return JobManager(store)


@pytest.fixture
def speech_provider():
    return FakeSpeechProvider()


@pytest.fixture
def language_provider():
    return FakeLanguageProvider()


@pytest.fixture
def sink():
    return FakeSink()


@pytest.fixture
def make_processor(job_manager, speech_provider, language_provider, sink, tmp_path):
    """Build a processor from fakes; keyword arguments replace individual collaborators."""

    def factory(**overrides):
        parts = {
            "acquirer": FakeAcquirer(),
            "analyzer": FakeAnalyzer(),
            "filter_applier": FakeApplier(),
            "splitter": FakeSplitter(),
            "transcriber": ChunkTranscriber(speech_provider, chunk_timeout=5, whole_file_timeout=5),
            "enhancer": TranscriptEnhancer(language_provider, timeout=5),
            "sink": sink,
            "roster_provider": StaticRosterProvider(),
        }
        parts.update(overrides)
        return TranscriptionProcessor(
            job_manager=job_manager, work_root=str(tmp_path / "work"), sink_timeout=5, **parts
        )

    return factory

