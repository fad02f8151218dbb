"""
Chunked speech-to-text over a normalized track.

Whole-file mode sends the track in one call; failure there is fatal. Chunked
mode transcribes each segment under its own timeout, replaces a failed segment
with a gap marker and carries on. Fragments are always returned in segment
index order, whatever order the calls finished in.
"""

import logging
import re
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, List, Optional

from ..errors import ChunkTranscriptionError, SegmentExtractionError, TranscriptionError
from .providers import SpeechToTextProvider
from .splitter import AudioSegment
from .utils import call_with_timeout, remove_quietly

logger = logging.getLogger(__name__)

GAP_MARKER_PATTERN = re.compile(r"\[segment (\d+) failed: [^\]]*\]")

ProgressCallback = Callable[[int, int], None]


def gap_marker(number: int, reason: str) -> str:
    """
    Build the marker that stands in for an untranscribed segment.

    Args:
        number: 1-based segment number
        reason: Failure description (flattened to one line)
    """
    reason = " ".join(str(reason).split()).replace("[", "(").replace("]", ")")
    return f"[segment {number} failed: {reason or 'unknown error'}]"


def is_gap_marker(text: str) -> bool:
    return bool(GAP_MARKER_PATTERN.fullmatch(text.strip()))


@dataclass(frozen=True)
class TranscriptFragment:
    """Text for one segment (or the whole file) at a known position."""

    index: int
    start: float
    end: float
    text: str
    error: Optional[str] = None

    @property
    def is_gap(self) -> bool:
        return self.error is not None


def join_fragments(fragments: List[TranscriptFragment]) -> str:
    """Concatenate fragment texts in index order, one paragraph each."""
    ordered = sorted(fragments, key=lambda f: f.index)
    return "\n\n".join(f.text.strip() for f in ordered if f.text.strip())


class ChunkTranscriber:
    """Run a speech-to-text provider over a whole file or its segments."""

    def __init__(
        self,
        provider: SpeechToTextProvider,
        chunk_timeout: float = 300,
        whole_file_timeout: float = 600,
        max_workers: int = 1,
        provider_slots: Optional[threading.Semaphore] = None,
    ):
        """
        Initialize the transcriber.

        Args:
            provider: Speech-to-text provider
            chunk_timeout: Deadline for each segment call
            whole_file_timeout: Deadline for the single whole-file call
            max_workers: Segments transcribed in parallel within one job
            provider_slots: Semaphore shared across jobs limiting concurrent provider calls
        """
        self.provider = provider
        self.chunk_timeout = chunk_timeout
        self.whole_file_timeout = whole_file_timeout
        self.max_workers = max(1, max_workers)
        self.provider_slots = provider_slots

    def transcribe_whole(self, audio_path: str, duration: float = 0.0) -> List[TranscriptFragment]:
        """
        Transcribe an unsplit file.

        Raises:
            TranscriptionError: If the call fails, times out or returns no text
        """
        start_time = time.time()
        try:
            text = call_with_timeout(
                self.provider.transcribe_audio,
                self.whole_file_timeout,
                audio_path,
                description="whole-file transcription",
                slot=self.provider_slots,
            )
        except Exception as e:
            logger.error(f"Whole-file transcription failed: {e}")
            raise TranscriptionError(f"Transcription failed: {e}")

        fragment = TranscriptFragment(index=0, start=0.0, end=duration, text=(text or "").strip())
        self._require_text([fragment])
        logger.info(f"Transcribed whole file in {time.time() - start_time:.1f}s ({len(fragment.text)} chars)")
        return [fragment]

    def transcribe_segments(
        self, segments: List[AudioSegment], progress_callback: Optional[ProgressCallback] = None
    ) -> List[TranscriptFragment]:
        """
        Transcribe segments, substituting gap markers for failures.

        Each segment file is deleted once its call has finished, whatever the outcome.

        Args:
            segments: Segments from SegmentSplitter
            progress_callback: Called with (finished, total) after each segment

        Returns:
            One fragment per segment, in index order

        Raises:
            TranscriptionError: If every segment failed or no text was produced
        """
        total = len(segments)
        if total == 0:
            raise TranscriptionError("No segments to transcribe")

        finished = 0
        lock = threading.Lock()

        def run(segment: AudioSegment) -> TranscriptFragment:
            nonlocal finished
            fragment = self._transcribe_segment(segment, total)
            with lock:
                finished += 1
                done = finished
            if progress_callback:
                progress_callback(done, total)
            return fragment

        if self.max_workers == 1:
            fragments = [run(segment) for segment in segments]
        else:
            with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="segment") as executor:
                fragments = list(executor.map(run, segments))

        fragments.sort(key=lambda f: f.index)

        failures = [f.error for f in fragments if f.is_gap]
        if len(failures) == total:
            raise TranscriptionError(f"All {total} segments failed: {failures[0]}", failures=failures)
        if failures:
            logger.warning(f"{len(failures)} of {total} segments failed and were replaced with gap markers")

        self._require_text(fragments)
        return fragments

    def _transcribe_segment(self, segment: AudioSegment, total: int) -> TranscriptFragment:
        start_time = time.time()
        try:
            if segment.error or not segment.path:
                raise SegmentExtractionError(segment.index, segment.error or "segment file missing")

            try:
                text = call_with_timeout(
                    self.provider.transcribe_audio,
                    self.chunk_timeout,
                    segment.path,
                    description=f"segment {segment.number} transcription",
                    slot=self.provider_slots,
                )
            except Exception as e:
                raise ChunkTranscriptionError(segment.index, str(e))

            logger.info(f"Segment {segment.number}/{total} transcribed in {time.time() - start_time:.1f}s")
            return TranscriptFragment(segment.index, segment.start, segment.end, (text or "").strip())

        except (SegmentExtractionError, ChunkTranscriptionError) as e:
            logger.warning(f"Segment {segment.number}/{total} failed: {e}")
            return TranscriptFragment(
                segment.index,
                segment.start,
                segment.end,
                gap_marker(segment.number, str(e)),
                error=str(e),
            )
        finally:
            remove_quietly(segment.path)

    @staticmethod
    def _require_text(fragments: List[TranscriptFragment]) -> None:
        if not any(f.text.strip() for f in fragments if not f.is_gap):
            raise TranscriptionError("Transcription produced no text")
