"""
Split long audio into fixed-length, non-overlapping segments.

Files at or below the upload size threshold are not split. Each segment is cut
with its own ffmpeg call under a timeout; a segment whose extraction fails or
times out is returned with ``error`` set instead of aborting the split.
"""

import logging
import math
import os
from dataclasses import dataclass
from typing import List, Optional

from ..errors import CommandTimeoutError, TranscriptionError
from .utils import get_audio_duration, remove_quietly, run_command, stderr_tail

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AudioSegment:
    """One slice of the normalized track."""

    index: int
    path: Optional[str]
    start: float
    end: float
    size_bytes: int = 0
    error: Optional[str] = None

    @property
    def duration(self) -> float:
        return self.end - self.start

    @property
    def number(self) -> int:
        """1-based position used in messages."""
        return self.index + 1


@dataclass(frozen=True)
class SplitResult:
    segments: List[AudioSegment]
    total_duration: float

    @property
    def bypassed(self) -> bool:
        return not self.segments


class SegmentSplitter:
    """Cut a track into segments of ``segment_seconds``."""

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        ffprobe_path: str = "ffprobe",
        segment_seconds: int = 600,
        max_upload_bytes: int = 25 * 1024 * 1024,
        extraction_timeout: float = 60,
    ):
        """
        Initialize the splitter.

        Args:
            ffmpeg_path: ffmpeg executable
            ffprobe_path: ffprobe executable
            segment_seconds: Length of each segment
            max_upload_bytes: Files larger than this are split
            extraction_timeout: Deadline for each segment extraction
        """
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path
        self.segment_seconds = segment_seconds
        self.max_upload_bytes = max_upload_bytes
        self.extraction_timeout = extraction_timeout

    def needs_splitting(self, audio_path: str) -> bool:
        return os.path.getsize(audio_path) > self.max_upload_bytes

    def split(self, audio_path: str, work_dir: str, duration: Optional[float] = None, force: bool = False) -> SplitResult:
        """
        Split a file into segments.

        Args:
            audio_path: Normalized audio file
            work_dir: Directory for segment files
            duration: Known duration in seconds (measured if missing)
            force: Split even when the file is within the size threshold

        Returns:
            SplitResult; ``segments`` is empty when splitting was bypassed

        Raises:
            TranscriptionError: If the file needs splitting but its duration is unknown
        """
        if not force and not self.needs_splitting(audio_path):
            logger.info(f"{os.path.basename(audio_path)} is within the upload limit, not splitting")
            return SplitResult(segments=[], total_duration=duration or 0.0)

        if not duration or duration <= 0:
            duration = get_audio_duration(audio_path, self.ffprobe_path)
        if duration <= 0:
            raise TranscriptionError("Could not determine audio duration for splitting")

        os.makedirs(work_dir, exist_ok=True)
        count = math.ceil(duration / self.segment_seconds)
        logger.info(f"Splitting {duration:.0f}s of audio into {count} segments of {self.segment_seconds}s")

        segments = []
        for index in range(count):
            start = float(index * self.segment_seconds)
            end = min(start + self.segment_seconds, duration)
            segments.append(self._extract(audio_path, work_dir, index, start, end))

        failed = [s.number for s in segments if s.error]
        if failed:
            logger.warning(f"Extraction failed for segments {failed}")

        return SplitResult(segments=segments, total_duration=duration)

    def _extract(self, audio_path: str, work_dir: str, index: int, start: float, end: float) -> AudioSegment:
        output_path = os.path.join(work_dir, f"segment_{index:03d}.mp3")
        args = [
            self.ffmpeg_path,
            "-y",
            "-ss",
            f"{start:.3f}",
            "-t",
            f"{end - start:.3f}",
            "-i",
            audio_path,
            "-ac",
            "1",
            "-ar",
            "16000",
            "-c:a",
            "libmp3lame",
            "-b:a",
            "64k",
            output_path,
        ]

        error = None
        try:
            result = run_command(args, self.extraction_timeout, description=f"segment {index + 1} extraction")
            if result.returncode != 0 or not os.path.exists(output_path):
                error = f"extraction failed: {stderr_tail(result.stderr, 1) or result.returncode}"
        except CommandTimeoutError as e:
            error = str(e)
        except OSError as e:
            error = f"extraction failed: {e}"

        if error:
            remove_quietly(output_path)
            return AudioSegment(index=index, path=None, start=start, end=end, error=error)

        return AudioSegment(
            index=index,
            path=output_path,
            start=start,
            end=end,
            size_bytes=os.path.getsize(output_path),
        )
