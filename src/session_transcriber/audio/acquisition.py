"""
Media acquisition: fetch a source and extract a mono 16 kHz audio track.

Remote sources go through yt-dlp (audio-only extraction, ffmpeg post-processing
to mono 16 kHz). Local files are converted directly with ffmpeg. Any failure here
is fatal for the job.
"""

import logging
import os
import re
from dataclasses import dataclass
from typing import Optional, Tuple
from urllib.parse import urlparse

from ..errors import AcquisitionError, CommandTimeoutError, SourceTooLargeError, ToolMissingError
from .utils import parse_duration_string, get_audio_duration, run_command, stderr_tail

logger = logging.getLogger(__name__)

FIELD_SEPARATOR = "|||"

SIZE_UNITS = "KMGTPEZY"


@dataclass(frozen=True)
class AcquiredMedia:
    """A normalized local audio track."""

    path: str
    title: str
    duration: float
    source: str

    @property
    def size_bytes(self) -> int:
        return os.path.getsize(self.path)


def is_remote(source: str) -> bool:
    return urlparse(source).scheme in ("http", "https")


def parse_size_limit(value: str) -> Optional[int]:
    """Convert a yt-dlp size such as "500M" or "10k" to bytes (binary multiples); None if unset or invalid."""
    match = re.match(r"^(\d+(?:\.\d+)?)([kmgtpezy]?)$", (value or "").strip(), re.IGNORECASE)
    if not match:
        return None
    number, unit = match.groups()
    power = SIZE_UNITS.index(unit.upper()) + 1 if unit else 0
    return int(float(number) * 1024**power)


def parse_ytdlp_output(stdout: str) -> Tuple[Optional[str], str, float, Optional[float]]:
    """
    Parse the lines printed by ``--print after_move:filepath`` and the
    ``title|||duration|||filesize`` metadata line.

    The metadata line is printed before the download starts, so it is present even
    when the size guard skipped the download.

    Returns:
        (filepath, title, duration_seconds, filesize_bytes); filepath is None if no
        path was printed and filesize is None if the source did not report one
    """
    filepath = None
    title = ""
    duration = 0.0
    filesize = None

    for line in stdout.splitlines():
        line = line.strip()
        if not line:
            continue
        if FIELD_SEPARATOR in line:
            fields = line.split(FIELD_SEPARATOR)
            title = fields[0]
            if len(fields) > 1:
                duration = parse_duration_string(fields[1].strip())
            if len(fields) > 2:
                try:
                    filesize = float(fields[2].strip())
                except ValueError:
                    filesize = None
        else:
            filepath = line

    return filepath, title.strip(), duration, filesize


class MediaAcquirer:
    """Retrieve a source locator into a local normalized audio file."""

    def __init__(
        self,
        ytdlp_path: str = "yt-dlp",
        ffmpeg_path: str = "ffmpeg",
        ffprobe_path: str = "ffprobe",
        max_filesize: str = "500M",
        timeout: float = 3600,
    ):
        """
        Initialize the acquirer.

        Args:
            ytdlp_path: yt-dlp executable
            ffmpeg_path: ffmpeg executable (passed to yt-dlp when not on PATH)
            ffprobe_path: ffprobe executable used when the tool reports no duration
            max_filesize: yt-dlp size guard (e.g. "500M")
            timeout: Deadline for the whole retrieval in seconds
        """
        self.ytdlp_path = ytdlp_path
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path
        self.max_filesize = max_filesize
        self.timeout = timeout

    def acquire(self, source: str, work_dir: str) -> AcquiredMedia:
        """
        Retrieve a source into ``work_dir``.

        Args:
            source: Remote URL or local file path
            work_dir: Directory that receives the audio file

        Returns:
            AcquiredMedia

        Raises:
            ToolMissingError: If yt-dlp or ffmpeg is not installed
            SourceTooLargeError: If the source exceeds the size guard
            AcquisitionError: For any other retrieval failure
        """
        os.makedirs(work_dir, exist_ok=True)

        if is_remote(source):
            media = self._download(source, work_dir)
        elif os.path.isfile(source):
            media = self._convert_local(source, work_dir)
        else:
            raise AcquisitionError(f"Source not found or unsupported: {source}")

        logger.info(f"Acquired '{media.title}' ({media.duration:.0f}s) to {media.path}")
        return media

    def build_download_command(self, url: str, work_dir: str) -> list:
        args = [
            self.ytdlp_path,
            "-x",
            "--audio-format",
            "mp3",
            "--audio-quality",
            "9",
            "--postprocessor-args",
            "ffmpeg:-ac 1 -ar 16000",
            "-o",
            os.path.join(work_dir, "source.%(ext)s"),
            "--no-playlist",
            "--max-filesize",
            self.max_filesize,
            "--print",
            "after_move:filepath",
            "--print",
            f"%(title)s{FIELD_SEPARATOR}%(duration_string)s{FIELD_SEPARATOR}%(filesize,filesize_approx)s",
        ]
        ffmpeg_dir = os.path.dirname(self.ffmpeg_path)
        if ffmpeg_dir:
            args.extend(["--ffmpeg-location", ffmpeg_dir])
        args.append(url)
        return args

    def _download(self, url: str, work_dir: str) -> AcquiredMedia:
        logger.info(f"Downloading audio from {url}")
        try:
            result = run_command(self.build_download_command(url, work_dir), self.timeout, description="yt-dlp")
        except FileNotFoundError:
            raise ToolMissingError("yt-dlp is not installed")
        except CommandTimeoutError as e:
            raise AcquisitionError(f"Download {e}")
        except OSError as e:
            raise AcquisitionError(f"Could not start yt-dlp: {e}")

        if result.returncode != 0:
            if "not found" in result.stderr.lower() and "ffmpeg" in result.stderr.lower():
                raise ToolMissingError("ffmpeg is not installed (required by yt-dlp)")
            raise AcquisitionError(f"Download failed: {stderr_tail(result.stderr) or f'exit code {result.returncode}'}")

        filepath, title, duration, filesize = parse_ytdlp_output(result.stdout)
        if not filepath or not os.path.isfile(filepath):
            # yt-dlp skips oversized files quietly and still exits 0
            limit = parse_size_limit(self.max_filesize)
            if limit is not None and (filesize is None or filesize > limit):
                reported = f" ({filesize / 1024**2:.1f} MiB)" if filesize else ""
                raise SourceTooLargeError(f"Source{reported} is larger than the {self.max_filesize} limit")
            raise AcquisitionError("Download finished but no audio file was produced")

        if duration <= 0:
            duration = get_audio_duration(filepath, self.ffprobe_path)

        return AcquiredMedia(path=filepath, title=title or os.path.basename(filepath), duration=duration, source=url)

    def _convert_local(self, source: str, work_dir: str) -> AcquiredMedia:
        output_path = os.path.join(work_dir, "source.mp3")
        logger.info(f"Converting local file {source}")
        try:
            result = run_command(
                [
                    self.ffmpeg_path,
                    "-y",
                    "-i",
                    source,
                    "-vn",
                    "-ac",
                    "1",
                    "-ar",
                    "16000",
                    "-c:a",
                    "libmp3lame",
                    "-q:a",
                    "9",
                    output_path,
                ],
                self.timeout,
                description="ffmpeg convert",
            )
        except FileNotFoundError:
            raise ToolMissingError("ffmpeg is not installed")
        except CommandTimeoutError as e:
            raise AcquisitionError(f"Conversion {e}")
        except OSError as e:
            raise AcquisitionError(f"Could not start ffmpeg: {e}")

        if result.returncode != 0 or not os.path.isfile(output_path):
            raise AcquisitionError(f"Conversion failed: {stderr_tail(result.stderr) or f'exit code {result.returncode}'}")

        title = os.path.splitext(os.path.basename(source))[0]
        return AcquiredMedia(
            path=output_path,
            title=title,
            duration=get_audio_duration(output_path, self.ffprobe_path),
            source=source,
        )
