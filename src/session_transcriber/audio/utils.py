"""
Utility functions for audio processing.

This module provides helpers shared by the audio stages: timestamp formatting,
bounded execution of external tools and provider calls, duration probing and
temporary file cleanup.

Every external call in the pipeline goes through either ``run_command`` (child
processes) or ``call_with_timeout`` (in-process provider calls), so each one has
the same shape: wait with a deadline, abandon or kill on expiry, raise
``CommandTimeoutError``.
"""

import logging
import os
import subprocess
import threading
import wave
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence

from ..errors import CommandTimeoutError

logger = logging.getLogger(__name__)


def format_timestamp(seconds: float) -> str:
    """
    Format seconds as HH:MM:SS.

    Args:
        seconds: Time in seconds

    Returns:
        Formatted time string
    """
    seconds = max(0.0, seconds)
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def parse_timestamp(value: Any) -> Optional[float]:
    """
    Parse "HH:MM:SS", "MM:SS", "SS" (or a number) into seconds.

    Returns:
        Seconds, or None if the value cannot be parsed
    """
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        return None

    parts = value.strip().strip("[]").split(":")
    if not parts or len(parts) > 3:
        return None

    try:
        numbers = [float(part) for part in parts]
    except ValueError:
        return None

    seconds = 0.0
    for number in numbers:
        seconds = seconds * 60 + number
    return seconds


def parse_duration_string(value: str) -> float:
    """Parse a retrieval tool duration such as "1:02:03" or "45" into seconds (0.0 if unknown)."""
    parsed = parse_timestamp(value)
    return parsed if parsed is not None else 0.0



def run_command(args: Sequence[str], timeout: float, description: Optional[str] = None) -> subprocess.CompletedProcess:
    """
    Run an external tool with a hard deadline.

    The child is killed when the deadline passes. A non-zero exit is returned to the
    caller (not raised) so each stage can map the tool's diagnostics to its own error.

    Args:
        args: Command line, executable first
        timeout: Deadline in seconds
        description: Short label used in log and error messages

    Returns:
        CompletedProcess with text stdout/stderr

    Raises:
        FileNotFoundError: If the executable does not exist
        CommandTimeoutError: If the deadline passed (the process has been killed)
    """
    label = description or Path(args[0]).name
    logger.debug(f"Running {label}: {' '.join(str(a) for a in args)}")
    try:
        # run() kills the child before re-raising TimeoutExpired
        return subprocess.run(
            [str(a) for a in args],
            capture_output=True,
            text=True,
            errors="replace",
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        logger.warning(f"{label} exceeded {timeout:g}s and was killed")
        raise CommandTimeoutError(label, timeout)


def call_with_timeout(
    func: Callable[..., Any],
    timeout: float,
    *args: Any,
    description: str = "call",
    slot: Optional[threading.Semaphore] = None,
    **kwargs: Any,
) -> Any:
    """
    Run a blocking provider call with a deadline.

    The call runs on a daemon thread. If it does not finish in time the caller stops
    waiting and gets ``CommandTimeoutError``; the abandoned thread's result is discarded.
    Exceptions raised by ``func`` are re-raised in the caller.

    When ``slot`` is given it is acquired before the deadline starts and released by
    the call thread once ``func`` returns, so an abandoned call keeps its slot until
    it actually ends.

    Args:
        func: Callable to run
        timeout: Deadline in seconds
        *args: Positional arguments for ``func``
        description: Short label used in log and error messages
        slot: Semaphore bounding concurrent calls
        **kwargs: Keyword arguments for ``func``

    Returns:
        Whatever ``func`` returns
    """
    outcome: dict = {}

    def target():
        try:
            outcome["value"] = func(*args, **kwargs)
        except BaseException as e:  # re-raised in the calling thread
            outcome["error"] = e
        finally:
            if slot is not None:
                slot.release()

    if slot is not None:
        slot.acquire()
    worker = threading.Thread(target=target, name=f"timeout-{description}", daemon=True)
    worker.start()
    worker.join(timeout)

    if worker.is_alive():
        logger.warning(f"{description} exceeded {timeout:g}s, abandoning")
        raise CommandTimeoutError(description, timeout)

    if "error" in outcome:
        raise outcome["error"]
    return outcome.get("value")


def stderr_tail(text: str, lines: int = 5) -> str:
    """Return the last non-empty lines of a tool's diagnostic output."""
    kept: List[str] = [line.strip() for line in (text or "").splitlines() if line.strip()]
    return "\n".join(kept[-lines:])


def get_audio_duration(filepath: str, ffprobe_path: str = "ffprobe", timeout: float = 60) -> float:
    """
    Get the duration of an audio file in seconds.

    Uses ffprobe, falling back to the WAV header for PCM files.

    Args:
        filepath: Path to audio file
        ffprobe_path: ffprobe executable
        timeout: Deadline for the ffprobe call

    Returns:
        Duration in seconds (0.0 if it cannot be determined)
    """
    try:
        result = run_command(
            [
                ffprobe_path,
                "-v",
                "error",
                "-show_entries",
                "format=duration",
                "-of",
                "default=noprint_wrappers=1:nokey=1",
                filepath,
            ],
            timeout,
            description="ffprobe duration",
        )
        if result.returncode == 0:
            return float(result.stdout.strip())
    except (OSError, ValueError, CommandTimeoutError) as e:
        logger.debug(f"ffprobe could not read duration for {filepath}: {e}")

    try:
        return get_wav_duration(filepath)
    except (wave.Error, EOFError, OSError) as e:
        logger.error(f"Could not get duration for {filepath}: {e}")
        return 0.0


def get_wav_duration(filepath: str) -> float:
    """
    Get duration of a WAV file in seconds.

    Args:
        filepath: Path to WAV file

    Returns:
        Duration in seconds
    """
    with wave.open(filepath, "rb") as wf:
        frames = wf.getnframes()
        rate = wf.getframerate()
        return frames / float(rate)


def remove_quietly(path: Optional[str]) -> None:
    """Delete a temporary file if it exists, logging instead of raising."""
    if not path:
        return
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Could not remove temporary file {path}: {e}")
