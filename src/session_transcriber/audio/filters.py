"""
Adaptive filter chains applied to audio before transcription.

A filter chain is an ordered tuple of typed filter operations. Each operation
renders itself to an ffmpeg audio filter; ``FilterChain.render`` joins them into
the single ``-af`` argument passed to ffmpeg.

``plan_filter_chain`` is a pure function of an AudioAnalysis: identical analyses
always give identical chains.
"""

import logging
import os
import time
from dataclasses import dataclass
from typing import List, Tuple, Union

from ..errors import CommandTimeoutError, FilterError
from .analysis import (
    TARGET_LOUDNESS_LUFS,
    TARGET_LOUDNESS_RANGE,
    TARGET_TRUE_PEAK,
    AudioAnalysis,
)
from .utils import remove_quietly, run_command, stderr_tail

logger = logging.getLogger(__name__)

TRANSCRIPTION_SAMPLE_RATE = 16000
TRANSCRIPTION_CHANNELS = 1


def _number(value: float) -> str:
    """Render a parameter without trailing zeros (4.0 -> "4", -1.5 -> "-1.5")."""
    return f"{value:g}"


@dataclass(frozen=True)
class Gain:
    db: float

    def render(self) -> str:
        return f"volume={_number(self.db)}dB"


@dataclass(frozen=True)
class Highpass:
    frequency: int
    poles: int = 2

    def render(self) -> str:
        return f"highpass=f={self.frequency}:poles={self.poles}"


@dataclass(frozen=True)
class Lowpass:
    frequency: int
    poles: int = 2

    def render(self) -> str:
        return f"lowpass=f={self.frequency}:poles={self.poles}"


@dataclass(frozen=True)
class Denoise:
    """FFT denoiser tracking the given noise floor (dB)."""

    noise_floor_db: float

    def render(self) -> str:
        return f"afftdn=nf={_number(self.noise_floor_db)}:nt=w:om=o"


@dataclass(frozen=True)
class Equalizer:
    frequency: int
    width_q: float
    gain_db: float

    def render(self) -> str:
        return f"equalizer=f={self.frequency}:t=q:w={_number(self.width_q)}:g={_number(self.gain_db)}"


@dataclass(frozen=True)
class Deesser:
    """Narrow-band cut in the sibilant range."""

    frequency: int = 6500
    width_q: float = 1.0
    gain_db: float = -4.0

    def render(self) -> str:
        return f"equalizer=f={self.frequency}:t=q:w={_number(self.width_q)}:g={_number(self.gain_db)}"


@dataclass(frozen=True)
class Compressor:
    threshold_db: float
    ratio: float
    attack_ms: int = 5
    release_ms: int = 50
    makeup: float = 2.0

    def render(self) -> str:
        return (
            f"acompressor=threshold={_number(self.threshold_db)}dB:ratio={_number(self.ratio)}"
            f":attack={self.attack_ms}:release={self.release_ms}:makeup={_number(self.makeup)}"
        )


@dataclass(frozen=True)
class LoudnessNorm:
    integrated: float = TARGET_LOUDNESS_LUFS
    true_peak: float = TARGET_TRUE_PEAK
    loudness_range: float = TARGET_LOUDNESS_RANGE

    def render(self) -> str:
        return f"loudnorm=I={_number(self.integrated)}:TP={_number(self.true_peak)}:LRA={_number(self.loudness_range)}"


@dataclass(frozen=True)
class Resample:
    sample_rate: int = TRANSCRIPTION_SAMPLE_RATE
    channels: int = TRANSCRIPTION_CHANNELS

    def render(self) -> str:
        # Channel count is applied with -ac on the output
        return f"aresample={self.sample_rate}"


FilterOperation = Union[Gain, Highpass, Lowpass, Denoise, Equalizer, Deesser, Compressor, LoudnessNorm, Resample]

SPEECH_CLARITY_EQ = (
    Equalizer(frequency=350, width_q=1.0, gain_db=2.0),
    Equalizer(frequency=2500, width_q=1.5, gain_db=3.0),
    Equalizer(frequency=5000, width_q=1.0, gain_db=1.0),
)


@dataclass(frozen=True)
class FilterChain:
    """Ordered filter operations."""

    operations: Tuple[FilterOperation, ...]

    def render(self) -> str:
        return ",".join(op.render() for op in self.operations)

    @property
    def output_format(self) -> Resample:
        """The Resample operation closing the chain (defaults if absent)."""
        for op in reversed(self.operations):
            if isinstance(op, Resample):
                return op
        return Resample()

    def kinds(self) -> List[str]:
        return [type(op).__name__ for op in self.operations]

    def __len__(self) -> int:
        return len(self.operations)


def plan_filter_chain(analysis: AudioAnalysis) -> FilterChain:
    """
    Plan the filter chain for an analysed file.

    Rules, in order:
    1. Gain boost when the mean level is below the speech target
    2. High-pass when low-frequency rumble or noise was detected
    3. Low-pass, always
    4. Denoise at the measured floor when noise was detected
    5. Speech clarity EQ, always
    6. De-ess when sibilance was detected
    7. Compression sized from the dynamic range
    8. Loudness normalization and resampling, always

    Args:
        analysis: Result of SignalAnalyzer.analyze

    Returns:
        FilterChain
    """
    rec = analysis.recommendations
    ops: List[FilterOperation] = []

    if rec.gain_db > 0:
        ops.append(Gain(db=rec.gain_db))

    if analysis.has_issue("rumble") or analysis.has_issue("noise"):
        ops.append(Highpass(frequency=rec.highpass_hz))

    ops.append(Lowpass(frequency=rec.lowpass_hz))

    if analysis.has_issue("noise"):
        ops.append(Denoise(noise_floor_db=rec.noise_floor_db))

    ops.extend(SPEECH_CLARITY_EQ)

    if analysis.has_issue("sibilance") and rec.deesser:
        ops.append(Deesser())

    ops.append(Compressor(threshold_db=rec.compressor_threshold_db, ratio=rec.compressor_ratio))
    ops.append(LoudnessNorm(integrated=rec.target_loudness))
    ops.append(Resample())

    return FilterChain(tuple(ops))


def default_filter_chain() -> FilterChain:
    """Conservative chain used when analysis is unavailable."""
    return FilterChain(
        (
            Highpass(frequency=80),
            Lowpass(frequency=8000),
            Compressor(threshold_db=-20.0, ratio=4.0),
            LoudnessNorm(),
            Resample(),
        )
    )


class FilterChainApplier:
    """Run ffmpeg with a planned filter chain."""

    def __init__(self, ffmpeg_path: str = "ffmpeg", timeout: float = 1800):
        self.ffmpeg_path = ffmpeg_path
        self.timeout = timeout

    def apply(self, input_path: str, output_path: str, chain: FilterChain) -> str:
        """
        Write a filtered 16-bit PCM WAV of the input.

        Args:
            input_path: Source audio
            output_path: Destination WAV path
            chain: Filter chain to apply

        Returns:
            output_path

        Raises:
            FilterError: If ffmpeg fails, times out or produces no output
        """
        fmt = chain.output_format
        args = [
            self.ffmpeg_path,
            "-y",
            "-i",
            input_path,
            "-af",
            chain.render(),
            "-ar",
            str(fmt.sample_rate),
            "-ac",
            str(fmt.channels),
            "-acodec",
            "pcm_s16le",
            output_path,
        ]

        start_time = time.time()
        try:
            result = run_command(args, self.timeout, description="filtered extraction")
        except CommandTimeoutError as e:
            remove_quietly(output_path)
            raise FilterError(str(e))
        except OSError as e:
            raise FilterError(f"ffmpeg unavailable: {e}")

        if result.returncode != 0 or not os.path.exists(output_path) or os.path.getsize(output_path) == 0:
            remove_quietly(output_path)
            raise FilterError(f"Filtered extraction failed: {stderr_tail(result.stderr) or result.returncode}")

        logger.info(f"Applied {len(chain)} filters in {time.time() - start_time:.1f}s")
        return output_path
