"""
Audio processing for long-form speech transcription.

This package turns a source recording into an enhanced, speaker-attributed transcript.

Main components:
- MediaAcquirer: Retrieve a source and extract a mono 16 kHz track (yt-dlp / ffmpeg)
- SignalAnalyzer: Measure loudness, noise floor, clipping and silence
- plan_filter_chain / FilterChainApplier: Adaptive ffmpeg filter chain
- SegmentSplitter: Fixed-length segments for files over the upload limit
- ChunkTranscriber: Speech-to-text per segment with gap markers for failures
- TranscriptEnhancer: LLM correction, classification and speaker resolution

Example usage:
    from session_transcriber.audio import SignalAnalyzer, plan_filter_chain

    analysis = SignalAnalyzer().analyze("meeting.mp3")
    chain = plan_filter_chain(analysis)
    print(chain.render())
"""

from .acquisition import AcquiredMedia, MediaAcquirer
from .analysis import AudioAnalysis, AudioIssue, FilterRecommendations, SignalAnalyzer, SignalMeasurements
from .enhancement import TranscriptEnhancer, remove_repetitions
from .filters import FilterChain, FilterChainApplier, default_filter_chain, plan_filter_chain
from .formatting import format_transcript_markdown
from .providers import (
    LanguageModelProvider,
    LocalWhisperProvider,
    OpenAILanguageProvider,
    OpenAISpeechProvider,
    SpeechToTextProvider,
    build_language_provider,
    build_speech_provider,
)
from .splitter import AudioSegment, SegmentSplitter, SplitResult
from .transcript import EnhancedTranscript, ParticipantRosterEntry, TranscriptSegment, TranscriptSummary
from .transcription import ChunkTranscriber, TranscriptFragment, gap_marker, join_fragments
from .utils import format_timestamp

__all__ = [
    "AcquiredMedia",
    "MediaAcquirer",
    "AudioAnalysis",
    "AudioIssue",
    "FilterRecommendations",
    "SignalAnalyzer",
    "SignalMeasurements",
    "TranscriptEnhancer",
    "remove_repetitions",
    "FilterChain",
    "FilterChainApplier",
    "default_filter_chain",
    "plan_filter_chain",
    "format_transcript_markdown",
    "LanguageModelProvider",
    "LocalWhisperProvider",
    "OpenAILanguageProvider",
    "OpenAISpeechProvider",
    "SpeechToTextProvider",
    "build_language_provider",
    "build_speech_provider",
    "AudioSegment",
    "SegmentSplitter",
    "SplitResult",
    "EnhancedTranscript",
    "ParticipantRosterEntry",
    "TranscriptSegment",
    "TranscriptSummary",
    "ChunkTranscriber",
    "TranscriptFragment",
    "gap_marker",
    "join_fragments",
    "format_timestamp",
]
