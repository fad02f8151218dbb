"""
Value types for enhanced transcripts.
"""

from collections import Counter
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple

from .utils import format_timestamp

SENTIMENTS = ("neutral", "positive", "negative")
DEFAULT_SPEAKER = "Speaker"
GAP_SPEAKER = "Unknown"


def credibility_emoji(score: float) -> str:
    """Glyph for a 0-100 credibility score."""
    if score >= 90:
        return "✅"
    if score >= 70:
        return "🟢"
    if score >= 50:
        return "🟡"
    if score >= 30:
        return "⚠️"
    return "🔴"


@dataclass(frozen=True)
class ParticipantRosterEntry:
    """A known participant used to resolve generic speaker labels."""

    id: str
    name: str
    role: str
    voice_descriptor: Optional[str] = None

    def to_prompt(self) -> Dict[str, str]:
        return {"name": self.name, "role": self.role}


@dataclass(frozen=True)
class TranscriptSegment:
    """One labelled utterance."""

    timestamp: float
    speaker: str
    text: str
    sentiment: str = "neutral"
    emotion: str = "neutral"
    emotion_emoji: str = "😐"
    tension: int = 5
    credibility: int = 50
    speaker_role: Optional[str] = None
    is_gap: bool = False

    @property
    def credibility_emoji(self) -> str:
        return credibility_emoji(self.credibility)

    @property
    def time_label(self) -> str:
        return format_timestamp(self.timestamp)

    def with_speaker(self, name: str, role: Optional[str]) -> "TranscriptSegment":
        return replace(self, speaker=name, speaker_role=role or self.speaker_role)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["time_label"] = self.time_label
        data["credibility_emoji"] = self.credibility_emoji
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TranscriptSegment":
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


def neutral_segment(text: str, timestamp: float = 0.0, speaker: str = DEFAULT_SPEAKER) -> TranscriptSegment:
    """Default segment used when classification is unavailable."""
    return TranscriptSegment(timestamp=timestamp, speaker=speaker, text=text)


@dataclass(frozen=True)
class TranscriptSummary:
    """Aggregate over the labelled utterances of one transcript."""

    average_tension: float
    dominant_sentiment: str
    overall_credibility: int
    speaker_count: int
    duration: float
    speakers: Tuple[str, ...] = ()

    @property
    def credibility_emoji(self) -> str:
        return credibility_emoji(self.overall_credibility)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["speakers"] = list(self.speakers)
        data["duration_label"] = format_timestamp(self.duration)
        data["credibility_emoji"] = self.credibility_emoji
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TranscriptSummary":
        values = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        values["speakers"] = tuple(values.get("speakers", ()))
        return cls(**values)


def summarize_segments(segments: List[TranscriptSegment], duration: float) -> TranscriptSummary:
    """
    Compute the summary aggregate, ignoring gap segments.

    Ties for the dominant sentiment go to the earlier entry of SENTIMENTS.
    """
    spoken = [s for s in segments if not s.is_gap]
    if not spoken:
        return TranscriptSummary(
            average_tension=5.0, dominant_sentiment="neutral", overall_credibility=50, speaker_count=0, duration=duration
        )

    counts = Counter(s.sentiment for s in spoken)
    dominant = max(SENTIMENTS, key=lambda sentiment: (counts.get(sentiment, 0), -SENTIMENTS.index(sentiment)))

    speakers: List[str] = []
    for segment in spoken:
        if segment.speaker not in speakers:
            speakers.append(segment.speaker)

    return TranscriptSummary(
        average_tension=round(sum(s.tension for s in spoken) / len(spoken), 1),
        dominant_sentiment=dominant,
        overall_credibility=round(sum(s.credibility for s in spoken) / len(spoken)),
        speaker_count=len(speakers),
        duration=duration,
        speakers=tuple(speakers),
    )


@dataclass(frozen=True)
class EnhancedTranscript:
    """Output of the transcript enhancer."""

    raw_transcript: str
    corrected_transcript: str
    segments: Tuple[TranscriptSegment, ...]
    summary: TranscriptSummary
    include_sentiment: bool = True
    degraded_steps: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def gap_count(self) -> int:
        return sum(1 for s in self.segments if s.is_gap)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "raw_transcript": self.raw_transcript,
            "corrected_transcript": self.corrected_transcript,
            "segments": [s.to_dict() for s in self.segments],
            "summary": self.summary.to_dict(),
            "include_sentiment": self.include_sentiment,
            "degraded_steps": list(self.degraded_steps),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EnhancedTranscript":
        return cls(
            raw_transcript=data.get("raw_transcript", ""),
            corrected_transcript=data.get("corrected_transcript", ""),
            segments=tuple(TranscriptSegment.from_dict(s) for s in data.get("segments", [])),
            summary=TranscriptSummary.from_dict(data.get("summary", {})),
            include_sentiment=data.get("include_sentiment", True),
            degraded_steps=tuple(data.get("degraded_steps", [])),
        )
