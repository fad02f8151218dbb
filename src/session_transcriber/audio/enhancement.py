"""
Language-model enhancement of a raw transcript.

Three best-effort passes run over the transcript fragments:
1. Correction: fixes obvious transcription errors block by block; a failed block keeps its raw text
2. Classification: labels utterances with speaker, sentiment, emotion, tension and credibility;
   unparsable output falls back to neutral default segments
3. Speaker resolution (optional): maps generic labels to a known participant roster;
   unmapped labels are left unchanged

No pass can fail the job. Failed fragments (gap markers) are never sent to the model and
appear in the output as gap segments at their original position.
"""

import logging
import re
import threading
from dataclasses import replace
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..errors import EnhancementError
from .providers import LanguageModelProvider
from .transcript import (
    DEFAULT_SPEAKER,
    GAP_SPEAKER,
    SENTIMENTS,
    EnhancedTranscript,
    ParticipantRosterEntry,
    TranscriptSegment,
    neutral_segment,
    summarize_segments,
)
from .transcription import GAP_MARKER_PATTERN, TranscriptFragment, join_fragments
from .utils import call_with_timeout, parse_timestamp

logger = logging.getLogger(__name__)

CORRECTION_BLOCK_CHARS = 30000
CLASSIFICATION_BLOCK_CHARS = 15000
RESOLUTION_TRANSCRIPT_CHARS = 10000
RESOLUTION_SAMPLE_SEGMENTS = 20
RESOLUTION_SAMPLE_TEXT_CHARS = 100
MIN_REPEATS = 3
MAX_REPEATED_WORDS = 4

_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+")
_NON_WORD = re.compile(r"[^\w\s]")


def _normalize(text: str) -> str:
    return _NON_WORD.sub("", text.lower()).strip()


def collapse_repeated_phrases(text: str) -> str:
    """
    Collapse a 1-4 word sequence repeated 3 or more times in a row to one occurrence.

    Matching ignores case and punctuation. Longer sequences are tried first.
    """
    words = text.split()
    normalized = [_normalize(w) for w in words]
    kept: List[str] = []
    i = 0

    while i < len(words):
        collapsed = False
        for size in range(MAX_REPEATED_WORDS, 0, -1):
            if i + size * MIN_REPEATS > len(words):
                continue
            sequence = normalized[i : i + size]
            if not any(sequence):
                continue

            j = i + size
            repeats = 1
            while j + size <= len(words) and normalized[j : j + size] == sequence:
                repeats += 1
                j += size

            if repeats >= MIN_REPEATS:
                kept.extend(words[i : i + size])
                i = j
                collapsed = True
                break

        if not collapsed:
            kept.append(words[i])
            i += 1

    return " ".join(kept)


def drop_duplicate_sentences(text: str) -> str:
    """Remove sentences identical (ignoring case and punctuation) to the sentence before them."""
    kept: List[str] = []
    previous = None
    for sentence in _SENTENCE_BOUNDARY.split(text.strip()):
        key = _normalize(sentence)
        if key and key == previous:
            continue
        kept.append(sentence)
        previous = key
    return " ".join(kept)


def remove_repetitions(text: str) -> str:
    """
    Remove speech-to-text hallucination loops paragraph by paragraph.

    Gap markers are left untouched.
    """
    paragraphs = []
    for paragraph in text.split("\n\n"):
        if GAP_MARKER_PATTERN.fullmatch(paragraph.strip()):
            paragraphs.append(paragraph.strip())
            continue
        cleaned = drop_duplicate_sentences(collapse_repeated_phrases(paragraph))
        if cleaned:
            paragraphs.append(cleaned)
    return "\n\n".join(paragraphs)


def split_into_blocks(text: str, max_chars: int) -> List[str]:
    """
    Split text into blocks of at most ``max_chars``.

    Breaks at paragraph boundaries, then sentence boundaries, and only cuts inside a
    sentence when a single sentence is longer than the limit.
    """
    # (text, separator placed before it when joined to the previous unit)
    units: List[Tuple[str, str]] = []
    for paragraph in text.split("\n\n"):
        paragraph = paragraph.strip()
        if not paragraph:
            continue
        if len(paragraph) <= max_chars:
            units.append((paragraph, "\n\n"))
            continue
        separator = "\n\n"
        for sentence in _SENTENCE_BOUNDARY.split(paragraph):
            while len(sentence) > max_chars:
                units.append((sentence[:max_chars], separator))
                sentence = sentence[max_chars:]
                separator = " "
            if sentence:
                units.append((sentence, separator))
                separator = " "

    blocks: List[str] = []
    current = ""
    for unit, separator in units:
        if current and len(current) + len(separator) + len(unit) > max_chars:
            blocks.append(current)
            current = unit
        else:
            current = f"{current}{separator}{unit}" if current else unit
    if current:
        blocks.append(current)
    return blocks


def _bounded_int(value: Any, low: int, high: int, default: int) -> int:
    try:
        number = int(round(float(value)))
    except (TypeError, ValueError):
        return default
    return max(low, min(high, number))


def normalize_utterance(
    raw: Dict[str, Any], window_start: float, window_end: float, previous: float
) -> Optional[TranscriptSegment]:
    """
    Convert one raw model utterance to a TranscriptSegment.

    The timestamp is clamped into [window_start, window_end] and never earlier than
    ``previous``. Scores are clamped to their ranges.

    Returns:
        TranscriptSegment, or None if the utterance has no text
    """
    text = str(raw.get("text") or "").strip()
    if not text:
        return None

    timestamp = parse_timestamp(raw.get("timestamp"))
    if timestamp is None:
        timestamp = previous
    timestamp = max(previous, window_start, min(timestamp, window_end))

    sentiment = str(raw.get("sentiment") or "neutral").lower()
    if sentiment not in SENTIMENTS:
        sentiment = "neutral"

    return TranscriptSegment(
        timestamp=timestamp,
        speaker=str(raw.get("speaker") or DEFAULT_SPEAKER).strip() or DEFAULT_SPEAKER,
        text=text,
        sentiment=sentiment,
        emotion=str(raw.get("emotion") or "neutral").strip(),
        emotion_emoji=str(raw.get("emotionEmoji") or raw.get("emotion_emoji") or "😐").strip(),
        tension=_bounded_int(raw.get("tension"), 0, 10, 5),
        credibility=_bounded_int(raw.get("credibility"), 0, 100, 50),
    )


def strip_sentiment(segment: TranscriptSegment) -> TranscriptSegment:
    """Reset the affect fields of a segment to neutral defaults."""
    return replace(segment, sentiment="neutral", emotion="neutral", emotion_emoji="😐", tension=5, credibility=50)


class TranscriptEnhancer:
    """Correct, classify and attribute a transcript with a language model."""

    def __init__(
        self,
        provider: LanguageModelProvider,
        timeout: float = 120,
        provider_slots: Optional[threading.Semaphore] = None,
    ):
        """
        Initialize the enhancer.

        Args:
            provider: Language-model provider
            timeout: Deadline for each model call in seconds
            provider_slots: Semaphore shared across jobs limiting concurrent classification calls
        """
        self.provider = provider
        self.timeout = timeout
        self.provider_slots = provider_slots

    def _call(self, func, *args, description: str, limited: bool = False):
        slot = self.provider_slots if limited else None
        return call_with_timeout(func, self.timeout, *args, description=description, slot=slot)

    def enhance(
        self,
        fragments: Sequence[TranscriptFragment],
        include_sentiment: bool = True,
        identify_speakers: bool = True,
        roster: Optional[Sequence[ParticipantRosterEntry]] = None,
        duration: Optional[float] = None,
    ) -> EnhancedTranscript:
        """
        Run all enhancement passes.

        Args:
            fragments: Transcript fragments in any order (gap fragments included)
            include_sentiment: Keep sentiment, emotion, tension and credibility labels
            identify_speakers: Resolve generic speaker labels against ``roster``
            roster: Known participants
            duration: Recording duration in seconds (defaults to the last fragment end)

        Returns:
            EnhancedTranscript
        """
        ordered = sorted(fragments, key=lambda f: f.index)
        degraded: List[str] = []
        raw_transcript = join_fragments(ordered)
        if duration is None:
            duration = max((f.end for f in ordered), default=0.0)

        corrected = self._correct(ordered, degraded)
        corrected_transcript = join_fragments(corrected)

        segments = self._classify(corrected, corrected_transcript, degraded)

        if not include_sentiment:
            segments = [strip_sentiment(s) for s in segments]

        if identify_speakers and roster:
            segments = self._resolve_speakers(segments, list(roster), corrected_transcript, degraded)

        logger.info(
            f"Enhanced transcript: {len(segments)} segments, "
            f"degraded steps: {', '.join(degraded) if degraded else 'none'}"
        )
        return EnhancedTranscript(
            raw_transcript=raw_transcript,
            corrected_transcript=corrected_transcript,
            segments=tuple(segments),
            summary=summarize_segments(segments, duration),
            include_sentiment=include_sentiment,
            degraded_steps=tuple(dict.fromkeys(degraded)),
        )

    def _correct(self, fragments: List[TranscriptFragment], degraded: List[str]) -> List[TranscriptFragment]:
        corrected = []
        for fragment in fragments:
            if fragment.is_gap or not fragment.text.strip():
                corrected.append(fragment)
                continue

            cleaned = remove_repetitions(fragment.text)
            blocks = []
            for block in split_into_blocks(cleaned, CORRECTION_BLOCK_CHARS):
                blocks.append(self._correct_block(block, degraded))
            corrected.append(replace(fragment, text="\n\n".join(blocks)))
        return corrected

    def _correct_block(self, block: str, degraded: List[str]) -> str:
        try:
            result = self._call(self.provider.correct_text, block, description="transcript correction")
        except Exception as e:
            logger.warning(f"Correction failed, keeping raw text: {e}")
            degraded.append("correction")
            return block

        result = (result or "").strip()
        if not result:
            logger.warning("Correction returned no text, keeping raw text")
            degraded.append("correction")
            return block
        if GAP_MARKER_PATTERN.search(result):
            logger.warning("Correction introduced a gap marker, keeping raw text")
            degraded.append("correction")
            return block
        return result

    def _classify(
        self, fragments: List[TranscriptFragment], corrected_transcript: str, degraded: List[str]
    ) -> List[TranscriptSegment]:
        segments: List[TranscriptSegment] = []
        attempted = 0
        parsed = 0
        previous = 0.0

        for fragment in fragments:
            if fragment.is_gap:
                start = max(previous, fragment.start)
                segments.append(
                    TranscriptSegment(timestamp=start, speaker=GAP_SPEAKER, text=fragment.text.strip(), is_gap=True)
                )
                previous = start
                continue

            text = fragment.text.strip()
            if not text:
                continue

            for block, window_start, window_end in self._windows(fragment, text):
                attempted += 1
                window_start = max(previous, window_start)
                try:
                    block_segments = self._classify_block(block, window_start, window_end)
                    parsed += 1
                except Exception as e:
                    logger.warning(f"Classification failed for block at {window_start:.0f}s: {e}")
                    degraded.append("classification")
                    block_segments = [neutral_segment(block, timestamp=window_start)]

                segments.extend(block_segments)
                previous = block_segments[-1].timestamp

        if attempted and not parsed:
            logger.warning("No classification response could be used, falling back to a single neutral segment")
            return [neutral_segment(corrected_transcript)]
        return segments

    def _windows(self, fragment: TranscriptFragment, text: str) -> List[Tuple[str, float, float]]:
        """Split a fragment into classification blocks with estimated time windows."""
        blocks = split_into_blocks(text, CLASSIFICATION_BLOCK_CHARS)
        span = max(0.0, fragment.end - fragment.start)
        total_chars = sum(len(b) for b in blocks) or 1

        windows = []
        consumed = 0
        for block in blocks:
            start = fragment.start + span * consumed / total_chars
            consumed += len(block)
            end = fragment.start + span * consumed / total_chars
            windows.append((block, start, max(start, end)))
        return windows

    def _classify_block(self, block: str, window_start: float, window_end: float) -> List[TranscriptSegment]:
        raw_segments = self._call(
            self.provider.classify_utterances,
            block,
            window_start,
            description="utterance classification",
            limited=True,
        )
        if not isinstance(raw_segments, list):
            raise EnhancementError("Classification did not return a list")

        segments = []
        previous = window_start
        for raw in raw_segments:
            if not isinstance(raw, dict):
                continue
            segment = normalize_utterance(raw, window_start, window_end, previous)
            if segment is not None:
                segments.append(segment)
                previous = segment.timestamp

        if not segments:
            raise EnhancementError("Classification returned no usable utterances")
        return segments

    def _resolve_speakers(
        self,
        segments: List[TranscriptSegment],
        roster: List[ParticipantRosterEntry],
        transcript: str,
        degraded: List[str],
    ) -> List[TranscriptSegment]:
        spoken = [s for s in segments if not s.is_gap]
        labels = {s.speaker for s in spoken}
        if not labels:
            return segments

        sample = [
            {"speaker": s.speaker, "text": s.text[:RESOLUTION_SAMPLE_TEXT_CHARS]}
            for s in spoken[:RESOLUTION_SAMPLE_SEGMENTS]
        ]
        try:
            identified = self._call(
                self.provider.resolve_speakers,
                [entry.to_prompt() for entry in roster],
                sample,
                transcript[:RESOLUTION_TRANSCRIPT_CHARS],
                description="speaker resolution",
            )
        except Exception as e:
            logger.warning(f"Speaker resolution failed, keeping generic labels: {e}")
            degraded.append("speaker_resolution")
            return segments

        mapping: Dict[str, Tuple[str, Optional[str]]] = {}
        for entry in identified or []:
            original = str(entry.get("originalSpeaker") or "").strip()
            name = str(entry.get("identifiedName") or "").strip()
            if original in labels and name:
                role = str(entry.get("role") or "").strip() or None
                mapping[original] = (name, role)

        if mapping:
            logger.info(f"Resolved {len(mapping)} of {len(labels)} speaker labels")

        return [
            s.with_speaker(*mapping[s.speaker]) if not s.is_gap and s.speaker in mapping else s for s in segments
        ]
