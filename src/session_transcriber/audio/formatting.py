"""
Markdown rendering of an enhanced transcript for the knowledge store.
"""

from collections import Counter
from datetime import datetime
from typing import List, Optional, Sequence

from .transcript import EnhancedTranscript
from .utils import format_timestamp

SENTIMENT_LABELS = {"positive": "😊 positive", "neutral": "😐 neutral", "negative": "😟 negative"}


def format_transcript_markdown(
    transcript: EnhancedTranscript,
    title: str,
    source: str,
    audio_issues: Optional[Sequence[str]] = None,
    generated_at: Optional[datetime] = None,
) -> str:
    """
    Render the transcript as a Markdown document.

    Args:
        transcript: Enhanced transcript
        title: Display title of the recording
        source: Source locator
        audio_issues: Audio issue tags detected before filtering
        generated_at: Timestamp printed in the header (defaults to now)

    Returns:
        Markdown text
    """
    summary = transcript.summary
    generated_at = generated_at or datetime.now()
    lines: List[str] = [
        f"# {title}",
        "",
        f"**Source:** {source}",
        "",
        f"**Duration:** {format_timestamp(summary.duration)}",
        "",
        f"**Transcribed:** {generated_at.strftime('%Y-%m-%d %H:%M')}",
        "",
    ]

    if audio_issues:
        lines += [f"**Audio issues:** {', '.join(audio_issues)}", ""]

    lines += ["## Summary", "", "| Metric | Value |", "|---|---|", f"| Speakers | {summary.speaker_count} |"]
    if transcript.include_sentiment:
        lines += [
            f"| Dominant sentiment | {SENTIMENT_LABELS.get(summary.dominant_sentiment, summary.dominant_sentiment)} |",
            f"| Average tension | {summary.average_tension}/10 |",
            f"| Overall credibility | {summary.credibility_emoji} {summary.overall_credibility}% |",
        ]
    if transcript.gap_count:
        lines.append(f"| Untranscribed segments | {transcript.gap_count} |")
    lines.append("")

    spoken = [s for s in transcript.segments if not s.is_gap]
    counts = Counter(s.speaker for s in spoken)
    roles = {s.speaker: s.speaker_role for s in spoken if s.speaker_role}
    if counts:
        lines += ["## Participants", ""]
        for speaker in summary.speakers or tuple(counts):
            role = f" ({roles[speaker]})" if speaker in roles else ""
            lines.append(f"- **{speaker}**{role}: {counts.get(speaker, 0)} statements")
        lines.append("")

    lines += ["## Proceedings", ""]
    for segment in transcript.segments:
        if segment.is_gap:
            lines += [f"**[{segment.time_label}]** _{segment.text}_", ""]
            continue

        header = f"**[{segment.time_label}] {segment.speaker}**"
        if transcript.include_sentiment:
            header += (
                f" {segment.emotion_emoji} {segment.emotion} | tension {segment.tension}/10"
                f" | {segment.credibility_emoji} {segment.credibility}%"
            )
        lines += [header, "", segment.text, ""]

    lines += ["## Full transcript", "", transcript.corrected_transcript, ""]
    return "\n".join(lines)
