from datetime import datetime

from session_transcriber.audio.formatting import format_transcript_markdown
from session_transcriber.audio.transcript import (
    EnhancedTranscript,
    TranscriptSegment,
    summarize_segments,
)

GENERATED = datetime(2024, 5, 14, 19, 30)


def make_transcript(include_sentiment=True):
    segments = (
        TranscriptSegment(0.0, "Dana Whitfield", "Call to order.", "positive", "calm", "🙂", 2, 95, speaker_role="Mayor"),
        TranscriptSegment(610.0, "Unknown", "[segment 2 failed: timed out]", is_gap=True),
        TranscriptSegment(1205.0, "Luis Ortega", "The numbers do not add up.", "negative", "frustrated", "😠", 7, 60),
    )
    return EnhancedTranscript(
        raw_transcript="raw",
        corrected_transcript="Call to order.\n\n[segment 2 failed: timed out]\n\nThe numbers do not add up.",
        segments=segments,
        summary=summarize_segments(list(segments), 1800.0),
        include_sentiment=include_sentiment,
    )


def test_summary_ignores_gaps():
    summary = make_transcript().summary

    assert summary.speaker_count == 2
    assert summary.speakers == ("Dana Whitfield", "Luis Ortega")
    assert summary.average_tension == 4.5
    assert summary.overall_credibility == 78


def test_summary_tie_goes_to_neutral():
    segments = [
        TranscriptSegment(0.0, "A", "yes", sentiment="positive"),
        TranscriptSegment(1.0, "B", "no", sentiment="negative"),
        TranscriptSegment(2.0, "C", "maybe", sentiment="neutral"),
    ]

    assert summarize_segments(segments, 3.0).dominant_sentiment == "neutral"


def test_summary_without_speech():
    summary = summarize_segments([TranscriptSegment(0.0, "Unknown", "[segment 1 failed: x]", is_gap=True)], 60.0)

    assert summary.speaker_count == 0
    assert summary.dominant_sentiment == "neutral"


def test_markdown_sections():
    document = format_transcript_markdown(
        make_transcript(), "Budget hearing", "https://example.org/v/1", ["noise"], generated_at=GENERATED
    )

    assert document.startswith("# Budget hearing\n")
    assert "**Duration:** 00:30:00" in document
    assert "**Transcribed:** 2024-05-14 19:30" in document
    assert "**Audio issues:** noise" in document
    assert "| Untranscribed segments | 1 |" in document
    assert "- **Dana Whitfield** (Mayor): 1 statements" in document
    assert "**[00:10:10]** _[segment 2 failed: timed out]_" in document
    assert "**[00:20:05] Luis Ortega** 😠 frustrated | tension 7/10 | 🟡 60%" in document
    assert document.index("## Proceedings") < document.index("## Full transcript")


def test_markdown_without_sentiment():
    document = format_transcript_markdown(make_transcript(include_sentiment=False), "Budget hearing", "src")

    assert "Dominant sentiment" not in document
    assert "**[00:00:00] Dana Whitfield**\n" in document
    assert "**Audio issues:**" not in document
