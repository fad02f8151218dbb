import json
from types import SimpleNamespace

import pytest

from session_transcriber.audio.providers import (
    LocalWhisperProvider,
    OpenAILanguageProvider,
    OpenAISpeechProvider,
    build_language_provider,
    build_speech_provider,
    parse_json_object,
)
from session_transcriber.config import PipelineSettings
from session_transcriber.errors import EnhancementError


class FakeCompletions:
    def __init__(self, contents):
        self.contents = list(contents)
        self.requests = []

    def create(self, **kwargs):
        self.requests.append(kwargs)
        content = self.contents.pop(0)
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def chat_client(*contents):
    completions = FakeCompletions(contents)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions)), completions


class FakeTranscriptions:
    def __init__(self, result):
        self.result = result
        self.requests = []

    def create(self, file, **kwargs):
        self.requests.append((file.read(), kwargs))
        return self.result


def test_parse_json_object():
    assert parse_json_object('{"segments": []}') == {"segments": []}
    assert parse_json_object('```json\n{"a": 1}\n```') == {"a": 1}

    for content in (None, "  ", "[1, 2]", "{broken"):
        with pytest.raises(EnhancementError):
            parse_json_object(content)


def test_openai_speech_provider(tmp_path):
    audio = tmp_path / "segment_000.mp3"
    audio.write_bytes(b"ID3")
    transcriptions = FakeTranscriptions("  The meeting will come to order.\n")
    client = SimpleNamespace(audio=SimpleNamespace(transcriptions=transcriptions))

    text = OpenAISpeechProvider(client, language="en", prompt="Council meeting").transcribe_audio(str(audio))

    assert text == "The meeting will come to order."
    data, kwargs = transcriptions.requests[0]
    assert data == b"ID3"
    assert kwargs == {"model": "whisper-1", "response_format": "text", "language": "en", "prompt": "Council meeting"}


def test_openai_speech_provider_object_response(tmp_path):
    audio = tmp_path / "a.mp3"
    audio.write_bytes(b"")
    client = SimpleNamespace(audio=SimpleNamespace(transcriptions=FakeTranscriptions(SimpleNamespace(text="Aye."))))

    assert OpenAISpeechProvider(client, language=None).transcribe_audio(str(audio)) == "Aye."


def test_correct_text():
    client, completions = chat_client("  Corrected text.  ")

    assert OpenAILanguageProvider(client, model="gpt-4o").correct_text("corected text") == "Corrected text."
    request = completions.requests[0]
    assert request["messages"][1] == {"role": "user", "content": "corected text"}
    assert "response_format" not in request


def test_classify_utterances():
    payload = {"segments": [{"timestamp": "00:10:05", "speaker": "Mayor", "text": "Welcome."}, "junk"]}
    client, completions = chat_client(json.dumps(payload))

    segments = OpenAILanguageProvider(client).classify_utterances("Welcome.", offset_seconds=600)

    assert segments == [payload["segments"][0]]
    request = completions.requests[0]
    assert request["response_format"] == {"type": "json_object"}
    assert "the excerpt starts at 00:10:00" in request["messages"][0]["content"]


def test_classify_utterances_without_segments():
    client, _ = chat_client('{"utterances": []}')

    with pytest.raises(EnhancementError):
        OpenAILanguageProvider(client).classify_utterances("text")


def test_resolve_speakers():
    payload = {"identifiedSpeakers": [{"originalSpeaker": "Councillor 1", "identifiedName": "Jane Smith", "role": "Councillor"}]}
    client, completions = chat_client(json.dumps(payload))

    identified = OpenAILanguageProvider(client).resolve_speakers(
        [{"name": "Jane Smith", "role": "Councillor"}], [{"speaker": "Councillor 1", "text": "As councillor I..."}], "..."
    )

    assert identified == payload["identifiedSpeakers"]
    assert "Jane Smith" in completions.requests[0]["messages"][1]["content"]


def test_resolve_speakers_bad_payload():
    client, _ = chat_client('{"identifiedSpeakers": "none"}')

    with pytest.raises(EnhancementError):
        OpenAILanguageProvider(client).resolve_speakers([], [], "")


@pytest.mark.parametrize(
    "text, no_speech_prob, valid",
    [
        ("Motion carried.", 0.1, True),
        ("Motion carried.", 0.9, False),
        ("Subscribe", 0.0, False),
        ("...", 0.0, False),
        ("ah ah", 0.0, False),
        ("Yes.", 0.0, True),
    ],
)
def test_whisper_hallucination_filter(text, no_speech_prob, valid):
    assert LocalWhisperProvider().is_valid_transcription(text, no_speech_prob) is valid


def test_local_whisper_provider_filters_segments(tmp_path):
    provider = LocalWhisperProvider()
    provider._model = SimpleNamespace(
        transcribe=lambda path, **kwargs: {
            "segments": [
                {"text": " Roll call. ", "no_speech_prob": 0.1},
                {"text": "♪", "no_speech_prob": 0.2},
                {"text": "Present.", "no_speech_prob": 0.3},
            ]
        }
    )

    assert provider.transcribe_audio(str(tmp_path / "a.wav")) == "Roll call. Present."


def test_provider_selection(monkeypatch):
    monkeypatch.delenv("STT_API_BASE_URL", raising=False)

    hosted = build_speech_provider(PipelineSettings.from_env(stt_provider="openai", api_key="sk-test"))
    local = build_speech_provider(PipelineSettings.from_env(stt_provider="local", stt_model="whisper-1"))

    assert isinstance(hosted, OpenAISpeechProvider)
    assert hosted.client.max_retries == 0
    assert isinstance(local, LocalWhisperProvider)
    assert local.model == "base"
    with pytest.raises(ValueError, match="Unknown speech-to-text provider"):
        build_speech_provider(PipelineSettings.from_env(stt_provider="carrier-pigeon"))


def test_language_provider_selection():
    provider = build_language_provider(PipelineSettings.from_env(api_key="sk-test", llm_model="gpt-4o-mini"))

    assert isinstance(provider, OpenAILanguageProvider)
    assert provider.model == "gpt-4o-mini"
    assert provider.client.max_retries == 0
