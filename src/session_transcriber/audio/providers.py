"""
Speech-to-text and language-model providers.

Each provider implements one capability interface. The concrete provider is
chosen once, from configuration, by ``build_speech_provider`` and
``build_language_provider``; pipeline stages only see the interface.

Key features:
- OpenAI-compatible hosted speech-to-text (plain text response mode)
- Local Whisper speech-to-text with hallucination filtering (optional extra)
- OpenAI-compatible chat models for correction, classification and speaker resolution

Provider calls are not retried. Callers bound each call with ``call_with_timeout``;
hosted clients are also built with a request timeout.
"""

import json
import logging
import threading
import warnings
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from openai import OpenAI

from ..config import PipelineSettings
from ..errors import EnhancementError
from .prompts import (
    CLASSIFICATION_SYSTEM_PROMPT,
    CLASSIFICATION_USER_PROMPT,
    CORRECTION_SYSTEM_PROMPT,
    SPEAKER_RESOLUTION_SYSTEM_PROMPT,
    SPEAKER_RESOLUTION_USER_PROMPT,
)
from .utils import format_timestamp

logger = logging.getLogger(__name__)

# Suppress warnings from third-party libraries
warnings.filterwarnings("ignore", category=UserWarning, module="whisper")

CORRECTION_TEMPERATURE = 0.1
CLASSIFICATION_TEMPERATURE = 0.3
RESOLUTION_TEMPERATURE = 0.2


class SpeechToTextProvider(ABC):
    """Converts one audio file to plain text."""

    model: str = ""

    @abstractmethod
    def transcribe_audio(self, audio_path: str) -> str:
        """
        Transcribe an audio file.

        Args:
            audio_path: Path to an audio file within the provider's upload limit

        Returns:
            Transcript text (may be empty if no speech was recognized)
        """


class LanguageModelProvider(ABC):
    """Text capabilities used by the transcript enhancer."""

    model: str = ""

    @abstractmethod
    def correct_text(self, text: str) -> str:
        """Return ``text`` with obvious transcription errors fixed."""

    @abstractmethod
    def classify_utterances(self, text: str, offset_seconds: float = 0.0) -> List[Dict[str, Any]]:
        """
        Split text into labelled utterances.

        Args:
            text: Transcript excerpt
            offset_seconds: Start time of the excerpt within the recording

        Returns:
            Raw utterance dictionaries (timestamp, speaker, text, sentiment, emotion,
            emotionEmoji, tension, credibility)

        Raises:
            EnhancementError: If the model response cannot be parsed
        """

    @abstractmethod
    def resolve_speakers(
        self, roster: List[Dict[str, str]], sample: List[Dict[str, str]], transcript: str
    ) -> List[Dict[str, str]]:
        """
        Map generic speaker labels to known participants.

        Returns:
            Dictionaries with originalSpeaker, identifiedName and role

        Raises:
            EnhancementError: If the model response cannot be parsed
        """


class OpenAISpeechProvider(SpeechToTextProvider):
    """Hosted speech-to-text through an OpenAI-compatible API."""

    def __init__(
        self,
        client: OpenAI,
        model: str = "whisper-1",
        language: Optional[str] = "en",
        prompt: Optional[str] = None,
    ):
        self.client = client
        self.model = model
        self.language = language
        self.prompt = prompt

    def transcribe_audio(self, audio_path: str) -> str:
        kwargs: Dict[str, Any] = {"model": self.model, "response_format": "text"}
        if self.language:
            kwargs["language"] = self.language
        if self.prompt:
            kwargs["prompt"] = self.prompt

        with open(audio_path, "rb") as audio_file:
            result = self.client.audio.transcriptions.create(file=audio_file, **kwargs)

        # Text response mode returns a plain string
        text = result if isinstance(result, str) else getattr(result, "text", "")
        return text.strip()


class LocalWhisperProvider(SpeechToTextProvider):
    """
    Speech-to-text with a local openai-whisper model.

    The model is loaded on first use and shared by this instance's callers.
    Segments that look like Whisper hallucinations are dropped.
    """

    HALLUCINATIONS = ["1.5%", "2.5%", "3.5%", "subscribe", ".", "...", "♪", "[blank_audio]", "(blank)"]

    def __init__(self, model: str = "base", language: Optional[str] = "en", prompt: Optional[str] = None):
        """
        Initialize with a Whisper model size.

        Args:
            model: Whisper model size (tiny, base, small, medium, large)
            language: Language code (None to auto-detect)
            prompt: Initial prompt giving the model context
        """
        self.model = model
        self.language = language
        self.prompt = prompt
        self._model = None
        self._lock = threading.Lock()

    def load_model(self):
        """Load the Whisper model."""
        with self._lock:
            if self._model is None:
                # Import whisper only when a local model is actually used
                import whisper

                logger.info(f"Loading Whisper model: {self.model}")
                self._model = whisper.load_model(self.model)
        return self._model

    def transcribe_audio(self, audio_path: str) -> str:
        model = self.load_model()
        result = model.transcribe(audio_path, language=self.language, initial_prompt=self.prompt, verbose=None)

        kept = []
        filtered = 0
        for segment in result.get("segments", []):
            text = segment.get("text", "").strip()
            if text and self.is_valid_transcription(text, segment.get("no_speech_prob", 0.0)):
                kept.append(text)
            else:
                filtered += 1

        if filtered:
            logger.debug(f"Filtered {filtered} hallucinated segment(s) from {audio_path}")
        return " ".join(kept)

    def is_valid_transcription(self, text: str, no_speech_prob: float = 0.0) -> bool:
        """
        Check if a transcription segment is valid (not a hallucination).

        Filters out common Whisper hallucinations that occur during silence or
        low audio levels. Uses no_speech_prob threshold and pattern matching.

        Args:
            text: Transcribed text to validate
            no_speech_prob: Whisper's probability that segment contains no speech (0-1)

        Returns:
            True if segment appears to be valid speech, False if likely hallucination
        """
        if no_speech_prob > 0.6:
            return False

        text_lower = text.lower().strip()
        if text_lower in self.HALLUCINATIONS:
            return False

        if len(text_lower) <= 3 and not any(c.isalpha() for c in text_lower):
            return False

        if len(set(text_lower.replace(" ", ""))) <= 2 and len(text_lower) < 10:
            return False

        return True


def parse_json_object(content: Optional[str]) -> Dict[str, Any]:
    """
    Parse a model response that should be a JSON object.

    Tolerates a surrounding Markdown code fence.

    Raises:
        EnhancementError: If the content is empty or not a JSON object
    """
    if not content or not content.strip():
        raise EnhancementError("Empty model response")

    text = content.strip()
    if text.startswith("```"):
        text = text.strip("`")
        if text.lower().startswith("json"):
            text = text[4:]

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise EnhancementError(f"Model response is not valid JSON: {e}")

    if not isinstance(data, dict):
        raise EnhancementError("Model response is not a JSON object")
    return data


class OpenAILanguageProvider(LanguageModelProvider):
    """Chat-completion model through an OpenAI-compatible API."""

    def __init__(self, client: OpenAI, model: str = "gpt-4o"):
        self.client = client
        self.model = model

    def _complete(self, system: str, user: str, temperature: float, json_mode: bool) -> Optional[str]:
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": "system", "content": system}, {"role": "user", "content": user}],
            "temperature": temperature,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        response = self.client.chat.completions.create(**kwargs)
        if not response.choices:
            return None
        return response.choices[0].message.content

    def correct_text(self, text: str) -> str:
        content = self._complete(CORRECTION_SYSTEM_PROMPT, text, CORRECTION_TEMPERATURE, json_mode=False)
        return (content or "").strip()

    def classify_utterances(self, text: str, offset_seconds: float = 0.0) -> List[Dict[str, Any]]:
        system = CLASSIFICATION_SYSTEM_PROMPT.format(offset=format_timestamp(offset_seconds))
        content = self._complete(
            system, CLASSIFICATION_USER_PROMPT.format(text=text), CLASSIFICATION_TEMPERATURE, json_mode=True
        )
        segments = parse_json_object(content).get("segments")
        if not isinstance(segments, list):
            raise EnhancementError("Classification response has no segments list")
        return [s for s in segments if isinstance(s, dict)]

    def resolve_speakers(
        self, roster: List[Dict[str, str]], sample: List[Dict[str, str]], transcript: str
    ) -> List[Dict[str, str]]:
        user = SPEAKER_RESOLUTION_USER_PROMPT.format(
            roster=json.dumps(roster, ensure_ascii=False, indent=2),
            segments=json.dumps(sample, ensure_ascii=False, indent=2),
            transcript=transcript,
        )
        content = self._complete(SPEAKER_RESOLUTION_SYSTEM_PROMPT, user, RESOLUTION_TEMPERATURE, json_mode=True)
        identified = parse_json_object(content).get("identifiedSpeakers", [])
        if not isinstance(identified, list):
            raise EnhancementError("Speaker resolution response has no identifiedSpeakers list")
        return [entry for entry in identified if isinstance(entry, dict)]


def build_openai_client(api_key: str, base_url: Optional[str], timeout: float) -> OpenAI:
    """Create an OpenAI client with retries disabled."""
    return OpenAI(api_key=api_key or None, base_url=base_url or None, timeout=timeout, max_retries=0)


def build_speech_provider(settings: PipelineSettings) -> SpeechToTextProvider:
    """
    Select the speech-to-text provider named by ``settings.stt_provider``.

    Raises:
        ValueError: For an unknown provider name
    """
    language = settings.stt_language or None
    prompt = settings.stt_prompt or None

    if settings.stt_provider == "openai":
        client = build_openai_client(
            settings.api_key,
            settings.stt_api_base_url or settings.llm_api_base_url,
            max(settings.chunk_timeout, settings.whole_file_timeout),
        )
        logger.info(f"Using hosted speech-to-text model {settings.stt_model}")
        return OpenAISpeechProvider(client, model=settings.stt_model, language=language, prompt=prompt)

    if settings.stt_provider == "local":
        # Hosted model names do not exist locally
        model = "base" if settings.stt_model == "whisper-1" else settings.stt_model
        logger.info(f"Using local Whisper model {model}")
        return LocalWhisperProvider(model=model, language=language, prompt=prompt)

    raise ValueError(f"Unknown speech-to-text provider: {settings.stt_provider}")


def build_language_provider(settings: PipelineSettings) -> LanguageModelProvider:
    """Create the chat-model provider from settings."""
    client = build_openai_client(settings.api_key, settings.llm_api_base_url, settings.llm_timeout)
    logger.info(f"Using language model {settings.llm_model}")
    return OpenAILanguageProvider(client, model=settings.llm_model)
