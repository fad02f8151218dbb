"""
Configuration management with three-tier precedence system:
1. Default values from codebase
2. Environment variables from .env
3. Explicit overrides (command-line flags or constructor arguments)

Precedence: Overrides > Environment Variables > Defaults
"""

import os
import tempfile
from dataclasses import dataclass
from typing import Any, Optional

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

DEFAULT_STT_PROMPT = (
    "This is a recording of a public meeting with multiple speakers, "
    "motions, votes and agenda items."
)


class ConfigManager:
    """Manages configuration with three-tier precedence."""

    # Default values (Tier 1 - Codebase defaults)
    DEFAULTS = {
        "LOG_LEVEL": "INFO",
        "JOBS_DIR": "transcription_jobs",
        "WORK_DIR": "",
        "FFMPEG_PATH": "ffmpeg",
        "FFPROBE_PATH": "ffprobe",
        "YTDLP_PATH": "yt-dlp",
        "STT_PROVIDER": "openai",
        "STT_MODEL": "whisper-1",
        "STT_LANGUAGE": "en",
        "STT_PROMPT": DEFAULT_STT_PROMPT,
        "STT_API_BASE_URL": "",
        "LLM_API_BASE_URL": "https://api.openai.com/v1",
        "LLM_MODEL": "gpt-4o",
        "OPENAI_API_KEY": "",
        "SEGMENT_SECONDS": "600",
        "MAX_UPLOAD_BYTES": str(25 * 1024 * 1024),
        "SEGMENT_EXTRACTION_TIMEOUT": "60",
        "CHUNK_TIMEOUT": "300",
        "WHOLE_FILE_TIMEOUT": "600",
        "ANALYSIS_TIMEOUT": "300",
        "FILTER_TIMEOUT": "1800",
        "ACQUISITION_TIMEOUT": "3600",
        "LLM_TIMEOUT": "120",
        "SINK_TIMEOUT": "60",
        "MAX_SOURCE_FILESIZE": "500M",
        "MAX_CONCURRENT_JOBS": "2",
        "PROVIDER_CONCURRENCY": "2",
        "ACQUISITION_CONCURRENCY": "1",
        "SEGMENT_WORKERS": "1",
        "KNOWLEDGE_SINK_URL": "",
        "KNOWLEDGE_SINK_TOKEN": "",
        "ROSTER_FILE": "",
        "HEARTBEAT_INTERVAL": "30",
        "HEARTBEAT_TIMEOUT": "180",
        "MAX_JOB_AGE_HOURS": "3",
    }

    SECRET_KEYS = ("OPENAI_API_KEY", "KNOWLEDGE_SINK_TOKEN")

    @staticmethod
    def get(key: str, override: Optional[Any] = None) -> Any:
        """
        Get configuration value with three-tier precedence.

        Args:
            key: Configuration key
            override: Explicit value (highest priority)

        Returns:
            Configuration value from highest priority source

        Priority:
            1. Override (if provided and not empty)
            2. Environment variable
            3. Default value
        """
        value, _ = ConfigManager.get_display_value(key, override)
        return value

    @staticmethod
    def get_display_value(key: str, override: Optional[Any] = None) -> tuple[Any, str]:
        """
        Get configuration value and its source.

        Returns:
            Tuple of (value, source) where source is 'override', 'env', or 'default'
        """
        if override is not None and override != "":
            return override, "override"

        env_value = os.getenv(key)
        if env_value is not None and env_value != "":
            return env_value, "env"

        return ConfigManager.DEFAULTS.get(key, ""), "default"

    @staticmethod
    def get_int(key: str, override: Optional[Any] = None) -> int:
        """Get a configuration value as an integer."""
        value = ConfigManager.get(key, override)
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ValueError(f"Configuration value {key}={value!r} is not an integer")

    @staticmethod
    def get_float(key: str, override: Optional[Any] = None) -> float:
        """Get a configuration value as a float."""
        value = ConfigManager.get(key, override)
        try:
            return float(value)
        except (TypeError, ValueError):
            raise ValueError(f"Configuration value {key}={value!r} is not a number")

    @staticmethod
    def describe(key: str, override: Optional[Any] = None) -> str:
        """Render a setting and the tier that supplied it; secrets show only their last four characters."""
        value, source = ConfigManager.get_display_value(key, override)
        if key in ConfigManager.SECRET_KEYS:
            value = "***" + str(value)[-4:] if value else "(not set)"
        return f"{key}={value} (from {source})"


@dataclass(frozen=True)
class PipelineSettings:
    """Resolved settings for one pipeline instance."""

    jobs_dir: str
    work_dir: str
    ffmpeg_path: str
    ffprobe_path: str
    ytdlp_path: str
    stt_provider: str
    stt_model: str
    stt_language: str
    stt_prompt: str
    stt_api_base_url: str
    llm_api_base_url: str
    llm_model: str
    api_key: str
    segment_seconds: int
    max_upload_bytes: int
    segment_extraction_timeout: float
    chunk_timeout: float
    whole_file_timeout: float
    analysis_timeout: float
    filter_timeout: float
    acquisition_timeout: float
    llm_timeout: float
    sink_timeout: float
    max_source_filesize: str
    max_concurrent_jobs: int
    provider_concurrency: int
    acquisition_concurrency: int
    segment_workers: int
    knowledge_sink_url: str
    knowledge_sink_token: str
    roster_file: str
    heartbeat_interval: float
    heartbeat_timeout: float
    max_job_age_hours: float

    @classmethod
    def from_env(cls, **overrides: Any) -> "PipelineSettings":
        """
        Build settings from overrides, the environment and defaults.

        Args:
            **overrides: Field names mapped to explicit values (e.g. ``llm_model="gpt-4o-mini"``)

        Returns:
            Fully resolved PipelineSettings
        """
        unknown = set(overrides) - set(cls.__dataclass_fields__)
        if unknown:
            raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")

        def text(field: str, key: str) -> str:
            return str(ConfigManager.get(key, overrides.get(field)))

        def integer(field: str, key: str) -> int:
            return ConfigManager.get_int(key, overrides.get(field))

        def number(field: str, key: str) -> float:
            return ConfigManager.get_float(key, overrides.get(field))

        return cls(
            jobs_dir=text("jobs_dir", "JOBS_DIR"),
            work_dir=text("work_dir", "WORK_DIR") or tempfile.gettempdir(),
            ffmpeg_path=text("ffmpeg_path", "FFMPEG_PATH"),
            ffprobe_path=text("ffprobe_path", "FFPROBE_PATH"),
            ytdlp_path=text("ytdlp_path", "YTDLP_PATH"),
            stt_provider=text("stt_provider", "STT_PROVIDER").lower(),
            stt_model=text("stt_model", "STT_MODEL"),
            stt_language=text("stt_language", "STT_LANGUAGE"),
            stt_prompt=text("stt_prompt", "STT_PROMPT"),
            stt_api_base_url=text("stt_api_base_url", "STT_API_BASE_URL"),
            llm_api_base_url=text("llm_api_base_url", "LLM_API_BASE_URL"),
            llm_model=text("llm_model", "LLM_MODEL"),
            api_key=text("api_key", "OPENAI_API_KEY"),
            segment_seconds=integer("segment_seconds", "SEGMENT_SECONDS"),
            max_upload_bytes=integer("max_upload_bytes", "MAX_UPLOAD_BYTES"),
            segment_extraction_timeout=number("segment_extraction_timeout", "SEGMENT_EXTRACTION_TIMEOUT"),
            chunk_timeout=number("chunk_timeout", "CHUNK_TIMEOUT"),
            whole_file_timeout=number("whole_file_timeout", "WHOLE_FILE_TIMEOUT"),
            analysis_timeout=number("analysis_timeout", "ANALYSIS_TIMEOUT"),
            filter_timeout=number("filter_timeout", "FILTER_TIMEOUT"),
            acquisition_timeout=number("acquisition_timeout", "ACQUISITION_TIMEOUT"),
            llm_timeout=number("llm_timeout", "LLM_TIMEOUT"),
            sink_timeout=number("sink_timeout", "SINK_TIMEOUT"),
            max_source_filesize=text("max_source_filesize", "MAX_SOURCE_FILESIZE"),
            max_concurrent_jobs=integer("max_concurrent_jobs", "MAX_CONCURRENT_JOBS"),
            provider_concurrency=integer("provider_concurrency", "PROVIDER_CONCURRENCY"),
            acquisition_concurrency=integer("acquisition_concurrency", "ACQUISITION_CONCURRENCY"),
            segment_workers=integer("segment_workers", "SEGMENT_WORKERS"),
            knowledge_sink_url=text("knowledge_sink_url", "KNOWLEDGE_SINK_URL"),
            knowledge_sink_token=text("knowledge_sink_token", "KNOWLEDGE_SINK_TOKEN"),
            roster_file=text("roster_file", "ROSTER_FILE"),
            heartbeat_interval=number("heartbeat_interval", "HEARTBEAT_INTERVAL"),
            heartbeat_timeout=number("heartbeat_timeout", "HEARTBEAT_TIMEOUT"),
            max_job_age_hours=number("max_job_age_hours", "MAX_JOB_AGE_HOURS"),
        )
