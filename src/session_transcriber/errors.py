"""
Exception types raised by the transcription pipeline.

Fatal errors fail the job that raised them. Non-fatal ones (analysis, filter,
segment and enhancement errors) are caught by the stage that owns them and
degrade to that stage's fallback.
"""

from typing import List, Optional


class TranscriberError(Exception):
    """Base class for all pipeline errors."""


class CommandTimeoutError(TranscriberError, TimeoutError):
    """A child process or provider call exceeded its deadline and was abandoned."""

    def __init__(self, description: str, timeout: float):
        self.description = description
        self.timeout = timeout
        super().__init__(f"{description} timed out after {timeout:g}s")


class AcquisitionError(TranscriberError):
    """The source could not be retrieved or decoded. Always fatal."""


class ToolMissingError(AcquisitionError):
    """The retrieval or decode tool is not installed."""


class SourceTooLargeError(AcquisitionError):
    """The retrieved media exceeded the configured size guard."""


class AnalysisError(TranscriberError):
    """Signal measurement failed; the default filter chain is used instead."""


class FilterError(TranscriberError):
    """Filtered extraction failed; the unfiltered track is used instead."""


class SegmentExtractionError(TranscriberError):
    """A single segment could not be cut from the normalized track."""

    def __init__(self, index: int, message: str):
        self.index = index
        super().__init__(message)


class ChunkTranscriptionError(TranscriberError):
    """Speech-to-text failed for a single segment."""

    def __init__(self, index: int, message: str):
        self.index = index
        super().__init__(message)


class TranscriptionError(TranscriberError):
    """Job-fatal transcription failure."""

    def __init__(self, message: str, failures: Optional[List[str]] = None):
        self.failures = failures or []
        super().__init__(message)


class EnhancementError(TranscriberError):
    """A correction, classification or speaker-resolution call failed."""


class PersistenceError(TranscriberError):
    """The finished transcript could not be handed to the knowledge store."""


class JobNotFoundError(TranscriberError):
    """No job exists with the requested id."""


class InvalidTransitionError(TranscriberError):
    """A job status change that the lifecycle does not allow."""


class JobCancelledError(TranscriberError):
    """The job was stopped by its owner or by a worker shutdown."""

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or "Job cancelled by user")
