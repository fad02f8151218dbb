"""
Long-form meeting transcription pipeline.

Fetches a recording, cleans up its audio, transcribes it in segments and labels the
result with a language model, tracking each run as a durable job.
"""

__version__ = "0.1.0"
