"""
Custom exceptions for setbreak.

Per-track errors (decode, engine, aggregation) are recoverable: the
orchestrator logs them, counts them and leaves the track pending.
StorageError is the one fatal class for an analysis run.
"""

from typing import Any, Optional


class SetbreakError(Exception):
    """Base exception for all setbreak errors."""

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} (Details: {self.details})"
        return self.message


class TrackError(SetbreakError):
    """Base for errors scoped to a single track and pipeline stage."""

    stage = "unknown"

    def __init__(
        self,
        message: str,
        track_id: Optional[int] = None,
        file_path: Optional[str] = None,
    ):
        super().__init__(message)
        self.track_id = track_id
        self.file_path = file_path
        self.details = {"stage": self.stage, "track_id": track_id, "file_path": file_path}


class DecodeError(TrackError):
    """Raised when an audio file cannot be turned into an AudioBuffer."""

    stage = "decode"


class UnsupportedFormatError(DecodeError):
    """Raised when no decoder can handle the file's format."""

    def __init__(self, message: str, format: Optional[str] = None, file_path: Optional[str] = None):
        super().__init__(message, file_path=file_path)
        self.format = format
        self.details["format"] = format


class CorruptFileError(DecodeError):
    """Raised when a decoder recognizes the format but the payload is unreadable."""


class BitstreamMisclassifiedError(DecodeError):
    """Raised when decoded PCM is statistically a compressed bitstream."""

    def __init__(
        self,
        message: str,
        hot_fraction: float = 0.0,
        file_path: Optional[str] = None,
    ):
        super().__init__(message, file_path=file_path)
        self.hot_fraction = hot_fraction
        self.details["hot_fraction"] = round(hot_fraction, 4)


class ExternalToolError(DecodeError):
    """Raised when the external decoder process is missing or exits non-zero."""

    def __init__(
        self,
        message: str,
        returncode: Optional[int] = None,
        file_path: Optional[str] = None,
    ):
        super().__init__(message, file_path=file_path)
        self.returncode = returncode
        self.details["returncode"] = returncode


class EngineError(TrackError):
    """Raised when the DSP engine fails to analyze a buffer."""

    stage = "engine"


class AggregationError(TrackError):
    """Raised when engine output cannot be reduced to a FeatureRecord."""

    stage = "aggregate"


class StorageError(SetbreakError):
    """Raised when a database operation fails. Fatal for analysis runs."""

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message)
        self.operation = operation
        self.details = {"operation": operation}


class ConfigurationError(SetbreakError):
    """Raised when configuration is invalid or missing."""

    def __init__(self, message: str, config_key: Optional[str] = None):
        super().__init__(message)
        self.config_key = config_key
        self.details = {"config_key": config_key}


def with_track(error: TrackError, track_id: int) -> TrackError:
    """Attach a track id to an error raised below the orchestrator."""
    error.track_id = track_id
    error.details["track_id"] = track_id
    return error
