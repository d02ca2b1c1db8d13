"""
Utility modules for configuration, logging, and error handling.
"""

from setbreak.utils.errors import (
    SetbreakError,
    TrackError,
    DecodeError,
    UnsupportedFormatError,
    CorruptFileError,
    BitstreamMisclassifiedError,
    ExternalToolError,
    EngineError,
    AggregationError,
    StorageError,
    ConfigurationError,
)
from setbreak.utils.logging import get_logger, setup_logging, track_logger, JSONFormatter
from setbreak.utils.config import ConfigManager, Settings, load_config

__all__ = [
    "SetbreakError",
    "TrackError",
    "DecodeError",
    "UnsupportedFormatError",
    "CorruptFileError",
    "BitstreamMisclassifiedError",
    "ExternalToolError",
    "EngineError",
    "AggregationError",
    "StorageError",
    "ConfigurationError",
    "get_logger",
    "setup_logging",
    "track_logger",
    "JSONFormatter",
    "ConfigManager",
    "Settings",
    "load_config",
]
