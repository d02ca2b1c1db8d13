"""
Configuration management for setbreak.

Loads configuration from YAML files with environment variable
interpolation, then freezes it into a Settings object that is built once
at startup and passed explicitly to every component factory.
"""

import copy
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

from setbreak.utils.errors import ConfigurationError


DEFAULT_DB_PATH = "~/.local/share/setbreak/setbreak.db"


class ConfigManager:
    """
    Manages application configuration loaded from YAML files.

    Features:
    - YAML configuration loading
    - Environment variable interpolation (${VAR_NAME})
    - Nested key access with dot notation
    - Configuration validation
    """

    def __init__(self, config_dict: Optional[Dict[str, Any]] = None):
        self._config: Dict[str, Any] = config_dict or {}
        self._env_pattern = re.compile(r'\$\{([^}]+)\}')

    @classmethod
    def from_file(cls, file_path: Path) -> "ConfigManager":
        """
        Create ConfigManager from YAML file.

        Raises:
            ConfigurationError: If file cannot be loaded or parsed
        """
        if not file_path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {file_path}",
                config_key=str(file_path)
            )

        try:
            with open(file_path, 'r') as f:
                config_dict = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Failed to parse YAML configuration: {e}",
                config_key=str(file_path)
            )

        if not isinstance(config_dict, dict):
            raise ConfigurationError(
                "Top-level configuration must be a mapping",
                config_key=str(file_path)
            )

        manager = cls(config_dict)
        manager._interpolate_env_vars()
        return manager

    def _interpolate_env_vars(self) -> None:
        self._config = self._interpolate(self._config)

    def _interpolate(self, value: Any) -> Any:
        """Recursively replace ${ENV_VAR} in strings of nested dicts/lists."""
        if isinstance(value, dict):
            return {k: self._interpolate(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self._interpolate(item) for item in value]
        if isinstance(value, str):
            return self._interpolate_string(value)
        return value

    def _interpolate_string(self, s: str) -> str:
        def replace(match: re.Match) -> str:
            value = os.environ.get(match.group(1))
            if value is None:
                return match.group(0)  # Keep original if not found
            return value

        return self._env_pattern.sub(replace, s)

    def get(self, key: str, default: Any = None, required: bool = False) -> Any:
        """
        Get configuration value using dot notation.

        Example:
            config.get("performance.max_workers", default=4)
            config.get("database.path", required=True)
        """
        value: Any = self._config
        for k in key.split('.'):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                if required:
                    raise ConfigurationError(
                        f"Required configuration key not found: {key}",
                        config_key=key
                    )
                return default
        return value

    def get_section(self, key: str) -> Dict[str, Any]:
        """Get an entire configuration section (empty dict if missing)."""
        value = self.get(key, default={})
        if not isinstance(value, dict):
            return {}
        return value

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self._config)

    def validate(self, schema: Dict[str, Any]) -> None:
        """
        Validate configuration against a schema.

        Schema format:
            {
                "performance.max_workers": {"type": int, "required": True},
                "engine.async": {"type": bool},
            }
        """
        for key, rules in schema.items():
            value = self.get(key)
            expected_type = rules.get("type")

            if value is None:
                if rules.get("required", False):
                    raise ConfigurationError(
                        f"Required configuration missing: {key}",
                        config_key=key
                    )
                continue

            if expected_type and not isinstance(value, expected_type):
                if isinstance(expected_type, tuple):
                    type_name = " or ".join(t.__name__ for t in expected_type)
                else:
                    type_name = expected_type.__name__
                raise ConfigurationError(
                    f"Invalid type for {key}: expected {type_name}, "
                    f"got {type(value).__name__}",
                    config_key=key
                )


CONFIG_SCHEMA: Dict[str, Any] = {
    "database.path": {"type": str},
    "decoder.ffmpeg_binary": {"type": str},
    "decoder.ffmpeg_timeout": {"type": (int, float)},
    "decoder.bitstream_probe": {"type": int},
    "decoder.bitstream_threshold": {"type": (int, float)},
    "decoder.bitstream_fraction": {"type": (int, float)},
    "engine.name": {"type": str},
    "engine.target_sample_rate": {"type": int},
    "engine.hop_length": {"type": int},
    "engine.async": {"type": bool},
    "performance.max_workers": {"type": int},
    "performance.chunk_multiplier": {"type": int},
    "scoring.min_long_form_duration": {"type": (int, float)},
    "scoring.weights": {"type": dict},
    "calibration.min_tracks": {"type": int},
    "logging.level": {"type": str},
}


@dataclass(frozen=True)
class DecoderSettings:
    ffmpeg_binary: str = "ffmpeg"
    ffmpeg_timeout: float = 600.0
    bitstream_probe: int = 4096
    bitstream_threshold: float = 0.9
    bitstream_fraction: float = 0.25


@dataclass(frozen=True)
class EngineSettings:
    name: str = "librosa"
    target_sample_rate: int = 22050
    hop_length: int = 512
    use_async: bool = False


@dataclass(frozen=True)
class Settings:
    """Immutable, explicitly passed runtime configuration."""

    db_path: Path = Path(DEFAULT_DB_PATH).expanduser()
    decoder: DecoderSettings = field(default_factory=DecoderSettings)
    engine: EngineSettings = field(default_factory=EngineSettings)
    max_workers: int = 4
    chunk_multiplier: int = 2
    min_long_form_duration: float = 60.0
    score_weights: Dict[str, Dict[str, float]] = field(default_factory=dict)
    calibration_min_tracks: int = 2
    log_level: str = "INFO"
    log_format: str = "text"
    log_file: Optional[str] = None

    @property
    def chunk_size(self) -> int:
        return self.max_workers * self.chunk_multiplier

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "Settings":
        """Build Settings from a (defaults-merged) configuration dictionary."""
        manager = ConfigManager(config)
        manager.validate(CONFIG_SCHEMA)

        max_workers = manager.get("performance.max_workers")
        if max_workers is None:
            max_workers = default_workers()
        multiplier = manager.get("performance.chunk_multiplier", 2)
        if max_workers < 1 or multiplier < 1:
            raise ConfigurationError(
                "performance.max_workers and performance.chunk_multiplier must be >= 1",
                config_key="performance",
            )

        fraction = float(manager.get("decoder.bitstream_fraction", 0.25))
        if not 0.0 < fraction < 1.0:
            raise ConfigurationError(
                f"decoder.bitstream_fraction must be in (0, 1), got {fraction}",
                config_key="decoder.bitstream_fraction",
            )

        return cls(
            db_path=Path(manager.get("database.path", DEFAULT_DB_PATH)).expanduser(),
            decoder=DecoderSettings(
                ffmpeg_binary=manager.get("decoder.ffmpeg_binary", "ffmpeg"),
                ffmpeg_timeout=float(manager.get("decoder.ffmpeg_timeout", 600)),
                bitstream_probe=manager.get("decoder.bitstream_probe", 4096),
                bitstream_threshold=float(manager.get("decoder.bitstream_threshold", 0.9)),
                bitstream_fraction=fraction,
            ),
            engine=EngineSettings(
                name=manager.get("engine.name", "librosa"),
                target_sample_rate=manager.get("engine.target_sample_rate", 22050),
                hop_length=manager.get("engine.hop_length", 512),
                use_async=manager.get("engine.async", False),
            ),
            max_workers=max_workers,
            chunk_multiplier=multiplier,
            min_long_form_duration=float(manager.get("scoring.min_long_form_duration", 60.0)),
            score_weights=manager.get_section("scoring.weights"),
            calibration_min_tracks=manager.get("calibration.min_tracks", 2),
            log_level=manager.get("logging.level", "INFO"),
            log_format=manager.get("logging.format", "text"),
            log_file=manager.get("logging.file"),
        )


def default_workers() -> int:
    """Worker count derived from available cores."""
    return max(1, os.cpu_count() or 1)


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep-merge override into a copy of base."""
    result = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _merge(result[key], value)
        else:
            result[key] = value
    return result


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load configuration from file merged over the defaults.

    Args:
        config_path: Optional path to config file.
                    If None, tries "config/config.yaml" and "setbreak.yaml"

    Returns:
        Dict[str, Any]: Configuration dictionary
    """
    load_dotenv()

    if config_path is None:
        default_paths = [
            Path("config/config.yaml"),
            Path("setbreak.yaml"),
            Path(__file__).parent.parent.parent / "config" / "config.yaml",
        ]
        for path in default_paths:
            if path.exists():
                config_path = str(path)
                break
    elif not Path(config_path).exists():
        raise ConfigurationError(
            f"Configuration file not found: {config_path}",
            config_key=config_path,
        )

    if config_path:
        manager = ConfigManager.from_file(Path(config_path))
        return _merge(get_default_config(), manager.to_dict())

    return get_default_config()


def get_default_config() -> Dict[str, Any]:
    """Return default configuration values."""
    return {
        "database": {
            "path": os.environ.get("SETBREAK_DB", DEFAULT_DB_PATH),
        },
        "decoder": {
            "ffmpeg_binary": "ffmpeg",
            "ffmpeg_timeout": 600,
            "bitstream_probe": 4096,
            "bitstream_threshold": 0.9,
            "bitstream_fraction": 0.25,
        },
        "engine": {
            "name": "librosa",
            "target_sample_rate": 22050,
            "hop_length": 512,
            "async": False,
        },
        "performance": {
            "max_workers": default_workers(),
            "chunk_multiplier": 2,
        },
        "scoring": {
            "min_long_form_duration": 60.0,
            "weights": {},
        },
        "calibration": {
            "min_tracks": 2,
        },
        "logging": {
            "level": "INFO",
            "format": "text",
            "file": None,
        },
    }
