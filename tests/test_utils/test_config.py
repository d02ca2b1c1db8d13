"""Tests for configuration loading and Settings validation."""

from pathlib import Path

import pytest

from setbreak.utils.config import (
    ConfigManager,
    Settings,
    default_workers,
    get_default_config,
    load_config,
)
from setbreak.utils.errors import ConfigurationError


def _write(tmp_path, text):
    path = tmp_path / "setbreak.yaml"
    path.write_text(text)
    return path


# ---------------------------------------------------------------------------
# ConfigManager
# ---------------------------------------------------------------------------


class TestConfigManager:

    def test_dot_notation(self):
        manager = ConfigManager({"engine": {"hop_length": 256}})
        assert manager.get("engine.hop_length") == 256
        assert manager.get("engine.missing", default=7) == 7

    def test_required_key_missing(self):
        with pytest.raises(ConfigurationError) as exc_info:
            ConfigManager({}).get("database.path", required=True)
        assert exc_info.value.config_key == "database.path"

    def test_get_section(self):
        manager = ConfigManager({"scoring": {"weights": {"energy": {"rms": 10}}, "min_tracks": 2}})
        assert manager.get_section("scoring.weights") == {"energy": {"rms": 10}}
        # Missing and non-mapping sections both come back empty
        assert manager.get_section("calibration") == {}
        assert manager.get_section("scoring.min_tracks") == {}

    def test_env_interpolation(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SETBREAK_TEST_ROOT", str(tmp_path))
        monkeypatch.delenv("SETBREAK_UNSET_VAR", raising=False)
        path = _write(tmp_path, "database:\n  path: ${SETBREAK_TEST_ROOT}/tapes.db\n"
                                "decoder:\n  ffmpeg_binary: ${SETBREAK_UNSET_VAR}\n")
        manager = ConfigManager.from_file(path)
        assert manager.get("database.path") == f"{tmp_path}/tapes.db"
        # Unknown variables are left as written
        assert manager.get("decoder.ffmpeg_binary") == "${SETBREAK_UNSET_VAR}"

    def test_invalid_yaml(self, tmp_path):
        path = _write(tmp_path, "engine: [unclosed\n")
        with pytest.raises(ConfigurationError):
            ConfigManager.from_file(path)

    def test_top_level_must_be_mapping(self, tmp_path):
        path = _write(tmp_path, "- just\n- a list\n")
        with pytest.raises(ConfigurationError):
            ConfigManager.from_file(path)

    def test_validate_types(self):
        manager = ConfigManager({"performance": {"max_workers": "many"}})
        with pytest.raises(ConfigurationError) as exc_info:
            manager.validate({"performance.max_workers": {"type": int}})
        assert "expected int" in str(exc_info.value)


# ---------------------------------------------------------------------------
# load_config
# ---------------------------------------------------------------------------


class TestLoadConfig:

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_config(str(tmp_path / "nope.yaml"))

    def test_file_merged_over_defaults(self, tmp_path):
        path = _write(tmp_path, "performance:\n  max_workers: 3\n")
        config = load_config(str(path))
        assert config["performance"]["max_workers"] == 3
        assert config["performance"]["chunk_multiplier"] == 2
        assert config["engine"]["name"] == "librosa"

    def test_defaults_only(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        config = load_config()
        assert Settings.from_config(config).engine.name == "librosa"

    def test_db_path_from_environment(self, monkeypatch):
        monkeypatch.setenv("SETBREAK_DB", "/data/live.db")
        assert get_default_config()["database"]["path"] == "/data/live.db"


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class TestSettings:

    def test_from_defaults(self):
        settings = Settings.from_config(get_default_config())
        assert settings.max_workers == default_workers()
        assert settings.chunk_size == settings.max_workers * 2
        assert settings.decoder.bitstream_fraction == 0.25
        assert settings.engine.use_async is False
        assert settings.calibration_min_tracks == 2

    def test_null_workers_means_cpu_count(self):
        config = get_default_config()
        config["performance"]["max_workers"] = None
        assert Settings.from_config(config).max_workers == default_workers()

    def test_db_path_expands_home(self):
        config = get_default_config()
        config["database"]["path"] = "~/tapes.db"
        assert Settings.from_config(config).db_path == Path("~/tapes.db").expanduser()

    def test_async_engine_flag(self):
        config = get_default_config()
        config["engine"]["async"] = True
        assert Settings.from_config(config).engine.use_async is True

    @pytest.mark.parametrize("workers", [0, -2])
    def test_rejects_bad_worker_count(self, workers):
        config = get_default_config()
        config["performance"]["max_workers"] = workers
        with pytest.raises(ConfigurationError):
            Settings.from_config(config)

    @pytest.mark.parametrize("fraction", [0.0, 1.0, 1.5])
    def test_rejects_bad_bitstream_fraction(self, fraction):
        config = get_default_config()
        config["decoder"]["bitstream_fraction"] = fraction
        with pytest.raises(ConfigurationError) as exc_info:
            Settings.from_config(config)
        assert exc_info.value.config_key == "decoder.bitstream_fraction"

    def test_rejects_wrong_type(self):
        config = get_default_config()
        config["engine"]["hop_length"] = "512"
        with pytest.raises(ConfigurationError):
            Settings.from_config(config)

    def test_scoring_weights_carried(self):
        config = get_default_config()
        config["scoring"]["weights"] = {"energy": {"rms": 20}}
        assert Settings.from_config(config).score_weights == {"energy": {"rms": 20}}

    def test_null_scoring_weights(self):
        config = get_default_config()
        config["scoring"]["weights"] = None
        assert Settings.from_config(config).score_weights == {}

    def test_settings_are_frozen(self):
        settings = Settings()
        with pytest.raises(AttributeError):
            settings.max_workers = 9
