"""Tests for the librosa engine and the engine factory."""

import asyncio
from unittest.mock import patch

import numpy as np
import pytest

from conftest import SR, LevelEngine, make_buffer, sine
from setbreak.core.aggregator import aggregate
from setbreak.core.engine import AsyncEngine, LibrosaEngine, create_engine
from setbreak.core.models import RawFeatureSet
from setbreak.core.scoring import score
from setbreak.utils.config import EngineSettings
from setbreak.utils.errors import ConfigurationError, EngineError


def _clicky_tone(seconds: float = 4.0) -> np.ndarray:
    """A held A3 with a click every half second."""
    signal = sine(freq=220.0, seconds=seconds, amp=0.3)
    step = SR // 2
    for start in range(0, signal.size - 200, step):
        signal[start:start + 200] += np.hanning(200).astype(np.float32) * 0.5
    return np.clip(signal, -1.0, 1.0)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


class TestCreateEngine:

    def test_default_is_librosa(self):
        engine = create_engine()
        assert isinstance(engine, LibrosaEngine)
        assert engine.name == "librosa"

    def test_settings_passed_through(self):
        engine = create_engine(EngineSettings(target_sample_rate=16000, hop_length=256))
        assert engine.target_sr == 16000
        assert engine.hop_length == 256

    def test_async_wrapper(self):
        engine = create_engine(EngineSettings(use_async=True))
        assert isinstance(engine, AsyncEngine)
        assert engine.name == "async:librosa"

    def test_unknown_engine(self):
        with pytest.raises(ConfigurationError):
            create_engine(EngineSettings(name="essentia"))


class TestAsyncEngine:

    def test_wraps_sync_engine(self):
        inner = LevelEngine()
        result = asyncio.run(AsyncEngine(inner).analyze(make_buffer(sine())))
        assert isinstance(result, RawFeatureSet)
        assert inner.calls == 1
        assert result.summary.rms_level == pytest.approx(0.5 / np.sqrt(2), rel=1e-3)


# ---------------------------------------------------------------------------
# Librosa analysis
# ---------------------------------------------------------------------------


class TestLibrosaEngineErrors:

    def test_failures_become_engine_errors(self):
        engine = LibrosaEngine()
        with patch.object(engine, "_analyze_impl", side_effect=ValueError("bad frame")):
            with pytest.raises(EngineError) as exc_info:
                engine.analyze(make_buffer(sine()))
        assert "ValueError" in str(exc_info.value)
        assert exc_info.value.stage == "engine"


@pytest.mark.slow
class TestLibrosaEngine:

    @pytest.fixture(scope="class")
    def raw(self):
        return LibrosaEngine().analyze(make_buffer(_clicky_tone()))

    def test_summary(self, raw):
        assert raw.summary.duration == pytest.approx(4.0)
        assert raw.summary.sample_rate == SR
        assert raw.summary.channels == 1
        assert 0.3 <= raw.summary.peak_amplitude <= 1.0

    def test_spectral_shapes(self, raw):
        frames = raw.spectral.centroid.shape[0]
        assert raw.spectral.flux.shape == (frames,)
        assert raw.spectral.chroma.shape[0] == 12
        assert raw.spectral.mfcc.shape[0] == 13

    def test_loudness_is_measured(self, raw):
        assert raw.perceptual.lufs is not None
        assert -40.0 < raw.perceptual.lufs < 0.0
        assert raw.perceptual.crest_factor > 1.0

    def test_clicks_produce_onsets(self, raw):
        assert len(raw.temporal.onsets) >= 3

    def test_tonal_center_near_a(self, raw):
        chroma = np.asarray(raw.musical.chroma_vector)
        assert chroma.shape == (12,)
        assert int(np.argmax(chroma)) == 9  # A

    def test_feeds_aggregate_and_score(self, raw):
        record = aggregate(raw)
        assert record.duration == pytest.approx(4.0)
        for name, value in score(record).as_dict().items():
            assert 0.0 <= value <= 100.0, name

    def test_resamples_other_rates(self):
        samples = sine(freq=440.0, seconds=2.0, amp=0.4, sr=44100)
        raw = LibrosaEngine().analyze(make_buffer(samples, sr=44100))
        assert raw.summary.sample_rate == 44100
        assert raw.summary.duration == pytest.approx(2.0)
        assert raw.spectral.centroid.size > 0
