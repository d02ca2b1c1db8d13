"""Shared fixtures for the analysis pipeline tests."""

from pathlib import Path

import numpy as np
import pytest
import soundfile as sf

from setbreak.core.models import (
    AnalysisRun,
    AudioBuffer,
    AudioFormat,
    DataQuality,
    FeatureRecord,
    PerceptualFeatures,
    RawFeatureSet,
    SummaryFeatures,
    TrackRef,
)
from setbreak.core.scoring import score
from setbreak.core.storage import Storage


SR = 22050


# ---------------------------------------------------------------------------
# Signal helpers
# ---------------------------------------------------------------------------


def sine(freq: float = 220.0, seconds: float = 1.0, amp: float = 0.5, sr: int = SR) -> np.ndarray:
    t = np.arange(int(seconds * sr)) / sr
    return (amp * np.sin(2 * np.pi * freq * t)).astype(np.float32)


def make_buffer(samples: np.ndarray, sr: int = SR, bits: int = 16) -> AudioBuffer:
    """AudioBuffer from a 1-D (mono) or (channels, frames) array."""
    samples = np.atleast_2d(np.asarray(samples, dtype=np.float32))
    return AudioBuffer(
        sample_rate=sr,
        samples=samples,
        bits_per_sample=bits,
        source_format=AudioFormat.WAV,
    )


def write_wav(path: Path, samples: np.ndarray, sr: int = SR, subtype: str = "PCM_16") -> Path:
    """Write (frames,) or (frames, channels) float samples as a WAV file."""
    sf.write(str(path), samples, sr, subtype=subtype)
    return path


# ---------------------------------------------------------------------------
# Engine stand-in
# ---------------------------------------------------------------------------


class LevelEngine:
    """
    Deterministic engine that only measures level.

    Fills the summary and perceptual groups from plain numpy so pipeline
    tests do not depend on librosa's numerics.
    """

    def __init__(self):
        self.calls = 0

    @property
    def name(self) -> str:
        return "level"

    def analyze(self, buffer: AudioBuffer) -> RawFeatureSet:
        self.calls += 1
        mono = buffer.mono
        rms = float(np.sqrt(np.mean(mono.astype(np.float64) ** 2)))
        peak = float(np.max(np.abs(mono)))
        lufs = 20.0 * np.log10(max(rms, 1e-9)) - 0.691
        return RawFeatureSet(
            summary=SummaryFeatures(
                duration=buffer.duration,
                sample_rate=buffer.sample_rate,
                channels=buffer.channels,
                peak_amplitude=peak,
                rms_level=rms,
                dynamic_range=20.0 * np.log10(max(peak, 1e-9) / max(rms, 1e-9)),
            ),
            perceptual=PerceptualFeatures(
                lufs=float(lufs),
                crest_factor=peak / max(rms, 1e-9),
                energy_level=rms,
            ),
        )


class AsyncLevelEngine(LevelEngine):
    """LevelEngine whose analyze() returns a coroutine."""

    async def analyze(self, buffer: AudioBuffer) -> RawFeatureSet:
        return LevelEngine.analyze(self, buffer)


# ---------------------------------------------------------------------------
# Record helpers
# ---------------------------------------------------------------------------


def make_record(**values) -> FeatureRecord:
    return FeatureRecord(**values)


def make_run(track_id: int, quality: DataQuality = DataQuality.OK, **values) -> AnalysisRun:
    values.setdefault("duration", 120.0)
    values.setdefault("rms_level", 0.1)
    values.setdefault("lufs_integrated", -20.0)
    record = make_record(**values)
    return AnalysisRun(track_id=track_id, features=record, scores=score(record), quality=quality)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def storage():
    """In-memory Storage, schema migrated."""
    store = Storage.open(":memory:")
    yield store
    store.close()


@pytest.fixture
def level_engine():
    return LevelEngine()


@pytest.fixture
def wav_corpus(tmp_path):
    """
    Factory: write n short sine WAVs and return their paths.

    Each file gets a slightly different pitch so no two are identical.
    """

    def _make(n: int, amp: float = 0.3, seconds: float = 0.5, prefix: str = "track"):
        paths = []
        for i in range(n):
            path = tmp_path / f"{prefix}{i:02d}.wav"
            write_wav(path, sine(freq=200.0 + 20.0 * i, seconds=seconds, amp=amp))
            paths.append(path)
        return paths

    return _make


@pytest.fixture
def registered(storage, wav_corpus):
    """Factory: register n WAV tracks in storage and return their TrackRefs."""

    def _register(n: int, **kwargs):
        refs = []
        for path in wav_corpus(n, **kwargs):
            track_id = storage.register_track(TrackRef(id=0, path=path, known_format="wav"))
            refs.append(TrackRef(id=track_id, path=path, known_format="wav"))
        return refs

    return _register
