"""Tests for the jam-score formulas, weights and rescoring."""

import math
from pathlib import Path

import numpy as np
import pytest

from conftest import make_record, make_run
from setbreak.core.models import SCORE_NAMES, JamScores, ScoreDelta, TrackRef, clamp_score
from setbreak.core.scoring import (
    DEFAULT_POINTS,
    SCORERS,
    ScoringWeights,
    is_long_form,
    rescore,
    score,
)
from setbreak.utils.errors import ConfigurationError


def _typical(**overrides):
    """A mid-range live track."""
    values = dict(
        duration=600.0,
        rms_level=0.1,
        lufs_integrated=-20.0,
        sub_band_bass_mean=0.08,
        sub_band_bass_std=0.03,
        spectral_centroid_mean=2500.0,
        spectral_centroid_std=900.0,
        spectral_flux_mean=20.0,
        spectral_flux_std=12.0,
        spectral_flatness_std=0.1,
        dynamic_range=15.0,
        loudness_range=8.0,
        onset_count=4000,
        beat_count=1200,
        repetition_similarity=0.9,
        chord_count=8,
        transition_count=12,
        pitch_stability=0.6,
        pitch_confidence_mean=0.5,
        crest_factor=9.0,
        energy_variance=0.005,
        mode_clarity=0.15,
        peak_energy=0.25,
        energy_level=0.1,
        estimated_key="A major",
        tempo_bpm=118.0,
        harmonic_complexity=0.5,
    )
    values.update(overrides)
    return make_record(**values)


# ---------------------------------------------------------------------------
# Bounds and determinism
# ---------------------------------------------------------------------------


class TestBounds:

    def test_all_absent_scores_floor(self):
        scores = score(make_record())
        for name, value in scores.as_dict().items():
            assert value == 0.0, name

    def test_typical_scores_in_range(self):
        for name, value in score(_typical()).as_dict().items():
            assert 0.0 <= value <= 100.0, name

    def test_extreme_inputs_clamped(self):
        record = _typical(
            rms_level=50.0, lufs_integrated=20.0, sub_band_bass_mean=9.0,
            spectral_centroid_mean=1e6, dynamic_range=1e4, loudness_range=1e4,
            spectral_flux_std=1e6, crest_factor=1e5, energy_variance=10.0,
        )
        for name, value in score(record).as_dict().items():
            assert 0.0 <= value <= 100.0, name

    def test_negative_and_nan_inputs(self):
        record = _typical(rms_level=-1.0, lufs_integrated=float("nan"), tempo_bpm=-40.0)
        for name, value in score(record).as_dict().items():
            assert 0.0 <= value <= 100.0, name
            assert not math.isnan(value)

    def test_deterministic(self):
        assert score(_typical()) == score(_typical())

    def test_clamp_score(self):
        assert clamp_score(-3.0) == 0.0
        assert clamp_score(140.0) == 100.0
        assert clamp_score(float("nan")) == 0.0
        assert clamp_score(42.5) == 42.5

    def test_jam_scores_clamp_on_construction(self):
        scores = JamScores.from_sequence([150.0, -2.0, None] + [50.0] * 7)
        assert scores.energy == 100.0
        assert scores.intensity == 0.0
        assert scores.groove == 0.0


# ---------------------------------------------------------------------------
# Monotonicity
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("score_name, feature, values", [
    ("energy", "rms_level", np.linspace(0.0, 0.3, 25)),
    ("energy", "lufs_integrated", np.linspace(-60.0, 0.0, 25)),
    ("energy", "sub_band_bass_mean", np.linspace(0.0, 0.3, 25)),
    ("intensity", "dynamic_range", np.linspace(0.0, 40.0, 25)),
    ("intensity", "loudness_range", np.linspace(0.0, 30.0, 25)),
    ("arousal", "energy_level", np.linspace(0.0, 1.5, 25)),
    ("arousal", "tempo_bpm", np.linspace(40.0, 220.0, 25)),
    ("improvisation", "chord_count", np.arange(0, 30)),
    ("build_quality", "crest_factor", np.linspace(1.0, 40.0, 25)),
    ("exploratory", "transition_count", np.arange(0, 60, 2)),
    ("tightness", "pitch_stability", np.linspace(0.0, 1.0, 25)),
])
def test_score_non_decreasing_in_feature(score_name, feature, values):
    results = [getattr(score(_typical(**{feature: float(v)})), score_name) for v in values]
    assert all(b >= a - 1e-9 for a, b in zip(results, results[1:])), results
    assert results[-1] > results[0]


def test_higher_repetition_lowers_improvisation():
    low = score(_typical(repetition_similarity=0.76)).improvisation
    high = score(_typical(repetition_similarity=0.99)).improvisation
    assert high < low


# ---------------------------------------------------------------------------
# Missing-feature behaviour
# ---------------------------------------------------------------------------


class TestAbsentFeatures:

    def test_absent_subcomponent_contributes_zero(self):
        full = score(_typical()).energy
        no_bass = score(_typical(sub_band_bass_mean=None)).energy
        assert no_bass < full
        assert no_bass == pytest.approx(full - DEFAULT_POINTS["energy"]["bass"] * min(1.0, 0.08 / 0.15))

    def test_no_onsets_means_no_groove(self):
        assert score(_typical(onset_count=0)).groove == 0.0
        assert score(_typical(onset_count=None)).groove == 0.0


class TestLongFormGuard:

    def test_short_track_withholds_long_form_scores(self):
        scores = score(_typical(duration=45.0))
        assert scores.build_quality == 0.0
        assert scores.transcendence == 0.0
        assert scores.energy > 0.0

    def test_unknown_duration_counts_as_short(self):
        record = _typical(duration=None)
        assert not is_long_form(record)
        assert score(record).build_quality == 0.0

    def test_long_track_gets_long_form_scores(self):
        scores = score(_typical(duration=900.0))
        assert scores.build_quality > 0.0
        assert scores.transcendence > 0.0

    def test_threshold_configurable(self):
        weights = ScoringWeights.from_overrides(min_long_form_duration=30.0)
        assert score(_typical(duration=45.0), weights).build_quality > 0.0


# ---------------------------------------------------------------------------
# Weights
# ---------------------------------------------------------------------------


class TestScoringWeights:

    def test_defaults_cover_every_score(self):
        assert set(DEFAULT_POINTS) == set(SCORE_NAMES) == set(SCORERS)

    def test_default_budgets_sum_to_100(self):
        for name, components in DEFAULT_POINTS.items():
            assert sum(components.values()) == 100, name

    def test_override_changes_score(self):
        weights = ScoringWeights.from_overrides({"energy": {"rms": 0}})
        assert score(_typical(), weights).energy < score(_typical()).energy

    def test_override_does_not_mutate_defaults(self):
        ScoringWeights.from_overrides({"energy": {"rms": 5}})
        assert DEFAULT_POINTS["energy"]["rms"] == 30
        assert ScoringWeights().budget("energy", "rms") == 30

    @pytest.mark.parametrize("overrides", [
        {"swagger": {"rms": 10}},
        {"energy": {"cowbell": 10}},
        {"energy": {"rms": -1}},
        {"energy": {"rms": "loud"}},
        {"energy": 10},
    ])
    def test_invalid_overrides_rejected(self, overrides):
        with pytest.raises(ConfigurationError):
            ScoringWeights.from_overrides(overrides)


# ---------------------------------------------------------------------------
# Rescore
# ---------------------------------------------------------------------------


class TestRescore:

    def _seed(self, storage, n=3):
        runs = []
        for i in range(n):
            track_id = storage.register_track(TrackRef(id=0, path=Path(f"/music/t{i}.flac")))
            run = make_run(track_id, rms_level=0.05 * (i + 1))
            runs.append(run)
        storage.commit_chunk(runs)
        return runs

    def test_rescore_recomputes_from_features(self, storage):
        runs = self._seed(storage)
        storage.update_scores([ScoreDelta(r.track_id, JamScores()) for r in runs])

        assert rescore(storage) == 3
        for run in runs:
            stored = storage.get_run(run.track_id)
            assert stored.scores == score(run.features)

    def test_rescore_uses_given_weights(self, storage):
        runs = self._seed(storage, n=1)
        weights = ScoringWeights.from_overrides({"energy": {"rms": 0, "lufs": 0}})
        rescore(storage, weights)
        assert storage.get_run(runs[0].track_id).scores.energy == 0.0

    def test_rescore_leaves_features_alone(self, storage):
        runs = self._seed(storage, n=2)
        before = [storage.get_run(r.track_id).features.to_row() for r in runs]
        rescore(storage)
        after = [storage.get_run(r.track_id).features.to_row() for r in runs]
        assert before == after

    def test_rescore_clears_calibration(self, storage):
        runs = self._seed(storage, n=2)
        storage.update_scores([ScoreDelta(r.track_id, r.scores) for r in runs])
        assert storage.stats()["calibrated"] == 2
        rescore(storage)
        assert storage.stats()["calibrated"] == 0
