"""Tests for reducing engine output into a FeatureRecord."""

import json
import pickle

import numpy as np
import pytest

from setbreak.core.aggregator import (
    aggregate,
    band_means,
    beat_regularity,
    buildup_ratio,
    cross_band_flux,
    mean_std,
    ols_slope,
    onset_interval_entropy,
    structural_diversity,
)
from setbreak.core.models import (
    FEATURE_FIELD_NAMES,
    ChordEvent,
    EnergyProfile,
    FeatureRecord,
    MusicalFeatures,
    PerceptualFeatures,
    PitchFeatures,
    RawFeatureSet,
    Repetition,
    Section,
    Segment,
    SpectralFeatures,
    StructureFeatures,
    SummaryFeatures,
    TemporalFeatures,
)
from setbreak.utils.errors import AggregationError


def _segment(energy, centroid, zcr, dr, start=0.0):
    return Segment(start_time=start, duration=10.0, energy=energy,
                   spectral_centroid=centroid, zcr=zcr, dynamic_range=dr)


# ---------------------------------------------------------------------------
# Reductions
# ---------------------------------------------------------------------------


class TestBandReductions:

    def test_band_means_per_row(self):
        matrix = np.array([[1.0, 3.0], [10.0, 20.0], [0.0, 0.0]])
        np.testing.assert_allclose(band_means(matrix), [2.0, 15.0, 0.0])

    def test_cross_band_flux_is_mean_column_distance(self):
        # Two steps: (3, 4) then (0, 0)
        matrix = np.array([[0.0, 3.0, 3.0], [0.0, 4.0, 4.0]])
        assert cross_band_flux(matrix) == pytest.approx(2.5)

    def test_cross_band_flux_needs_two_frames(self):
        assert cross_band_flux(np.ones((7, 1))) is None
        assert cross_band_flux(None) is None

    def test_constant_matrix_has_zero_flux(self):
        assert cross_band_flux(np.full((6, 50), 0.3)) == 0.0


class TestSeriesStats:

    def test_slope_of_line(self):
        assert ols_slope([1.0, 3.0, 5.0, 7.0]) == pytest.approx(2.0)

    def test_slope_ignores_non_finite_frames(self):
        assert ols_slope([0.0, -np.inf, 2.0, np.nan, 4.0]) == pytest.approx(1.0)

    def test_slope_absent_with_fewer_than_two_points(self):
        assert ols_slope([5.0]) is None
        assert ols_slope([np.nan, np.nan]) is None
        assert ols_slope(None) is None

    def test_mean_std_absent_for_empty(self):
        assert mean_std([]) == (None, None)
        assert mean_std([np.nan]) == (None, None)

    def test_buildup_ratio(self):
        values = [1.0, 1.0, 1.0, 2.0, 2.0, 2.0, 4.0, 4.0, 4.0]
        assert buildup_ratio(values) == pytest.approx(4.0)

    def test_beat_regularity_metronome(self):
        onsets = np.arange(0, 10, 0.5)
        assert beat_regularity(onsets) == pytest.approx(0.0)

    def test_onset_entropy_needs_enough_onsets(self):
        assert onset_interval_entropy(np.arange(5) * 0.5) is None
        assert onset_interval_entropy(np.arange(40) * 0.5) == pytest.approx(0.0)


class TestStructuralDiversity:

    def test_fewer_than_two_segments_is_absent(self):
        assert structural_diversity([]) is None
        assert structural_diversity([_segment(0.1, 1000, 0.05, 10)]) is None

    def test_identical_segments_have_zero_diversity(self):
        segs = [_segment(0.1, 1000, 0.05, 10) for _ in range(4)]
        assert structural_diversity(segs) == 0.0

    def test_two_opposite_segments(self):
        segs = [_segment(0.0, 500, 0.01, 5), _segment(1.0, 4000, 0.2, 30)]
        # Every normalized dimension spans 0 -> 1
        assert structural_diversity(segs) == pytest.approx(2.0)

    def test_normalization_is_within_track(self):
        quiet = [_segment(0.01, 500, 0.01, 5), _segment(0.02, 1000, 0.02, 10)]
        loud = [_segment(10.0, 500, 0.01, 5), _segment(20.0, 1000, 0.02, 10)]
        assert structural_diversity(quiet) == pytest.approx(structural_diversity(loud))


# ---------------------------------------------------------------------------
# aggregate()
# ---------------------------------------------------------------------------


def _full_raw(frames: int = 200) -> RawFeatureSet:
    rng = np.random.default_rng(11)
    duration = 180.0
    segments = [
        _segment(0.05, 1200, 0.04, 12, start=0.0),
        _segment(0.20, 2500, 0.09, 20, start=60.0),
        _segment(0.10, 1800, 0.06, 15, start=120.0),
    ]
    return RawFeatureSet(
        summary=SummaryFeatures(duration=duration, sample_rate=22050, channels=2,
                                peak_amplitude=0.9, rms_level=0.12, dynamic_range=17.5),
        spectral=SpectralFeatures(
            centroid=rng.uniform(1000, 3000, frames),
            flux=rng.uniform(0, 40, frames),
            rolloff=rng.uniform(2000, 6000, frames),
            flatness=rng.uniform(0, 0.3, frames),
            bandwidth=rng.uniform(1000, 2000, frames),
            zcr=rng.uniform(0.01, 0.1, frames),
            sub_band_bass=rng.uniform(0, 0.3, frames),
            sub_band_mid=rng.uniform(0, 0.5, frames),
            sub_band_high=rng.uniform(0, 0.2, frames),
            sub_band_presence=rng.uniform(0, 0.1, frames),
            mfcc=rng.normal(size=(13, frames)),
            contrast=rng.uniform(10, 40, size=(7, frames)),
            tonnetz=rng.uniform(-0.5, 0.5, size=(6, frames)),
            chroma=rng.uniform(0, 1, size=(12, frames)),
        ),
        temporal=TemporalFeatures(
            tempo=120.0,
            beats=np.arange(0, duration, 0.5),
            onsets=np.sort(rng.uniform(0, duration, 900)),
            tempo_stability=0.8,
            rhythmic_complexity=0.4,
        ),
        pitch=PitchFeatures(
            frequencies=np.where(rng.random(frames) < 0.3, np.nan, rng.uniform(100, 400, frames)),
            confidence=rng.uniform(0, 1, frames),
            clarity=rng.uniform(0, 1, frames),
            mean_pitch=220.0, stability=0.7,
        ),
        perceptual=PerceptualFeatures(
            lufs=-18.0, loudness_range=9.0, true_peak_dbfs=-1.0, crest_factor=7.5,
            energy_level=0.11,
            short_term_loudness=np.concatenate([[-np.inf], rng.uniform(-30, -10, frames - 1)]),
            momentary_loudness=rng.uniform(-35, -8, frames),
        ),
        musical=MusicalFeatures(
            key="G major", key_confidence=0.7, mode_clarity=0.2, tonality=0.6,
            harmonic_complexity=0.5, chroma_vector=[0.1] * 12,
            chords=[ChordEvent("G", 0.0, 2.0), ChordEvent("C", 2.0, 2.0), ChordEvent("G", 4.0, 2.0)],
            time_signature=(4, 4), key_alternatives=["E minor"],
        ),
        structure=StructureFeatures(
            segments=segments,
            sections=[Section("Intro", 0.0, 60.0), Section("Solo", 60.0, 120.0)],
            transitions=[60.0, 120.0],
            repetitions=[Repetition(0, 2, 0.9)],
            energy_profile=EnergyProfile(shape="Peak", peaks=[(90.0, 0.3), (150.0, 0.2)],
                                         valleys=[(30.0, 0.05)], variance=0.004),
        ),
    )


class TestAggregate:

    def test_empty_raw_gives_all_absent(self):
        record = aggregate(RawFeatureSet())
        assert isinstance(record, FeatureRecord)
        assert record.present() == {}

    def test_full_raw_fills_fixed_shape(self):
        record = aggregate(_full_raw())
        row = record.to_row()
        assert set(row) == set(FEATURE_FIELD_NAMES)
        assert record.duration == 180.0
        assert record.lufs_integrated == -18.0
        assert record.estimated_key == "G major"
        assert record.time_sig_numerator == 4
        assert record.chord_count == 2
        assert record.segment_count == 3
        assert record.structural_diversity is not None
        assert record.solo_section_count == 1
        assert record.solo_section_ratio == pytest.approx(60.0 / 180.0)
        assert len(json.loads(row["contrast_band_means"])) == 7
        assert len(json.loads(row["tonnetz_means"])) == 6
        assert len(json.loads(row["mfcc_means"])) == 13

    def test_record_class_importable_by_name(self):
        assert FeatureRecord.__module__ == "setbreak.core.models"
        record = aggregate(_full_raw())
        assert pickle.loads(pickle.dumps(record)) == record

    def test_values_are_plain_python(self):
        record = aggregate(_full_raw())
        for name, value in record.present().items():
            assert not isinstance(value, np.generic), name

    def test_no_nan_or_inf_persisted(self):
        record = aggregate(_full_raw())
        for name, value in record.present().items():
            if isinstance(value, float):
                assert np.isfinite(value), name

    def test_single_segment_leaves_diversity_absent(self):
        raw = RawFeatureSet(structure=StructureFeatures(segments=[_segment(0.1, 1000, 0.05, 10)]))
        record = aggregate(raw)
        assert record.segment_count == 1
        assert record.structural_diversity is None

    def test_unpitched_input_leaves_pitch_absent(self):
        raw = RawFeatureSet(pitch=PitchFeatures(
            frequencies=np.full(50, np.nan), confidence=np.full(50, 0.9)
        ))
        record = aggregate(raw)
        assert record.pitch_contour_std is None
        assert record.pitched_frame_ratio == 0.0

    def test_deterministic(self):
        assert aggregate(_full_raw()).to_row() == aggregate(_full_raw()).to_row()

    def test_malformed_input_raises_aggregation_error(self):
        raw = RawFeatureSet(structure=StructureFeatures(segments=[object(), object()]))
        with pytest.raises(AggregationError) as exc_info:
            aggregate(raw)
        assert exc_info.value.stage == "aggregate"
