"""
Feature aggregator for setbreak.

Reduces a RawFeatureSet (per-frame series, band-major matrices, structural
events) to one flat FeatureRecord. Anything that cannot be computed from
the available input is left as None rather than a sentinel number.
"""

import logging
from itertools import combinations
from typing import Any, Dict, Optional, Sequence, Tuple

import numpy as np

from setbreak.core.models import (
    FeatureRecord,
    N_CONTRAST_BANDS,
    N_MFCC,
    N_TONNETZ,
    PitchFeatures,
    RawFeatureSet,
    Segment,
    SpectralFeatures,
    StructureFeatures,
)
from setbreak.utils.errors import AggregationError

logger = logging.getLogger(__name__)

EPS = 1e-10

# Section types counted as solos
SOLO_SECTION_TYPES = ("Solo", "Instrumental")

ONSET_WINDOW = 10.0       # seconds per onset-density window
MIN_DENSITY_DURATION = 20.0
IOI_BINS = 20
IOI_RANGE = 0.5           # seconds covered by the histogram


# ---------------------------------------------------------------------------
# Series statistics
# ---------------------------------------------------------------------------

def _finite(values: Optional[Sequence[float]]) -> Optional[np.ndarray]:
    if values is None:
        return None
    arr = np.asarray(values, dtype=np.float64).ravel()
    arr = arr[np.isfinite(arr)]
    return arr if arr.size else None


def mean_std(values: Optional[Sequence[float]]) -> Tuple[Optional[float], Optional[float]]:
    """Population mean and std; (None, None) for empty input."""
    arr = _finite(values)
    if arr is None:
        return None, None
    return float(arr.mean()), float(arr.std())


def ols_slope(values: Optional[Sequence[float]]) -> Optional[float]:
    """
    OLS slope of a per-frame statistic against frame index.

    Non-finite frames are dropped first (silent frames give -inf LUFS);
    the intercept is discarded.
    """
    if values is None:
        return None
    y = np.asarray(values, dtype=np.float64).ravel()
    x = np.arange(y.size, dtype=np.float64)
    mask = np.isfinite(y)
    if np.count_nonzero(mask) < 2:
        return None
    x, y = x[mask], y[mask]
    dx = x - x.mean()
    denom = float(np.dot(dx, dx))
    if denom < EPS:
        return 0.0
    return float(np.dot(dx, y - y.mean()) / denom)


def skewness(values: Optional[Sequence[float]]) -> Optional[float]:
    arr = _finite(values)
    if arr is None or arr.size < 3:
        return None
    centered = arr - arr.mean()
    std = np.sqrt(np.mean(centered ** 2))
    if std < EPS:
        return 0.0
    return float(np.mean(centered ** 3) / std ** 3)


def kurtosis(values: Optional[Sequence[float]]) -> Optional[float]:
    """Excess kurtosis (normal = 0)."""
    arr = _finite(values)
    if arr is None or arr.size < 4:
        return None
    centered = arr - arr.mean()
    m2 = np.mean(centered ** 2)
    if m2 < 1e-12:
        return None
    return float(np.mean(centered ** 4) / (m2 * m2) - 3.0)


def pearson(a: Optional[Sequence[float]], b: Optional[Sequence[float]]) -> Optional[float]:
    """Pearson correlation of two per-frame series, truncated to the shorter."""
    if a is None or b is None:
        return None
    n = min(len(a), len(b))
    if n < 10:
        return None
    x = np.asarray(a[:n], dtype=np.float64)
    y = np.asarray(b[:n], dtype=np.float64)
    mask = np.isfinite(x) & np.isfinite(y)
    if np.count_nonzero(mask) < 10:
        return None
    dx = x[mask] - x[mask].mean()
    dy = y[mask] - y[mask].mean()
    denom = np.sqrt(np.dot(dx, dx) * np.dot(dy, dy))
    if denom < EPS:
        return 0.0
    return float(np.dot(dx, dy) / denom)


def buildup_ratio(values: Optional[Sequence[float]]) -> Optional[float]:
    """Mean of the last third over mean of the first third, capped at 10."""
    arr = _finite(values)
    if arr is None or arr.size < 6:
        return None
    third = arr.size // 3
    first = float(arr[:third].mean())
    last = float(arr[-third:].mean())
    if first < EPS:
        return 10.0 if last > EPS else 1.0
    return min(last / first, 10.0)


def peak_time(values: Optional[Sequence[float]]) -> Optional[float]:
    """Normalized position (0-1) of the loudest ~5% window."""
    if values is None or len(values) < 10:
        return None
    arr = np.nan_to_num(np.asarray(values, dtype=np.float64), nan=-70.0, neginf=-70.0, posinf=0.0)
    win = max(arr.size // 20, 3)
    sums = np.convolve(arr, np.ones(win), mode='valid')
    best = int(np.argmax(sums)) + win // 2
    return best / arr.size


# ---------------------------------------------------------------------------
# Band-major reductions
# ---------------------------------------------------------------------------

def band_means(matrix: Optional[np.ndarray]) -> Optional[np.ndarray]:
    """Per-band mean of a (bands, frames) matrix."""
    if matrix is None or matrix.ndim != 2 or matrix.shape[1] == 0:
        return None
    return np.mean(matrix, axis=1)


def band_stds(matrix: Optional[np.ndarray]) -> Optional[np.ndarray]:
    if matrix is None or matrix.ndim != 2 or matrix.shape[1] == 0:
        return None
    return np.std(matrix, axis=1)


def cross_band_flux(matrix: Optional[np.ndarray]) -> Optional[float]:
    """
    Mean Euclidean distance between adjacent frame columns of a
    (bands, frames) matrix, taken across all bands at once.
    """
    if matrix is None or matrix.ndim != 2 or matrix.shape[1] < 2:
        return None
    steps = np.linalg.norm(np.diff(matrix, axis=1), axis=0)
    return float(np.mean(steps))


# ---------------------------------------------------------------------------
# Rhythm
# ---------------------------------------------------------------------------

def onset_density_std(onsets: Optional[np.ndarray], duration: Optional[float]) -> Optional[float]:
    """Std of onset counts over 10 s windows. Needs at least 20 s of audio."""
    if onsets is None or len(onsets) == 0 or duration is None or duration < MIN_DENSITY_DURATION:
        return None
    n_windows = int(np.ceil(duration / ONSET_WINDOW))
    if n_windows < 2:
        return None
    idx = np.minimum((np.asarray(onsets) / ONSET_WINDOW).astype(int), n_windows - 1)
    counts = np.bincount(idx, minlength=n_windows).astype(np.float64)
    return float(counts.std())


def onset_interval_entropy(onsets: Optional[np.ndarray]) -> Optional[float]:
    """Normalized Shannon entropy of inter-onset intervals (0 = metronomic)."""
    if onsets is None or len(onsets) < 10:
        return None
    iois = np.diff(np.asarray(onsets, dtype=np.float64))
    iois = iois[(iois > 0.01) & (iois < 5.0)]
    if iois.size < 5:
        return None
    bin_width = IOI_RANGE / IOI_BINS
    idx = np.minimum((iois / bin_width).astype(int), IOI_BINS - 1)
    counts = np.bincount(idx, minlength=IOI_BINS)
    p = counts[counts > 0] / iois.size
    return float(-np.sum(p * np.log(p)) / np.log(IOI_BINS))


def beat_regularity(onsets: Optional[np.ndarray]) -> Optional[float]:
    """Coefficient of variation of inter-onset intervals."""
    if onsets is None or len(onsets) < 4:
        return None
    intervals = np.diff(np.asarray(onsets, dtype=np.float64))
    mean = float(intervals.mean())
    if mean < EPS:
        return None
    return float(intervals.std() / mean)


# ---------------------------------------------------------------------------
# Structure
# ---------------------------------------------------------------------------

def structural_diversity(segments: Sequence[Segment]) -> Optional[float]:
    """
    Mean pairwise distance between segments in
    {energy, centroid, zcr, dynamic_range} space.

    Each dimension is min-max normalized within the track; a dimension
    with zero range contributes 0.
    """
    if len(segments) < 2:
        return None
    vectors = np.array(
        [[s.energy, s.spectral_centroid, s.zcr, s.dynamic_range] for s in segments],
        dtype=np.float64,
    )
    lo = vectors.min(axis=0)
    span = vectors.max(axis=0) - lo
    normalized = np.where(span > EPS, (vectors - lo) / np.where(span > EPS, span, 1.0), 0.0)
    distances = [float(np.linalg.norm(normalized[i] - normalized[j]))
                 for i, j in combinations(range(len(segments)), 2)]
    return float(np.mean(distances))


def chord_stats(chords, duration: Optional[float]) -> Tuple[Optional[int], Optional[float]]:
    """Unique chord labels and label changes per minute."""
    if chords is None:
        return None, None
    labels = [c.chord for c in chords]
    changes = sum(1 for a, b in zip(labels, labels[1:]) if a != b)
    rate = changes / (duration / 60.0) if duration and duration > 0 else None
    return len(set(labels)), rate


def _solo_sections(structure: StructureFeatures, duration: Optional[float]) -> Tuple[int, Optional[float]]:
    solos = [s for s in structure.sections if s.section_type in SOLO_SECTION_TYPES]
    solo_time = sum(s.end_time - s.start_time for s in solos)
    ratio = solo_time / duration if duration and duration > 0 else None
    return len(solos), ratio


# ---------------------------------------------------------------------------
# Groups
# ---------------------------------------------------------------------------

def _spectral_fields(sp: SpectralFeatures) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    series = {
        'spectral_centroid': sp.centroid,
        'spectral_flux': sp.flux,
        'spectral_rolloff': sp.rolloff,
        'spectral_flatness': sp.flatness,
        'spectral_bandwidth': sp.bandwidth,
        'zcr': sp.zcr,
        'sub_band_bass': sp.sub_band_bass,
        'sub_band_mid': sp.sub_band_mid,
        'sub_band_high': sp.sub_band_high,
        'sub_band_presence': sp.sub_band_presence,
    }
    for name, values in series.items():
        out[f"{name}_mean"], out[f"{name}_std"] = mean_std(values)

    # Per-band reductions over band-major matrices
    for prefix, matrix, n_bands, with_std in (
        ('mfcc', sp.mfcc, N_MFCC, True),
        ('contrast_band', sp.contrast, N_CONTRAST_BANDS, True),
        ('tonnetz', sp.tonnetz, N_TONNETZ, False),
    ):
        means = band_means(matrix)
        stds = band_stds(matrix) if with_std else None
        for i in range(n_bands):
            if means is not None and i < means.size:
                out[f"{prefix}_{i}_mean"] = float(means[i])
                if stds is not None:
                    out[f"{prefix}_{i}_std"] = float(stds[i])

    contrast_means = band_means(sp.contrast)
    tonnetz_means = band_means(sp.tonnetz)
    mfcc_means = band_means(sp.mfcc)
    out['contrast_band_means'] = contrast_means.tolist() if contrast_means is not None else None
    out['tonnetz_means'] = tonnetz_means.tolist() if tonnetz_means is not None else None
    out['mfcc_means'] = mfcc_means.tolist() if mfcc_means is not None else None

    out['contrast_flux'] = cross_band_flux(sp.contrast)
    out['tonnetz_flux'] = cross_band_flux(sp.tonnetz)
    out['chroma_flux'] = cross_band_flux(sp.chroma)
    out['mfcc_flux_mean'] = cross_band_flux(sp.mfcc)
    if sp.contrast is not None and sp.contrast.ndim == 2 and sp.contrast.shape[1] >= 2:
        out['contrast_slope'] = ols_slope(np.mean(sp.contrast, axis=0))

    out['spectral_flux_skewness'] = skewness(sp.flux)
    out['spectral_centroid_slope'] = ols_slope(sp.centroid)
    out['spectral_centroid_kurtosis'] = kurtosis(sp.centroid)
    out['spectral_rolloff_slope'] = ols_slope(sp.rolloff)
    out['spectral_flatness_slope'] = ols_slope(sp.flatness)
    out['spectral_bandwidth_slope'] = ols_slope(sp.bandwidth)
    out['zcr_slope'] = ols_slope(sp.zcr)
    out['bass_energy_slope'] = ols_slope(sp.sub_band_bass)
    out['energy_buildup_ratio'] = buildup_ratio(sp.flux)

    if sp.sub_band_bass is not None and sp.sub_band_high is not None and sp.sub_band_presence is not None:
        n = min(len(sp.sub_band_bass), len(sp.sub_band_high), len(sp.sub_band_presence))
        if n > 0:
            treble = np.asarray(sp.sub_band_high[:n], dtype=np.float64) + sp.sub_band_presence[:n]
            bass = np.asarray(sp.sub_band_bass[:n], dtype=np.float64)
            ratios = np.where(treble > EPS, bass / np.where(treble > EPS, treble, 1.0), 1.0)
            out['bass_treble_ratio_mean'], out['bass_treble_ratio_std'] = mean_std(ratios)
    return out


def _pitch_fields(pitch: PitchFeatures) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        'mean_pitch': pitch.mean_pitch,
        'pitch_range_low': pitch.range_low,
        'pitch_range_high': pitch.range_high,
        'pitch_stability': pitch.stability,
        'dominant_pitch': pitch.dominant_pitch,
        'vibrato_presence': pitch.vibrato_presence,
        'vibrato_rate': pitch.vibrato_rate,
    }
    conf = pitch.confidence
    freqs = pitch.frequencies
    if conf is not None and len(conf):
        conf = np.asarray(conf, dtype=np.float64)
        out['pitch_confidence_mean'] = float(conf.mean())
        if freqs is not None and len(freqs) == len(conf):
            freqs = np.asarray(freqs, dtype=np.float64)
            voiced = (conf > 0.5) & np.isfinite(freqs)
            out['pitched_frame_ratio'] = float(np.count_nonzero(voiced)) / conf.size
            contour = freqs[voiced]
            contour = contour[(contour > 50.0) & (contour < 4000.0)]
            if contour.size >= 10:
                out['pitch_contour_std'] = float(contour.std())
    if pitch.clarity is not None and len(pitch.clarity):
        out['pitch_clarity_mean'] = float(np.mean(pitch.clarity))
    return out


def _structure_fields(st: StructureFeatures, duration: Optional[float]) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        'segment_count': len(st.segments),
        'temporal_complexity': st.temporal_complexity,
        'coherence_score': st.coherence_score,
        'structural_diversity': structural_diversity(st.segments),
        'transition_count': len(st.transitions),
        'repetition_count': len(st.repetitions),
        'tension_build_count': sum(1 for t in st.tension if t.change == "build"),
        'tension_release_count': sum(1 for t in st.tension if t.change == "release"),
    }
    if st.repetitions:
        out['repetition_similarity'] = float(np.mean([r.similarity for r in st.repetitions]))
    if st.tension:
        tensions = [t.tension for t in st.tension]
        out['peak_tension'] = float(max(tensions))
        out['tension_range'] = float(max(tensions) - min(tensions))
    out['solo_section_count'], out['solo_section_ratio'] = _solo_sections(st, duration)
    if st.periodic_events:
        out['rhythmic_periodicity_strength'] = float(max(e.strength for e in st.periodic_events))

    profile = st.energy_profile
    if profile is not None:
        out['energy_shape'] = profile.shape
        out['energy_variance'] = profile.variance
        out['energy_peak_count'] = len(profile.peaks)
        if profile.peaks:
            out['peak_energy'] = float(profile.peaks[0][1])
        if profile.peaks and profile.valleys:
            mean_peak = float(np.mean([p[1] for p in profile.peaks]))
            mean_valley = float(np.mean([v[1] for v in profile.valleys]))
            if mean_peak > EPS:
                out['energy_valley_depth_mean'] = mean_valley / mean_peak
    return out


def aggregate(raw: RawFeatureSet) -> FeatureRecord:
    """
    Reduce engine output to a FeatureRecord.

    Raises:
        AggregationError: If the engine output is malformed
    """
    try:
        with np.errstate(divide='ignore', invalid='ignore'):
            values = _aggregate_impl(raw)
    except (ValueError, TypeError, IndexError, AttributeError) as e:
        raise AggregationError(f"Failed to aggregate features: {type(e).__name__}: {e}")

    # Never persist NaN/inf as if it were a measurement
    for name, value in values.items():
        if isinstance(value, float) and not np.isfinite(value):
            values[name] = None
    record = FeatureRecord(**values)
    logger.debug(f"Aggregated {len(record.present())} of {len(values)} candidate features")
    return record


def _aggregate_impl(raw: RawFeatureSet) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    duration: Optional[float] = None

    if raw.summary is not None:
        s = raw.summary
        duration = s.duration
        values.update(
            duration=s.duration,
            sample_rate=s.sample_rate,
            channels=s.channels,
            peak_amplitude=s.peak_amplitude,
            rms_level=s.rms_level,
            dynamic_range=s.dynamic_range,
        )

    if raw.spectral is not None:
        values.update(_spectral_fields(raw.spectral))

    if raw.temporal is not None:
        t = raw.temporal
        values.update(
            tempo_bpm=t.tempo,
            beat_count=len(t.beats) if t.beats is not None else None,
            onset_count=len(t.onsets) if t.onsets is not None else None,
            tempo_stability=t.tempo_stability,
            rhythmic_complexity=t.rhythmic_complexity,
            onset_density_std=onset_density_std(t.onsets, duration),
            onset_interval_entropy=onset_interval_entropy(t.onsets),
            # Uses onsets rather than grid-snapped beats
            beat_regularity=beat_regularity(t.onsets),
        )

    if raw.pitch is not None:
        values.update(_pitch_fields(raw.pitch))

    if raw.perceptual is not None:
        p = raw.perceptual
        values.update(
            lufs_integrated=p.lufs,
            loudness_range=p.loudness_range,
            true_peak_dbfs=p.true_peak_dbfs,
            crest_factor=p.crest_factor,
            energy_level=p.energy_level,
            loudness_buildup_slope=ols_slope(p.short_term_loudness),
            peak_energy_time=peak_time(p.short_term_loudness),
        )
        stl = _finite(p.short_term_loudness)
        if stl is not None:
            values['loudness_std'] = float(stl.std())
            values['loudness_dynamic_spread'] = float(stl.max() - stl.min())
        momentary = _finite(p.momentary_loudness)
        if momentary is not None:
            values['peak_loudness'] = float(momentary.max())
        if raw.spectral is not None:
            values['spectral_loudness_correlation'] = pearson(
                raw.spectral.centroid, p.short_term_loudness
            )

    if raw.musical is not None:
        m = raw.musical
        chord_count, chord_rate = chord_stats(m.chords, duration)
        values.update(
            estimated_key=m.key,
            key_confidence=m.key_confidence,
            tonality=m.tonality,
            harmonic_complexity=m.harmonic_complexity,
            mode_clarity=m.mode_clarity,
            chord_count=chord_count,
            chord_change_rate=chord_rate,
            key_alternatives_count=len(m.key_alternatives) if m.key_alternatives is not None else None,
            chroma_vector=list(m.chroma_vector) if m.chroma_vector is not None else None,
        )
        if m.time_signature is not None:
            values['time_sig_numerator'], values['time_sig_denominator'] = m.time_signature

    if raw.structure is not None:
        values.update(_structure_fields(raw.structure, duration))

    if raw.quality is not None:
        q = raw.quality
        values.update(
            recording_quality_score=q.overall_score,
            snr_db=q.snr_db,
            clipping_ratio=q.clipping_ratio,
            noise_floor_db=q.noise_floor_db,
        )

    if raw.classification is not None:
        values.update(
            classification_music_score=raw.classification.music_score,
            hnr=raw.classification.hnr,
        )

    # Coerce numpy scalars so records compare and serialize cleanly
    return {k: (v.item() if isinstance(v, np.generic) else v) for k, v in values.items()}
