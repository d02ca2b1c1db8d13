"""
Jam-score engine for setbreak.

Maps a FeatureRecord to ten bounded JamScores. Each score is a sum of
saturating sub-components, each worth a point budget; a sub-component
whose input feature is absent earns nothing.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional

from setbreak.core.models import SCORE_NAMES, JamScores, ScoreDelta, clamp_score
from setbreak.utils.errors import ConfigurationError

logger = logging.getLogger(__name__)

# Point budgets per score and sub-component. Empirically tuned against
# live tape recordings; override via scoring.weights in config.
DEFAULT_POINTS: Dict[str, Dict[str, float]] = {
    "energy": {"rms": 30, "lufs": 30, "bass": 20, "brightness": 20},
    "intensity": {"flux_variation": 40, "dynamic_range": 30, "loudness_range": 30},
    "groove": {"onset_rate": 20, "flux_consistency": 30, "bass_steadiness": 25, "repetition": 25},
    "improvisation": {"non_repetition": 25, "chord_richness": 25, "timbre_variety": 25, "transitions": 25},
    "tightness": {"pitch_stability": 25, "flux_consistency": 25, "beat_alignment": 25, "tonal_consistency": 25},
    "build_quality": {"crest": 30, "loudness_range": 25, "energy_variance": 20, "transition_density": 25},
    "exploratory": {"flatness_variety": 25, "pitch_uncertainty": 25, "transition_density": 25, "mode_ambiguity": 25},
    "transcendence": {"peak_ratio": 25, "crest": 25, "groove_energy": 30, "spectral_richness": 20},
    "valence": {"mode": 30, "tempo": 25, "brightness": 25, "simplicity": 20},
    "arousal": {"energy": 30, "tempo": 25, "flux": 20, "loudness": 25},
}

# Scores that need sustained structure to mean anything
LONG_FORM_SCORES = ("build_quality", "transcendence")
MIN_LONG_FORM_DURATION = 60.0


@dataclass(frozen=True)
class ScoringWeights:
    """Point budgets plus the short-track floor."""

    points: Dict[str, Dict[str, float]] = field(
        default_factory=lambda: {k: dict(v) for k, v in DEFAULT_POINTS.items()}
    )
    min_long_form_duration: float = MIN_LONG_FORM_DURATION

    def budget(self, score: str, component: str) -> float:
        return float(self.points[score][component])

    @classmethod
    def from_overrides(
        cls,
        overrides: Optional[Mapping[str, Mapping[str, Any]]] = None,
        min_long_form_duration: float = MIN_LONG_FORM_DURATION,
    ) -> "ScoringWeights":
        """
        Merge config overrides over the defaults.

        Raises:
            ConfigurationError: On an unknown score or sub-component name,
                or a negative budget
        """
        points = {k: dict(v) for k, v in DEFAULT_POINTS.items()}
        for score, components in (overrides or {}).items():
            if score not in points:
                raise ConfigurationError(
                    f"Unknown score in scoring.weights: {score}",
                    config_key=f"scoring.weights.{score}",
                )
            if not isinstance(components, Mapping):
                raise ConfigurationError(
                    f"scoring.weights.{score} must be a mapping",
                    config_key=f"scoring.weights.{score}",
                )
            for component, value in components.items():
                key = f"scoring.weights.{score}.{component}"
                if component not in points[score]:
                    raise ConfigurationError(f"Unknown sub-component: {key}", config_key=key)
                if not isinstance(value, (int, float)) or value < 0:
                    raise ConfigurationError(
                        f"{key} must be a non-negative number, got {value!r}",
                        config_key=key,
                    )
                points[score][component] = float(value)
        return cls(points=points, min_long_form_duration=float(min_long_form_duration))

    @classmethod
    def from_settings(cls, settings) -> "ScoringWeights":
        return cls.from_overrides(settings.score_weights, settings.min_long_form_duration)


DEFAULT_WEIGHTS = ScoringWeights()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _get(record, name: str) -> Optional[float]:
    """Numeric feature value, or None when absent or NaN."""
    value = getattr(record, name, None)
    if value is None:
        return None
    try:
        value = float(value)
    except (TypeError, ValueError):
        return None
    return value if math.isfinite(value) else None


def _award(points: float, norm: Optional[float]) -> float:
    """points * clamp(norm, 0, 1); absent or NaN norm earns 0."""
    if norm is None or norm != norm:
        return 0.0
    return points * min(1.0, max(0.0, norm))


def _ratio(num: Optional[float], den: Optional[float], floor: float) -> Optional[float]:
    if num is None or den is None or den <= floor:
        return None
    return num / den


def _per_minute(count: Optional[float], duration: Optional[float]) -> Optional[float]:
    if count is None or duration is None or duration <= 0:
        return None
    return count / (duration / 60.0)


def _onset_sweet_spot(rate: float) -> float:
    """7-9 onsets/sec is the groove zone."""
    if rate < 5.0:
        return rate / 5.0
    if rate < 7.0:
        return 0.6 + 0.4 * (rate - 5.0) / 2.0
    if rate <= 9.0:
        return 1.0
    if rate <= 11.0:
        return 1.0 - 0.4 * (rate - 9.0) / 2.0
    return max(0.0, 0.6 - (rate - 11.0) / 5.0)


def _flux_cv(record) -> Optional[float]:
    flux_mean = _get(record, "spectral_flux_mean")
    flux_std = _get(record, "spectral_flux_std")
    if flux_mean is None or flux_std is None:
        return None
    # Near-silent flux is treated as maximally inconsistent
    return flux_std / flux_mean if flux_mean > 0.5 else 2.0


def _inverse(norm: Optional[float]) -> Optional[float]:
    return None if norm is None else 1.0 - norm


def _tempo_norm(record) -> Optional[float]:
    tempo = _get(record, "tempo_bpm")
    return None if tempo is None else (tempo - 60.0) / 120.0


# ---------------------------------------------------------------------------
# Scores
# ---------------------------------------------------------------------------

def energy_score(record, w: ScoringWeights = DEFAULT_WEIGHTS) -> float:
    """How present and powerful the music feels."""
    rms = _get(record, "rms_level")
    lufs = _get(record, "lufs_integrated")
    bass = _get(record, "sub_band_bass_mean")
    centroid = _get(record, "spectral_centroid_mean")
    return (
        _award(w.budget("energy", "rms"), None if rms is None else rms / 0.18)
        + _award(w.budget("energy", "lufs"), None if lufs is None else (lufs + 55.0) / 22.0)
        + _award(w.budget("energy", "bass"), None if bass is None else bass / 0.15)
        + _award(w.budget("energy", "brightness"),
                 None if centroid is None else (centroid - 2000.0) / 6000.0)
    )


def intensity_score(record, w: ScoringWeights = DEFAULT_WEIGHTS) -> float:
    """How much the music varies in energy."""
    flux_std = _get(record, "spectral_flux_std")
    dr = _get(record, "dynamic_range")
    lra = _get(record, "loudness_range")
    return (
        _award(w.budget("intensity", "flux_variation"), None if flux_std is None else flux_std / 50.0)
        + _award(w.budget("intensity", "dynamic_range"), None if dr is None else dr / 30.0)
        + _award(w.budget("intensity", "loudness_range"), None if lra is None else lra / 20.0)
    )


def groove_score(record, w: ScoringWeights = DEFAULT_WEIGHTS) -> float:
    """How steady and compelling the rhythm is."""
    onset_count = _get(record, "onset_count")
    # No onsets, no groove
    if onset_count is None or onset_count < 1:
        return 0.0

    duration = _get(record, "duration")
    onset_rate = onset_count / max(duration, 1.0) if duration is not None else None

    flux_cv = _flux_cv(record)

    bass_mean = _get(record, "sub_band_bass_mean")
    bass_std = _get(record, "sub_band_bass_std")
    bass_cv = None
    if bass_mean is not None and bass_std is not None:
        bass_cv = bass_std / bass_mean if bass_mean > 0.01 else 1.5

    rep_sim = _get(record, "repetition_similarity")

    return (
        _award(w.budget("groove", "onset_rate"),
               None if onset_rate is None else _onset_sweet_spot(onset_rate))
        + _award(w.budget("groove", "flux_consistency"), _inverse(flux_cv))
        + _award(w.budget("groove", "bass_steadiness"),
                 None if bass_cv is None else 1.0 - bass_cv * 0.7)
        + _award(w.budget("groove", "repetition"),
                 None if rep_sim is None else (rep_sim - 0.85) / 0.15)
    )


def improvisation_score(record, w: ScoringWeights = DEFAULT_WEIGHTS) -> float:
    """How far the music departs from repetitive structure."""
    rep_sim = _get(record, "repetition_similarity")
    chords = _get(record, "chord_count")
    centroid_std = _get(record, "spectral_centroid_std")
    transitions = _get(record, "transition_count")
    return (
        _award(w.budget("improvisation", "non_repetition"),
               None if rep_sim is None else 1.0 - (rep_sim - 0.75) / 0.25)
        + _award(w.budget("improvisation", "chord_richness"),
                 None if chords is None else (chords - 3.0) / 18.0)
        + _award(w.budget("improvisation", "timbre_variety"),
                 None if centroid_std is None else (centroid_std - 400.0) / 2500.0)
        + _award(w.budget("improvisation", "transitions"),
                 None if transitions is None else transitions / 30.0)
    )


def tightness_score(record, w: ScoringWeights = DEFAULT_WEIGHTS) -> float:
    """How locked-in the band is."""
    pitch_stability = _get(record, "pitch_stability")
    flux_cv = _flux_cv(record)

    beats = _get(record, "beat_count")
    onsets = _get(record, "onset_count")
    beat_strength = None
    if beats is not None and onsets is not None:
        ratio = min(1.0, max(0.0, beats / max(onsets, 1.0)))
        if ratio < 0.1:
            beat_strength = ratio * 5.0
        elif ratio <= 0.8:
            beat_strength = 1.0
        else:
            beat_strength = 0.8 + 0.2 * (1.0 - ratio) / 0.2

    flat_std = _get(record, "spectral_flatness_std")
    return (
        _award(w.budget("tightness", "pitch_stability"), pitch_stability)
        + _award(w.budget("tightness", "flux_consistency"),
                 None if flux_cv is None else 1.0 - (flux_cv - 0.3) / 1.2)
        + _award(w.budget("tightness", "beat_alignment"), beat_strength)
        + _award(w.budget("tightness", "tonal_consistency"),
                 None if flat_std is None else 1.0 - (flat_std - 0.04) / 0.22)
    )


def build_quality_score(record, w: ScoringWeights = DEFAULT_WEIGHTS) -> float:
    """How well the music builds to peaks."""
    crest = _get(record, "crest_factor")
    lra = _get(record, "loudness_range")
    e_var = _get(record, "energy_variance")
    trans_per_min = _per_minute(_get(record, "transition_count"), _get(record, "duration"))
    return (
        _award(w.budget("build_quality", "crest"), None if crest is None else (crest - 3.0) / 25.0)
        + _award(w.budget("build_quality", "loudness_range"), None if lra is None else (lra - 1.0) / 20.0)
        + _award(w.budget("build_quality", "energy_variance"), None if e_var is None else e_var / 0.01)
        + _award(w.budget("build_quality", "transition_density"),
                 None if trans_per_min is None else trans_per_min / 5.0)
    )


def exploratory_score(record, w: ScoringWeights = DEFAULT_WEIGHTS) -> float:
    """How much timbral, textural and structural territory is covered."""
    flat_std = _get(record, "spectral_flatness_std")
    pitch_conf = _get(record, "pitch_confidence_mean")
    trans_per_min = _per_minute(_get(record, "transition_count"), _get(record, "duration"))
    mode_clarity = _get(record, "mode_clarity")
    return (
        _award(w.budget("exploratory", "flatness_variety"),
               None if flat_std is None else (flat_std - 0.04) / 0.22)
        + _award(w.budget("exploratory", "pitch_uncertainty"), _inverse(pitch_conf))
        + _award(w.budget("exploratory", "transition_density"),
                 None if trans_per_min is None else trans_per_min / 5.0)
        + _award(w.budget("exploratory", "mode_ambiguity"),
                 None if mode_clarity is None else 1.0 - (mode_clarity - 0.05) / 0.20)
    )


def transcendence_score(record, w: ScoringWeights = DEFAULT_WEIGHTS) -> float:
    """The peak-experience composite; everything comes together."""
    peak_e = _get(record, "peak_energy")
    avg_e = _get(record, "energy_level")
    peak_ratio = None
    if peak_e is not None and avg_e is not None:
        peak_ratio = peak_e / max(avg_e, 0.001)

    crest = _get(record, "crest_factor")
    groove = clamp_score(groove_score(record, w))
    energy = clamp_score(energy_score(record, w))
    synergy = math.sqrt((groove / 100.0) * (energy / 100.0))
    flux = _get(record, "spectral_flux_mean")
    return (
        _award(w.budget("transcendence", "peak_ratio"),
               None if peak_ratio is None else (peak_ratio - 0.05) / 0.8)
        + _award(w.budget("transcendence", "crest"), None if crest is None else (crest - 3.0) / 25.0)
        + _award(w.budget("transcendence", "groove_energy"), synergy)
        + _award(w.budget("transcendence", "spectral_richness"), None if flux is None else flux / 50.0)
    )


def valence_score(record, w: ScoringWeights = DEFAULT_WEIGHTS) -> float:
    """Happy (high) to sad (low)."""
    key = getattr(record, "estimated_key", None)
    mode = None
    if key:
        if "major" in key:
            mode = 1.0
        elif "minor" in key:
            mode = 0.0
        else:
            mode = 0.5

    centroid = _get(record, "spectral_centroid_mean")
    complexity = _get(record, "harmonic_complexity")
    return (
        _award(w.budget("valence", "mode"), mode)
        + _award(w.budget("valence", "tempo"), _tempo_norm(record))
        + _award(w.budget("valence", "brightness"),
                 None if centroid is None else (centroid - 500.0) / 4500.0)
        + _award(w.budget("valence", "simplicity"),
                 None if complexity is None else 1.0 - min(1.0, max(0.0, complexity)))
    )


def arousal_score(record, w: ScoringWeights = DEFAULT_WEIGHTS) -> float:
    """Energetic (high) to calm (low)."""
    energy = _get(record, "energy_level")
    flux = _get(record, "spectral_flux_mean")
    lufs = _get(record, "lufs_integrated")
    return (
        _award(w.budget("arousal", "energy"), energy)
        + _award(w.budget("arousal", "tempo"), _tempo_norm(record))
        + _award(w.budget("arousal", "flux"), None if flux is None else flux / 50.0)
        + _award(w.budget("arousal", "loudness"), None if lufs is None else (lufs + 40.0) / 40.0)
    )


SCORERS: Dict[str, Callable[..., float]] = {
    "energy": energy_score,
    "intensity": intensity_score,
    "groove": groove_score,
    "improvisation": improvisation_score,
    "tightness": tightness_score,
    "build_quality": build_quality_score,
    "exploratory": exploratory_score,
    "transcendence": transcendence_score,
    "valence": valence_score,
    "arousal": arousal_score,
}


def is_long_form(record, weights: ScoringWeights = DEFAULT_WEIGHTS) -> bool:
    duration = _get(record, "duration")
    return duration is not None and duration >= weights.min_long_form_duration


def score(record, weights: Optional[ScoringWeights] = None) -> JamScores:
    """
    Compute all ten scores. Pure and deterministic.

    Short tracks (or tracks with unknown duration) get the long-form scores
    withheld to 0.
    """
    weights = weights or DEFAULT_WEIGHTS
    long_form = is_long_form(record, weights)
    values = {}
    for name in SCORE_NAMES:
        if name in LONG_FORM_SCORES and not long_form:
            values[name] = 0.0
        else:
            values[name] = clamp_score(SCORERS[name](record, weights))
    return JamScores(**values)


def rescore(storage, weights: Optional[ScoringWeights] = None) -> int:
    """
    Recompute scores for every stored run from its features.

    No decoding; writes only the score columns. Returns the number of
    tracks updated.
    """
    weights = weights or DEFAULT_WEIGHTS
    deltas = [
        ScoreDelta(track_id=run.track_id, scores=score(run.features, weights))
        for run in storage.all_analysis_runs(include_garbage=True)
    ]
    storage.update_scores(deltas, calibrated=False)
    logger.info(f"Rescored {len(deltas)} tracks")
    return len(deltas)
