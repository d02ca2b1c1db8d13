"""
Core data models for setbreak.

Track references come from the catalog, AudioBuffers live only inside a
worker, and FeatureRecord / JamScores / AnalysisRun are what gets stored.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, make_dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np


class DataQuality(str, Enum):
    """Quality flag set once at analysis time."""

    OK = "ok"
    SUSPECT = "suspect"
    GARBAGE = "garbage"


class AudioFormat(str, Enum):
    """Closed set of container formats the decode dispatcher knows about."""

    WAV = "wav"
    FLAC = "flac"
    OGG = "ogg"
    AIFF = "aiff"
    MP3 = "mp3"
    SHN = "shn"
    APE = "ape"
    WV = "wv"
    M4A = "m4a"
    AAC = "aac"
    OPUS = "opus"
    OTHER = "other"

    @classmethod
    def from_path(cls, path: Path, hint: Optional[str] = None) -> "AudioFormat":
        """Resolve a format tag from an explicit hint or the file extension."""
        ext = (hint or Path(path).suffix).lower().lstrip(".")
        if ext == "aif":
            ext = "aiff"
        try:
            return cls(ext)
        except ValueError:
            return cls.OTHER


@dataclass(frozen=True)
class TrackRef:
    """One audio file as known to the catalog. Read-only to the pipeline."""

    id: int
    path: Path
    known_format: str = ""
    band: Optional[str] = None
    date: Optional[str] = None
    venue: Optional[str] = None
    disc: Optional[int] = None
    track: Optional[int] = None

    @property
    def show_key(self) -> Optional[str]:
        """Identity of the recording session this track belongs to."""
        if not self.date:
            return None
        if self.band:
            return f"{self.band}|{self.date}"
        return self.date


@dataclass(frozen=True)
class AudioBuffer:
    """
    Decoded signal, channel-major: samples.shape == (channels, frames).

    Owned by one worker task; dropped after feature extraction.
    """

    sample_rate: int
    samples: np.ndarray
    bits_per_sample: int = 32
    source_format: AudioFormat = AudioFormat.OTHER

    def __post_init__(self) -> None:
        if self.samples.ndim != 2:
            raise ValueError(f"samples must be (channels, frames), got shape {self.samples.shape}")
        if self.samples.shape[0] not in (1, 2):
            raise ValueError(f"channel count must be 1 or 2, got {self.samples.shape[0]}")
        if self.samples.shape[1] == 0:
            raise ValueError("AudioBuffer must contain at least one frame")
        if self.sample_rate <= 0:
            raise ValueError(f"Invalid sample rate: {self.sample_rate}")

    @property
    def channels(self) -> int:
        return int(self.samples.shape[0])

    @property
    def frames(self) -> int:
        return int(self.samples.shape[1])

    @property
    def duration(self) -> float:
        return self.frames / self.sample_rate

    @property
    def mono(self) -> np.ndarray:
        """Mono mixdown (a view for mono input)."""
        if self.channels == 1:
            return self.samples[0]
        return self.samples.mean(axis=0)

    def interleaved_head(self, count: int) -> np.ndarray:
        """First `count` samples in file (interleaved) order."""
        frames_needed = -(-count // self.channels)
        head = self.samples[:, :frames_needed]
        return head.T.reshape(-1)[:count]


# ---------------------------------------------------------------------------
# FeatureRecord
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FieldSpec:
    """One column of the flat feature record."""

    name: str
    kind: str = "real"  # real | int | text | json

    @property
    def sql_type(self) -> str:
        return {"real": "REAL", "int": "INTEGER"}.get(self.kind, "TEXT")


def _series(*names: str) -> List[FieldSpec]:
    return [FieldSpec(f"{n}_{stat}") for n in names for stat in ("mean", "std")]


SPECTRAL_SERIES = (
    "spectral_centroid", "spectral_flux", "spectral_rolloff", "spectral_flatness",
    "spectral_bandwidth", "zcr", "sub_band_bass", "sub_band_mid", "sub_band_high",
    "sub_band_presence",
)
N_MFCC = 13
N_CONTRAST_BANDS = 7
N_TONNETZ = 6

FEATURE_FIELDS: Tuple[FieldSpec, ...] = tuple(
    [
        # Summary
        FieldSpec("duration"), FieldSpec("sample_rate", "int"), FieldSpec("channels", "int"),
        FieldSpec("peak_amplitude"), FieldSpec("rms_level"), FieldSpec("dynamic_range"),
    ]
    + _series(*SPECTRAL_SERIES)
    + _series(*(f"mfcc_{i}" for i in range(N_MFCC)))
    + _series(*(f"contrast_band_{i}" for i in range(N_CONTRAST_BANDS)))
    + [FieldSpec("contrast_flux"), FieldSpec("contrast_slope")]
    + [FieldSpec(f"tonnetz_{i}_mean") for i in range(N_TONNETZ)]
    + [FieldSpec("tonnetz_flux"), FieldSpec("chroma_flux")]
    + [
        # Temporal
        FieldSpec("tempo_bpm"), FieldSpec("beat_count", "int"), FieldSpec("onset_count", "int"),
        FieldSpec("tempo_stability"), FieldSpec("rhythmic_complexity"),
        # Pitch
        FieldSpec("mean_pitch"), FieldSpec("pitch_range_low"), FieldSpec("pitch_range_high"),
        FieldSpec("pitch_stability"), FieldSpec("dominant_pitch"), FieldSpec("vibrato_presence"),
        FieldSpec("vibrato_rate"), FieldSpec("pitch_confidence_mean"),
        # Perceptual
        FieldSpec("lufs_integrated"), FieldSpec("loudness_range"), FieldSpec("true_peak_dbfs"),
        FieldSpec("crest_factor"), FieldSpec("energy_level"), FieldSpec("loudness_std"),
        FieldSpec("peak_loudness"),
        # Per-frame derivations
        FieldSpec("spectral_flux_skewness"), FieldSpec("spectral_centroid_slope"),
        FieldSpec("spectral_centroid_kurtosis"), FieldSpec("spectral_rolloff_slope"),
        FieldSpec("spectral_flatness_slope"), FieldSpec("spectral_bandwidth_slope"),
        FieldSpec("zcr_slope"), FieldSpec("bass_energy_slope"), FieldSpec("energy_buildup_ratio"),
        FieldSpec("bass_treble_ratio_mean"), FieldSpec("bass_treble_ratio_std"),
        FieldSpec("onset_density_std"), FieldSpec("loudness_buildup_slope"),
        FieldSpec("peak_energy_time"), FieldSpec("loudness_dynamic_spread"),
        FieldSpec("pitch_contour_std"), FieldSpec("pitch_clarity_mean"),
        FieldSpec("pitched_frame_ratio"), FieldSpec("mfcc_flux_mean"),
        FieldSpec("onset_interval_entropy"), FieldSpec("beat_regularity"),
        FieldSpec("spectral_loudness_correlation"),
        # Musical
        FieldSpec("estimated_key", "text"), FieldSpec("key_confidence"), FieldSpec("tonality"),
        FieldSpec("harmonic_complexity"), FieldSpec("chord_count", "int"),
        FieldSpec("chord_change_rate"), FieldSpec("mode_clarity"),
        FieldSpec("key_alternatives_count", "int"), FieldSpec("time_sig_numerator", "int"),
        FieldSpec("time_sig_denominator", "int"), FieldSpec("chroma_vector", "json"),
        # Recording quality
        FieldSpec("recording_quality_score"), FieldSpec("snr_db"), FieldSpec("clipping_ratio"),
        FieldSpec("noise_floor_db"),
        # Segments
        FieldSpec("segment_count", "int"), FieldSpec("temporal_complexity"),
        FieldSpec("coherence_score"), FieldSpec("structural_diversity"),
        # Energy / tension profile
        FieldSpec("energy_shape", "text"), FieldSpec("peak_energy"), FieldSpec("energy_variance"),
        FieldSpec("tension_build_count", "int"), FieldSpec("tension_release_count", "int"),
        FieldSpec("peak_tension"), FieldSpec("tension_range"), FieldSpec("energy_peak_count", "int"),
        FieldSpec("energy_valley_depth_mean"), FieldSpec("rhythmic_periodicity_strength"),
        # Structure
        FieldSpec("repetition_count", "int"), FieldSpec("repetition_similarity"),
        FieldSpec("solo_section_count", "int"), FieldSpec("solo_section_ratio"),
        FieldSpec("transition_count", "int"),
        # Classification
        FieldSpec("classification_music_score"), FieldSpec("hnr"),
        # Variable-length vectors
        FieldSpec("contrast_band_means", "json"), FieldSpec("tonnetz_means", "json"),
        FieldSpec("mfcc_means", "json"),
    ]
)

FEATURE_FIELD_NAMES: Tuple[str, ...] = tuple(f.name for f in FEATURE_FIELDS)
_FIELD_KINDS: Dict[str, str] = {f.name: f.kind for f in FEATURE_FIELDS}


def _record_to_row(self) -> Dict[str, Any]:
    """Column -> SQLite value. JSON fields are serialized, ints coerced."""
    row: Dict[str, Any] = {}
    for name in FEATURE_FIELD_NAMES:
        value = getattr(self, name)
        kind = _FIELD_KINDS[name]
        if value is None:
            row[name] = None
        elif kind == "json":
            row[name] = json.dumps([float(v) for v in value])
        elif kind == "int":
            row[name] = int(value)
        elif kind == "text":
            row[name] = str(value)
        else:
            row[name] = float(value)
    return row


def _record_from_row(cls, row: Mapping[str, Any]) -> "FeatureRecord":
    values: Dict[str, Any] = {}
    for name in FEATURE_FIELD_NAMES:
        value = row[name] if name in row.keys() else None
        if value is not None and _FIELD_KINDS[name] == "json":
            value = json.loads(value)
        values[name] = value
    return cls(**values)


def _record_present(self) -> Dict[str, Any]:
    """Only the fields that were actually computed."""
    return {n: getattr(self, n) for n in FEATURE_FIELD_NAMES if getattr(self, n) is not None}


# Every field independently optional: absent is None, never 0 or -1.
FeatureRecord = make_dataclass(
    "FeatureRecord",
    [(name, Optional[Any], field(default=None)) for name in FEATURE_FIELD_NAMES],
    namespace={
        "__doc__": "Flat, fixed-shape feature record. Absent features are None.",
        "to_row": _record_to_row,
        "from_row": classmethod(_record_from_row),
        "present": _record_present,
    },
)
FeatureRecord.__module__ = __name__


# ---------------------------------------------------------------------------
# Scores
# ---------------------------------------------------------------------------

SCORE_NAMES: Tuple[str, ...] = (
    "energy",
    "intensity",
    "groove",
    "improvisation",
    "tightness",
    "build_quality",
    "exploratory",
    "transcendence",
    "valence",
    "arousal",
)
SCORE_COLUMNS: Tuple[str, ...] = tuple(f"{name}_score" for name in SCORE_NAMES)


def clamp_score(value: float) -> float:
    """Clamp to [0, 100]; NaN collapses to the floor."""
    if value != value:  # NaN
        return 0.0
    return min(100.0, max(0.0, float(value)))


@dataclass
class JamScores:
    """Ten composite scores, each in [0, 100]."""

    energy: float = 0.0
    intensity: float = 0.0
    groove: float = 0.0
    improvisation: float = 0.0
    tightness: float = 0.0
    build_quality: float = 0.0
    exploratory: float = 0.0
    transcendence: float = 0.0
    valence: float = 0.0
    arousal: float = 0.0

    def __post_init__(self) -> None:
        for name in SCORE_NAMES:
            setattr(self, name, clamp_score(getattr(self, name)))

    def as_dict(self) -> Dict[str, float]:
        return {name: getattr(self, name) for name in SCORE_NAMES}

    def as_tuple(self) -> Tuple[float, ...]:
        return tuple(getattr(self, name) for name in SCORE_NAMES)

    @classmethod
    def from_sequence(cls, values: Sequence[Optional[float]]) -> "JamScores":
        return cls(**{name: (v or 0.0) for name, v in zip(SCORE_NAMES, values)})


@dataclass(frozen=True)
class ScoreDelta:
    """
    Narrow update shape for calibration and rescoring.

    Carries only a track id and the ten score values so a partial update
    can never touch feature columns.
    """

    track_id: int
    scores: JamScores

    def to_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {col: getattr(self.scores, name)
                                  for name, col in zip(SCORE_NAMES, SCORE_COLUMNS)}
        params["track_id"] = self.track_id
        return params


# ---------------------------------------------------------------------------
# Runs and summaries
# ---------------------------------------------------------------------------

@dataclass
class AnalysisRun:
    """Persisted per-track outcome."""

    track_id: int
    features: Any  # FeatureRecord
    scores: JamScores
    quality: DataQuality = DataQuality.OK
    generation: int = 1
    analyzed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class TrackFailure:
    """A per-track error, kept for the run summary."""

    track_id: int
    stage: str
    error: str
    error_type: str
    path: Optional[Path] = None


@dataclass
class RunSummary:
    """Outcome of one orchestrator run."""

    analyzed: int = 0
    failed: int = 0
    elapsed: float = 0.0
    total: int = 0
    chunks_committed: int = 0
    interrupted: bool = False
    failures: List[TrackFailure] = field(default_factory=list)
    quality_counts: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "analyzed": self.analyzed,
            "failed": self.failed,
            "elapsed": round(self.elapsed, 3),
            "total": self.total,
            "chunks_committed": self.chunks_committed,
            "interrupted": self.interrupted,
            "quality": dict(self.quality_counts),
        }


@dataclass(frozen=True)
class CalibrationRow:
    """Input to calibration: one non-garbage track with loudness and show identity."""

    track_id: int
    lufs: float
    show_key: Optional[str]
    scores: JamScores


@dataclass
class CalibrationReport:
    total_tracks: int = 0
    calibrated: int = 0
    skipped_no_show: int = 0
    show_count: int = 0
    corpus_median_lufs: float = 0.0
    slopes: Dict[str, float] = field(default_factory=dict)
    dry_run: bool = False


# ---------------------------------------------------------------------------
# Engine output (RawFeatureSet)
# ---------------------------------------------------------------------------
# Every group and every field may be missing; per-frame series are 1-D
# arrays and band-major matrices are (bands, frames).

@dataclass
class SummaryFeatures:
    duration: Optional[float] = None
    sample_rate: Optional[int] = None
    channels: Optional[int] = None
    peak_amplitude: Optional[float] = None
    rms_level: Optional[float] = None
    dynamic_range: Optional[float] = None


@dataclass
class SpectralFeatures:
    centroid: Optional[np.ndarray] = None
    flux: Optional[np.ndarray] = None
    rolloff: Optional[np.ndarray] = None
    flatness: Optional[np.ndarray] = None
    bandwidth: Optional[np.ndarray] = None
    zcr: Optional[np.ndarray] = None
    sub_band_bass: Optional[np.ndarray] = None
    sub_band_mid: Optional[np.ndarray] = None
    sub_band_high: Optional[np.ndarray] = None
    sub_band_presence: Optional[np.ndarray] = None
    mfcc: Optional[np.ndarray] = None      # (13, frames)
    contrast: Optional[np.ndarray] = None  # (7, frames)
    tonnetz: Optional[np.ndarray] = None   # (6, frames)
    chroma: Optional[np.ndarray] = None    # (12, frames)


@dataclass
class TemporalFeatures:
    tempo: Optional[float] = None
    beats: Optional[np.ndarray] = None   # seconds
    onsets: Optional[np.ndarray] = None  # seconds
    tempo_stability: Optional[float] = None
    rhythmic_complexity: Optional[float] = None


@dataclass
class PitchFeatures:
    """Per-frame pitch track plus summary values. Unvoiced frames are NaN."""

    frequencies: Optional[np.ndarray] = None
    confidence: Optional[np.ndarray] = None
    clarity: Optional[np.ndarray] = None
    mean_pitch: Optional[float] = None
    dominant_pitch: Optional[float] = None
    range_low: Optional[float] = None
    range_high: Optional[float] = None
    stability: Optional[float] = None
    vibrato_presence: Optional[float] = None
    vibrato_rate: Optional[float] = None


@dataclass
class PerceptualFeatures:
    lufs: Optional[float] = None
    loudness_range: Optional[float] = None
    true_peak_dbfs: Optional[float] = None
    crest_factor: Optional[float] = None
    energy_level: Optional[float] = None
    short_term_loudness: Optional[np.ndarray] = None
    momentary_loudness: Optional[np.ndarray] = None


@dataclass(frozen=True)
class ChordEvent:
    chord: str
    start_time: float
    duration: float
    confidence: float = 0.0


@dataclass
class MusicalFeatures:
    key: Optional[str] = None
    key_confidence: Optional[float] = None
    mode_clarity: Optional[float] = None
    tonality: Optional[float] = None
    harmonic_complexity: Optional[float] = None
    chroma_vector: Optional[List[float]] = None
    chords: Optional[List[ChordEvent]] = None
    time_signature: Optional[Tuple[int, int]] = None
    key_alternatives: Optional[List[str]] = None


@dataclass(frozen=True)
class Segment:
    start_time: float
    duration: float
    energy: float
    spectral_centroid: float
    zcr: float
    dynamic_range: float
    label: str = ""


@dataclass(frozen=True)
class Section:
    section_type: str
    start_time: float
    end_time: float


@dataclass(frozen=True)
class TensionPoint:
    time: float
    tension: float
    change: str  # build | release | stable


@dataclass(frozen=True)
class Repetition:
    first: int
    second: int
    similarity: float


@dataclass
class EnergyProfile:
    shape: Optional[str] = None
    peaks: List[Tuple[float, float]] = field(default_factory=list)    # (time, value)
    valleys: List[Tuple[float, float]] = field(default_factory=list)
    variance: Optional[float] = None


@dataclass(frozen=True)
class PeriodicEvent:
    period: float
    strength: float


@dataclass
class StructureFeatures:
    segments: List[Segment] = field(default_factory=list)
    sections: List[Section] = field(default_factory=list)
    transitions: List[float] = field(default_factory=list)
    tension: List[TensionPoint] = field(default_factory=list)
    repetitions: List[Repetition] = field(default_factory=list)
    energy_profile: Optional[EnergyProfile] = None
    periodic_events: List[PeriodicEvent] = field(default_factory=list)
    temporal_complexity: Optional[float] = None
    coherence_score: Optional[float] = None


@dataclass
class QualityFeatures:
    overall_score: Optional[float] = None
    snr_db: Optional[float] = None
    clipping_ratio: Optional[float] = None
    noise_floor_db: Optional[float] = None


@dataclass
class ClassificationFeatures:
    music_score: Optional[float] = None
    hnr: Optional[float] = None


@dataclass
class RawFeatureSet:
    """Engine output. Opaque to the pipeline apart from these named groups."""

    summary: Optional[SummaryFeatures] = None
    spectral: Optional[SpectralFeatures] = None
    temporal: Optional[TemporalFeatures] = None
    pitch: Optional[PitchFeatures] = None
    perceptual: Optional[PerceptualFeatures] = None
    musical: Optional[MusicalFeatures] = None
    structure: Optional[StructureFeatures] = None
    quality: Optional[QualityFeatures] = None
    classification: Optional[ClassificationFeatures] = None
