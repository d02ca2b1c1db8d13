"""
Core analysis pipeline: decode, feature aggregation, scoring, storage,
orchestration and calibration.

Uses lazy imports for modules with heavy dependencies (librosa, soundfile).
"""

# Models are lightweight - import directly
from setbreak.core.models import (
    AudioBuffer,
    AudioFormat,
    DataQuality,
    FeatureRecord,
    JamScores,
    ScoreDelta,
    AnalysisRun,
    TrackRef,
    TrackFailure,
    RunSummary,
    CalibrationReport,
    RawFeatureSet,
)

__all__ = [
    # Models (always available)
    "AudioBuffer",
    "AudioFormat",
    "DataQuality",
    "FeatureRecord",
    "JamScores",
    "ScoreDelta",
    "AnalysisRun",
    "TrackRef",
    "TrackFailure",
    "RunSummary",
    "CalibrationReport",
    "RawFeatureSet",
    # Heavy modules (lazy loaded)
    "AudioDecoder",
    "create_decoder",
    "LibrosaEngine",
    "create_engine",
    "aggregate",
    "score",
    "rescore",
    "ScoringWeights",
    "Storage",
    "Orchestrator",
    "create_orchestrator",
    "calibrate",
]


def __getattr__(name: str):
    """Lazy load modules with heavy dependencies."""
    if name in ("AudioDecoder", "create_decoder"):
        from setbreak.core.decoder import AudioDecoder, create_decoder
        return AudioDecoder if name == "AudioDecoder" else create_decoder
    elif name in ("LibrosaEngine", "create_engine"):
        from setbreak.core.engine import LibrosaEngine, create_engine
        return LibrosaEngine if name == "LibrosaEngine" else create_engine
    elif name == "aggregate":
        from setbreak.core.aggregator import aggregate
        return aggregate
    elif name in ("score", "rescore", "ScoringWeights"):
        from setbreak.core import scoring
        return getattr(scoring, name)
    elif name == "Storage":
        from setbreak.core.storage import Storage
        return Storage
    elif name in ("Orchestrator", "create_orchestrator"):
        from setbreak.core.orchestrator import Orchestrator, create_orchestrator
        return Orchestrator if name == "Orchestrator" else create_orchestrator
    elif name == "calibrate":
        from setbreak.core.calibration import calibrate
        return calibrate
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
