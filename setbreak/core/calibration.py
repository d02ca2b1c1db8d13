"""
Loudness calibration for setbreak.

Louder tapes score higher on several measures for reasons that have more
to do with the taper than the band. This pass regresses each score
against the per-show median loudness and removes the fitted slope:

    adjusted = raw - slope * (show_lufs - corpus_lufs)

where corpus_lufs is the median of the per-show medians, so every show
counts once regardless of how many tracks it has. Raw scores are always
recomputed from stored features, which makes the pass idempotent.
"""

import logging
from collections import defaultdict
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from setbreak.core.models import (
    SCORE_NAMES,
    CalibrationReport,
    CalibrationRow,
    DataQuality,
    JamScores,
    ScoreDelta,
    clamp_score,
)
from setbreak.core.scoring import ScoringWeights, score

logger = logging.getLogger(__name__)

# Slopes below this are treated as no bias at all
MIN_SLOPE = 0.1
MIN_VARIANCE = 1e-12


def ols_slope(x: Sequence[float], y: Sequence[float]) -> float:
    """Least-squares slope of y on x; 0 when x has no variance."""
    x = np.asarray(x, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    if x.size < 2:
        return 0.0
    dx = x - x.mean()
    var = float(np.sum(dx * dx))
    if var < MIN_VARIANCE:
        return 0.0
    return float(np.sum(dx * (y - y.mean())) / var)


def show_medians(rows: Sequence[CalibrationRow]) -> Dict[str, float]:
    """Median LUFS per show key. Rows without a show key are ignored."""
    by_show: Dict[str, List[float]] = defaultdict(list)
    for row in rows:
        if row.show_key is not None:
            by_show[row.show_key].append(row.lufs)
    return {key: float(np.median(values)) for key, values in by_show.items()}


def compute_calibration(
    rows: Sequence[CalibrationRow],
    min_tracks: int = 2,
    min_slope: float = MIN_SLOPE,
    dry_run: bool = False,
) -> Tuple[List[ScoreDelta], CalibrationReport]:
    """
    Fit per-score loudness slopes and compute adjusted scores.

    Args:
        rows: Non-garbage tracks with LUFS, show key and raw scores
        min_tracks: Fewer regression points than this means slope 0
        min_slope: Slopes with smaller magnitude are not applied
        dry_run: Only recorded on the report; deltas are always computed

    Returns:
        (deltas, report). One delta per row that has a show key.
    """
    report = CalibrationReport(total_tracks=len(rows), dry_run=dry_run)
    if not rows:
        return [], report

    medians = show_medians(rows)
    usable = [row for row in rows if row.show_key in medians]
    report.skipped_no_show = len(rows) - len(usable)
    report.show_count = len(medians)
    if not usable:
        return [], report

    baseline = float(np.median(list(medians.values())))
    report.corpus_median_lufs = baseline

    x = [medians[row.show_key] for row in usable]
    for name in SCORE_NAMES:
        if len(usable) < min_tracks:
            slope = 0.0
        else:
            slope = ols_slope(x, [getattr(row.scores, name) for row in usable])
        if abs(slope) < min_slope:
            slope = 0.0
        report.slopes[name] = slope

    deltas = []
    for row, show_lufs in zip(usable, x):
        offset = show_lufs - baseline
        adjusted = {
            name: clamp_score(getattr(row.scores, name) - report.slopes[name] * offset)
            for name in SCORE_NAMES
        }
        deltas.append(ScoreDelta(track_id=row.track_id, scores=JamScores(**adjusted)))

    return deltas, report


def calibration_rows(storage, weights: Optional[ScoringWeights] = None) -> List[CalibrationRow]:
    """
    Build regression input from storage.

    Scores are recomputed from the stored features rather than read back,
    so earlier calibrations never feed into this one.
    """
    show_keys = {ref.id: ref.show_key for ref in storage.tracks()}
    rows = []
    for run in storage.all_analysis_runs(include_garbage=False):
        if run.quality == DataQuality.GARBAGE:
            continue
        lufs = run.features.lufs_integrated
        if lufs is None:
            continue
        rows.append(CalibrationRow(
            track_id=run.track_id,
            lufs=float(lufs),
            show_key=show_keys.get(run.track_id),
            scores=score(run.features, weights),
        ))
    return rows


def calibrate(
    storage,
    weights: Optional[ScoringWeights] = None,
    min_tracks: int = 2,
    dry_run: bool = False,
) -> CalibrationReport:
    """
    Calibrate every stored non-garbage score against show loudness.

    Writes only the ten score columns, through storage.update_scores.
    """
    rows = calibration_rows(storage, weights)
    if not rows:
        logger.info("No calibration data (need analyzed tracks with LUFS and a show date)")
        return CalibrationReport(dry_run=dry_run)

    deltas, report = compute_calibration(rows, min_tracks=min_tracks, dry_run=dry_run)
    logger.info(
        f"Calibration: {report.total_tracks} tracks across {report.show_count} shows, "
        f"corpus median LUFS = {report.corpus_median_lufs:.1f}"
    )
    for name, slope in report.slopes.items():
        if slope > 0:
            direction = "louder tapes score higher"
        elif slope < 0:
            direction = "quieter tapes score higher"
        else:
            direction = "no correction"
        logger.info(f"  {name:<15} slope = {slope:+.4f} ({direction})")

    if dry_run:
        logger.info("Dry run: no changes written")
        return report

    if deltas:
        storage.update_scores(deltas, calibrated=True)
    report.calibrated = len(deltas)
    logger.info(f"Calibrated {report.calibrated} tracks ({report.skipped_no_show} without a show)")
    return report
