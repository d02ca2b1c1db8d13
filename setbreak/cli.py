"""
setbreak - command-line interface

Example usage:
    # Register recordings for one show
    setbreak add --band "Grateful Dead" --date 1977-05-08 tapes/gd77-05-08/

    # Analyze everything pending on 8 workers
    setbreak analyze -j 8
    setbreak analyze --force --filter 1977

    # Recompute scores from stored features, then calibrate against loudness
    setbreak rescore
    setbreak calibrate --dry-run
    setbreak calibrate

    setbreak stats
"""

import argparse
import dataclasses
import json
import sys
from pathlib import Path
from typing import List, Optional

from setbreak import __version__
from setbreak.core.models import SCORE_NAMES, AudioFormat, TrackRef
from setbreak.utils.config import Settings, load_config
from setbreak.utils.errors import SetbreakError, StorageError
from setbreak.utils.logging import get_logger, setup_logging

AUDIO_EXTENSIONS = {f".{fmt.value}" for fmt in AudioFormat if fmt != AudioFormat.OTHER} | {".aif"}

logger = get_logger("setbreak.cli")


def collect_files(inputs: List[Path], recursive: bool = True) -> List[Path]:
    """Collect audio files from files and directories, sorted and de-duplicated."""
    files = []
    for path in inputs:
        path = Path(path)
        if path.is_file():
            if path.suffix.lower() in AUDIO_EXTENSIONS:
                files.append(path)
            else:
                logger.warning(f"Skipping non-audio file: {path}")
        elif path.is_dir():
            pattern = "**/*" if recursive else "*"
            files.extend(
                p for p in path.glob(pattern)
                if p.is_file() and p.suffix.lower() in AUDIO_EXTENSIONS
            )
        else:
            logger.warning(f"Path not found: {path}")
    return sorted(set(files))


def positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be >= 1, got {value}")
    return number


def open_storage(settings: Settings):
    from setbreak.core.storage import Storage

    return Storage.open(settings.db_path)


def cmd_add(args: argparse.Namespace, settings: Settings) -> int:
    files = collect_files(args.inputs, recursive=not args.no_recursive)
    if not files:
        print("No audio files found.")
        return 1

    with open_storage(settings) as storage:
        for number, path in enumerate(files, 1):
            storage.register_track(TrackRef(
                id=0,
                path=path.resolve(),
                known_format=path.suffix.lower().lstrip("."),
                band=args.band,
                date=args.date,
                venue=args.venue,
                track=number,
            ))
    print(f"Registered {len(files)} track(s)")
    return 0


def cmd_analyze(args: argparse.Namespace, settings: Settings) -> int:
    from tqdm import tqdm

    from setbreak.core.orchestrator import create_orchestrator

    with open_storage(settings) as storage, tqdm(unit="track", disable=None) as bar:

        def progress_callback(done: int, total: int, track: TrackRef) -> None:
            if bar.total != total:
                bar.reset(total=total)
            bar.update(1)
            bar.set_postfix_str(Path(track.path).name, refresh=False)

        orchestrator = create_orchestrator(settings, storage, progress_callback=progress_callback)
        summary = orchestrator.run(force=args.force, path_filter=args.filter)

    print("\n" + "=" * 60)
    print("ANALYSIS COMPLETE" + (" (interrupted)" if summary.interrupted else ""))
    print("=" * 60)
    print(f"Analyzed: {summary.analyzed}")
    print(f"Failed: {summary.failed}")
    print(f"Elapsed: {summary.elapsed:.2f}s")
    if summary.quality_counts:
        print("Quality: " + ", ".join(f"{k}={v}" for k, v in sorted(summary.quality_counts.items())))

    if summary.failures:
        print("\nFailed Tracks:")
        for failure in summary.failures:
            name = Path(failure.path).name if failure.path else f"#{failure.track_id}"
            print(f"  {name} [{failure.stage}] {failure.error_type}: {failure.error}")

    if args.json:
        print(json.dumps(summary.to_dict(), indent=2))

    return 0 if summary.failed == 0 else 1


def cmd_rescore(args: argparse.Namespace, settings: Settings) -> int:
    from setbreak.core.scoring import ScoringWeights, rescore

    with open_storage(settings) as storage:
        count = rescore(storage, ScoringWeights.from_settings(settings))
    print(f"Rescored {count} track(s)")
    return 0


def cmd_calibrate(args: argparse.Namespace, settings: Settings) -> int:
    from setbreak.core.calibration import calibrate
    from setbreak.core.scoring import ScoringWeights

    with open_storage(settings) as storage:
        report = calibrate(
            storage,
            weights=ScoringWeights.from_settings(settings),
            min_tracks=settings.calibration_min_tracks,
            dry_run=args.dry_run,
        )

    print(
        f"Calibration: {report.total_tracks} tracks across {report.show_count} shows, "
        f"corpus median LUFS = {report.corpus_median_lufs:.1f}"
    )
    for name, slope in report.slopes.items():
        print(f"  {name:<15} slope = {slope:+.4f}")
    if report.dry_run:
        print("DRY RUN - no changes written.")
    else:
        print(f"Calibrated: {report.calibrated}  Skipped (no show): {report.skipped_no_show}")
    return 0


def cmd_stats(args: argparse.Namespace, settings: Settings) -> int:
    with open_storage(settings) as storage:
        stats = storage.stats()

    if args.json:
        print(json.dumps(stats, indent=2))
        return 0

    print(f"Tracks: {stats['total_tracks']}  Analyzed: {stats['analyzed']}  Pending: {stats['pending']}")
    print(
        f"Quality: ok={stats['ok']} suspect={stats['suspect']} garbage={stats['garbage']}  "
        f"Calibrated: {stats['calibrated']}"
    )
    print("-" * 40)
    for name in SCORE_NAMES:
        value = stats["score_means"].get(name)
        print(f"  {name:<15} {value:6.1f}" if value is not None else f"  {name:<15}      -")
    return 0


COMMANDS = {
    "add": cmd_add,
    "analyze": cmd_analyze,
    "rescore": cmd_rescore,
    "calibrate": cmd_calibrate,
    "stats": cmd_stats,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="setbreak",
        description="Analyze and score live-music recordings",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__.split("Example usage:", 1)[1],
    )
    parser.add_argument("--config", type=Path, default=None, help="Path to configuration file")
    parser.add_argument("--db-path", type=Path, default=None, help="SQLite database path")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose output")
    parser.add_argument("--version", action="version", version=f"setbreak {__version__}")

    sub = parser.add_subparsers(dest="command", required=True)

    add = sub.add_parser("add", help="Register audio files as tracks")
    add.add_argument("inputs", type=Path, nargs="+", help="Audio file(s) or directories")
    add.add_argument("--band", default=None, help="Band name for every file")
    add.add_argument("--date", default=None, help="Show date (YYYY-MM-DD) for every file")
    add.add_argument("--venue", default=None, help="Venue for every file")
    add.add_argument("--no-recursive", action="store_true", help="Do not descend into subdirectories")

    analyze = sub.add_parser("analyze", help="Analyze pending tracks")
    analyze.add_argument("-j", "--jobs", type=positive_int, default=None, help="Worker threads")
    analyze.add_argument("--force", action="store_true", help="Re-analyze every track")
    analyze.add_argument("--filter", default=None, help="Only paths containing this (case-insensitive)")
    analyze.add_argument("--json", action="store_true", help="Also print the summary as JSON")

    sub.add_parser("rescore", help="Recompute scores from stored features")

    calibrate = sub.add_parser("calibrate", help="Remove loudness bias from scores")
    calibrate.add_argument("--dry-run", action="store_true", help="Report slopes without writing")

    stats = sub.add_parser("stats", help="Show catalog and score summary")
    stats.add_argument("--json", action="store_true", help="Print as JSON")

    return parser


def run(argv: Optional[List[str]] = None) -> int:
    """Parse arguments, build Settings and dispatch. Returns an exit code."""
    args = build_parser().parse_args(argv)

    try:
        config = load_config(str(args.config) if args.config else None)
        settings = Settings.from_config(config)
    except SetbreakError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    overrides = {}
    if args.db_path is not None:
        overrides["db_path"] = args.db_path
    if getattr(args, "jobs", None):
        overrides["max_workers"] = args.jobs
    if args.verbose:
        overrides["log_level"] = "DEBUG"
    settings = dataclasses.replace(settings, **overrides)

    setup_logging(
        level=settings.log_level,
        log_format=settings.log_format,
        log_file=settings.log_file,
        colored=True,
        console_enabled=True,
    )

    try:
        return COMMANDS[args.command](args, settings)
    except StorageError as e:
        print(f"Storage error: {e}", file=sys.stderr)
        return 2
    except SetbreakError as e:
        print(f"Error: {e}", file=sys.stderr)
        if args.verbose:
            import traceback
            traceback.print_exc()
        return 1


def main():
    """Main entry point for setbreak."""
    sys.exit(run())


if __name__ == "__main__":
    main()
