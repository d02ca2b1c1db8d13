"""
Parallel orchestrator for setbreak.

Runs decode -> engine -> aggregate -> score for every pending track on a
fixed thread pool, one chunk at a time. Each chunk's successes are
committed in a single transaction before the next chunk starts, so an
interruption loses at most the chunk in flight and a rerun picks up the
remaining tracks from storage.
"""

import asyncio
import inspect
import logging
import signal
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from enum import Enum
from typing import Callable, List, Optional, Union

from setbreak.core.aggregator import aggregate
from setbreak.core.decoder import AudioDecoder, assess_quality, create_decoder, finite_buffer
from setbreak.core.engine import Engine, create_engine
from setbreak.core.models import (
    AnalysisRun,
    DataQuality,
    RawFeatureSet,
    RunSummary,
    TrackFailure,
    TrackRef,
)
from setbreak.core.scoring import ScoringWeights, score
from setbreak.utils.config import Settings
from setbreak.utils.errors import StorageError, TrackError, with_track
from setbreak.utils.logging import track_logger


ProgressCallback = Callable[[int, int, TrackRef], None]


class RunState(Enum):
    PENDING = "pending"
    CHUNKING = "chunking"
    CHUNK_IN_FLIGHT = "chunk_in_flight"
    CHUNK_COMMITTED = "chunk_committed"
    DONE = "done"
    ABORTED = "aborted"


class Orchestrator:
    """
    Chunked, crash-recoverable analysis runner.

    The orchestrator is the only coordinator and the only writer during a
    run; workers return results and never touch storage.
    """

    def __init__(
        self,
        storage,
        decoder: AudioDecoder,
        engine: Engine,
        weights: Optional[ScoringWeights] = None,
        max_workers: int = 4,
        chunk_multiplier: int = 2,
        progress_callback: Optional[ProgressCallback] = None,
        handle_signals: bool = True,
    ):
        """
        Initialize orchestrator.

        Args:
            storage: Storage instance (pending/commit_chunk)
            decoder: AudioDecoder for all tracks
            engine: DSP engine; analyze() may return an awaitable
            weights: Scoring weights (defaults if None)
            max_workers: Worker thread count
            chunk_multiplier: Chunk size is max_workers * chunk_multiplier
            progress_callback: Optional callback(done, total, track) per finished track
            handle_signals: Install a SIGINT handler for graceful stop (main thread only)
        """
        if max_workers < 1 or chunk_multiplier < 1:
            raise ValueError("max_workers and chunk_multiplier must be >= 1")
        self.storage = storage
        self.decoder = decoder
        self.engine = engine
        self.weights = weights or ScoringWeights()
        self.max_workers = max_workers
        self.chunk_size = max_workers * chunk_multiplier
        self.progress_callback = progress_callback
        self.handle_signals = handle_signals
        self.logger = logging.getLogger("orchestrator")

        self._state = RunState.PENDING
        self._stop = threading.Event()
        self._thread_state = threading.local()
        self._loops: List[asyncio.AbstractEventLoop] = []
        self._loops_lock = threading.Lock()

    @property
    def state(self) -> RunState:
        return self._state

    def _set_state(self, state: RunState) -> None:
        self.logger.debug(f"State {self._state.value} -> {state.value}")
        self._state = state

    def request_stop(self) -> None:
        """Finish the chunk in flight, then stop before the next one."""
        if not self._stop.is_set():
            self.logger.info("Stop requested; finishing current chunk...")
        self._stop.set()

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(self, force: bool = False, path_filter: Optional[str] = None) -> RunSummary:
        """
        Analyze all pending tracks.

        Args:
            force: Re-analyze every track, replacing stored runs
            path_filter: Only tracks whose path contains this (case-insensitive)

        Returns:
            RunSummary with counts, elapsed time and per-track failures

        Raises:
            StorageError: If a chunk commit fails (the run is aborted)
        """
        start_time = time.monotonic()
        self._stop.clear()
        self._set_state(RunState.PENDING)

        tracks = self.storage.pending(force)
        if path_filter:
            needle = path_filter.lower()
            tracks = [t for t in tracks if needle in str(t.path).lower()]

        summary = RunSummary(total=len(tracks))
        if not tracks:
            self.logger.info("No pending tracks")
            self._set_state(RunState.DONE)
            return summary

        self.logger.info(
            f"Analyzing {len(tracks)} tracks with {self.max_workers} workers "
            f"(chunk size {self.chunk_size})"
        )

        previous_handler = self._install_signal_handler()
        try:
            self._run_chunks(tracks, summary)
        finally:
            self._restore_signal_handler(previous_handler)
            self._close_loops()
            summary.elapsed = time.monotonic() - start_time

        self._set_state(RunState.DONE)
        self.logger.info(
            f"Run complete: {summary.analyzed} analyzed, {summary.failed} failed, "
            f"{summary.chunks_committed} chunks in {summary.elapsed:.2f}s"
            + (" (interrupted)" if summary.interrupted else "")
        )
        return summary

    def _run_chunks(self, tracks: List[TrackRef], summary: RunSummary) -> None:
        self._set_state(RunState.CHUNKING)
        done = 0
        total = len(tracks)

        with ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="setbreak-worker"
        ) as pool:
            for start in range(0, total, self.chunk_size):
                if self._stop.is_set():
                    summary.interrupted = True
                    self.logger.info(f"Stopping with {total - start} tracks left pending")
                    break

                chunk = tracks[start:start + self.chunk_size]
                self._set_state(RunState.CHUNK_IN_FLIGHT)
                futures = {pool.submit(self._analyze_track, ref): ref for ref in chunk}

                runs: List[AnalysisRun] = []
                for future in as_completed(futures):
                    outcome = future.result()
                    done += 1
                    if isinstance(outcome, TrackFailure):
                        summary.failures.append(outcome)
                        summary.failed += 1
                    else:
                        runs.append(outcome)
                    if self.progress_callback:
                        self.progress_callback(done, total, futures[future])

                # Commit order follows chunk order, not completion order
                runs.sort(key=lambda r: r.track_id)
                try:
                    self.storage.commit_chunk(runs)
                except StorageError as e:
                    self._set_state(RunState.ABORTED)
                    self.logger.error(f"Chunk commit failed, aborting run: {e}")
                    raise

                summary.analyzed += len(runs)
                summary.chunks_committed += 1
                for run in runs:
                    key = run.quality.value
                    summary.quality_counts[key] = summary.quality_counts.get(key, 0) + 1
                self._set_state(RunState.CHUNK_COMMITTED)
                self.logger.info(
                    f"Committed chunk {summary.chunks_committed}: {len(runs)} runs, "
                    f"{len(chunk) - len(runs)} failed ({done}/{total})",
                    extra={"chunk": summary.chunks_committed},
                )

    # ------------------------------------------------------------------
    # Per-track work (worker threads)
    # ------------------------------------------------------------------

    def _analyze_track(self, ref: TrackRef) -> Union[AnalysisRun, TrackFailure]:
        """Decode, extract, aggregate and score one track. Never raises Exception."""
        stage = "decode"
        try:
            buffer = self.decoder.decode(ref.path, ref.known_format or None)
            quality = assess_quality(
                buffer,
                probe=self.decoder.settings.bitstream_probe,
                threshold=self.decoder.settings.bitstream_threshold,
            )
            if quality is DataQuality.GARBAGE:
                buffer = finite_buffer(buffer)
            stage = "engine"
            raw = self._run_engine(buffer)
            # Buffer is the largest allocation; drop it before aggregation
            del buffer
            stage = "aggregate"
            features = aggregate(raw)
            stage = "score"
            scores = score(features, self.weights)
        except Exception as e:
            if isinstance(e, TrackError):
                with_track(e, ref.id)
                stage = e.stage
            log = track_logger("orchestrator", ref.id, stage)
            log.warning(f"{type(e).__name__}: {e} ({ref.path})")
            return TrackFailure(
                track_id=ref.id,
                stage=stage,
                error=getattr(e, "message", str(e)),
                error_type=type(e).__name__,
                path=ref.path,
            )

        if quality.value != "ok":
            track_logger("orchestrator", ref.id, "quality").info(f"Flagged {quality.value}: {ref.path}")
        return AnalysisRun(track_id=ref.id, features=features, scores=scores, quality=quality)

    def _run_engine(self, buffer) -> RawFeatureSet:
        result = self.engine.analyze(buffer)
        if inspect.isawaitable(result):
            result = self._thread_loop().run_until_complete(result)
        return result

    def _thread_loop(self) -> asyncio.AbstractEventLoop:
        """One event loop per worker thread, created on first use."""
        loop = getattr(self._thread_state, "loop", None)
        if loop is None or loop.is_closed():
            loop = asyncio.new_event_loop()
            self._thread_state.loop = loop
            with self._loops_lock:
                self._loops.append(loop)
        return loop

    def _close_loops(self) -> None:
        with self._loops_lock:
            loops, self._loops = self._loops, []
        for loop in loops:
            loop.close()

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def _install_signal_handler(self):
        if not self.handle_signals or threading.current_thread() is not threading.main_thread():
            return None

        def handler(signum, frame):
            self.request_stop()
            # A second Ctrl-C falls through to the default behaviour
            signal.signal(signal.SIGINT, previous)

        previous = signal.signal(signal.SIGINT, handler)
        return previous

    def _restore_signal_handler(self, previous) -> None:
        if previous is not None:
            signal.signal(signal.SIGINT, previous)


def create_orchestrator(
    settings: Settings,
    storage,
    progress_callback: Optional[ProgressCallback] = None,
    engine: Optional[Engine] = None,
) -> Orchestrator:
    """Factory function to create an Orchestrator from Settings."""
    return Orchestrator(
        storage=storage,
        decoder=create_decoder(settings.decoder),
        engine=engine or create_engine(settings.engine),
        weights=ScoringWeights.from_settings(settings),
        max_workers=settings.max_workers,
        chunk_multiplier=settings.chunk_multiplier,
        progress_callback=progress_callback,
    )
