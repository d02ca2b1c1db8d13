"""
SQLite storage for setbreak.

Single-writer store for the track catalog and per-track analysis runs.
Schema evolution is an ordered list of idempotent migrations keyed on
PRAGMA user_version.
"""

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Union

from setbreak.core.models import (
    FEATURE_FIELDS,
    FEATURE_FIELD_NAMES,
    SCORE_COLUMNS,
    SCORE_NAMES,
    AnalysisRun,
    DataQuality,
    FeatureRecord,
    JamScores,
    ScoreDelta,
    TrackRef,
)
from setbreak.utils.errors import StorageError


# ---------------------------------------------------------------------------
# Migrations
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Migration:
    version: int
    name: str
    apply: Callable[[sqlite3.Connection], None]


def _columns(conn: sqlite3.Connection, table: str) -> List[str]:
    return [row[1] for row in conn.execute(f"PRAGMA table_info({table})")]


def _add_column(conn: sqlite3.Connection, table: str, column: str, sql_type: str) -> None:
    if column not in _columns(conn, table):
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {sql_type}")


def _create_tracks(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS tracks (
            id           INTEGER PRIMARY KEY,
            path         TEXT NOT NULL UNIQUE,
            known_format TEXT NOT NULL DEFAULT '',
            band         TEXT,
            date         TEXT,
            venue        TEXT,
            disc         INTEGER,
            track        INTEGER,
            created_at   TEXT NOT NULL
        )
        """
    )


def _create_analysis_results(conn: sqlite3.Connection) -> None:
    score_cols = ",\n".join(f"            {col} REAL" for col in SCORE_COLUMNS)
    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS analysis_results (
            track_id    INTEGER PRIMARY KEY REFERENCES tracks(id) ON DELETE CASCADE,
            generation  INTEGER NOT NULL DEFAULT 1,
            quality     TEXT NOT NULL DEFAULT 'ok',
            analyzed_at TEXT NOT NULL,
{score_cols}
        )
        """
    )


def _add_feature_columns(conn: sqlite3.Connection) -> None:
    for field in FEATURE_FIELDS:
        _add_column(conn, "analysis_results", field.name, field.sql_type)


def _add_calibrated_at(conn: sqlite3.Connection) -> None:
    _add_column(conn, "analysis_results", "calibrated_at", "TEXT")


def _add_show_index(conn: sqlite3.Connection) -> None:
    conn.execute("CREATE INDEX IF NOT EXISTS idx_tracks_show ON tracks(band, date)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_results_quality ON analysis_results(quality)")


MIGRATIONS: List[Migration] = [
    Migration(1, "create tracks", _create_tracks),
    Migration(2, "create analysis_results", _create_analysis_results),
    Migration(3, "add feature columns", _add_feature_columns),
    Migration(4, "add calibrated_at", _add_calibrated_at),
    Migration(5, "add show and quality indexes", _add_show_index),
]

SCHEMA_VERSION = MIGRATIONS[-1].version

# Columns written by commit_chunk, in a fixed order
_RESULT_COLUMNS = (
    ("track_id", "generation", "quality", "analyzed_at", "calibrated_at")
    + FEATURE_FIELD_NAMES
    + SCORE_COLUMNS
)


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class Storage:
    """
    SQLite-backed catalog and result store.

    Only the orchestrator's commit step and the calibration/rescore passes
    write; worker threads never touch the connection.
    """

    def __init__(self, conn: sqlite3.Connection, path: str = ":memory:"):
        self.conn = conn
        self.path = path
        self.logger = logging.getLogger("storage")

    @classmethod
    def open(cls, path: Union[str, Path] = ":memory:") -> "Storage":
        """
        Open (creating if needed) a database and bring its schema up to date.

        Raises:
            StorageError: If the database cannot be opened or migrated
        """
        path_str = str(path)
        if path_str != ":memory:":
            Path(path_str).expanduser().parent.mkdir(parents=True, exist_ok=True)
            path_str = str(Path(path_str).expanduser())
        try:
            # Autocommit mode; transactions are explicit. The connection may be
            # opened and driven from different threads, one writer at a time.
            conn = sqlite3.connect(path_str, isolation_level=None, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("PRAGMA foreign_keys=ON")
            conn.execute("PRAGMA busy_timeout=60000")
        except sqlite3.Error as e:
            raise StorageError(f"Failed to open database {path_str}: {e}", operation="open")

        storage = cls(conn, path_str)
        storage.migrate()
        return storage

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> "Storage":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[sqlite3.Connection]:
        """BEGIN IMMEDIATE ... COMMIT, rolled back on any error."""
        try:
            self.conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            raise StorageError(f"{operation} failed to start: {e}", operation=operation)
        try:
            yield self.conn
        except sqlite3.Error as e:
            self.conn.execute("ROLLBACK")
            raise StorageError(f"{operation} failed: {e}", operation=operation)
        except BaseException:
            self.conn.execute("ROLLBACK")
            raise
        else:
            try:
                self.conn.execute("COMMIT")
            except sqlite3.Error as e:
                self.conn.execute("ROLLBACK")
                raise StorageError(f"{operation} failed to commit: {e}", operation=operation)

    @contextmanager
    def _reading(self, operation: str) -> Iterator[sqlite3.Connection]:
        try:
            yield self.conn
        except sqlite3.Error as e:
            raise StorageError(f"{operation} failed: {e}", operation=operation)

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    @property
    def schema_version(self) -> int:
        with self._reading("schema_version") as conn:
            return int(conn.execute("PRAGMA user_version").fetchone()[0])

    def migrate(self) -> int:
        """
        Apply pending migrations in order. Safe to call repeatedly.

        Returns:
            Number of migrations applied
        """
        applied = 0
        current = self.schema_version
        for migration in MIGRATIONS:
            if migration.version <= current:
                continue
            with self._transaction(f"migration {migration.version}") as conn:
                migration.apply(conn)
                # PRAGMA does not accept bound parameters
                conn.execute(f"PRAGMA user_version = {int(migration.version)}")
            self.logger.debug(f"Applied migration {migration.version}: {migration.name}")
            applied += 1
        if applied:
            self.logger.info(f"Database schema at version {SCHEMA_VERSION} ({applied} migrations applied)")
        return applied

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    def register_track(self, ref: TrackRef) -> int:
        """
        Insert or update a catalog entry keyed on path. Returns the track id.

        A falsy ref.id lets SQLite assign one.
        """
        params = {
            "id": ref.id or None,
            "path": str(ref.path),
            "known_format": ref.known_format or "",
            "band": ref.band,
            "date": ref.date,
            "venue": ref.venue,
            "disc": ref.disc,
            "track": ref.track,
            "created_at": _utcnow(),
        }
        with self._transaction("register_track") as conn:
            conn.execute(
                """
                INSERT INTO tracks (id, path, known_format, band, date, venue, disc, track, created_at)
                VALUES (:id, :path, :known_format, :band, :date, :venue, :disc, :track, :created_at)
                ON CONFLICT(path) DO UPDATE SET
                    known_format = excluded.known_format,
                    band = excluded.band,
                    date = excluded.date,
                    venue = excluded.venue,
                    disc = excluded.disc,
                    track = excluded.track
                """,
                params,
            )
            row = conn.execute("SELECT id FROM tracks WHERE path = ?", (params["path"],)).fetchone()
        return int(row["id"])

    @staticmethod
    def _track_ref(row: sqlite3.Row) -> TrackRef:
        return TrackRef(
            id=int(row["id"]),
            path=Path(row["path"]),
            known_format=row["known_format"] or "",
            band=row["band"],
            date=row["date"],
            venue=row["venue"],
            disc=row["disc"],
            track=row["track"],
        )

    def tracks(self) -> List[TrackRef]:
        """All catalog entries in id order."""
        with self._reading("tracks") as conn:
            rows = conn.execute("SELECT * FROM tracks ORDER BY id").fetchall()
        return [self._track_ref(r) for r in rows]

    def pending(self, force: bool = False) -> List[TrackRef]:
        """
        Tracks to analyze, in id order.

        A track is pending iff it has no analysis row; with force, every
        track is pending.
        """
        sql = "SELECT t.* FROM tracks t"
        if not force:
            sql += " LEFT JOIN analysis_results r ON r.track_id = t.id WHERE r.track_id IS NULL"
        sql += " ORDER BY t.id"
        with self._reading("pending") as conn:
            rows = conn.execute(sql).fetchall()
        return [self._track_ref(r) for r in rows]

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def commit_chunk(self, runs: Iterable[AnalysisRun]) -> int:
        """
        Persist a chunk of runs in one transaction (all or nothing).

        An existing row for the same track is replaced and its generation
        bumped; any previous calibration is cleared.

        Raises:
            StorageError: If any write fails; nothing from the chunk is kept
        """
        runs = list(runs)
        if not runs:
            return 0

        columns = ", ".join(_RESULT_COLUMNS)
        placeholders = ", ".join(f":{c}" for c in _RESULT_COLUMNS)
        updates = ", ".join(
            f"{c} = excluded.{c}" for c in _RESULT_COLUMNS if c not in ("track_id", "generation")
        )
        sql = (
            f"INSERT INTO analysis_results ({columns}) VALUES ({placeholders}) "
            f"ON CONFLICT(track_id) DO UPDATE SET {updates}, "
            f"generation = analysis_results.generation + 1"
        )

        with self._transaction("commit_chunk") as conn:
            for run in runs:
                conn.execute(sql, self._run_params(run))
        self.logger.debug(f"Committed {len(runs)} analysis runs")
        return len(runs)

    @staticmethod
    def _run_params(run: AnalysisRun) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "track_id": run.track_id,
            "generation": run.generation,
            "quality": DataQuality(run.quality).value,
            "analyzed_at": run.analyzed_at.isoformat(),
            "calibrated_at": None,
        }
        params.update(run.features.to_row())
        params.update(ScoreDelta(run.track_id, run.scores).to_params())
        return params

    def update_scores(
        self,
        deltas: Union[ScoreDelta, Iterable[ScoreDelta]],
        calibrated: bool = True,
    ) -> int:
        """
        Overwrite only the ten score columns for existing runs.

        Args:
            deltas: One ScoreDelta or an iterable of them
            calibrated: Stamp calibrated_at (True) or clear it (False)

        Raises:
            StorageError: If a track has no analysis run or a write fails
        """
        if isinstance(deltas, ScoreDelta):
            deltas = [deltas]
        deltas = list(deltas)
        for delta in deltas:
            if not isinstance(delta, ScoreDelta):
                raise TypeError(f"update_scores takes ScoreDelta, got {type(delta).__name__}")

        assignments = ", ".join(f"{col} = :{col}" for col in SCORE_COLUMNS)
        sql = (
            f"UPDATE analysis_results SET {assignments}, calibrated_at = :calibrated_at "
            f"WHERE track_id = :track_id"
        )
        stamp = _utcnow() if calibrated else None
        with self._transaction("update_scores") as conn:
            for delta in deltas:
                params = delta.to_params()
                params["calibrated_at"] = stamp
                cur = conn.execute(sql, params)
                if cur.rowcount == 0:
                    raise sqlite3.IntegrityError(f"no analysis run for track {delta.track_id}")
        return len(deltas)

    def all_analysis_runs(self, include_garbage: bool = False) -> Iterator[AnalysisRun]:
        """Stored runs in track order, optionally excluding garbage-quality ones."""
        sql = "SELECT * FROM analysis_results"
        params: tuple = ()
        if not include_garbage:
            sql += " WHERE quality != ?"
            params = (DataQuality.GARBAGE.value,)
        sql += " ORDER BY track_id"
        with self._reading("all_analysis_runs") as conn:
            rows = conn.execute(sql, params).fetchall()
        for row in rows:
            yield self._run_from_row(row)

    def get_run(self, track_id: int) -> Optional[AnalysisRun]:
        with self._reading("get_run") as conn:
            row = conn.execute(
                "SELECT * FROM analysis_results WHERE track_id = ?", (track_id,)
            ).fetchone()
        return self._run_from_row(row) if row is not None else None

    @staticmethod
    def _run_from_row(row: sqlite3.Row) -> AnalysisRun:
        return AnalysisRun(
            track_id=int(row["track_id"]),
            features=FeatureRecord.from_row(row),
            scores=JamScores.from_sequence([row[col] for col in SCORE_COLUMNS]),
            quality=DataQuality(row["quality"]),
            generation=int(row["generation"]),
            analyzed_at=datetime.fromisoformat(row["analyzed_at"]),
        )

    # ------------------------------------------------------------------
    # Aggregate queries
    # ------------------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        """Catalog and score summary. Score means skip garbage runs and NULLs."""
        averages = ", ".join(f"AVG({col}) AS {col}" for col in SCORE_COLUMNS)
        with self._reading("stats") as conn:
            total = conn.execute("SELECT COUNT(*) FROM tracks").fetchone()[0]
            by_quality = {
                row["quality"]: row["n"]
                for row in conn.execute(
                    "SELECT quality, COUNT(*) AS n FROM analysis_results GROUP BY quality"
                )
            }
            calibrated = conn.execute(
                "SELECT COUNT(*) FROM analysis_results WHERE calibrated_at IS NOT NULL"
            ).fetchone()[0]
            means_row = conn.execute(
                f"SELECT {averages} FROM analysis_results WHERE quality != ?",
                (DataQuality.GARBAGE.value,),
            ).fetchone()

        analyzed = sum(by_quality.values())
        return {
            "total_tracks": total,
            "analyzed": analyzed,
            "pending": total - analyzed,
            "ok": by_quality.get(DataQuality.OK.value, 0),
            "suspect": by_quality.get(DataQuality.SUSPECT.value, 0),
            "garbage": by_quality.get(DataQuality.GARBAGE.value, 0),
            "calibrated": calibrated,
            "score_means": {
                name: means_row[col] for name, col in zip(SCORE_NAMES, SCORE_COLUMNS)
            },
        }
