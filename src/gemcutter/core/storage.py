"""Storage layer for gems (JSON files) and facet review data (SQLite)."""

import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict
from datetime import UTC, datetime
from pathlib import Path

from pydantic import ValidationError

from gemcutter.core.collection import GemCollection, RoundResult
from gemcutter.core.models import FacetStage, FacetState, Gem, gem_from_dict, utcnow

logger = logging.getLogger(__name__)


class GemStoreError(Exception):
    """Raised when a gem file cannot be read or is malformed."""


def _to_iso(value: datetime | None) -> str | None:
    """Serialize a datetime as a UTC ISO string so stored values sort correctly."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def _from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class GemStore:
    """Reads gem files and writes finalized study orders as JSON."""

    def __init__(self, data_dir: Path):
        self.data_dir = data_dir
        self.gems_path = data_dir / "gems.json"
        self.order_path = data_dir / "order.json"
        data_dir.mkdir(parents=True, exist_ok=True)

    def load(self, path: Path | None = None) -> list[Gem]:
        """Load gems in file order, assigning sequential ids from 0.

        The file holds a JSON list of records such as
        ``{"sides": {"0": "text"}, "unknown_facets": ["a", "b"]}``.
        """
        path = path or self.gems_path
        if not path.exists():
            raise GemStoreError(f"Gem file not found: {path}")

        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except UnicodeDecodeError as e:
            raise GemStoreError(f"Gem file is not valid UTF-8: {path}: {e}") from e
        except json.JSONDecodeError as e:
            raise GemStoreError(f"Invalid JSON in {path}: {e}") from e

        if not isinstance(data, list):
            raise GemStoreError(f"Expected a list of gems in {path}")

        gems: list[Gem] = []
        for number, record in enumerate(data):
            if not isinstance(record, dict):
                raise GemStoreError(f"Gem record {number} in {path} is not an object")
            try:
                gems.append(gem_from_dict(number, record))
            except ValidationError as e:
                raise GemStoreError(f"Invalid gem record {number} in {path}: {e}") from e

        logger.debug("Loaded %d gems from %s", len(gems), path)
        return gems

    def save_order(
        self,
        order: list[int],
        rounds: list[RoundResult],
        path: Path | None = None,
    ) -> Path:
        """Write a finalized gem order together with the rounds that produced it."""
        path = path or self.order_path
        path.parent.mkdir(parents=True, exist_ok=True)
        round_records = []
        for result in rounds:
            record = asdict(result)
            record["outcome"] = result.outcome.value
            record["facets"] = sorted(result.facets)
            round_records.append(record)

        with open(path, "w", encoding="utf-8") as f:
            json.dump({"order": order, "rounds": round_records}, f, indent=2)
        return path

    def load_order(self, path: Path | None = None) -> dict | None:
        """Load a previously saved order, or None if there is none."""
        path = path or self.order_path
        if not path.exists():
            return None
        with open(path, encoding="utf-8") as f:
            return json.load(f)


class FacetDatabase:
    """SQLite database for facet scheduling state and review logs."""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._connection() as conn:
            conn.executescript(
                """
                -- Facet scheduling states
                CREATE TABLE IF NOT EXISTS facet_states (
                    name TEXT PRIMARY KEY,
                    review_date TEXT,
                    last_seen_date TEXT,
                    lifetime_in_hours REAL,
                    stage TEXT NOT NULL DEFAULT 'new',
                    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
                );

                -- Review log (append-only)
                CREATE TABLE IF NOT EXISTS review_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    facet TEXT NOT NULL,
                    reviewed_at TEXT NOT NULL,
                    score REAL NOT NULL,
                    lifetime_before REAL,
                    lifetime_after REAL,
                    review_date_after TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_review_logs_facet ON review_logs(facet);
                CREATE INDEX IF NOT EXISTS idx_facet_states_review_date
                    ON facet_states(review_date);
            """
            )

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database connections."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def get_facet_state(self, name: str) -> FacetState | None:
        """Get the scheduling state of a facet."""
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM facet_states WHERE name = ?", (name,)).fetchone()
        if row is None:
            return None
        return FacetState(
            name=row["name"],
            review_date=_from_iso(row["review_date"]),
            last_seen_date=_from_iso(row["last_seen_date"]),
            lifetime_in_hours=row["lifetime_in_hours"],
            stage=FacetStage(row["stage"]),
        )

    def upsert_facet_state(self, state: FacetState) -> None:
        """Insert or update the scheduling state of a facet."""
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO facet_states (
                    name, review_date, last_seen_date, lifetime_in_hours, stage, updated_at
                ) VALUES (?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(name) DO UPDATE SET
                    review_date = excluded.review_date,
                    last_seen_date = excluded.last_seen_date,
                    lifetime_in_hours = excluded.lifetime_in_hours,
                    stage = excluded.stage,
                    updated_at = CURRENT_TIMESTAMP
            """,
                (
                    state.name,
                    _to_iso(state.review_date),
                    _to_iso(state.last_seen_date),
                    state.lifetime_in_hours,
                    state.stage.value,
                ),
            )

    def register_facets(self, names: set[str]) -> int:
        """Add facets not seen before in the 'new' stage.

        Returns the number of facets added.
        """
        with self._connection() as conn:
            before = conn.execute("SELECT COUNT(*) FROM facet_states").fetchone()[0]
            conn.executemany(
                "INSERT OR IGNORE INTO facet_states (name, stage) VALUES (?, 'new')",
                [(name,) for name in sorted(names)],
            )
            after = conn.execute("SELECT COUNT(*) FROM facet_states").fetchone()[0]
        return after - before

    def log_review(
        self,
        facet: str,
        score: float,
        reviewed_at: datetime,
        lifetime_before: float | None,
        lifetime_after: float | None,
        review_date_after: datetime | None,
    ) -> None:
        """Append a facet review to the log."""
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO review_logs (
                    facet, reviewed_at, score, lifetime_before, lifetime_after,
                    review_date_after
                ) VALUES (?, ?, ?, ?, ?, ?)
            """,
                (
                    facet,
                    _to_iso(reviewed_at),
                    score,
                    lifetime_before,
                    lifetime_after,
                    _to_iso(review_date_after),
                ),
            )

    def get_review_logs(self, facet: str) -> list[dict]:
        """Get the reviews of a facet, oldest first."""
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM review_logs WHERE facet = ? ORDER BY reviewed_at ASC, id ASC",
                (facet,),
            ).fetchall()
            return [dict(row) for row in rows]

    def get_due_facets(self, limit: int = 20, now: datetime | None = None) -> list[str]:
        """Get names of facets whose review date has passed, most overdue first."""
        now = now or utcnow()
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT name FROM facet_states
                WHERE review_date IS NOT NULL AND review_date <= ?
                ORDER BY review_date ASC
                LIMIT ?
            """,
                (_to_iso(now), limit),
            ).fetchall()
            return [row["name"] for row in rows]

    def get_stats(self, now: datetime | None = None) -> dict:
        """Get facet and review counts."""
        now = now or utcnow()
        with self._connection() as conn:
            total_facets = conn.execute("SELECT COUNT(*) FROM facet_states").fetchone()[0]
            new_facets = conn.execute(
                "SELECT COUNT(*) FROM facet_states WHERE stage = 'new'"
            ).fetchone()[0]
            total_reviews = conn.execute("SELECT COUNT(*) FROM review_logs").fetchone()[0]
            due_now = conn.execute(
                """
                SELECT COUNT(*) FROM facet_states
                WHERE review_date IS NOT NULL AND review_date <= ?
            """,
                (_to_iso(now),),
            ).fetchone()[0]

        return {
            "total_facets": total_facets,
            "new_facets": new_facets,
            "learning_facets": total_facets - new_facets,
            "total_reviews": total_reviews,
            "due_now": due_now,
        }


class GemcutterStorage:
    """Combined storage manager for gemcutter."""

    def __init__(self, data_dir: Path | None = None, state_dir: Path | None = None):
        # Default paths
        if data_dir is None:
            data_dir = Path.cwd() / "data"
        if state_dir is None:
            state_dir = Path.cwd() / ".gemcutter"

        self.data_dir = data_dir
        self.state_dir = state_dir

        # Initialize storage backends
        self.gems = GemStore(data_dir)
        self.db = FacetDatabase(state_dir / "gemcutter.db")

    def load_collection(self, path: Path | None = None) -> GemCollection:
        """Load gems, register their facets, and wrap them in a collection."""
        gems = self.gems.load(path)
        facets: set[str] = set()
        for gem in gems:
            facets |= gem.unknown_facets
        added = self.db.register_facets(facets)
        if added:
            logger.debug("Registered %d new facets", added)
        return GemCollection(gems)

    def save_order(self, collection: GemCollection, rounds: list[RoundResult]) -> Path:
        """Persist the finalized order of a collection after an ordering run."""
        return self.gems.save_order(collection.finalized_order(), rounds)
