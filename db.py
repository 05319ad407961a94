import sqlite3
import os
import json
import time
import datetime
import logging
from contextlib import contextmanager
from typing import Callable, List, Tuple, Optional, Iterable

from models import (
    AuditRecord,
    AuditTrigger,
    BehavioralSignal,
    ClassificationHistoryEntry,
    HistoryTrigger,
    LoggedExercise,
    LoggedSet,
    SignalType,
    Tier,
    WorkoutLog,
    parse_indicator,
)
from profile_schema import UserProfile, validate_profile

logger = logging.getLogger(__name__)


class ProfileNotFound(LookupError):
    """Raised when no profile exists for a user."""

    def __init__(self, user_id: str) -> None:
        super().__init__(f"profile not found for user {user_id}")
        self.user_id = user_id


class StoreError(RuntimeError):
    """A store operation failed after all retry attempts."""

    retryable = True


class StoreWriteError(StoreError):
    """An append operation failed; safe to retry."""


def format_timestamp(value: datetime.datetime) -> str:
    """Return a fixed-width ISO string so that text ordering is time ordering."""
    if value.tzinfo is not None:
        value = value.astimezone(datetime.timezone.utc).replace(tzinfo=None)
    return value.isoformat(timespec="microseconds")


def parse_timestamp(value: str) -> datetime.datetime:
    return datetime.datetime.fromisoformat(value)


def first_day_on_or_after(since: datetime.datetime) -> str:
    """Return the earliest workout date whose midnight is not before ``since``."""
    day = since.date()
    if since.time() != datetime.time.min:
        day += datetime.timedelta(days=1)
    return day.isoformat()


class Database:
    """Provides SQLite connection management and schema initialization."""

    _TABLE_DEFINITIONS = {
        "profiles": (
            """CREATE TABLE profiles (
                    user_id TEXT PRIMARY KEY,
                    training_background TEXT NOT NULL,
                    movement_competencies TEXT NOT NULL,
                    physical_profile TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );""",
            [
                "user_id",
                "training_background",
                "movement_competencies",
                "physical_profile",
                "updated_at",
            ],
        ),
        "workouts": (
            """CREATE TABLE workouts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    date TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );""",
            ["id", "user_id", "date", "created_at"],
        ),
        "workout_exercises": (
            """CREATE TABLE workout_exercises (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    workout_id INTEGER NOT NULL,
                    name TEXT NOT NULL,
                    category TEXT,
                    target_weight REAL,
                    position INTEGER NOT NULL DEFAULT 0,
                    FOREIGN KEY(workout_id) REFERENCES workouts(id) ON DELETE CASCADE
                );""",
            ["id", "workout_id", "name", "category", "target_weight", "position"],
        ),
        "workout_sets": (
            """CREATE TABLE workout_sets (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    exercise_id INTEGER NOT NULL,
                    reps INTEGER NOT NULL,
                    weight REAL NOT NULL,
                    rpe REAL,
                    position INTEGER NOT NULL DEFAULT 0,
                    FOREIGN KEY(exercise_id) REFERENCES workout_exercises(id) ON DELETE CASCADE
                );""",
            ["id", "exercise_id", "reps", "weight", "rpe", "position"],
        ),
        "behavioral_signals": (
            """CREATE TABLE behavioral_signals (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    signal_type TEXT NOT NULL,
                    signal_value TEXT NOT NULL,
                    tier_indicator TEXT NOT NULL,
                    confidence REAL NOT NULL,
                    timestamp TEXT NOT NULL,
                    context TEXT
                );""",
            [
                "id",
                "user_id",
                "signal_type",
                "signal_value",
                "tier_indicator",
                "confidence",
                "timestamp",
                "context",
            ],
        ),
        "classification_history": (
            """CREATE TABLE classification_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    tier TEXT NOT NULL,
                    confidence REAL NOT NULL,
                    trigger_type TEXT NOT NULL,
                    supporting_data TEXT
                );""",
            [
                "id",
                "user_id",
                "timestamp",
                "tier",
                "confidence",
                "trigger_type",
                "supporting_data",
            ],
        ),
        "audit_records": (
            """CREATE TABLE audit_records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    workouts_analyzed INTEGER NOT NULL,
                    trigger_type TEXT NOT NULL
                );""",
            ["id", "user_id", "timestamp", "workouts_analyzed", "trigger_type"],
        ),
    }

    _INDEXES = (
        "CREATE UNIQUE INDEX IF NOT EXISTS ux_signals_dedup ON behavioral_signals "
        "(user_id, signal_type, signal_value, timestamp);",
        "CREATE INDEX IF NOT EXISTS ix_signals_user_time ON behavioral_signals (user_id, timestamp);",
        "CREATE INDEX IF NOT EXISTS ix_history_user_time ON classification_history (user_id, timestamp);",
        "CREATE INDEX IF NOT EXISTS ix_workouts_user_date ON workouts (user_id, date);",
    )

    _APPEND_ONLY_TABLES = ("behavioral_signals", "classification_history", "audit_records")

    def __init__(
        self,
        db_path: str = "trainingage.db",
        retry_attempts: int = 3,
        retry_backoff: float = 0.05,
    ) -> None:
        self._db_path = db_path
        self.retry_attempts = max(1, retry_attempts)
        self.retry_backoff = retry_backoff
        self._ensure_schema()
        self._ensure_indexes()
        self._ensure_append_only()

    @contextmanager
    def _connection(self):
        connection = sqlite3.connect(self._db_path, timeout=5.0)
        connection.execute("PRAGMA foreign_keys=on;")
        try:
            yield connection
            connection.commit()
        finally:
            connection.close()

    def _ensure_schema(self) -> None:
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute("PRAGMA foreign_keys=off;")
            for table, (sql, columns) in self._TABLE_DEFINITIONS.items():
                self._ensure_table(conn, table, sql, columns)
            cursor.execute("PRAGMA foreign_keys=on;")

    def _ensure_indexes(self) -> None:
        with self._connection() as conn:
            for sql in self._INDEXES:
                conn.execute(sql)

    def _ensure_append_only(self) -> None:
        """Reject UPDATE and DELETE on the audit-trail tables."""
        with self._connection() as conn:
            for table in self._APPEND_ONLY_TABLES:
                for action in ("UPDATE", "DELETE"):
                    conn.execute(
                        f"CREATE TRIGGER IF NOT EXISTS trg_{table}_no_{action.lower()} "
                        f"BEFORE {action} ON {table} BEGIN "
                        f"SELECT RAISE(ABORT, '{table} is append-only'); END;"
                    )

    def _ensure_table(
        self, conn: sqlite3.Connection, table: str, sql: str, columns: List[str]
    ) -> None:
        cur = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?;", (table,)
        )
        if cur.fetchone() is None:
            conn.execute(sql)
            return

        cur = conn.execute(f"PRAGMA table_info({table});")
        existing_cols = [row[1] for row in cur.fetchall()]
        if existing_cols == columns:
            return

        conn.execute(f"DROP TABLE IF EXISTS {table}_old;")
        conn.execute(f"ALTER TABLE {table} RENAME TO {table}_old;")
        conn.execute(sql)

        common = [c for c in existing_cols if c in columns]
        if common:
            cols = ", ".join(common)
            missing = [c for c in columns if c not in existing_cols]
            if missing:
                def default_val(col: str) -> str:
                    if col == "position":
                        return "0"
                    if col in ("movement_competencies", "training_background", "physical_profile"):
                        return "'{}'"
                    return "NULL"

                defaults = ", ".join(default_val(c) for c in missing)
                conn.execute(
                    f"INSERT INTO {table} ({cols}, {', '.join(missing)}) SELECT {cols}, {defaults} FROM {table}_old;"
                )
            else:
                conn.execute(
                    f"INSERT INTO {table} ({cols}) SELECT {cols} FROM {table}_old;"
                )
        conn.execute(f"DROP TABLE {table}_old;")


class BaseRepository(Database):
    """Base repository providing helper methods with retry on lock contention."""

    def _retry(self, op: Callable, error_cls: type, description: str):
        delay = self.retry_backoff
        for attempt in range(1, self.retry_attempts + 1):
            try:
                return op()
            except sqlite3.OperationalError as e:
                if attempt == self.retry_attempts:
                    raise error_cls(f"{description} failed: {e}") from e
                logger.warning(
                    "%s failed (attempt %d/%d): %s",
                    description,
                    attempt,
                    self.retry_attempts,
                    e,
                )
                time.sleep(delay)
                delay *= 2

    def execute(self, query: str, params: Tuple = ()) -> int:
        def op() -> int:
            with self._connection() as conn:
                cursor = conn.cursor()
                cursor.execute(query, params)
                return cursor.lastrowid

        return self._retry(op, StoreWriteError, "write")

    def fetch_all(self, query: str, params: Tuple = ()) -> List[Tuple]:
        def op() -> List[Tuple]:
            with self._connection() as conn:
                cursor = conn.cursor()
                cursor.execute(query, params)
                return cursor.fetchall()

        return self._retry(op, StoreError, "read")


class ProfileRepository(BaseRepository):
    """Read/write access to user profiles; validates at the boundary."""

    def save(self, user_id: str, profile: UserProfile | dict) -> None:
        if isinstance(profile, dict):
            profile = validate_profile(profile)
        self.execute(
            "INSERT INTO profiles (user_id, training_background, movement_competencies, physical_profile, updated_at) "
            "VALUES (?, ?, ?, ?, ?) "
            "ON CONFLICT(user_id) DO UPDATE SET training_background=excluded.training_background, "
            "movement_competencies=excluded.movement_competencies, "
            "physical_profile=excluded.physical_profile, updated_at=excluded.updated_at;",
            (
                user_id,
                profile.training_background.model_dump_json(),
                json.dumps(
                    {
                        k: v.model_dump()
                        for k, v in profile.movement_competencies.items()
                    }
                ),
                profile.physical_profile.model_dump_json(),
                format_timestamp(datetime.datetime.now()),
            ),
        )

    def get_profile(self, user_id: str) -> UserProfile:
        rows = self.fetch_all(
            "SELECT training_background, movement_competencies, physical_profile FROM profiles WHERE user_id = ?;",
            (user_id,),
        )
        if not rows:
            raise ProfileNotFound(user_id)
        bg, comps, phys = rows[0]
        return validate_profile(
            {
                "training_background": json.loads(bg or "{}"),
                "movement_competencies": json.loads(comps or "{}"),
                "physical_profile": json.loads(phys or "{}"),
            }
        )

    def exists(self, user_id: str) -> bool:
        rows = self.fetch_all("SELECT 1 FROM profiles WHERE user_id = ?;", (user_id,))
        return bool(rows)

    def user_ids(self) -> list[str]:
        rows = self.fetch_all("SELECT user_id FROM profiles ORDER BY user_id;")
        return [r[0] for r in rows]


class WorkoutLogRepository(BaseRepository):
    """Repository for logged workouts with their exercises and sets."""

    def log_workout(
        self,
        user_id: str,
        date: str,
        exercises: Iterable[dict],
    ) -> int:
        """Store a workout in one transaction and return its id.

        Each exercise dict holds ``name``, optional ``category`` and
        ``target_weight``, and ``sets``: dicts with ``reps``, ``weight`` and
        optional ``rpe``.
        """
        datetime.date.fromisoformat(date)
        exercises = list(exercises)

        def op() -> int:
            with self._connection() as conn:
                cur = conn.execute(
                    "INSERT INTO workouts (user_id, date, created_at) VALUES (?, ?, ?);",
                    (user_id, date, format_timestamp(datetime.datetime.now())),
                )
                workout_id = cur.lastrowid
                for pos, ex in enumerate(exercises):
                    ex_cur = conn.execute(
                        "INSERT INTO workout_exercises (workout_id, name, category, target_weight, position) "
                        "VALUES (?, ?, ?, ?, ?);",
                        (
                            workout_id,
                            ex["name"],
                            ex.get("category"),
                            ex.get("target_weight"),
                            pos,
                        ),
                    )
                    for set_pos, s in enumerate(ex.get("sets") or []):
                        conn.execute(
                            "INSERT INTO workout_sets (exercise_id, reps, weight, rpe, position) VALUES (?, ?, ?, ?, ?);",
                            (
                                ex_cur.lastrowid,
                                int(s.get("reps", 0)),
                                float(s.get("weight", 0.0)),
                                s.get("rpe"),
                                set_pos,
                            ),
                        )
                return workout_id

        return self._retry(op, StoreWriteError, "log workout")

    def count_since(self, user_id: str, since: datetime.datetime) -> int:
        rows = self.fetch_all(
            "SELECT COUNT(*) FROM workouts WHERE user_id = ? AND date >= ?;",
            (user_id, first_day_on_or_after(since)),
        )
        return int(rows[0][0]) if rows else 0

    def query_recent_workouts(
        self, user_id: str, since: datetime.datetime
    ) -> list[WorkoutLog]:
        """Return workouts on or after ``since`` in chronological order."""
        rows = self.fetch_all(
            "SELECT w.id, w.date, e.id, e.name, e.category, e.target_weight, "
            "s.reps, s.weight, s.rpe "
            "FROM workouts w "
            "LEFT JOIN workout_exercises e ON e.workout_id = w.id "
            "LEFT JOIN workout_sets s ON s.exercise_id = e.id "
            "WHERE w.user_id = ? AND w.date >= ? "
            "ORDER BY w.date, w.id, e.position, e.id, s.position, s.id;",
            (user_id, first_day_on_or_after(since)),
        )
        workouts: dict[int, dict] = {}
        for wid, date, ex_id, name, category, target, reps, weight, rpe in rows:
            w = workouts.setdefault(wid, {"date": date, "exercises": {}})
            if ex_id is None:
                continue
            ex = w["exercises"].setdefault(
                ex_id,
                {"name": name, "category": category, "target": target, "sets": []},
            )
            if reps is not None:
                ex["sets"].append(
                    LoggedSet(
                        int(reps),
                        float(weight),
                        float(rpe) if rpe is not None else None,
                    )
                )
        return [
            WorkoutLog(
                workout_id=wid,
                user_id=user_id,
                date=datetime.date.fromisoformat(w["date"]),
                exercises=tuple(
                    LoggedExercise(
                        name=ex["name"],
                        category=ex["category"],
                        sets=tuple(ex["sets"]),
                        target_weight=ex["target"],
                    )
                    for ex in w["exercises"].values()
                ),
            )
            for wid, w in workouts.items()
        ]


class SignalRepository(BaseRepository):
    """Append-only store for behavioural signals."""

    def append_signal(self, signal: BehavioralSignal) -> None:
        # the dedup index turns a retried append into a no-op
        self.execute(
            "INSERT OR IGNORE INTO behavioral_signals "
            "(user_id, signal_type, signal_value, tier_indicator, confidence, timestamp, context) "
            "VALUES (?, ?, ?, ?, ?, ?, ?);",
            (
                signal.user_id,
                signal.signal_type.value,
                signal.signal_value,
                signal.indicator_label,
                float(signal.confidence),
                format_timestamp(signal.timestamp),
                json.dumps(signal.context) if signal.context else None,
            ),
        )

    def query_signals(
        self, user_id: str, since: datetime.datetime
    ) -> list[BehavioralSignal]:
        """Return signals recorded at or after ``since``, most recent first."""
        rows = self.fetch_all(
            "SELECT signal_type, signal_value, tier_indicator, confidence, timestamp, context "
            "FROM behavioral_signals WHERE user_id = ? AND timestamp >= ? "
            "ORDER BY timestamp DESC, id DESC;",
            (user_id, format_timestamp(since)),
        )
        signals: list[BehavioralSignal] = []
        for s_type, value, indicator, conf, ts, ctx in rows:
            try:
                signals.append(
                    BehavioralSignal(
                        user_id=user_id,
                        signal_type=SignalType(s_type),
                        signal_value=value,
                        tier_indicator=parse_indicator(indicator),
                        confidence=float(conf),
                        timestamp=parse_timestamp(ts),
                        context=json.loads(ctx) if ctx else {},
                    )
                )
            except (ValueError, TypeError) as e:
                logger.warning("ignoring malformed signal for %s: %s", user_id, e)
        return signals


class ClassificationHistoryRepository(BaseRepository):
    """Append-only trail of tier changes."""

    def append_history_entry(self, entry: ClassificationHistoryEntry) -> int:
        return self.execute(
            "INSERT INTO classification_history (user_id, timestamp, tier, confidence, trigger_type, supporting_data) "
            "VALUES (?, ?, ?, ?, ?, ?);",
            (
                entry.user_id,
                format_timestamp(entry.timestamp),
                entry.tier.value,
                float(entry.confidence),
                entry.trigger.value,
                json.dumps(entry.supporting_data, default=str),
            ),
        )

    def query_history(
        self, user_id: str, limit: int = 10
    ) -> list[ClassificationHistoryEntry]:
        rows = self.fetch_all(
            "SELECT timestamp, tier, confidence, trigger_type, supporting_data "
            "FROM classification_history WHERE user_id = ? "
            "ORDER BY timestamp DESC, id DESC LIMIT ?;",
            (user_id, int(limit)),
        )
        return [
            ClassificationHistoryEntry(
                user_id=user_id,
                timestamp=parse_timestamp(ts),
                tier=Tier(tier),
                confidence=float(conf),
                trigger=HistoryTrigger(trigger),
                supporting_data=json.loads(data) if data else {},
            )
            for ts, tier, conf, trigger, data in rows
        ]

    def latest(self, user_id: str) -> Optional[ClassificationHistoryEntry]:
        entries = self.query_history(user_id, limit=1)
        return entries[0] if entries else None


class AuditRepository(BaseRepository):
    """Append-only record of completed audits."""

    def append_audit_record(self, record: AuditRecord) -> int:
        return self.execute(
            "INSERT INTO audit_records (user_id, timestamp, workouts_analyzed, trigger_type) VALUES (?, ?, ?, ?);",
            (
                record.user_id,
                format_timestamp(record.timestamp),
                int(record.workouts_analyzed),
                record.trigger.value,
            ),
        )

    def fetch_for_user(self, user_id: str, limit: int = 10) -> list[AuditRecord]:
        rows = self.fetch_all(
            "SELECT timestamp, workouts_analyzed, trigger_type FROM audit_records "
            "WHERE user_id = ? ORDER BY timestamp DESC, id DESC LIMIT ?;",
            (user_id, int(limit)),
        )
        return [
            AuditRecord(
                user_id=user_id,
                timestamp=parse_timestamp(ts),
                workouts_analyzed=int(n),
                trigger=AuditTrigger(trigger),
            )
            for ts, n, trigger in rows
        ]


class Stores:
    """Bundle of the repositories the classifier needs, sharing one database."""

    def __init__(
        self,
        db_path: str = "trainingage.db",
        retry_attempts: int = 3,
        retry_backoff: float = 0.05,
    ) -> None:
        self.db_path = db_path
        kwargs = {"retry_attempts": retry_attempts, "retry_backoff": retry_backoff}
        self.profiles = ProfileRepository(db_path, **kwargs)
        self.workouts = WorkoutLogRepository(db_path, **kwargs)
        self.signals = SignalRepository(db_path, **kwargs)
        self.history = ClassificationHistoryRepository(db_path, **kwargs)
        self.audits = AuditRepository(db_path, **kwargs)

    @classmethod
    def from_settings(cls, db_path: str, settings) -> "Stores":
        return cls(
            db_path,
            retry_attempts=settings.store_retry_attempts,
            retry_backoff=settings.store_retry_backoff,
        )

    @classmethod
    def default_path(cls) -> str:
        return os.environ.get("DB_PATH", "trainingage.db")
