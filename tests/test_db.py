import os
import sys
import sqlite3
import datetime

import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
import db
from db import (
    Database,
    ProfileNotFound,
    StoreError,
    StoreWriteError,
    Stores,
    first_day_on_or_after,
    format_timestamp,
)
from models import (
    AuditRecord,
    AuditTrigger,
    BehavioralSignal,
    ClassificationHistoryEntry,
    HistoryTrigger,
    SignalType,
    Tier,
)

NOW = datetime.datetime(2024, 3, 1, 12, 0)


@pytest.fixture
def stores(tmp_path):
    return Stores(str(tmp_path / "test.db"), retry_attempts=2, retry_backoff=0.0)


def make_signal(minutes=0, value="compound_focused", indicator=Tier.INTERMEDIATE):
    return BehavioralSignal(
        "u1",
        SignalType.EXERCISE_SELECTION,
        value,
        indicator,
        0.6,
        NOW - datetime.timedelta(minutes=minutes),
        {"compound_ratio": 0.8},
    )


class TestProfiles:
    def test_missing_profile(self, stores):
        with pytest.raises(ProfileNotFound) as exc:
            stores.profiles.get_profile("ghost")
        assert exc.value.user_id == "ghost"
        assert not stores.profiles.exists("ghost")

    def test_save_and_update(self, stores):
        stores.profiles.save(
            "u1",
            {
                "training_background": {"total_experience_months": 12},
                "movement_competencies": {"squat": {"experience_level": "advanced"}},
            },
        )
        profile = stores.profiles.get_profile("u1")
        assert profile.training_background.total_experience_months == 12
        assert profile.movement_competencies["squat"].experience_level == 5.0

        stores.profiles.save("u1", {"training_background": {"total_experience_months": 30}})
        profile = stores.profiles.get_profile("u1")
        assert profile.training_background.total_experience_months == 30
        assert profile.movement_competencies == {}
        assert stores.profiles.user_ids() == ["u1"]

    def test_invalid_profile_rejected(self, stores):
        with pytest.raises(ValueError):
            stores.profiles.save(
                "u1", {"training_background": {"average_sessions_per_week": 0}}
            )
        assert not stores.profiles.exists("u1")


class TestWorkouts:
    def test_log_and_query(self, stores):
        stores.workouts.log_workout(
            "u1",
            "2024-02-20",
            [
                {
                    "name": "squat",
                    "category": "compound",
                    "target_weight": 100,
                    "sets": [
                        {"reps": 5, "weight": 100, "rpe": 8},
                        {"reps": 5, "weight": 102.5},
                    ],
                },
                {"name": "curl", "category": "isolation", "sets": []},
            ],
        )
        stores.workouts.log_workout("u1", "2024-02-10", [{"name": "bench", "sets": []}])
        stores.workouts.log_workout("u1", "2024-01-01", [])
        stores.workouts.log_workout("u2", "2024-02-25", [])

        since = datetime.datetime(2024, 2, 1)
        workouts = stores.workouts.query_recent_workouts("u1", since)
        assert [w.date for w in workouts] == [
            datetime.date(2024, 2, 10),
            datetime.date(2024, 2, 20),
        ]
        squat, curl = workouts[1].exercises
        assert squat.is_compound
        assert squat.weights == [100.0, 102.5]
        assert squat.rpe == [8.0]
        assert squat.target_weight == 100.0
        assert curl.sets == ()
        assert stores.workouts.count_since("u1", since) == 2

    def test_invalid_date(self, stores):
        with pytest.raises(ValueError):
            stores.workouts.log_workout("u1", "yesterday", [])


class TestSignals:
    def test_query_most_recent_first(self, stores):
        for minutes in (30, 10, 20):
            stores.signals.append_signal(make_signal(minutes))
        signals = stores.signals.query_signals("u1", NOW - datetime.timedelta(hours=1))
        assert [s.timestamp for s in signals] == [
            NOW - datetime.timedelta(minutes=10),
            NOW - datetime.timedelta(minutes=20),
            NOW - datetime.timedelta(minutes=30),
        ]
        assert signals[0].context == {"compound_ratio": 0.8}
        assert stores.signals.query_signals("u1", NOW + datetime.timedelta(seconds=1)) == []

    def test_append_is_idempotent(self, stores):
        stores.signals.append_signal(make_signal())
        stores.signals.append_signal(make_signal())
        assert len(stores.signals.query_signals("u1", NOW)) == 1

    def test_neutral_indicator_round_trip(self, stores):
        stores.signals.append_signal(make_signal(value="mixed", indicator=None))
        (s,) = stores.signals.query_signals("u1", NOW)
        assert s.is_neutral

    def test_malformed_rows_skipped(self, stores):
        stores.signals.append_signal(make_signal())
        conn = sqlite3.connect(stores.db_path)
        conn.execute(
            "INSERT INTO behavioral_signals (user_id, signal_type, signal_value, tier_indicator, confidence, timestamp) "
            "VALUES ('u1', 'bogus', 'x', 'beginner', 0.5, ?);",
            (format_timestamp(NOW),),
        )
        conn.execute(
            "INSERT INTO behavioral_signals (user_id, signal_type, signal_value, tier_indicator, confidence, timestamp) "
            "VALUES ('u1', 'exercise_selection', 'y', 'expert', 0.5, ?);",
            (format_timestamp(NOW),),
        )
        conn.commit()
        conn.close()
        signals = stores.signals.query_signals("u1", NOW - datetime.timedelta(hours=1))
        assert [s.signal_value for s in signals] == ["compound_focused"]

    def test_signals_are_append_only(self, stores):
        stores.signals.append_signal(make_signal())
        with pytest.raises(sqlite3.IntegrityError):
            stores.signals.execute("DELETE FROM behavioral_signals;")
        with pytest.raises(sqlite3.IntegrityError):
            stores.signals.execute("UPDATE behavioral_signals SET confidence = 1.0;")
        assert stores.signals.query_signals("u1", NOW)[0].confidence == 0.6


class TestHistory:
    def test_round_trip_reverse_chronological(self, stores):
        entries = [
            ClassificationHistoryEntry(
                "u1",
                NOW + datetime.timedelta(days=i),
                tier,
                0.5 + i / 10,
                HistoryTrigger.BEHAVIORAL_SIGNALS,
                {"step": i},
            )
            for i, tier in enumerate(
                [Tier.BEGINNER, Tier.INTERMEDIATE, Tier.ADVANCED, Tier.INTERMEDIATE]
            )
        ]
        for entry in entries:
            stores.history.append_history_entry(entry)

        result = stores.history.query_history("u1", limit=len(entries))
        assert result == list(reversed(entries))
        assert [e.supporting_data for e in result] == [{"step": i} for i in (3, 2, 1, 0)]
        assert stores.history.query_history("u1", limit=2) == result[:2]
        assert stores.history.latest("u1") == entries[-1]
        assert stores.history.latest("u2") is None

    def test_history_is_append_only(self, stores):
        stores.history.append_history_entry(
            ClassificationHistoryEntry(
                "u1", NOW, Tier.BEGINNER, 0.5, HistoryTrigger.INITIAL_ONBOARDING
            )
        )
        with pytest.raises(sqlite3.IntegrityError):
            stores.history.execute("UPDATE classification_history SET tier = 'advanced';")
        assert stores.history.latest("u1").tier == Tier.BEGINNER


def test_audit_records(stores):
    stores.audits.append_audit_record(AuditRecord("u1", NOW, 5, AuditTrigger.MANUAL))
    stores.audits.append_audit_record(
        AuditRecord("u1", NOW + datetime.timedelta(hours=1), 6, AuditTrigger.WORKOUT_COMPLETED)
    )
    records = stores.audits.fetch_for_user("u1")
    assert [r.workouts_analyzed for r in records] == [6, 5]
    assert records[0].trigger == AuditTrigger.WORKOUT_COMPLETED


def test_timestamps_sort_as_text():
    early = format_timestamp(datetime.datetime(2024, 1, 1, 9, 0))
    late = format_timestamp(datetime.datetime(2024, 1, 1, 9, 0, 0, 1))
    assert early < late
    aware = datetime.datetime(2024, 1, 1, 10, 0, tzinfo=datetime.timezone(datetime.timedelta(hours=1)))
    assert format_timestamp(aware) == early


def test_schema_migration_adds_columns(tmp_path):
    db_file = tmp_path / "old.db"
    conn = sqlite3.connect(str(db_file))
    conn.execute(
        "CREATE TABLE workout_exercises (id INTEGER PRIMARY KEY AUTOINCREMENT, workout_id INTEGER, name TEXT)"
    )
    conn.execute("INSERT INTO workout_exercises (workout_id, name) VALUES (1, 'squat')")
    conn.execute("CREATE TABLE workout_exercises_old (id INTEGER)")
    conn.commit()
    conn.close()

    Database(str(db_file))

    conn = sqlite3.connect(str(db_file))
    cols = [row[1] for row in conn.execute("PRAGMA table_info(workout_exercises)")]
    assert "position" in cols and "target_weight" in cols
    assert conn.execute("SELECT name, position FROM workout_exercises").fetchall() == [("squat", 0)]
    assert conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name='workout_exercises_old'"
    ).fetchone() is None
    conn.close()


def test_first_day_on_or_after():
    assert first_day_on_or_after(datetime.datetime(2024, 3, 1)) == "2024-03-01"
    assert first_day_on_or_after(datetime.datetime(2024, 3, 1, 12, 0)) == "2024-03-02"
    assert first_day_on_or_after(datetime.datetime(2024, 2, 29, 0, 0, 1)) == "2024-03-01"


class TestWriteFailures:
    @pytest.fixture
    def slow_stores(self, tmp_path, monkeypatch):
        delays = []
        monkeypatch.setattr(db.time, "sleep", delays.append)
        stores = Stores(str(tmp_path / "locked.db"), retry_attempts=3, retry_backoff=0.1)
        return stores, delays

    def test_write_retries_then_raises(self, slow_stores, monkeypatch):
        stores, delays = slow_stores
        attempts = []

        def locked():
            attempts.append(1)
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(stores.profiles, "_connection", locked)
        with pytest.raises(StoreWriteError) as exc:
            stores.profiles.save("u1", {})
        assert exc.value.retryable
        assert isinstance(exc.value.__cause__, sqlite3.OperationalError)
        assert len(attempts) == 3
        assert delays == pytest.approx([0.1, 0.2])

    def test_log_workout_retries_then_raises(self, slow_stores, monkeypatch):
        stores, delays = slow_stores

        def locked():
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(stores.workouts, "_connection", locked)
        with pytest.raises(StoreWriteError):
            stores.workouts.log_workout("u1", "2024-03-01", [])
        assert len(delays) == 2

    def test_transient_lock_recovers(self, slow_stores, monkeypatch):
        stores, delays = slow_stores
        real = stores.profiles._connection
        attempts = []

        def flaky():
            attempts.append(1)
            if len(attempts) == 1:
                raise sqlite3.OperationalError("database is locked")
            return real()

        monkeypatch.setattr(stores.profiles, "_connection", flaky)
        stores.profiles.save("u1", {})
        assert len(attempts) == 2
        assert delays == pytest.approx([0.1])
        assert stores.profiles.exists("u1")

    def test_read_failure_is_store_error(self, slow_stores, monkeypatch):
        stores, _ = slow_stores

        def locked():
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(stores.signals, "_connection", locked)
        with pytest.raises(StoreError) as exc:
            stores.signals.query_signals("u1", NOW)
        assert not isinstance(exc.value, StoreWriteError)
        assert exc.value.retryable
