import json
import sqlite3
import uuid
from datetime import date
from pathlib import Path

from maven.cycle import MoodEntry, PeriodEntry, SymptomEntry, UserPreferences
from maven.notifications import StoreError

MAX_LOG_ENTRIES = 100


class Database:
    def __init__(self, db_path: Path, default_preferences: UserPreferences | None = None):
        self.db_path = db_path
        self.default_preferences = default_preferences or UserPreferences()
        self._conn = sqlite3.connect(db_path, check_same_thread=False, timeout=10)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        return self._conn

    def _init_db(self):
        with self._get_conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS kv_store (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS periods (
                    id TEXT PRIMARY KEY,
                    start_date TEXT NOT NULL,
                    end_date TEXT NOT NULL,
                    notes TEXT,
                    created_at TEXT NOT NULL DEFAULT (datetime('now'))
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS symptoms (
                    id TEXT PRIMARY KEY,
                    date TEXT NOT NULL,
                    type TEXT NOT NULL,
                    severity TEXT NOT NULL CHECK (severity IN ('mild', 'moderate', 'severe')),
                    notes TEXT
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS moods (
                    id TEXT PRIMARY KEY,
                    date TEXT NOT NULL,
                    mood TEXT NOT NULL,
                    notes TEXT
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS preferences (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    data TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS activity_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    action TEXT NOT NULL,
                    details TEXT NOT NULL,
                    created_at TEXT NOT NULL DEFAULT (datetime('now'))
                )
            """)

    # ── Key-value store ─────────────────────────────────────────────

    def get(self, key: str) -> str | None:
        with self._get_conn() as conn:
            row = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
            return row["value"] if row else None

    def set(self, key: str, value: str):
        try:
            with self._get_conn() as conn:
                conn.execute("""
                    INSERT INTO kv_store (key, value) VALUES (?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = datetime('now')
                """, (key, value))
        except sqlite3.Error as e:
            raise StoreError(f"Failed to write {key!r}: {e}") from e

    # ── Period history ──────────────────────────────────────────────

    def add_period(self, start_date: date, end_date: date, notes: str | None = None) -> PeriodEntry:
        entry = PeriodEntry(id=str(uuid.uuid4()), start_date=start_date, end_date=end_date, notes=notes)
        with self._get_conn() as conn:
            conn.execute(
                "INSERT INTO periods (id, start_date, end_date, notes) VALUES (?, ?, ?, ?)",
                (entry.id, start_date.isoformat(), end_date.isoformat(), notes),
            )
        return entry

    def get_periods(self) -> list[PeriodEntry]:
        """All logged periods in insertion order."""
        with self._get_conn() as conn:
            rows = conn.execute(
                "SELECT id, start_date, end_date, notes FROM periods ORDER BY rowid"
            ).fetchall()
            return [PeriodEntry.from_dict(dict(r)) for r in rows]

    def delete_period(self, period_id: str) -> bool:
        with self._get_conn() as conn:
            cursor = conn.execute("DELETE FROM periods WHERE id = ?", (period_id,))
            return cursor.rowcount > 0

    # ── Symptoms & moods ────────────────────────────────────────────

    def add_symptom(
        self, on: date, type: str, severity: str, notes: str | None = None
    ) -> SymptomEntry:
        entry = SymptomEntry(id=str(uuid.uuid4()), date=on, type=type, severity=severity, notes=notes)
        with self._get_conn() as conn:
            conn.execute(
                "INSERT INTO symptoms (id, date, type, severity, notes) VALUES (?, ?, ?, ?, ?)",
                (entry.id, on.isoformat(), type, severity, notes),
            )
        return entry

    def get_symptoms(self) -> list[SymptomEntry]:
        with self._get_conn() as conn:
            rows = conn.execute(
                "SELECT id, date, type, severity, notes FROM symptoms ORDER BY date DESC"
            ).fetchall()
            return [
                SymptomEntry(
                    id=r["id"],
                    date=date.fromisoformat(r["date"]),
                    type=r["type"],
                    severity=r["severity"],
                    notes=r["notes"],
                )
                for r in rows
            ]

    def add_mood(self, on: date, mood: str, notes: str | None = None) -> MoodEntry:
        entry = MoodEntry(id=str(uuid.uuid4()), date=on, mood=mood, notes=notes)
        with self._get_conn() as conn:
            conn.execute(
                "INSERT INTO moods (id, date, mood, notes) VALUES (?, ?, ?, ?)",
                (entry.id, on.isoformat(), mood, notes),
            )
        return entry

    def get_moods(self) -> list[MoodEntry]:
        with self._get_conn() as conn:
            rows = conn.execute(
                "SELECT id, date, mood, notes FROM moods ORDER BY date DESC"
            ).fetchall()
            return [
                MoodEntry(id=r["id"], date=date.fromisoformat(r["date"]), mood=r["mood"], notes=r["notes"])
                for r in rows
            ]

    # ── Preferences ─────────────────────────────────────────────────

    def get_preferences(self) -> UserPreferences:
        with self._get_conn() as conn:
            row = conn.execute("SELECT data FROM preferences WHERE id = 1").fetchone()
            if not row:
                # Copy, so callers can mutate what they get back
                return UserPreferences.from_dict(self.default_preferences.to_dict())
            return UserPreferences.from_dict(json.loads(row["data"]))

    def update_preferences(self, preferences: UserPreferences):
        with self._get_conn() as conn:
            conn.execute("""
                INSERT INTO preferences (id, data) VALUES (1, ?)
                ON CONFLICT(id) DO UPDATE SET data = excluded.data
            """, (json.dumps(preferences.to_dict()),))

    # ── Activity log ────────────────────────────────────────────────

    def record(self, action: str, details: str):
        """Append to the activity log, keeping only the newest MAX_LOG_ENTRIES."""
        with self._get_conn() as conn:
            conn.execute(
                "INSERT INTO activity_log (action, details) VALUES (?, ?)",
                (action, details),
            )
            conn.execute("""
                DELETE FROM activity_log WHERE id NOT IN (
                    SELECT id FROM activity_log ORDER BY id DESC LIMIT ?
                )
            """, (MAX_LOG_ENTRIES,))

    def get_activity_log(self, limit: int = 20) -> list[dict]:
        with self._get_conn() as conn:
            rows = conn.execute(
                "SELECT action, details, created_at FROM activity_log ORDER BY id DESC LIMIT ?",
                (limit,),
            ).fetchall()
            return [dict(r) for r in rows]

    def clear_activity_log(self):
        with self._get_conn() as conn:
            conn.execute("DELETE FROM activity_log")
