import os
import sqlite3
import sys

import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
import migrate as migrate_module
from db import PracticeStore
from exceptions import InitializationError
from migrate import (
    LATEST_VERSION,
    Migration,
    migrate,
    migrate_image,
    migrate_stored_image,
    missing_columns,
)
from storage import DATABASE_KEY, ImageBackend, MemoryStorage

LEGACY_SCHEMA = [
    """CREATE TABLE users (
        email_hash TEXT PRIMARY KEY,
        password_hash TEXT NOT NULL,
        display_name TEXT,
        created_at TEXT NOT NULL,
        last_login TEXT
    )""",
    """CREATE TABLE songs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_email_hash TEXT NOT NULL,
        title TEXT NOT NULL,
        artist TEXT,
        notes TEXT,
        created_at TEXT NOT NULL,
        last_practiced TEXT
    )""",
    """CREATE TABLE routines (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_email_hash TEXT NOT NULL,
        name TEXT NOT NULL,
        duration_minutes INTEGER,
        description TEXT,
        created_at TEXT NOT NULL
    )""",
    """CREATE TABLE practice_sessions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_email_hash TEXT NOT NULL,
        session_date TEXT NOT NULL,
        duration_minutes INTEGER,
        routine_id INTEGER,
        song_id INTEGER,
        notes TEXT,
        created_at TEXT NOT NULL
    )""",
]

USER_ROW = ("hash-1", "pw-hash", "Ada", "2023-05-01 10:00:00", "2023-05-02 09:00:00")
SONG_ROW = (1, "hash-1", "Blackbird", "The Beatles", "fingerstyle", "2023-05-01 10:05:00", None)


def legacy_image() -> bytes:
    conn = sqlite3.connect(":memory:")
    for sql in LEGACY_SCHEMA:
        conn.execute(sql)
    conn.execute("INSERT INTO users VALUES (?, ?, ?, ?, ?)", USER_ROW)
    conn.execute("INSERT INTO songs VALUES (?, ?, ?, ?, ?, ?, ?)", SONG_ROW)
    conn.commit()
    image = conn.serialize()
    conn.close()
    return image


def store_with_image(image: bytes) -> tuple:
    storage = MemoryStorage()
    storage.set(DATABASE_KEY, image)
    return PracticeStore(ImageBackend(storage)), storage


class TestSchemaMigration:
    def test_legacy_image_gains_exercise_tables(self):
        original = legacy_image()
        store, storage = store_with_image(original)
        store.initialize()

        tables = {
            r["name"]
            for r in store.query("SELECT name FROM sqlite_master WHERE type='table'")
        }
        assert {"exercises", "exercise_progress"} <= tables
        cols = [r["name"] for r in store.query("PRAGMA table_info(practice_sessions)")]
        assert "exercise_id" in cols
        assert store.query_one("PRAGMA user_version")["user_version"] == LATEST_VERSION

        user = store.query_one("SELECT * FROM users")
        assert tuple(user.values()) == USER_ROW
        song = store.query_one("SELECT * FROM songs")
        assert tuple(song.values()) == SONG_ROW

        # the migrated image is written back
        assert storage.get(DATABASE_KEY) != original

    def test_migrated_image_is_not_migrated_again(self):
        store, storage = store_with_image(legacy_image())
        store.initialize()
        migrated = storage.get(DATABASE_KEY)

        conn = sqlite3.connect(":memory:", isolation_level=None)
        conn.deserialize(migrated)
        assert migrate(conn) == []
        conn.close()

    def test_unversioned_full_schema_is_left_alone(self):
        conn = sqlite3.connect(":memory:", isolation_level=None)
        for sql in LEGACY_SCHEMA:
            conn.execute(sql)
        conn.execute("ALTER TABLE practice_sessions ADD COLUMN exercise_id TEXT")
        conn.execute(
            "CREATE TABLE exercises (id TEXT PRIMARY KEY, title TEXT NOT NULL, "
            "description TEXT NOT NULL, difficulty TEXT NOT NULL, category TEXT NOT NULL, "
            "image_path TEXT, created_at TEXT NOT NULL)"
        )
        conn.execute(
            "INSERT INTO exercises VALUES ('e1', 'Scales', 'd', 'beginner', 'scales', NULL, '2023-01-01 00:00:00')"
        )

        assert migrate(conn) == [1, 2]
        row = conn.execute("SELECT id, created_at FROM exercises").fetchone()
        assert row == ("e1", "2023-01-01 00:00:00")
        cols = [r[1] for r in conn.execute("PRAGMA table_info(practice_sessions)")]
        assert cols.count("exercise_id") == 1
        conn.close()

    def test_failed_step_rolls_back(self, monkeypatch):
        def broken(conn):
            conn.execute("CREATE TABLE half_done (id INTEGER)")
            raise sqlite3.OperationalError("boom")

        monkeypatch.setattr(
            migrate_module,
            "MIGRATIONS",
            migrate_module.MIGRATIONS + [Migration(LATEST_VERSION + 1, "broken", broken)],
        )
        conn = sqlite3.connect(":memory:", isolation_level=None)
        migrate_module.create_schema(conn)
        with pytest.raises(sqlite3.OperationalError):
            migrate(conn)
        assert conn.execute(
            "SELECT name FROM sqlite_master WHERE name='half_done'"
        ).fetchone() is None
        assert conn.execute("PRAGMA user_version").fetchone()[0] == LATEST_VERSION
        conn.close()

    def test_fresh_store_has_latest_schema(self):
        storage = MemoryStorage()
        store = PracticeStore(ImageBackend(storage))
        store.initialize()
        tables = {
            r["name"]
            for r in store.query(
                "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"
            )
        }
        assert tables == {
            "users",
            "songs",
            "routines",
            "practice_sessions",
            "exercises",
            "exercise_progress",
        }
        assert storage.get(DATABASE_KEY) is not None

    def test_corrupt_image_is_fatal(self):
        store, storage = store_with_image(b"this is not a sqlite database" * 100)
        with pytest.raises(InitializationError):
            store.initialize()
        assert not store.is_initialized
        # the unreadable image is not replaced by a fresh database
        assert storage.get(DATABASE_KEY) == b"this is not a sqlite database" * 100

    def test_migrate_image_rejects_garbage(self):
        with pytest.raises(InitializationError):
            migrate_image(b"garbage" * 200)

    def test_migrate_stored_image_in_place(self):
        storage = MemoryStorage()
        backend = ImageBackend(storage)
        assert migrate_stored_image(backend) is None

        storage.set(DATABASE_KEY, legacy_image())
        assert migrate_stored_image(backend) == [1, 2]
        migrated = storage.get(DATABASE_KEY)
        assert migrate_stored_image(backend) == []
        assert storage.get(DATABASE_KEY) == migrated

    def test_missing_columns_reported(self):
        conn = sqlite3.connect(":memory:", isolation_level=None)
        for sql in LEGACY_SCHEMA:
            conn.execute(sql)
        missing = missing_columns(conn)
        assert missing["practice_sessions"] == ["exercise_id"]
        assert "exercises" in missing
        assert "users" not in missing
        migrate(conn)
        assert missing_columns(conn) == {}
        conn.close()
