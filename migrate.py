import logging
import sqlite3
import sys
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, NamedTuple, Optional, Tuple

from exceptions import InitializationError
from storage import FileStorage, ImageBackend

logger = logging.getLogger(__name__)

TABLE_DEFINITIONS: Dict[str, Tuple[str, List[str]]] = {
    "users": (
        """CREATE TABLE IF NOT EXISTS users (
                email_hash TEXT PRIMARY KEY,
                password_hash TEXT NOT NULL,
                display_name TEXT,
                created_at TEXT NOT NULL,
                last_login TEXT
            );""",
        ["email_hash", "password_hash", "display_name", "created_at", "last_login"],
    ),
    "songs": (
        """CREATE TABLE IF NOT EXISTS songs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_email_hash TEXT NOT NULL,
                title TEXT NOT NULL,
                artist TEXT,
                notes TEXT,
                created_at TEXT NOT NULL,
                last_practiced TEXT,
                FOREIGN KEY(user_email_hash) REFERENCES users(email_hash)
            );""",
        [
            "id",
            "user_email_hash",
            "title",
            "artist",
            "notes",
            "created_at",
            "last_practiced",
        ],
    ),
    "routines": (
        """CREATE TABLE IF NOT EXISTS routines (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_email_hash TEXT NOT NULL,
                name TEXT NOT NULL,
                duration_minutes INTEGER,
                description TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY(user_email_hash) REFERENCES users(email_hash)
            );""",
        [
            "id",
            "user_email_hash",
            "name",
            "duration_minutes",
            "description",
            "created_at",
        ],
    ),
    "practice_sessions": (
        """CREATE TABLE IF NOT EXISTS practice_sessions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_email_hash TEXT NOT NULL,
                session_date TEXT NOT NULL,
                duration_minutes INTEGER,
                routine_id INTEGER,
                song_id INTEGER,
                exercise_id TEXT,
                notes TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY(user_email_hash) REFERENCES users(email_hash),
                FOREIGN KEY(routine_id) REFERENCES routines(id),
                FOREIGN KEY(song_id) REFERENCES songs(id),
                FOREIGN KEY(exercise_id) REFERENCES exercises(id)
            );""",
        [
            "id",
            "user_email_hash",
            "session_date",
            "duration_minutes",
            "routine_id",
            "song_id",
            "exercise_id",
            "notes",
            "created_at",
        ],
    ),
    "exercises": (
        """CREATE TABLE IF NOT EXISTS exercises (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                description TEXT NOT NULL,
                difficulty TEXT NOT NULL,
                category TEXT NOT NULL,
                image_path TEXT,
                created_at TEXT NOT NULL
            );""",
        [
            "id",
            "title",
            "description",
            "difficulty",
            "category",
            "image_path",
            "created_at",
        ],
    ),
    "exercise_progress": (
        """CREATE TABLE IF NOT EXISTS exercise_progress (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_email_hash TEXT NOT NULL,
                exercise_id TEXT NOT NULL,
                times_practiced INTEGER DEFAULT 0,
                last_practiced TEXT,
                completed INTEGER DEFAULT 0,
                FOREIGN KEY(user_email_hash) REFERENCES users(email_hash),
                FOREIGN KEY(exercise_id) REFERENCES exercises(id)
            );""",
        [
            "id",
            "user_email_hash",
            "exercise_id",
            "times_practiced",
            "last_practiced",
            "completed",
        ],
    ),
}


class Migration(NamedTuple):
    version: int
    description: str
    apply: Callable[[sqlite3.Connection], None]


def table_exists(conn: sqlite3.Connection, table: str) -> bool:
    cur = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name=?;", (table,)
    )
    return cur.fetchone() is not None


def table_columns(conn: sqlite3.Connection, table: str) -> List[str]:
    cur = conn.execute(f"PRAGMA table_info({table});")
    return [row[1] for row in cur.fetchall()]


def _ensure_table(conn: sqlite3.Connection, table: str) -> None:
    if table_exists(conn, table):
        return
    logger.info("Creating table %s", table)
    conn.execute(TABLE_DEFINITIONS[table][0])


def _ensure_column(
    conn: sqlite3.Connection, table: str, column: str, definition: str
) -> None:
    if column in table_columns(conn, table):
        return
    logger.info("Adding column %s.%s", table, column)
    try:
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition};")
    except sqlite3.OperationalError as exc:
        if "duplicate column" not in str(exc).lower():
            raise


def _baseline(conn: sqlite3.Connection) -> None:
    for table in ("users", "songs", "routines", "practice_sessions"):
        _ensure_table(conn, table)


def _exercises(conn: sqlite3.Connection) -> None:
    _ensure_table(conn, "exercises")
    _ensure_table(conn, "exercise_progress")
    _ensure_column(
        conn, "practice_sessions", "exercise_id", "TEXT REFERENCES exercises(id)"
    )


MIGRATIONS: List[Migration] = [
    Migration(1, "users, songs, routines and practice sessions", _baseline),
    Migration(2, "exercise catalog and per-user exercise progress", _exercises),
]

LATEST_VERSION = MIGRATIONS[-1].version


def schema_version(conn: sqlite3.Connection) -> int:
    return conn.execute("PRAGMA user_version;").fetchone()[0]


def _set_schema_version(conn: sqlite3.Connection, version: int) -> None:
    conn.execute(f"PRAGMA user_version = {int(version)};")


@contextmanager
def _transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    conn.execute("BEGIN;")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK;")
        raise
    conn.execute("COMMIT;")


def create_schema(conn: sqlite3.Connection) -> None:
    """Create every table of the current schema on an empty database."""
    with _transaction(conn):
        for sql, _columns in TABLE_DEFINITIONS.values():
            conn.execute(sql)
        _set_schema_version(conn, LATEST_VERSION)


def migrate(conn: sqlite3.Connection) -> List[int]:
    """Bring ``conn`` up to ``LATEST_VERSION`` and return the versions applied.

    Images written before versions were recorded report version 0, so every
    step runs against them; the steps inspect the catalog and only add what is
    missing. Existing rows are never dropped or rewritten.
    """
    current = schema_version(conn)
    applied: List[int] = []
    for step in MIGRATIONS:
        if step.version <= current:
            continue
        logger.info("Applying migration %d: %s", step.version, step.description)
        with _transaction(conn):
            step.apply(conn)
            _set_schema_version(conn, step.version)
        applied.append(step.version)
    return applied


def missing_columns(conn: sqlite3.Connection) -> Dict[str, List[str]]:
    """Return the declared columns absent from the live catalog, by table."""
    missing: Dict[str, List[str]] = {}
    for table, (_sql, columns) in TABLE_DEFINITIONS.items():
        existing = table_columns(conn, table)
        absent = [c for c in columns if c not in existing]
        if absent:
            missing[table] = absent
    return missing


def migrate_image(image: bytes) -> Tuple[bytes, List[int]]:
    """Return ``image`` migrated to the latest schema with the steps applied.

    Raises ``InitializationError`` when SQLite cannot open the image or the
    migrated schema still lacks declared columns, so a caller never saves an
    image the store would refuse to load.
    """
    conn = sqlite3.connect(":memory:", isolation_level=None)
    try:
        conn.deserialize(image)
        applied = migrate(conn)
        missing = missing_columns(conn)
        if missing:
            raise InitializationError(f"schema is missing columns: {missing}")
        return conn.serialize(), applied
    except (sqlite3.Error, ValueError, TypeError) as exc:
        raise InitializationError(f"not a usable database image: {exc}") from exc
    finally:
        conn.close()


def migrate_stored_image(backend: ImageBackend) -> Optional[List[int]]:
    """Migrate the image held by ``backend`` in place; ``None`` if there is none."""
    image = backend.load()
    if image is None:
        return None
    migrated, applied = migrate_image(image)
    if applied:
        backend.save(migrated)
    return applied


def main(argv: Optional[List[str]] = None) -> None:
    argv = sys.argv[1:] if argv is None else argv
    storage_dir = argv[0] if argv else ".guitar_io"
    applied = migrate_stored_image(ImageBackend(FileStorage(storage_dir)))
    if applied is None:
        print(f"No database image found in {storage_dir}")
    elif applied:
        print(f"Applied migrations: {', '.join(str(v) for v in applied)}")
    else:
        print("Database already up to date")


if __name__ == "__main__":
    main()
