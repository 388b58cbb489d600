import datetime
import logging
import sqlite3
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence

from exceptions import InitializationError, PersistError, QueryError
from migrate import create_schema, migrate, missing_columns, schema_version
from storage import ImageBackend

logger = logging.getLogger(__name__)

Row = Dict[str, Any]

_PARAM_TYPES = (type(None), bool, int, float, str, bytes)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

DIFFICULTY_ORDER = (
    "CASE e.difficulty WHEN 'beginner' THEN 0 "
    "WHEN 'intermediate' THEN 1 WHEN 'advanced' THEN 2 ELSE 3 END"
)


def utc_timestamp(moment: Optional[datetime.datetime] = None) -> str:
    """Format ``moment`` (default: now) the way SQLite's ``datetime('now')`` does."""
    if moment is None:
        moment = datetime.datetime.now(datetime.timezone.utc)
    elif moment.tzinfo is not None:
        moment = moment.astimezone(datetime.timezone.utc)
    return moment.strftime(TIMESTAMP_FORMAT)


def _check_params(params: Sequence[Any]) -> tuple:
    if not isinstance(params, (list, tuple)):
        raise QueryError(
            f"params must be a list or tuple of positional values, "
            f"got {type(params).__name__}"
        )
    for index, value in enumerate(params):
        if not isinstance(value, _PARAM_TYPES):
            raise QueryError(
                f"unsupported type for parameter {index}: {type(value).__name__}"
            )
    return tuple(params)


class PracticeStore:
    """Embedded SQLite database persisted as one image after every write.

    The store is constructed explicitly and handed to every repository and
    service; nothing about it is module global. Statements run in autocommit
    mode so each ``execute`` is its own unit of work.
    """

    def __init__(self, backend: ImageBackend) -> None:
        self.backend = backend
        self._conn: Optional[sqlite3.Connection] = None
        self._initialized = False
        self._transaction_depth = 0
        self.last_persist_error: Optional[PersistError] = None

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @staticmethod
    def _new_connection() -> sqlite3.Connection:
        conn = sqlite3.connect(":memory:", isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def initialize(self) -> "PracticeStore":
        """Load and migrate the persisted image, or create a fresh schema.

        Safe to call repeatedly; only the first call does any work. Failures
        raise ``InitializationError`` and leave the store uninitialized.
        """
        if self._initialized:
            return self
        try:
            image = self.backend.load()
        except OSError as exc:
            logger.error("Could not read database image: %s", exc)
            raise InitializationError(f"could not read database image: {exc}") from exc

        conn = self._new_connection()
        try:
            if image is None:
                create_schema(conn)
                changed = True
                logger.info("Created new database")
            else:
                conn.deserialize(image)
                applied = migrate(conn)
                changed = bool(applied)
                missing = missing_columns(conn)
                if missing:
                    raise InitializationError(f"schema is missing columns: {missing}")
                logger.info(
                    "Loaded database image (%d bytes, schema version %d)",
                    len(image),
                    schema_version(conn),
                )
        except InitializationError:
            conn.close()
            raise
        except (sqlite3.Error, ValueError, TypeError) as exc:
            conn.close()
            logger.error("Database initialization failed: %s", exc)
            raise InitializationError(f"could not load database: {exc}") from exc

        self._conn = conn
        self._initialized = True
        if changed:
            self._persist_after_write()
        return self

    def _require_connection(self) -> sqlite3.Connection:
        if not self._initialized or self._conn is None:
            raise QueryError("database not initialized; call initialize() first")
        return self._conn

    def query(self, sql: str, params: Sequence[Any] = ()) -> List[Row]:
        """Run a read-only statement and return every row as a dict."""
        conn = self._require_connection()
        values = _check_params(params)
        try:
            conn.execute("PRAGMA query_only = ON;")
            try:
                rows = conn.execute(sql, values).fetchall()
            finally:
                conn.execute("PRAGMA query_only = OFF;")
        except (sqlite3.Error, sqlite3.Warning) as exc:
            logger.error("Query failed: %s; sql=%s", exc, " ".join(sql.split()))
            raise QueryError(str(exc)) from exc
        return [dict(row) for row in rows]

    def query_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[Row]:
        rows = self.query(sql, params)
        return rows[0] if rows else None

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run one mutating statement, persist the image and return ``lastrowid``."""
        conn = self._require_connection()
        values = _check_params(params)
        try:
            cursor = conn.execute(sql, values)
        except (sqlite3.Error, sqlite3.Warning) as exc:
            logger.error("Execute failed: %s; sql=%s", exc, " ".join(sql.split()))
            raise QueryError(str(exc)) from exc
        if self._transaction_depth == 0:
            self._persist_after_write()
        return cursor.lastrowid

    @contextmanager
    def transaction(self) -> Iterator["PracticeStore"]:
        """Group several ``execute`` calls into one commit and one save.

        Nested use joins the outer transaction. Any exception rolls back every
        statement issued inside the block.
        """
        conn = self._require_connection()
        if self._transaction_depth:
            self._transaction_depth += 1
            try:
                yield self
            finally:
                self._transaction_depth -= 1
            return

        conn.execute("BEGIN;")
        self._transaction_depth = 1
        try:
            yield self
        except BaseException:
            conn.execute("ROLLBACK;")
            raise
        else:
            conn.execute("COMMIT;")
        finally:
            self._transaction_depth = 0
        self._persist_after_write()

    def export_image(self) -> bytes:
        """Return the current database serialized in SQLite's native format."""
        return self._require_connection().serialize()

    def persist(self) -> None:
        """Save the current image, raising ``PersistError`` on failure."""
        self.backend.save(self.export_image())

    def _persist_after_write(self) -> None:
        try:
            self.persist()
        except PersistError as exc:
            self.last_persist_error = exc
            logger.error("Could not persist database image: %s", exc)
        else:
            self.last_persist_error = None

    def reset(self) -> None:
        """Discard every row and table and start over with an empty schema."""
        self.backend.clear()
        if self._conn is not None:
            self._conn.close()
        conn = self._new_connection()
        create_schema(conn)
        self._conn = conn
        self._initialized = True
        self._transaction_depth = 0
        logger.info("Database reset")
        self._persist_after_write()

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
        self._conn = None
        self._initialized = False


class BaseRepository:
    """Base repository providing helper methods."""

    def __init__(self, store: PracticeStore) -> None:
        self.store = store

    def execute(self, query: str, params: Sequence[Any] = ()) -> int:
        return self.store.execute(query, params)

    def fetch_all(self, query: str, params: Sequence[Any] = ()) -> List[Row]:
        return self.store.query(query, params)

    def fetch_one(self, query: str, params: Sequence[Any] = ()) -> Optional[Row]:
        return self.store.query_one(query, params)


class UserRepository(BaseRepository):
    """Repository for user accounts keyed by hashed email."""

    def create(
        self,
        email_hash: str,
        password_hash: str,
        display_name: Optional[str] = None,
        created_at: Optional[str] = None,
    ) -> None:
        # Plain INSERT: an existing email_hash must surface as a QueryError.
        self.execute(
            "INSERT INTO users (email_hash, password_hash, display_name, created_at) "
            "VALUES (?, ?, ?, ?);",
            (email_hash, password_hash, display_name, created_at or utc_timestamp()),
        )

    def fetch(self, email_hash: str) -> Optional[Row]:
        return self.fetch_one("SELECT * FROM users WHERE email_hash = ?;", (email_hash,))

    def exists(self, email_hash: str) -> bool:
        return (
            self.fetch_one(
                "SELECT 1 AS found FROM users WHERE email_hash = ?;", (email_hash,)
            )
            is not None
        )

    def set_last_login(self, email_hash: str, timestamp: Optional[str] = None) -> None:
        self.execute(
            "UPDATE users SET last_login = ? WHERE email_hash = ?;",
            (timestamp or utc_timestamp(), email_hash),
        )


class SongRepository(BaseRepository):
    """Repository for a user's song library."""

    def fetch(self, song_id: int) -> Optional[Row]:
        return self.fetch_one("SELECT * FROM songs WHERE id = ?;", (song_id,))

    def add(
        self,
        user_email_hash: str,
        title: str,
        artist: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> int:
        return self.execute(
            "INSERT INTO songs (user_email_hash, title, artist, notes, created_at) "
            "VALUES (?, ?, ?, ?, ?);",
            (user_email_hash, title, artist, notes, utc_timestamp()),
        )

    def fetch_for_user(self, user_email_hash: str) -> List[Row]:
        return self.fetch_all(
            "SELECT * FROM songs WHERE user_email_hash = ? ORDER BY title;",
            (user_email_hash,),
        )

    def fetch_recent(self, user_email_hash: str, limit: int = 5) -> List[Row]:
        return self.fetch_all(
            "SELECT id, title, artist, last_practiced FROM songs "
            "WHERE user_email_hash = ? "
            "ORDER BY last_practiced IS NULL, last_practiced DESC, id DESC "
            "LIMIT ?;",
            (user_email_hash, limit),
        )

    def set_last_practiced(self, song_id: int, timestamp: Optional[str] = None) -> None:
        self.execute(
            "UPDATE songs SET last_practiced = ? WHERE id = ?;",
            (timestamp or utc_timestamp(), song_id),
        )


class RoutineRepository(BaseRepository):
    """Repository for practice routines."""

    def fetch(self, routine_id: int) -> Optional[Row]:
        return self.fetch_one("SELECT * FROM routines WHERE id = ?;", (routine_id,))

    def add(
        self,
        user_email_hash: str,
        name: str,
        duration_minutes: Optional[int] = None,
        description: Optional[str] = None,
    ) -> int:
        return self.execute(
            "INSERT INTO routines (user_email_hash, name, duration_minutes, description, created_at) "
            "VALUES (?, ?, ?, ?, ?);",
            (user_email_hash, name, duration_minutes, description, utc_timestamp()),
        )

    def fetch_for_user(self, user_email_hash: str) -> List[Row]:
        return self.fetch_all(
            "SELECT id, name, duration_minutes, description, created_at FROM routines "
            "WHERE user_email_hash = ? ORDER BY created_at DESC, id DESC;",
            (user_email_hash,),
        )


class PracticeSessionRepository(BaseRepository):
    """Append-only log of practice sessions."""

    def add(
        self,
        user_email_hash: str,
        duration_minutes: Optional[int],
        *,
        exercise_id: Optional[str] = None,
        song_id: Optional[int] = None,
        routine_id: Optional[int] = None,
        notes: Optional[str] = None,
        session_date: Optional[str] = None,
    ) -> int:
        now = utc_timestamp()
        return self.execute(
            "INSERT INTO practice_sessions (user_email_hash, session_date, duration_minutes, "
            "routine_id, song_id, exercise_id, notes, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?);",
            (
                user_email_hash,
                session_date or now,
                duration_minutes,
                routine_id,
                song_id,
                exercise_id,
                notes,
                now,
            ),
        )

    def fetch_for_user(self, user_email_hash: str) -> List[Row]:
        return self.fetch_all(
            "SELECT * FROM practice_sessions WHERE user_email_hash = ? "
            "ORDER BY session_date DESC, id DESC;",
            (user_email_hash,),
        )

    def summary(self, user_email_hash: str, start_date: str, end_date: str) -> Row:
        """Aggregate sessions whose UTC day lies in ``start_date..end_date``."""
        row = self.fetch_one(
            "SELECT COUNT(*) AS total_sessions, "
            "COALESCE(SUM(duration_minutes), 0) AS total_minutes, "
            "COUNT(DISTINCT song_id) AS unique_songs "
            "FROM practice_sessions "
            "WHERE user_email_hash = ? AND date(session_date) BETWEEN ? AND ?;",
            (user_email_hash, start_date, end_date),
        )
        if row is None:
            raise QueryError("session summary returned no row")
        return row

    def practice_dates(
        self, user_email_hash: str, start_date: str, end_date: str
    ) -> List[str]:
        rows = self.fetch_all(
            "SELECT DISTINCT date(session_date) AS day FROM practice_sessions "
            "WHERE user_email_hash = ? AND date(session_date) BETWEEN ? AND ? "
            "ORDER BY day;",
            (user_email_hash, start_date, end_date),
        )
        return [r["day"] for r in rows]


class ExerciseRepository(BaseRepository):
    """Repository for the global exercise catalog."""

    def fetch(self, exercise_id: str) -> Optional[Row]:
        return self.fetch_one("SELECT * FROM exercises WHERE id = ?;", (exercise_id,))

    def fetch_catalog(self) -> List[Row]:
        return self.fetch_all(
            f"SELECT * FROM exercises e ORDER BY {DIFFICULTY_ORDER}, e.title;"
        )

    def upsert(
        self,
        exercise_id: str,
        title: str,
        description: str,
        difficulty: str,
        category: str,
        image_path: Optional[str],
        created_at: str,
    ) -> None:
        # created_at is only written on insert so updates keep the original.
        self.execute(
            "INSERT INTO exercises (id, title, description, difficulty, category, image_path, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET title=excluded.title, description=excluded.description, "
            "difficulty=excluded.difficulty, category=excluded.category, image_path=excluded.image_path;",
            (exercise_id, title, description, difficulty, category, image_path, created_at),
        )

    def delete(self, exercise_id: str) -> None:
        self.execute("DELETE FROM exercises WHERE id = ?;", (exercise_id,))

    def fetch_with_progress(
        self, user_email_hash: str, category: Optional[str] = None
    ) -> List[Row]:
        sql = (
            "SELECT e.*, "
            "COALESCE(ep.times_practiced, 0) AS times_practiced, "
            "ep.last_practiced AS last_practiced, "
            "COALESCE(ep.completed, 0) AS completed "
            "FROM exercises e "
            "LEFT JOIN exercise_progress ep ON e.id = ep.exercise_id "
            "AND ep.user_email_hash = ? "
        )
        params: List[Any] = [user_email_hash]
        if category is not None:
            sql += "WHERE e.category = ? "
            params.append(category)
        sql += f"ORDER BY {DIFFICULTY_ORDER}, e.title;"
        return self.fetch_all(sql, params)


class ExerciseProgressRepository(BaseRepository):
    """Per-user exercise counters, one row per (user, exercise)."""

    def fetch(self, user_email_hash: str, exercise_id: str) -> Optional[Row]:
        return self.fetch_one(
            "SELECT * FROM exercise_progress WHERE user_email_hash = ? AND exercise_id = ?;",
            (user_email_hash, exercise_id),
        )

    def record(
        self, user_email_hash: str, exercise_id: str, timestamp: Optional[str] = None
    ) -> None:
        """Count one completed practice of ``exercise_id`` for the user."""
        timestamp = timestamp or utc_timestamp()
        existing = self.fetch(user_email_hash, exercise_id)
        if existing is not None:
            self.execute(
                "UPDATE exercise_progress SET times_practiced = times_practiced + 1, "
                "last_practiced = ?, completed = 1 WHERE id = ?;",
                (timestamp, existing["id"]),
            )
        else:
            self.execute(
                "INSERT INTO exercise_progress (user_email_hash, exercise_id, times_practiced, last_practiced, completed) "
                "VALUES (?, ?, 1, ?, 1);",
                (user_email_hash, exercise_id, timestamp),
            )
