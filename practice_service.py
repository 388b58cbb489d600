from __future__ import annotations

import logging
from typing import List, Optional

from db import (
    ExerciseProgressRepository,
    ExerciseRepository,
    PracticeSessionRepository,
    RoutineRepository,
    Row,
    SongRepository,
    utc_timestamp,
)

logger = logging.getLogger(__name__)


class PracticeService:
    """Record practice against exercises, songs and routines."""

    def __init__(
        self,
        exercises: ExerciseRepository,
        progress: ExerciseProgressRepository,
        sessions: PracticeSessionRepository,
        songs: SongRepository,
        routines: RoutineRepository,
    ) -> None:
        self.exercises = exercises
        self.progress = progress
        self.sessions = sessions
        self.songs = songs
        self.routines = routines

    @staticmethod
    def _check_minutes(minutes: int) -> None:
        if isinstance(minutes, bool) or not isinstance(minutes, int) or minutes <= 0:
            raise ValueError("practice duration must be a positive number of minutes")

    def record_exercise_practice(
        self,
        user_email_hash: str,
        exercise_id: str,
        minutes: int,
        notes: Optional[str] = None,
    ) -> int:
        """Count a completed exercise and log the session; returns the session id.

        The progress update and the session insert are separate writes.
        """
        self._check_minutes(minutes)
        if self.exercises.fetch(exercise_id) is None:
            raise ValueError(f"unknown exercise: {exercise_id}")
        now = utc_timestamp()
        self.progress.record(user_email_hash, exercise_id, now)
        session_id = self.sessions.add(
            user_email_hash,
            minutes,
            exercise_id=exercise_id,
            notes=notes,
            session_date=now,
        )
        logger.info("Recorded %d minutes on exercise %s", minutes, exercise_id)
        return session_id

    def record_song_practice(
        self,
        user_email_hash: str,
        song_id: int,
        minutes: int,
        notes: Optional[str] = None,
    ) -> int:
        self._check_minutes(minutes)
        song = self.songs.fetch(song_id)
        if song is None or song["user_email_hash"] != user_email_hash:
            raise ValueError(f"unknown song: {song_id}")
        now = utc_timestamp()
        session_id = self.sessions.add(
            user_email_hash, minutes, song_id=song_id, notes=notes, session_date=now
        )
        self.songs.set_last_practiced(song_id, now)
        return session_id

    def record_routine_practice(
        self,
        user_email_hash: str,
        routine_id: int,
        minutes: int,
        notes: Optional[str] = None,
    ) -> int:
        self._check_minutes(minutes)
        routine = self.routines.fetch(routine_id)
        if routine is None or routine["user_email_hash"] != user_email_hash:
            raise ValueError(f"unknown routine: {routine_id}")
        return self.sessions.add(
            user_email_hash, minutes, routine_id=routine_id, notes=notes
        )

    @staticmethod
    def _with_progress(row: Row) -> Row:
        item = dict(row)
        item["progress"] = {
            "times_practiced": item.pop("times_practiced", 0) or 0,
            "last_practiced": item.pop("last_practiced", None),
            "completed": bool(item.pop("completed", 0)),
        }
        return item

    def list_exercises(
        self, user_email_hash: str, category: Optional[str] = None
    ) -> List[Row]:
        """Catalog ordered beginner to advanced, each row carrying the user's progress."""
        rows = self.exercises.fetch_with_progress(user_email_hash, category)
        return [self._with_progress(r) for r in rows]

    def exercise_detail(self, user_email_hash: str, exercise_id: str) -> Optional[Row]:
        exercise = self.exercises.fetch(exercise_id)
        if exercise is None:
            return None
        progress = self.progress.fetch(user_email_hash, exercise_id)
        exercise["progress"] = {
            "times_practiced": progress["times_practiced"] if progress else 0,
            "last_practiced": progress["last_practiced"] if progress else None,
            "completed": bool(progress["completed"]) if progress else False,
        }
        return exercise
