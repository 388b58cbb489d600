import os
import sys
import unittest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from catalog_service import ExerciseCatalogSynchronizer
from db import (
    ExerciseProgressRepository,
    ExerciseRepository,
    PracticeSessionRepository,
    PracticeStore,
    RoutineRepository,
    SongRepository,
)
from practice_service import PracticeService
from storage import ImageBackend, MemoryStorage

FEED = [
    {
        "id": "sweep",
        "title": "Sweep Picking",
        "description": "d",
        "difficulty": "advanced",
        "category": "technique",
    },
    {
        "id": "chords",
        "title": "Chord Changes",
        "description": "d",
        "difficulty": "beginner",
        "category": "chords",
    },
    {
        "id": "legato",
        "title": "Legato",
        "description": "d",
        "difficulty": "intermediate",
        "category": "technique",
    },
    {
        "id": "alternate",
        "title": "Alternate Picking",
        "description": "d",
        "difficulty": "beginner",
        "category": "technique",
    },
]


class PracticeServiceTest(unittest.TestCase):
    def setUp(self) -> None:
        self.store = PracticeStore(ImageBackend(MemoryStorage())).initialize()
        self.exercises = ExerciseRepository(self.store)
        ExerciseCatalogSynchronizer(self.store, exercises=self.exercises).sync(FEED)
        self.songs = SongRepository(self.store)
        self.sessions = PracticeSessionRepository(self.store)
        self.service = PracticeService(
            self.exercises,
            ExerciseProgressRepository(self.store),
            self.sessions,
            self.songs,
            RoutineRepository(self.store),
        )

    def test_progress_upserted_once_per_exercise(self) -> None:
        self.service.record_exercise_practice("user-1", "legato", 5)
        self.service.record_exercise_practice("user-1", "legato", 10)
        rows = self.store.query(
            "SELECT * FROM exercise_progress WHERE user_email_hash = ? AND exercise_id = ?",
            ("user-1", "legato"),
        )
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]["times_practiced"], 2)
        self.assertEqual(rows[0]["completed"], 1)
        sessions = self.sessions.fetch_for_user("user-1")
        self.assertEqual(len(sessions), 2)
        self.assertEqual({s["exercise_id"] for s in sessions}, {"legato"})
        self.assertEqual(sorted(s["duration_minutes"] for s in sessions), [5, 10])

    def test_progress_is_per_user(self) -> None:
        self.service.record_exercise_practice("user-1", "legato", 5)
        self.service.record_exercise_practice("user-2", "legato", 5)
        rows = self.store.query("SELECT * FROM exercise_progress ORDER BY user_email_hash")
        self.assertEqual([r["times_practiced"] for r in rows], [1, 1])

    def test_unknown_exercise_rejected(self) -> None:
        with self.assertRaises(ValueError):
            self.service.record_exercise_practice("user-1", "missing", 5)
        self.assertEqual(self.store.query("SELECT * FROM practice_sessions"), [])

    def test_duration_must_be_positive(self) -> None:
        with self.assertRaises(ValueError):
            self.service.record_exercise_practice("user-1", "legato", 0)
        with self.assertRaises(ValueError):
            self.service.record_song_practice("user-1", 1, True)

    def test_list_exercises_ordered_by_difficulty(self) -> None:
        self.service.record_exercise_practice("user-1", "chords", 5)
        rows = self.service.list_exercises("user-1")
        self.assertEqual(
            [r["id"] for r in rows], ["alternate", "chords", "legato", "sweep"]
        )
        by_id = {r["id"]: r for r in rows}
        self.assertEqual(by_id["chords"]["progress"]["times_practiced"], 1)
        self.assertTrue(by_id["chords"]["progress"]["completed"])
        self.assertEqual(by_id["sweep"]["progress"]["times_practiced"], 0)
        self.assertFalse(by_id["sweep"]["progress"]["completed"])
        self.assertIsNone(by_id["sweep"]["progress"]["last_practiced"])

    def test_list_exercises_by_category(self) -> None:
        rows = self.service.list_exercises("user-1", category="chords")
        self.assertEqual([r["id"] for r in rows], ["chords"])

    def test_exercise_detail(self) -> None:
        self.assertIsNone(self.service.exercise_detail("user-1", "missing"))
        detail = self.service.exercise_detail("user-1", "sweep")
        self.assertEqual(detail["title"], "Sweep Picking")
        self.assertEqual(detail["progress"]["times_practiced"], 0)
        self.service.record_exercise_practice("user-1", "sweep", 15)
        detail = self.service.exercise_detail("user-1", "sweep")
        self.assertEqual(detail["progress"]["times_practiced"], 1)
        self.assertIsNotNone(detail["progress"]["last_practiced"])

    def test_song_practice_updates_last_practiced(self) -> None:
        song_id = self.songs.add("user-1", "Wonderwall", "Oasis")
        self.service.record_song_practice("user-1", song_id, 20)
        song = self.songs.fetch_for_user("user-1")[0]
        self.assertIsNotNone(song["last_practiced"])
        session = self.sessions.fetch_for_user("user-1")[0]
        self.assertEqual(session["song_id"], song_id)
        self.assertIsNone(session["exercise_id"])

    def test_song_must_belong_to_user(self) -> None:
        song_id = self.songs.add("user-2", "Wonderwall")
        with self.assertRaises(ValueError):
            self.service.record_song_practice("user-1", song_id, 20)
        with self.assertRaises(ValueError):
            self.service.record_song_practice("user-1", 999, 20)
        self.assertEqual(self.sessions.fetch_for_user("user-1"), [])
        self.assertIsNone(self.songs.fetch(song_id)["last_practiced"])

    def test_routine_must_belong_to_user(self) -> None:
        routine_id = RoutineRepository(self.store).add("user-2", "Daily", 30)
        with self.assertRaises(ValueError):
            self.service.record_routine_practice("user-1", routine_id, 30)
        self.assertEqual(self.sessions.fetch_for_user("user-1"), [])

    def test_routine_practice(self) -> None:
        routine_id = RoutineRepository(self.store).add("user-1", "Daily", 30)
        self.service.record_routine_practice("user-1", routine_id, 30, notes="felt good")
        session = self.sessions.fetch_for_user("user-1")[0]
        self.assertEqual(session["routine_id"], routine_id)
        self.assertEqual(session["notes"], "felt good")


if __name__ == "__main__":
    unittest.main()
