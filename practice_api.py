from __future__ import annotations

import logging
from typing import Optional

from auth_service import AuthService
from catalog_service import DEFAULT_FEED, ExerciseCatalogSynchronizer, SyncResult
from db import (
    ExerciseProgressRepository,
    ExerciseRepository,
    PracticeSessionRepository,
    PracticeStore,
    RoutineRepository,
    SongRepository,
    UserRepository,
)
from practice_service import PracticeService
from settings_schema import SettingsSchema
from stats_service import StatisticsService
from storage import FileStorage, ImageBackend, KeyValueStorage, MemoryStorage

logger = logging.getLogger(__name__)


class PracticeAPI:
    """Wires the store, repositories and services used by the app pages."""

    def __init__(
        self,
        settings: Optional[SettingsSchema] = None,
        *,
        storage: Optional[KeyValueStorage] = None,
        session_storage: Optional[KeyValueStorage] = None,
    ) -> None:
        self.settings = settings or SettingsSchema()
        if storage is None:
            storage = FileStorage(
                self.settings.storage_dir, self.settings.storage_quota_bytes
            )
        self.storage = storage
        self.session_storage = session_storage or MemoryStorage()
        self.store = PracticeStore(ImageBackend(storage, self.settings.database_key))

        self.users = UserRepository(self.store)
        self.songs = SongRepository(self.store)
        self.routines = RoutineRepository(self.store)
        self.sessions = PracticeSessionRepository(self.store)
        self.exercises = ExerciseRepository(self.store)
        self.progress = ExerciseProgressRepository(self.store)

        self.auth = AuthService(
            self.users, self.session_storage, self.settings.session_key
        )
        self.catalog = ExerciseCatalogSynchronizer(
            self.store, self.settings.exercise_feed or DEFAULT_FEED, self.exercises
        )
        self.practice = PracticeService(
            self.exercises, self.progress, self.sessions, self.songs, self.routines
        )
        self.stats = StatisticsService(
            self.users, self.sessions, self.songs, self.routines
        )

    def start(self, sync: bool = True) -> Optional[SyncResult]:
        """Initialize the store and, optionally, refresh the exercise catalog."""
        self.store.initialize()
        if not sync:
            logger.info("Skipping exercise catalog refresh")
            return None
        return self.catalog.refresh()

    def close(self) -> None:
        self.store.close()
