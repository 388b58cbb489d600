from __future__ import annotations

import json
import logging
import os
from typing import Iterable, List, Literal, NamedTuple, Optional

import requests
from pydantic import BaseModel, ValidationError

from db import ExerciseRepository, PracticeStore, utc_timestamp
from exceptions import StoreError, SyncError

logger = logging.getLogger(__name__)

DEFAULT_FEED = os.path.join(os.path.dirname(__file__), "exercises.json")


class ExerciseDescriptor(BaseModel):
    """One entry of the exercise feed."""

    id: str
    title: str
    description: str
    difficulty: Literal["beginner", "intermediate", "advanced"]
    category: str
    image_path: Optional[str] = None


class SyncResult(NamedTuple):
    """Counts from one sync; ``updated`` only counts rows whose content changed."""

    inserted: int
    updated: int
    deleted: int


_CONTENT_FIELDS = ("title", "description", "difficulty", "category", "image_path")


def _differs(row: dict, item: ExerciseDescriptor) -> bool:
    return any(row[field] != getattr(item, field) for field in _CONTENT_FIELDS)


def parse_feed(data: object) -> List[ExerciseDescriptor]:
    """Validate decoded feed JSON into descriptors."""
    if not isinstance(data, list):
        raise SyncError("exercise feed must be a JSON array")
    try:
        return [ExerciseDescriptor(**item) for item in data]
    except (TypeError, ValidationError) as exc:
        raise SyncError(f"invalid exercise in feed: {exc}") from exc


def load_feed(source: str, timeout: float = 10.0) -> List[ExerciseDescriptor]:
    """Read the exercise feed from a local path or an ``http(s)://`` URL."""
    try:
        if source.startswith(("http://", "https://")):
            resp = requests.get(source, timeout=timeout)
            resp.raise_for_status()
            data = resp.json()
        else:
            with open(source, "r", encoding="utf-8") as f:
                data = json.load(f)
    except (OSError, ValueError, requests.RequestException) as exc:
        raise SyncError(f"could not load exercise feed {source}: {exc}") from exc
    return parse_feed(data)


class ExerciseCatalogSynchronizer:
    """Mirror an authoritative exercise feed into the ``exercises`` table."""

    def __init__(
        self,
        store: PracticeStore,
        feed: str = DEFAULT_FEED,
        exercises: ExerciseRepository | None = None,
    ) -> None:
        self.store = store
        self.feed = feed
        self.exercises = exercises or ExerciseRepository(store)

    def sync(self, descriptors: Iterable[ExerciseDescriptor | dict]) -> SyncResult:
        """Insert new, update changed and delete removed exercises.

        Rows already present keep their ``created_at``. The whole
        reconciliation is one transaction: on failure nothing changes and
        ``SyncError`` is raised.
        """
        wanted: dict[str, ExerciseDescriptor] = {}
        for item in descriptors:
            if not isinstance(item, ExerciseDescriptor):
                try:
                    item = ExerciseDescriptor(**item)
                except (TypeError, ValidationError) as exc:
                    raise SyncError(f"invalid exercise descriptor: {exc}") from exc
            wanted[item.id] = item

        now = utc_timestamp()
        inserted = updated = deleted = 0
        try:
            with self.store.transaction():
                existing = {r["id"]: r for r in self.exercises.fetch_catalog()}
                for exercise_id in sorted(existing.keys() - wanted.keys()):
                    self.exercises.delete(exercise_id)
                    deleted += 1
                for exercise_id, item in wanted.items():
                    current = existing.get(exercise_id)
                    if current is not None and not _differs(current, item):
                        continue
                    self.exercises.upsert(
                        item.id,
                        item.title,
                        item.description,
                        item.difficulty,
                        item.category,
                        item.image_path,
                        now,
                    )
                    if current is not None:
                        updated += 1
                    else:
                        inserted += 1
        except StoreError as exc:
            logger.error("Exercise sync rolled back: %s", exc)
            raise SyncError(f"exercise sync failed: {exc}") from exc

        result = SyncResult(inserted, updated, deleted)
        logger.info(
            "Synced %d exercises (%d new, %d updated, %d removed)",
            len(wanted),
            result.inserted,
            result.updated,
            result.deleted,
        )
        return result

    def refresh(self, source: str | None = None) -> SyncResult | None:
        """Fetch the feed and sync it; failures are logged and leave the catalog as is."""
        source = source or self.feed
        try:
            return self.sync(load_feed(source))
        except SyncError as exc:
            logger.warning("Exercise catalog not refreshed from %s: %s", source, exc)
            return None
