from __future__ import annotations

import calendar
import datetime
from typing import Dict, List, Optional, Tuple

from db import (
    PracticeSessionRepository,
    RoutineRepository,
    Row,
    SongRepository,
    UserRepository,
)


def month_bounds(year: int, month: int) -> Tuple[str, str]:
    """Return the first and last ISO dates of ``year``-``month``."""
    last_day = calendar.monthrange(year, month)[1]
    return (
        datetime.date(year, month, 1).isoformat(),
        datetime.date(year, month, last_day).isoformat(),
    )


def previous_month(today: datetime.date) -> Tuple[int, int]:
    if today.month == 1:
        return today.year - 1, 12
    return today.year, today.month - 1


def utc_today() -> datetime.date:
    return datetime.datetime.now(datetime.timezone.utc).date()


class StatisticsService:
    """Compute dashboard statistics for one user.

    Sessions are bucketed by their UTC calendar day.
    """

    def __init__(
        self,
        users: UserRepository,
        sessions: PracticeSessionRepository,
        songs: SongRepository,
        routines: RoutineRepository,
    ) -> None:
        self.users = users
        self.sessions = sessions
        self.songs = songs
        self.routines = routines

    def month_summary(self, user_email_hash: str, year: int, month: int) -> Dict[str, int]:
        start, end = month_bounds(year, month)
        row = self.sessions.summary(user_email_hash, start, end)
        minutes = int(row["total_minutes"] or 0)
        return {
            "total_sessions": int(row["total_sessions"] or 0),
            "total_minutes": minutes,
            "hours": round(minutes / 60),
            "unique_songs": int(row["unique_songs"] or 0),
        }

    def last_month_summary(
        self, user_email_hash: str, today: Optional[datetime.date] = None
    ) -> Dict[str, int]:
        year, month = previous_month(today or utc_today())
        return self.month_summary(user_email_hash, year, month)

    def practice_days(self, user_email_hash: str, year: int, month: int) -> List[int]:
        """Days of the month with at least one session."""
        start, end = month_bounds(year, month)
        dates = self.sessions.practice_dates(user_email_hash, start, end)
        return [datetime.date.fromisoformat(d).day for d in dates]

    def recent_songs(self, user_email_hash: str, limit: int = 5) -> List[Row]:
        return self.songs.fetch_recent(user_email_hash, limit)

    def routines_for(self, user_email_hash: str) -> List[Row]:
        return self.routines.fetch_for_user(user_email_hash)

    def display_name(self, user_email_hash: str, fallback: str) -> str:
        user = self.users.fetch(user_email_hash)
        if user and user["display_name"]:
            return user["display_name"]
        return fallback

    def dashboard(
        self,
        user_email_hash: str,
        email: str,
        today: Optional[datetime.date] = None,
    ) -> dict:
        today = today or utc_today()
        return {
            "display_name": self.display_name(user_email_hash, email),
            "month": today.strftime("%B %Y"),
            "practice_days": self.practice_days(user_email_hash, today.year, today.month),
            "last_month": self.last_month_summary(user_email_hash, today),
            "recent_songs": self.recent_songs(user_email_hash),
            "routines": self.routines_for(user_email_hash),
        }
