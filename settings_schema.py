from typing import Optional

from pydantic import BaseModel, ValidationError, field_validator

from storage import DATABASE_KEY, SESSION_KEY

LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class SettingsSchema(BaseModel):
    storage_dir: str = ".guitar_io"
    database_key: str = DATABASE_KEY
    session_key: str = SESSION_KEY
    exercise_feed: Optional[str] = None
    storage_quota_bytes: Optional[int] = 5 * 1024 * 1024
    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"unknown log level {value!r}")
        return level

    @field_validator("storage_quota_bytes")
    @classmethod
    def _positive_quota(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value <= 0:
            raise ValueError("storage_quota_bytes must be positive")
        return value


def validate_settings(data: dict) -> SettingsSchema:
    try:
        return SettingsSchema(**data)
    except ValidationError as e:
        raise ValueError(str(e))
