import os

import yaml

from settings_schema import SettingsSchema, validate_settings

STORAGE_DIR_ENV = "GUITAR_IO_STORAGE_DIR"


class YamlConfig:
    """Load and save settings to a YAML file."""

    def __init__(self, path: str = "settings.yaml") -> None:
        self.path = path

    def load(self) -> dict:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{self.path} must contain a mapping of settings")
        return data

    def save(self, data: dict) -> None:
        with open(self.path, "w", encoding="utf-8") as f:
            yaml.safe_dump(dict(data), f)


def load_settings(path: str = "settings.yaml") -> SettingsSchema:
    """Return validated settings from ``path`` with environment overrides applied."""
    data = YamlConfig(path).load()
    storage_dir = os.environ.get(STORAGE_DIR_ENV)
    if storage_dir:
        data["storage_dir"] = storage_dir
    return validate_settings(data)
