import logging
import os
import tempfile
from typing import Dict, Optional

from exceptions import PersistError

logger = logging.getLogger(__name__)

DATABASE_KEY = "guitar_io_database"
SESSION_KEY = "guitar_io_current_user"


class KeyValueStorage:
    """Durable key/value slots holding opaque byte strings."""

    def __init__(self, quota_bytes: Optional[int] = None) -> None:
        self.quota_bytes = quota_bytes

    def get(self, key: str) -> Optional[bytes]:
        raise NotImplementedError

    def set(self, key: str, value: bytes) -> None:
        raise NotImplementedError

    def remove(self, key: str) -> None:
        raise NotImplementedError

    def _check_value(self, key: str, value: bytes) -> None:
        if not isinstance(value, (bytes, bytearray)):
            raise PersistError(
                f"value for {key!r} must be bytes, got {type(value).__name__}"
            )
        if self.quota_bytes is not None and len(value) > self.quota_bytes:
            raise PersistError(
                f"storage quota exceeded for {key!r}: "
                f"{len(value)} bytes > {self.quota_bytes} bytes"
            )


class MemoryStorage(KeyValueStorage):
    """Process-local storage, lost when the object goes away."""

    def __init__(self, quota_bytes: Optional[int] = None) -> None:
        super().__init__(quota_bytes)
        self._slots: Dict[str, bytes] = {}

    def get(self, key: str) -> Optional[bytes]:
        return self._slots.get(key)

    def set(self, key: str, value: bytes) -> None:
        self._check_value(key, value)
        self._slots[key] = bytes(value)

    def remove(self, key: str) -> None:
        self._slots.pop(key, None)


class FileStorage(KeyValueStorage):
    """One file per key inside ``directory``.

    Writes go to a temporary file in the same directory which then replaces
    the slot, so readers never observe a half-written value.
    """

    def __init__(self, directory: str, quota_bytes: Optional[int] = None) -> None:
        super().__init__(quota_bytes)
        self.directory = os.path.expanduser(directory)

    def _path(self, key: str) -> str:
        if not key or os.sep in key or key.startswith("."):
            raise ValueError(f"invalid storage key: {key!r}")
        return os.path.join(self.directory, f"{key}.bin")

    def get(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        if not os.path.exists(path):
            return None
        with open(path, "rb") as f:
            return f.read()

    def set(self, key: str, value: bytes) -> None:
        self._check_value(key, value)
        path = self._path(key)
        try:
            os.makedirs(self.directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self.directory, prefix=f".{key}.")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(value)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.remove(tmp_path)
                raise
        except OSError as exc:
            raise PersistError(f"could not write {path}: {exc}") from exc

    def remove(self, key: str) -> None:
        path = self._path(key)
        if os.path.exists(path):
            os.remove(path)


class ImageBackend:
    """Reads and writes the serialized database image under one key."""

    def __init__(self, storage: KeyValueStorage, key: str = DATABASE_KEY) -> None:
        self.storage = storage
        self.key = key

    def load(self) -> Optional[bytes]:
        """Return the last persisted image or ``None`` if nothing was saved."""
        return self.storage.get(self.key)

    def save(self, image: bytes) -> None:
        """Overwrite the persisted image, raising ``PersistError`` on failure."""
        self.storage.set(self.key, image)
        logger.debug("Saved database image (%d bytes) under %s", len(image), self.key)

    def clear(self) -> None:
        self.storage.remove(self.key)
