class StoreError(Exception):
    """Base class for failures raised by the practice store."""


class InitializationError(StoreError):
    """The database engine or the persisted image could not be loaded."""


class PersistError(StoreError):
    """The serialized database image could not be written to storage."""


class QueryError(StoreError):
    """A statement was malformed, violated a constraint or ran too early."""


class SyncError(StoreError):
    """The exercise feed could not be fetched, parsed or applied."""
