import hashlib


def normalize_email(email: str) -> str:
    """Return ``email`` trimmed and lowercased."""
    return email.strip().lower()


def hash_value(value: str) -> str:
    """Return the SHA-256 hex digest of ``value``.

    Used for both account identities and password credentials.
    """
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def email_hash(email: str) -> str:
    """Return the primary key identifying the account for ``email``."""
    return hash_value(normalize_email(email))
