from __future__ import annotations

import datetime
import hmac
import json
import logging
from dataclasses import dataclass
from typing import Optional

from db import UserRepository, utc_timestamp
from exceptions import QueryError
from identity import email_hash, hash_value, normalize_email
from storage import SESSION_KEY, KeyValueStorage

logger = logging.getLogger(__name__)


class AuthError(Exception):
    """Base class for account and session failures shown to the user."""


class AccountExistsError(AuthError):
    pass


class InvalidCredentialsError(AuthError):
    pass


class NotLoggedInError(AuthError):
    pass


@dataclass(frozen=True)
class SessionMarker:
    """The logged-in identity every page reads before querying the store."""

    email: str
    email_hash: str
    login_time: str

    def to_json(self) -> bytes:
        return json.dumps(
            {
                "email": self.email,
                "emailHash": self.email_hash,
                "loginTime": self.login_time,
            }
        ).encode("utf-8")

    @classmethod
    def from_json(cls, raw: bytes) -> "SessionMarker":
        data = json.loads(raw.decode("utf-8"))
        return cls(data["email"], data["emailHash"], data["loginTime"])


class AuthService:
    """Register and log in accounts identified by their hashed email."""

    def __init__(
        self,
        users: UserRepository,
        session_storage: KeyValueStorage,
        session_key: str = SESSION_KEY,
    ) -> None:
        self.users = users
        self.session_storage = session_storage
        self.session_key = session_key

    def register(
        self, email: str, password: str, display_name: Optional[str] = None
    ) -> str:
        """Create an account and return its email hash."""
        email = normalize_email(email)
        if not email or not password:
            raise AuthError("Email and password are required.")
        key = email_hash(email)
        if self.users.exists(key):
            raise AccountExistsError("An account with this email already exists.")
        try:
            self.users.create(key, hash_value(password), display_name or None)
        except QueryError as exc:
            if self.users.exists(key):
                raise AccountExistsError(
                    "An account with this email already exists."
                ) from exc
            raise
        logger.info("Registered account %s", key[:12])
        return key

    def login(self, email: str, password: str) -> SessionMarker:
        email = normalize_email(email)
        key = email_hash(email)
        user = self.users.fetch(key)
        if user is None:
            raise InvalidCredentialsError("Email not found. Please register first.")
        if not hmac.compare_digest(user["password_hash"], hash_value(password)):
            raise InvalidCredentialsError("Incorrect password. Please try again.")
        self.users.set_last_login(key, utc_timestamp())
        marker = SessionMarker(
            email=email,
            email_hash=key,
            login_time=datetime.datetime.now(datetime.timezone.utc).isoformat(),
        )
        self.session_storage.set(self.session_key, marker.to_json())
        logger.info("Logged in account %s", key[:12])
        return marker

    def logout(self) -> None:
        self.session_storage.remove(self.session_key)

    def current_session(self) -> Optional[SessionMarker]:
        raw = self.session_storage.get(self.session_key)
        if raw is None:
            return None
        try:
            return SessionMarker.from_json(raw)
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("Discarding unreadable session marker: %s", exc)
            self.session_storage.remove(self.session_key)
            return None

    def require_session(self) -> SessionMarker:
        marker = self.current_session()
        if marker is None:
            raise NotLoggedInError("Please log in first.")
        return marker
