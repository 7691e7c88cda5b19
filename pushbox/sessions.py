import logging
import secrets
import threading
import time
from typing import Callable, Dict, Optional, Tuple

from itsdangerous import BadSignature, URLSafeSerializer

logger = logging.getLogger("pushbox.sessions")

SESSION_COOKIE_NAME = "pushbox_session"
SESSION_TOKEN_BYTES = 32
_COOKIE_SALT = "pushbox-session-token"


class SessionStore:
    """In-memory mapping of session tokens to usernames.

    Tokens expire ``ttl_seconds`` after creation. All state is lost on restart.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.time) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._sessions: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def create(self, username: str) -> str:
        token = secrets.token_urlsafe(SESSION_TOKEN_BYTES)
        expires_at = self._clock() + self.ttl_seconds
        with self._lock:
            self._sessions[token] = (username, expires_at)
        logger.info("session_created username=%s", username)
        return token

    def validate(self, token: Optional[str]) -> Optional[str]:
        """Return the username bound to *token* or ``None`` if unknown or expired."""

        if not token:
            return None
        now = self._clock()
        with self._lock:
            entry = self._sessions.get(token)
            if entry is None:
                return None
            username, expires_at = entry
            if expires_at <= now:
                del self._sessions[token]
                logger.info("session_expired username=%s", username)
                return None
            return username

    def invalidate(self, token: Optional[str]) -> bool:
        if not token:
            return False
        with self._lock:
            entry = self._sessions.pop(token, None)
        if entry is None:
            return False
        logger.info("session_invalidated username=%s", entry[0])
        return True

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [token for token, (_, expires_at) in self._sessions.items() if expires_at <= now]
            for token in expired:
                del self._sessions[token]
        if expired:
            logger.info("session_purge_completed removed=%d", len(expired))
        return len(expired)


class SessionCookieSigner:
    """Signs session tokens before they are handed to the browser."""

    def __init__(self, secret_key: str) -> None:
        self._serializer = URLSafeSerializer(secret_key, salt=_COOKIE_SALT)

    def dumps(self, token: str) -> str:
        return self._serializer.dumps(token)

    def loads(self, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        try:
            token = self._serializer.loads(value)
        except BadSignature:
            logger.warning("session_cookie_rejected reason=bad_signature")
            return None
        return token if isinstance(token, str) else None
