"""In-memory session handling for API access tokens."""

from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional


@dataclass
class _SessionRecord:
    user_id: str
    expires_at: datetime


class SessionManager:
    """Generate, validate, and revoke opaque bearer tokens.

    Every successful :meth:`resolve` slides the expiry forward by ``ttl``
    unless ``sliding`` is disabled.
    """

    def __init__(
        self,
        *,
        ttl: timedelta = timedelta(hours=8),
        sliding: bool = True,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._ttl = ttl
        self._sliding = sliding
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sessions: Dict[str, _SessionRecord] = {}
        self._lock = threading.Lock()

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    @property
    def cookie_max_age(self) -> int:
        return int(self._ttl.total_seconds())

    def create(self, user_id: str) -> str:
        token = secrets.token_urlsafe(32)
        record = _SessionRecord(user_id=user_id, expires_at=self._clock() + self._ttl)
        with self._lock:
            self._sessions[token] = record
        return token

    def resolve(self, token: str) -> Optional[str]:
        now = self._clock()
        with self._lock:
            record = self._sessions.get(token)
            if record is None:
                return None
            if record.expires_at <= now:
                self._sessions.pop(token, None)
                return None
            if self._sliding:
                record.expires_at = now + self._ttl
            return record.user_id

    def destroy(self, token: str) -> None:
        with self._lock:
            self._sessions.pop(token, None)

    def destroy_user(self, user_id: str) -> int:
        """Revoke every token issued to ``user_id`` and return how many were dropped."""

        with self._lock:
            tokens = [token for token, record in self._sessions.items() if record.user_id == user_id]
            for token in tokens:
                del self._sessions[token]
        return len(tokens)


__all__ = ["SessionManager"]
