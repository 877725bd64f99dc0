"""Session-based authentication dependencies for the JSON API."""
from __future__ import annotations

from typing import Optional

from fastapi import Request, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .database import Database
from .errors import ForbiddenError, UnauthenticatedError
from .models import Profile
from .sessions import SessionManager

SESSION_COOKIE = "qa_session"


class SessionAuth:
    """Resolve the caller's profile from a bearer token or the session cookie."""

    def __init__(self, database: Database, sessions: SessionManager, *, secure_cookies: bool = True) -> None:
        self._database = database
        self._sessions = sessions
        self._secure_cookies = secure_cookies
        self._bearer = HTTPBearer(auto_error=False)

    @property
    def sessions(self) -> SessionManager:
        return self._sessions

    async def token_from_request(self, request: Request) -> Optional[str]:
        credentials: HTTPAuthorizationCredentials | None = await self._bearer(request)  # type: ignore[assignment]
        if credentials is not None and credentials.scheme.lower() == "bearer":
            return credentials.credentials
        cookie = request.cookies.get(SESSION_COOKIE)
        return cookie or None

    async def optional_profile(self, request: Request) -> Optional[Profile]:
        token = await self.token_from_request(request)
        if token is None:
            return None
        user_id = self._sessions.resolve(token)
        if user_id is None:
            return None
        return self._database.get_profile(user_id)

    async def current_profile(self, request: Request) -> Profile:
        profile = await self.optional_profile(request)
        if profile is None:
            raise UnauthenticatedError()
        return profile

    async def admin_profile(self, request: Request) -> Profile:
        profile = await self.current_profile(request)
        if not profile.is_admin:
            raise ForbiddenError()
        return profile

    def set_session_cookie(self, response: Response, token: str) -> None:
        response.set_cookie(
            SESSION_COOKIE,
            token,
            max_age=self._sessions.cookie_max_age,
            httponly=True,
            secure=self._secure_cookies,
            samesite="lax",
            path="/",
        )

    def clear_session_cookie(self, response: Response) -> None:
        response.delete_cookie(SESSION_COOKIE, path="/")


__all__ = ["SESSION_COOKIE", "SessionAuth"]
