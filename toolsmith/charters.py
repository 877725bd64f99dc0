"""Exploration charter routes: time-boxed testing sessions with tagged notes."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, Query, status

from .database import Database, DuplicateRecordError
from .errors import ConflictError, NoChangesError, NotFoundError
from .features import FeatureFlags
from .models import Charter, CharterNote, Profile
from .schemas import (
    CharterCreate,
    CharterNoteCreate,
    CharterUpdate,
    check_page_size,
    encode_cursor,
    parse_cursor,
)
from .security import SessionAuth

logger = logging.getLogger("toolsmith.charters")

ALREADY_ACTIVE = "Masz już aktywną sesję eksploracyjną."
ALREADY_CLOSED = "Sesja eksploracyjna jest już zakończona."
NOT_ACTIVE = "Notatki można dodawać tylko do aktywnej sesji."


def _timestamp(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M UTC") if value is not None else "n/a"


def render_charter_markdown(charter: Charter, notes: List[CharterNote]) -> str:
    """Render a charter and its notes as a Markdown report."""

    lines = [
        f"# Exploration charter: {charter.goal}",
        "",
        f"- Status: {charter.status}",
        f"- Started: {_timestamp(charter.started_at)}",
        f"- Ended: {_timestamp(charter.ended_at)}",
        "",
    ]
    if charter.hypotheses:
        lines.extend(["## Hypotheses", "", charter.hypotheses.strip(), ""])

    lines.extend(["## Notes", ""])
    if notes:
        for note in notes:
            lines.append(f"- **[{note.tag}]** {_timestamp(note.noted_at)}: {note.body}")
    else:
        lines.append("_No notes recorded._")
    lines.append("")

    if charter.summary_notes:
        lines.extend(["## Summary", "", charter.summary_notes.strip(), ""])

    return "\n".join(lines)


def register_charter_routes(
    app: FastAPI,
    database: Database,
    *,
    auth: SessionAuth,
    features: FeatureFlags,
) -> None:
    """Expose ``/api/charters`` on the provided FastAPI application."""

    enabled = [Depends(features.require("collections.charters"))]
    export_enabled = enabled + [Depends(features.require("collections.export"))]
    current_profile = auth.current_profile

    def _load_own(charter_id: str, profile: Profile) -> Charter:
        charter = database.get_charter(charter_id)
        if charter is None or charter.user_id != profile.id:
            raise NotFoundError()
        return charter

    @app.get("/api/charters", dependencies=enabled)
    async def list_charters(
        after: Optional[str] = Query(default=None),
        limit: Optional[int] = Query(default=None),
        profile: Profile = Depends(current_profile),
    ) -> Dict[str, object]:
        cursor = parse_cursor(after)
        page_size = check_page_size(limit)

        charters = database.list_charters(profile.id, after=cursor, limit=page_size + 1)
        items = charters[:page_size]
        next_cursor = None
        if len(charters) > page_size and items:
            next_cursor = encode_cursor(items[-1].updated_at, items[-1].id)
        return {"items": [charter.to_dict() for charter in items], "next_cursor": next_cursor}

    @app.post("/api/charters", status_code=status.HTTP_201_CREATED, dependencies=enabled)
    async def create_charter(
        payload: CharterCreate,
        profile: Profile = Depends(current_profile),
    ) -> Dict[str, object]:
        try:
            charter = database.create_charter(profile.id, goal=payload.goal, hypotheses=payload.hypotheses)
        except DuplicateRecordError as exc:
            raise ConflictError(ALREADY_ACTIVE) from exc

        database.record_usage_event(profile.id, "charter", {"action": "start", "charter_id": charter.id})
        logger.info("User %s started charter %s", profile.id, charter.id)
        return {"data": charter.to_dict()}

    @app.get("/api/charters/{charter_id}", dependencies=enabled)
    async def get_charter(charter_id: str, profile: Profile = Depends(current_profile)) -> Dict[str, object]:
        return {"data": _load_own(charter_id, profile).to_dict()}

    @app.patch("/api/charters/{charter_id}", dependencies=enabled)
    async def update_charter(
        charter_id: str,
        payload: CharterUpdate,
        profile: Profile = Depends(current_profile),
    ) -> Dict[str, object]:
        _load_own(charter_id, profile)
        changes = payload.changes()
        if not changes:
            raise NoChangesError()

        updated = database.update_charter(charter_id, **changes)
        if updated is None:
            raise NotFoundError()
        return {"data": updated.to_dict()}

    @app.post("/api/charters/{charter_id}/start", dependencies=enabled)
    async def start_charter(charter_id: str, profile: Profile = Depends(current_profile)) -> Dict[str, object]:
        charter = _load_own(charter_id, profile)
        if charter.is_active:
            raise ConflictError(ALREADY_ACTIVE)

        try:
            updated = database.start_charter(charter_id)
        except DuplicateRecordError as exc:
            raise ConflictError(ALREADY_ACTIVE) from exc
        if updated is None:
            raise NotFoundError()

        logger.info("User %s resumed charter %s", profile.id, charter_id)
        return {"data": updated.to_dict()}

    @app.post("/api/charters/{charter_id}/stop", dependencies=enabled)
    async def stop_charter(charter_id: str, profile: Profile = Depends(current_profile)) -> Dict[str, object]:
        charter = _load_own(charter_id, profile)
        if not charter.is_active:
            raise ConflictError(ALREADY_CLOSED)

        updated = database.stop_charter(charter_id)
        if updated is None:
            raise NotFoundError()

        database.record_usage_event(profile.id, "charter", {"action": "stop", "charter_id": charter_id})
        logger.info("User %s closed charter %s", profile.id, charter_id)
        return {"data": updated.to_dict()}

    @app.get("/api/charters/{charter_id}/notes", dependencies=enabled)
    async def list_notes(charter_id: str, profile: Profile = Depends(current_profile)) -> Dict[str, object]:
        _load_own(charter_id, profile)
        return {"items": [note.to_dict() for note in database.list_charter_notes(charter_id)]}

    @app.post(
        "/api/charters/{charter_id}/notes",
        status_code=status.HTTP_201_CREATED,
        dependencies=enabled,
    )
    async def add_note(
        charter_id: str,
        payload: CharterNoteCreate,
        profile: Profile = Depends(current_profile),
    ) -> Dict[str, object]:
        charter = _load_own(charter_id, profile)
        if not charter.is_active:
            raise ConflictError(NOT_ACTIVE)

        note = database.add_charter_note(charter_id, profile.id, tag=payload.tag, body=payload.body)
        return {"data": note.to_dict()}

    @app.get("/api/charters/{charter_id}/export", dependencies=export_enabled)
    async def export_charter(charter_id: str, profile: Profile = Depends(current_profile)) -> Dict[str, str]:
        charter = _load_own(charter_id, profile)
        notes = database.list_charter_notes(charter_id)
        return {"markdown": render_charter_markdown(charter, notes)}


__all__ = ["register_charter_routes", "render_charter_markdown"]
