"""Knowledge base routes: shared links to testing resources."""
from __future__ import annotations

import logging
from typing import Dict, Optional

from fastapi import Depends, FastAPI, Query, Response, status

from .database import Database, DuplicateRecordError
from .errors import ConflictError, ForbiddenError, NotFoundError, ValidationFailed
from .features import FeatureFlags
from .models import KBEntry, Profile
from .schemas import KbEntryCreate, KbEntryUpdate, check_page_size, encode_cursor, parse_cursor
from .security import SessionAuth

logger = logging.getLogger("toolsmith.kb")

ADMIN_ONLY_PUBLIC_CREATE = "Only admins can create public KB entries"
ADMIN_ONLY_PUBLIC_EDIT = "Only admins can edit public KB entries"
ADMIN_ONLY_PUBLIC_DELETE = "Only admins can delete public KB entries"
EMPTY_UPDATE = "At least one field must be provided for update"


def can_view(entry: KBEntry, viewer: Optional[Profile]) -> bool:
    if entry.is_public:
        return True
    if viewer is None:
        return False
    return viewer.is_admin or entry.user_id == viewer.id


def register_kb_routes(
    app: FastAPI,
    database: Database,
    *,
    auth: SessionAuth,
    features: FeatureFlags,
) -> None:
    """Expose ``/api/kb/entries`` on the provided FastAPI application."""

    enabled = [Depends(features.require("collections.knowledgeBase"))]

    def _load_visible(entry_id: str, viewer: Optional[Profile]) -> KBEntry:
        entry = database.get_kb_entry(entry_id)
        if entry is None or not can_view(entry, viewer):
            raise NotFoundError()
        return entry

    @app.get("/api/kb/entries", dependencies=enabled)
    async def list_entries(
        after: Optional[str] = Query(default=None),
        limit: Optional[int] = Query(default=None),
        viewer: Optional[Profile] = Depends(auth.optional_profile),
    ) -> Dict[str, object]:
        cursor = parse_cursor(after)
        page_size = check_page_size(limit)

        entries = database.list_kb_entries(
            viewer_id=viewer.id if viewer is not None else None,
            include_all=bool(viewer is not None and viewer.is_admin),
            after=cursor,
            limit=page_size + 1,
        )
        has_next = len(entries) > page_size
        items = entries[:page_size]
        next_cursor = None
        if has_next and items:
            next_cursor = encode_cursor(items[-1].updated_at, items[-1].id)
        return {"items": [entry.to_dict() for entry in items], "next_cursor": next_cursor}

    @app.post("/api/kb/entries", status_code=status.HTTP_201_CREATED, dependencies=enabled)
    async def create_entry(
        payload: KbEntryCreate,
        profile: Profile = Depends(auth.current_profile),
    ) -> Dict[str, object]:
        if payload.is_public and not profile.is_admin:
            raise ForbiddenError(ADMIN_ONLY_PUBLIC_CREATE)

        try:
            entry = database.create_kb_entry(
                profile.id,
                title=payload.title,
                url_original=payload.url_original,
                tags=payload.tags,
                is_public=payload.is_public if profile.is_admin else False,
            )
        except DuplicateRecordError as exc:
            raise ConflictError() from exc

        database.record_usage_event(profile.id, "kb", {"action": "create", "entry_id": entry.id})
        logger.info("User %s added KB entry %s", profile.id, entry.id)
        return {"data": entry.to_dict()}

    @app.get("/api/kb/entries/{entry_id}", dependencies=enabled)
    async def get_entry(
        entry_id: str,
        viewer: Optional[Profile] = Depends(auth.optional_profile),
    ) -> Dict[str, object]:
        return {"data": _load_visible(entry_id, viewer).to_dict()}

    @app.put("/api/kb/entries/{entry_id}", dependencies=enabled)
    async def update_entry(
        entry_id: str,
        payload: KbEntryUpdate,
        profile: Profile = Depends(auth.current_profile),
    ) -> Dict[str, object]:
        existing = _load_visible(entry_id, profile)

        if not profile.is_admin:
            if existing.is_public or payload.is_public:
                raise ForbiddenError(ADMIN_ONLY_PUBLIC_EDIT)
            if existing.user_id != profile.id:
                raise NotFoundError()

        changes = payload.changes()
        if not changes:
            raise ValidationFailed(EMPTY_UPDATE)

        try:
            updated = database.update_kb_entry(entry_id, **changes)
        except DuplicateRecordError as exc:
            raise ConflictError() from exc
        if updated is None:
            raise NotFoundError()

        logger.info("User %s updated KB entry %s", profile.id, entry_id)
        return {"data": updated.to_dict()}

    @app.delete(
        "/api/kb/entries/{entry_id}",
        status_code=status.HTTP_204_NO_CONTENT,
        dependencies=enabled,
    )
    async def delete_entry(
        entry_id: str,
        profile: Profile = Depends(auth.current_profile),
    ) -> Response:
        existing = _load_visible(entry_id, profile)

        if not profile.is_admin:
            if existing.is_public:
                raise ForbiddenError(ADMIN_ONLY_PUBLIC_DELETE)
            if existing.user_id != profile.id:
                raise NotFoundError()

        if not database.delete_kb_entry(entry_id):
            raise NotFoundError()

        logger.info("User %s deleted KB entry %s", profile.id, entry_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)


__all__ = ["can_view", "register_kb_routes"]
