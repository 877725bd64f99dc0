"""Defect report template routes."""
from __future__ import annotations

import logging
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, Response, status

from .database import Database, DuplicateRecordError
from .errors import ConflictError, ForbiddenError, NoChangesError, NotFoundError, ValidationFailed
from .features import FeatureFlags
from .models import TEMPLATE_SCOPE_GLOBAL, TEMPLATE_SCOPE_USER, Profile, Template
from .schemas import TemplateCreate, TemplateFork, TemplateRender, TemplateUpdate, check_required_fields
from .security import SessionAuth

logger = logging.getLogger("toolsmith.templates")

READ_ONLY_TEMPLATE = "Szablon jest tylko do odczytu."


def can_view(template: Template, viewer: Profile) -> bool:
    if template.scope == TEMPLATE_SCOPE_GLOBAL or viewer.is_admin:
        return True
    return template.owner_id == viewer.id


def render_template_markdown(template: Template, values: Dict[str, str]) -> str:
    """Fill ``template`` with ``values`` and render a Markdown defect report.

    Missing optional fields fall back to their default; required fields must
    resolve to a non-blank value or :class:`ValidationFailed` is raised.
    """

    resolved: Dict[str, str] = {}
    for field in template.fields:
        key = str(field.get("key"))
        value = values.get(key)
        if value is None or not value.strip():
            value = str(field.get("default") or "")
        resolved[key] = value.strip()

    missing = [key for key in template.required_fields if not resolved.get(key)]
    if missing:
        raise ValidationFailed(
            f"Missing required fields: {', '.join(missing)}",
            details={key: "This field is required" for key in missing},
        )

    lines: List[str] = [f"# {template.name}", ""]
    for field in template.fields:
        key = str(field.get("key"))
        value = resolved.get(key)
        if not value:
            continue
        lines.extend([f"## {field.get('label') or key}", ""])
        if field.get("type") == "code":
            lines.extend(["```", value, "```"])
        else:
            lines.append(value)
        lines.append("")

    if template.attachments:
        lines.extend(["## Attachments", ""])
        lines.extend(f"- {url}" for url in template.attachments)
        lines.append("")

    return "\n".join(lines)


def register_template_routes(
    app: FastAPI,
    database: Database,
    *,
    auth: SessionAuth,
    features: FeatureFlags,
) -> None:
    """Expose ``/api/templates`` on the provided FastAPI application."""

    enabled = [Depends(features.require("collections.templates"))]
    current_profile = auth.current_profile

    def _load_visible(template_id: str, profile: Profile) -> Template:
        template = database.get_template(template_id)
        if template is None or not can_view(template, profile):
            raise NotFoundError()
        return template

    def _check_writable(template: Template, profile: Profile) -> None:
        if template.is_readonly:
            raise ForbiddenError(READ_ONLY_TEMPLATE)
        if profile.is_admin:
            return
        if template.scope == TEMPLATE_SCOPE_GLOBAL or template.owner_id != profile.id:
            raise ForbiddenError()

    @app.get("/api/templates", dependencies=enabled)
    async def list_templates(profile: Profile = Depends(current_profile)) -> Dict[str, object]:
        return {"items": [template.to_dict() for template in database.list_templates(profile.id)]}

    @app.post("/api/templates", status_code=status.HTTP_201_CREATED, dependencies=enabled)
    async def create_template(
        payload: TemplateCreate,
        profile: Profile = Depends(current_profile),
    ) -> Dict[str, object]:
        if payload.scope == TEMPLATE_SCOPE_GLOBAL and not profile.is_admin:
            raise ForbiddenError()

        fields = [item.model_dump(exclude_none=True) for item in payload.fields]
        check_required_fields(fields, payload.required_fields)

        try:
            template = database.create_template(
                name=payload.name,
                scope=payload.scope,
                owner_id=profile.id,
                fields=fields,
                required_fields=payload.required_fields,
                attachments=payload.attachments,
                preset=payload.preset,
            )
        except DuplicateRecordError as exc:
            raise ConflictError() from exc

        logger.info("User %s created %s template %s", profile.id, template.scope, template.id)
        return {"data": template.to_dict()}

    @app.get("/api/templates/{template_id}", dependencies=enabled)
    async def get_template(template_id: str, profile: Profile = Depends(current_profile)) -> Dict[str, object]:
        return {"data": _load_visible(template_id, profile).to_dict()}

    @app.patch("/api/templates/{template_id}", dependencies=enabled)
    async def update_template(
        template_id: str,
        payload: TemplateUpdate,
        profile: Profile = Depends(current_profile),
    ) -> Dict[str, object]:
        template = _load_visible(template_id, profile)
        _check_writable(template, profile)

        changes = payload.changes()
        if not changes:
            raise NoChangesError()

        fields = changes.get("fields", template.fields)
        required = changes.get("required_fields", template.required_fields)
        check_required_fields(fields, required)  # type: ignore[arg-type]

        try:
            updated = database.update_template(template_id, **changes)
        except DuplicateRecordError as exc:
            raise ConflictError() from exc
        if updated is None:
            raise NotFoundError()
        return {"data": updated.to_dict()}

    @app.delete(
        "/api/templates/{template_id}",
        status_code=status.HTTP_204_NO_CONTENT,
        dependencies=enabled,
    )
    async def delete_template(template_id: str, profile: Profile = Depends(current_profile)) -> Response:
        template = _load_visible(template_id, profile)
        _check_writable(template, profile)

        if not database.delete_template(template_id):
            raise NotFoundError()
        logger.info("User %s deleted template %s", profile.id, template_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post(
        "/api/templates/{template_id}/fork",
        status_code=status.HTTP_201_CREATED,
        dependencies=enabled,
    )
    async def fork_template(
        template_id: str,
        payload: Optional[TemplateFork] = None,
        profile: Profile = Depends(current_profile),
    ) -> Dict[str, object]:
        source = _load_visible(template_id, profile)
        name = payload.name if payload is not None and payload.name else source.name

        try:
            fork = database.create_template(
                name=name,
                scope=TEMPLATE_SCOPE_USER,
                owner_id=profile.id,
                fields=source.fields,
                required_fields=source.required_fields,
                attachments=source.attachments,
                preset=source.preset,
                origin_template_id=source.id,
            )
        except DuplicateRecordError as exc:
            raise ConflictError() from exc

        logger.info("User %s forked template %s as %s", profile.id, source.id, fork.id)
        return {"data": fork.to_dict()}

    @app.post("/api/templates/{template_id}/render", dependencies=enabled)
    async def render_template(
        template_id: str,
        payload: TemplateRender,
        profile: Profile = Depends(current_profile),
    ) -> Dict[str, str]:
        template = _load_visible(template_id, profile)
        return {"markdown": render_template_markdown(template, payload.values)}


__all__ = ["register_template_routes", "render_template_markdown"]
