"""Domain records returned by the persistence layer."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

ROLE_ADMIN = "admin"
ROLE_USER = "user"
ROLES = (ROLE_ADMIN, ROLE_USER)

CHARTER_ACTIVE = "active"
CHARTER_CLOSED = "closed"

NOTE_TAGS = ("bug", "idea", "question", "risk")

TEMPLATE_SCOPE_GLOBAL = "global"
TEMPLATE_SCOPE_USER = "user"
TEMPLATE_PRESETS = ("ui_bug", "api_bug")


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class Profile:
    """An account as exposed to the API; the password hash never leaves the database."""

    id: str
    email: str
    role: str
    org_id: Optional[str]
    created_at: datetime
    updated_at: datetime

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "role": self.role,
            "created_at": _isoformat(self.created_at),
            "updated_at": _isoformat(self.updated_at),
        }


@dataclass(frozen=True)
class UsageEvent:
    id: str
    user_id: Optional[str]
    kind: str
    meta: Dict[str, Any]
    created_at: datetime


@dataclass(frozen=True)
class KBEntry:
    id: str
    user_id: str
    title: str
    url_original: str
    url_canonical: Optional[str]
    tags: List[str]
    is_public: bool
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["created_at"] = _isoformat(self.created_at)
        payload["updated_at"] = _isoformat(self.updated_at)
        return payload


@dataclass(frozen=True)
class Charter:
    id: str
    user_id: str
    goal: str
    hypotheses: Optional[str]
    summary_notes: Optional[str]
    status: str
    started_at: datetime
    ended_at: Optional[datetime]
    version: int
    created_at: datetime
    updated_at: datetime

    @property
    def is_active(self) -> bool:
        return self.status == CHARTER_ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        for key in ("started_at", "ended_at", "created_at", "updated_at"):
            payload[key] = _isoformat(getattr(self, key))
        return payload


@dataclass(frozen=True)
class CharterNote:
    id: str
    charter_id: str
    user_id: str
    tag: str
    body: str
    noted_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["noted_at"] = _isoformat(self.noted_at)
        return payload


@dataclass(frozen=True)
class Template:
    id: str
    name: str
    scope: str
    owner_id: Optional[str]
    preset: Optional[str]
    fields: List[Dict[str, Any]]
    required_fields: List[str]
    attachments: List[str]
    origin_template_id: Optional[str]
    is_readonly: bool
    version: int
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "scope": self.scope,
            "owner_id": self.owner_id,
            "preset": self.preset,
            "fields": [dict(item) for item in self.fields],
            "required_fields": list(self.required_fields),
            "attachments": list(self.attachments),
            "origin_template_id": self.origin_template_id,
            "is_readonly": self.is_readonly,
            "version": self.version,
            "created_at": _isoformat(self.created_at),
            "updated_at": _isoformat(self.updated_at),
        }


__all__ = [
    "CHARTER_ACTIVE",
    "CHARTER_CLOSED",
    "Charter",
    "CharterNote",
    "KBEntry",
    "NOTE_TAGS",
    "Profile",
    "ROLES",
    "ROLE_ADMIN",
    "ROLE_USER",
    "TEMPLATE_PRESETS",
    "TEMPLATE_SCOPE_GLOBAL",
    "TEMPLATE_SCOPE_USER",
    "Template",
    "UsageEvent",
]
