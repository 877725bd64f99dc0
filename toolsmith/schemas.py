"""Request models and query parsing for the JSON API."""
from __future__ import annotations

import re
import uuid
from datetime import datetime
from typing import Dict, List, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_core import PydanticCustomError

from .database import Cursor, parse_datetime, serialize_datetime
from .errors import ValidationFailed
from .iban import SUPPORTED_COUNTRIES
from .models import NOTE_TAGS, TEMPLATE_PRESETS, TEMPLATE_SCOPE_GLOBAL, TEMPLATE_SCOPE_USER

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PASSWORD_STRENGTH_PATTERN = re.compile(r"^(?=.*[a-zA-Z])(?=.*[0-9])")
SEED_PATTERN = re.compile(r"[A-Za-z0-9._-]+")
FIELD_KEY_PATTERN = re.compile(r"[a-z][a-z0-9_]*")

MAX_EMAIL_LENGTH = 254
MAX_SEED_LENGTH = 64
MAX_ATTACHMENTS = 10
FIELD_TYPES = ("text", "textarea", "code", "select", "number")

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def _invalid(message: str) -> PydanticCustomError:
    return PydanticCustomError("invalid", message)


def normalize_email(value: str) -> str:
    cleaned = value.strip().lower()
    if not cleaned:
        raise _invalid("Email jest wymagany")
    if len(cleaned) > MAX_EMAIL_LENGTH:
        raise _invalid("Email jest za długi")
    if not EMAIL_PATTERN.match(cleaned):
        raise _invalid("Nieprawidłowy format email")
    return cleaned


def check_new_password(value: str) -> str:
    if len(value) < 8:
        raise _invalid("Hasło musi mieć co najmniej 8 znaków")
    if len(value) > 72:
        raise _invalid("Hasło jest za długie")
    if not PASSWORD_STRENGTH_PATTERN.match(value):
        raise _invalid("Hasło musi zawierać co najmniej jedną literę i jedną cyfrę")
    return value


def is_http_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


# ----------------------------------------------------------------------
# Authentication
# ----------------------------------------------------------------------
class LoginRequest(BaseModel):
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return normalize_email(value)

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        if len(value) < 8:
            raise _invalid("Hasło musi mieć co najmniej 8 znaków")
        if len(value) > 128:
            raise _invalid("Hasło jest za długie")
        return value


class SigninRequest(BaseModel):
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return normalize_email(value)

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        if not value:
            raise _invalid("Hasło jest wymagane")
        if len(value) > 72:
            raise _invalid("Hasło jest za długie")
        return value


class SignupRequest(BaseModel):
    email: str
    password: str
    confirm_password: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return normalize_email(value)

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return check_new_password(value)

    @model_validator(mode="after")
    def _passwords_match(self) -> "SignupRequest":
        if self.confirm_password is not None and self.confirm_password != self.password:
            raise _invalid("Hasła nie są identyczne")
        return self


class ResetRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return normalize_email(value)


class ResetChangeRequest(BaseModel):
    access_token: str
    new_password: str

    @field_validator("access_token")
    @classmethod
    def _require_token(cls, value: str) -> str:
        if not value.strip():
            raise _invalid("Token dostępu jest wymagany")
        return value.strip()

    @field_validator("new_password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return check_new_password(value)


class ProfileUpdateRequest(BaseModel):
    """``role`` and ``org_id`` are accepted only so they can be rejected explicitly.

    ``email`` stays raw here; it is checked with :class:`EmailChangeRequest`
    once the forbidden fields have been ruled out.
    """

    model_config = ConfigDict(extra="forbid")

    email: Optional[str] = None
    role: Optional[str] = None
    org_id: Optional[str] = None


class EmailChangeRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return normalize_email(value)


# ----------------------------------------------------------------------
# Generators
# ----------------------------------------------------------------------
class IbanGenerateQuery(BaseModel):
    country: Optional[str] = None
    seed: Optional[str] = None

    @field_validator("country")
    @classmethod
    def _check_country(cls, value: Optional[str]) -> Optional[str]:
        if value not in SUPPORTED_COUNTRIES:
            raise _invalid("country must be one of 'DE', 'AT', 'PL'")
        return value

    @field_validator("seed")
    @classmethod
    def _check_seed(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        if len(value) > MAX_SEED_LENGTH:
            raise _invalid("seed must be at most 64 characters")
        if not SEED_PATTERN.fullmatch(value):
            raise _invalid("seed must contain only alphanumeric, dots, underscores, or hyphens")
        return value

    @model_validator(mode="before")
    @classmethod
    def _require_country(cls, data: object) -> object:
        if isinstance(data, dict) and data.get("country") is None:
            raise _invalid("Query parameter 'country' is required and must be 'DE', 'AT', or 'PL'")
        return data


# ----------------------------------------------------------------------
# Knowledge base
# ----------------------------------------------------------------------
def _check_title(value: str) -> str:
    cleaned = value.strip()
    if not cleaned:
        raise _invalid("Title is required")
    if len(cleaned) > 200:
        raise _invalid("Title too long")
    return cleaned


def _check_url(value: str) -> str:
    cleaned = value.strip()
    if not is_http_url(cleaned):
        raise _invalid("Invalid URL format")
    return cleaned


def _clean_tags(value: List[str]) -> List[str]:
    tags: List[str] = []
    for tag in value:
        cleaned = tag.strip()
        if cleaned and cleaned not in tags:
            tags.append(cleaned)
    return tags


class KbEntryCreate(BaseModel):
    title: str
    url_original: str
    tags: List[str] = Field(default_factory=list)
    is_public: bool = False

    @field_validator("title")
    @classmethod
    def _check_title(cls, value: str) -> str:
        return _check_title(value)

    @field_validator("url_original")
    @classmethod
    def _check_url(cls, value: str) -> str:
        return _check_url(value)

    @field_validator("tags")
    @classmethod
    def _clean_tags(cls, value: List[str]) -> List[str]:
        return _clean_tags(value)


class KbEntryUpdate(BaseModel):
    title: Optional[str] = None
    url_original: Optional[str] = None
    tags: Optional[List[str]] = None
    is_public: Optional[bool] = None

    @field_validator("title")
    @classmethod
    def _check_title(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _check_title(value)

    @field_validator("url_original")
    @classmethod
    def _check_url(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _check_url(value)

    @field_validator("tags")
    @classmethod
    def _clean_tags(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        return None if value is None else _clean_tags(value)

    def changes(self) -> Dict[str, object]:
        return self.model_dump(exclude_none=True)


# ----------------------------------------------------------------------
# Charters
# ----------------------------------------------------------------------
def _check_goal(value: str) -> str:
    cleaned = value.strip()
    if not cleaned:
        raise _invalid("Goal is required")
    if len(cleaned) > 500:
        raise _invalid("Goal cannot exceed 500 characters")
    return cleaned


class CharterCreate(BaseModel):
    goal: str
    hypotheses: Optional[str] = Field(default=None, max_length=5000)

    @field_validator("goal")
    @classmethod
    def _check_goal(cls, value: str) -> str:
        return _check_goal(value)


class CharterUpdate(BaseModel):
    goal: Optional[str] = None
    hypotheses: Optional[str] = Field(default=None, max_length=5000)
    summary_notes: Optional[str] = Field(default=None, max_length=10000)

    @field_validator("goal")
    @classmethod
    def _check_goal(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _check_goal(value)

    def changes(self) -> Dict[str, object]:
        changes = {key: getattr(self, key) for key in self.model_fields_set}
        if changes.get("goal", "") is None:
            del changes["goal"]
        return changes


class CharterNoteCreate(BaseModel):
    tag: str
    body: str

    @field_validator("tag")
    @classmethod
    def _check_tag(cls, value: str) -> str:
        if value not in NOTE_TAGS:
            raise _invalid("tag must be one of 'bug', 'idea', 'question', 'risk'")
        return value

    @field_validator("body")
    @classmethod
    def _check_body(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise _invalid("Note body is required")
        if len(cleaned) > 5000:
            raise _invalid("Note body cannot exceed 5000 characters")
        return cleaned


# ----------------------------------------------------------------------
# Templates
# ----------------------------------------------------------------------
class TemplateField(BaseModel):
    model_config = ConfigDict(extra="forbid")

    key: str = Field(..., max_length=64)
    type: str
    label: str = Field(..., min_length=1, max_length=100)
    help: Optional[str] = Field(default=None, max_length=500)
    default: Optional[str] = None
    options: Optional[List[str]] = None

    @field_validator("key")
    @classmethod
    def _check_key(cls, value: str) -> str:
        if not FIELD_KEY_PATTERN.fullmatch(value):
            raise _invalid("Field key must start with a letter and contain only a-z, 0-9 and _")
        return value

    @field_validator("type")
    @classmethod
    def _check_type(cls, value: str) -> str:
        if value not in FIELD_TYPES:
            raise _invalid(f"Field type must be one of {', '.join(FIELD_TYPES)}")
        return value

    @model_validator(mode="after")
    def _check_options(self) -> "TemplateField":
        if self.type == "select" and not self.options:
            raise _invalid("Select fields must define options")
        return self


def _check_template_name(value: str) -> str:
    cleaned = value.strip()
    if not cleaned:
        raise _invalid("Template name is required")
    if len(cleaned) > 100:
        raise _invalid("Template name cannot exceed 100 characters")
    return cleaned


def _check_fields(value: List[TemplateField]) -> List[TemplateField]:
    if not value:
        raise _invalid("Template must define at least one field")
    keys = [item.key for item in value]
    if len(set(keys)) != len(keys):
        raise _invalid("Field keys must be unique")
    return value


def _check_attachments(value: List[str]) -> List[str]:
    if len(value) > MAX_ATTACHMENTS:
        raise _invalid(f"A template can have at most {MAX_ATTACHMENTS} attachments")
    for url in value:
        if not is_http_url(url):
            raise _invalid("Attachments must be http or https URLs")
    return value


def _check_preset(value: Optional[str]) -> Optional[str]:
    if value is not None and value not in TEMPLATE_PRESETS:
        raise _invalid("preset must be 'ui_bug' or 'api_bug'")
    return value


def check_required_fields(fields: List[Dict[str, object]], required: List[str]) -> None:
    """Raise :class:`ValidationFailed` when ``required`` names unknown field keys."""

    keys = {str(item.get("key")) for item in fields}
    unknown = [name for name in required if name not in keys]
    if unknown:
        raise ValidationFailed(
            f"Required fields must reference template fields: {', '.join(unknown)}",
            details={"required_fields": "unknown field keys"},
        )


class TemplateCreate(BaseModel):
    name: str
    scope: str = TEMPLATE_SCOPE_USER
    preset: Optional[str] = None
    fields: List[TemplateField]
    required_fields: List[str] = Field(default_factory=list)
    attachments: List[str] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        return _check_template_name(value)

    @field_validator("scope")
    @classmethod
    def _check_scope(cls, value: str) -> str:
        if value not in (TEMPLATE_SCOPE_GLOBAL, TEMPLATE_SCOPE_USER):
            raise _invalid("scope must be 'global' or 'user'")
        return value

    @field_validator("preset")
    @classmethod
    def _check_preset(cls, value: Optional[str]) -> Optional[str]:
        return _check_preset(value)

    @field_validator("fields")
    @classmethod
    def _check_fields(cls, value: List[TemplateField]) -> List[TemplateField]:
        return _check_fields(value)

    @field_validator("attachments")
    @classmethod
    def _check_attachments(cls, value: List[str]) -> List[str]:
        return _check_attachments(value)


class TemplateUpdate(BaseModel):
    name: Optional[str] = None
    preset: Optional[str] = None
    fields: Optional[List[TemplateField]] = None
    required_fields: Optional[List[str]] = None
    attachments: Optional[List[str]] = None

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _check_template_name(value)

    @field_validator("preset")
    @classmethod
    def _check_preset(cls, value: Optional[str]) -> Optional[str]:
        return _check_preset(value)

    @field_validator("fields")
    @classmethod
    def _check_fields(cls, value: Optional[List[TemplateField]]) -> Optional[List[TemplateField]]:
        return None if value is None else _check_fields(value)

    @field_validator("attachments")
    @classmethod
    def _check_attachments(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        return None if value is None else _check_attachments(value)

    def changes(self) -> Dict[str, object]:
        payload = self.model_dump(exclude_unset=True)
        return {key: value for key, value in payload.items() if key == "preset" or value is not None}


class TemplateFork(BaseModel):
    name: Optional[str] = None

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _check_template_name(value)


class TemplateRender(BaseModel):
    values: Dict[str, str] = Field(default_factory=dict)


# ----------------------------------------------------------------------
# Keyset pagination
# ----------------------------------------------------------------------
def encode_cursor(updated_at: datetime, record_id: str) -> str:
    return f"{serialize_datetime(updated_at)},{record_id}"


def parse_cursor(value: Optional[str]) -> Optional[Cursor]:
    """Parse an ``after`` cursor of the form ``updated_at,id``."""

    if not value:
        return None
    parts = value.split(",")
    if len(parts) != 2:
        raise ValidationFailed("Invalid cursor format", details={"after": "Invalid cursor format"})
    timestamp_text, record_id = parts
    try:
        timestamp = parse_datetime(timestamp_text.strip())
        record_uuid = uuid.UUID(record_id.strip())
    except ValueError as exc:
        raise ValidationFailed("Invalid cursor format", details={"after": "Invalid cursor format"}) from exc
    return timestamp, str(record_uuid)


def check_page_size(limit: Optional[int]) -> int:
    if limit is None:
        return DEFAULT_PAGE_SIZE
    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise ValidationFailed(
            f"limit must be between 1 and {MAX_PAGE_SIZE}",
            details={"limit": f"limit must be between 1 and {MAX_PAGE_SIZE}"},
        )
    return limit


__all__ = [
    "CharterCreate",
    "CharterNoteCreate",
    "CharterUpdate",
    "EmailChangeRequest",
    "IbanGenerateQuery",
    "KbEntryCreate",
    "KbEntryUpdate",
    "LoginRequest",
    "ProfileUpdateRequest",
    "ResetChangeRequest",
    "ResetRequest",
    "SigninRequest",
    "SignupRequest",
    "TemplateCreate",
    "TemplateField",
    "TemplateFork",
    "TemplateRender",
    "TemplateUpdate",
    "check_page_size",
    "check_required_fields",
    "encode_cursor",
    "parse_cursor",
]
