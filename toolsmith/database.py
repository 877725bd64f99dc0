"""SQLite-backed persistence for profiles, audit events and QA collections."""
from __future__ import annotations

import json
import re
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from passlib.context import CryptContext

from .models import (
    CHARTER_ACTIVE,
    CHARTER_CLOSED,
    ROLE_USER,
    ROLES,
    TEMPLATE_SCOPE_GLOBAL,
    Charter,
    CharterNote,
    KBEntry,
    Profile,
    Template,
    UsageEvent,
)

Cursor = Tuple[datetime, str]

_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

_pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

_URL_SCHEME_PREFIX = re.compile(r"^https?://(www\.)?", re.IGNORECASE)

SEED_TEMPLATES: Tuple[Dict[str, Any], ...] = (
    {
        "name": "UI Bug Template",
        "preset": "ui_bug",
        "fields": [
            {"key": "title", "type": "text", "label": "Title", "help": "Short description of the issue", "default": ""},
            {"key": "steps", "type": "textarea", "label": "Steps to reproduce", "help": "Numbered list of steps", "default": "1. \n2. \n3. "},
            {"key": "expected", "type": "textarea", "label": "Expected result", "help": "What should happen", "default": ""},
            {"key": "actual", "type": "textarea", "label": "Actual result", "help": "What actually happens", "default": ""},
            {"key": "environment", "type": "text", "label": "Environment", "help": "Browser, OS, resolution", "default": ""},
            {"key": "severity", "type": "select", "label": "Severity", "options": ["Critical", "Major", "Minor", "Trivial"], "default": "Minor"},
        ],
        "required_fields": ["title", "steps", "expected", "actual"],
    },
    {
        "name": "API Bug Template",
        "preset": "api_bug",
        "fields": [
            {"key": "title", "type": "text", "label": "Title", "help": "Short description of the issue", "default": ""},
            {"key": "endpoint", "type": "text", "label": "Endpoint", "help": "API endpoint with method", "default": ""},
            {"key": "request", "type": "code", "label": "Request", "help": "Request payload", "default": "{\n  \n}"},
            {"key": "expected", "type": "textarea", "label": "Expected response", "help": "Expected API response", "default": ""},
            {"key": "actual", "type": "textarea", "label": "Actual response", "help": "Actual API response with status code", "default": ""},
            {"key": "environment", "type": "text", "label": "Environment", "help": "API version, test environment", "default": ""},
            {"key": "severity", "type": "select", "label": "Severity", "options": ["Critical", "Major", "Minor", "Trivial"], "default": "Minor"},
        ],
        "required_fields": ["title", "endpoint", "request", "expected", "actual"],
    },
)


class DuplicateRecordError(ValueError):
    """Raised when a write violates a uniqueness constraint."""


def _ensure_directory(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def resolve_database_path(env_value: Optional[str]) -> Path:
    """Resolve the on-disk path for the application database."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    base_dir = Path(__file__).resolve().parent.parent / "data"
    return (base_dir / "toolsmith.sqlite3").resolve(strict=False)


def _current_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def serialize_datetime(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime(_TIMESTAMP_FORMAT)


def parse_datetime(value: str) -> datetime:
    """Parse a stored timestamp; ISO-8601 strings with an offset are accepted too."""

    try:
        return datetime.strptime(value, _TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _parse_optional_datetime(value: Optional[str]) -> Optional[datetime]:
    return parse_datetime(value) if value else None


def _new_id() -> str:
    return str(uuid.uuid4())


def canonicalize_url(url: Optional[str]) -> Optional[str]:
    """Lowercase ``url`` and drop its scheme, ``www.`` prefix and trailing slash."""

    if url is None:
        return None
    cleaned = _URL_SCHEME_PREFIX.sub("", url.strip().lower())
    if cleaned.endswith("/"):
        cleaned = cleaned[:-1]
    return cleaned


def _hash_password(password: str) -> str:
    return _pwd_context.hash(password)


def _verify_password(password: str, hashed: str) -> bool:
    try:
        return _pwd_context.verify(password, hashed)
    except ValueError:
        return False


def _keyset_clause(after: Optional[Cursor], column: str = "updated_at") -> Tuple[str, List[Any]]:
    if after is None:
        return "", []
    timestamp, record_id = after
    serialized = serialize_datetime(timestamp)
    return (
        f" AND ({column} < ? OR ({column} = ? AND id < ?))",
        [serialized, serialized, record_id],
    )


class Database:
    """Simple wrapper around SQLite for profiles, audit events and QA collections."""

    def __init__(self, path: Path) -> None:
        _ensure_directory(path)
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create the required tables if they do not already exist."""

        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS profiles (
                    id TEXT PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    role TEXT NOT NULL CHECK (role IN ('admin', 'user')),
                    org_id TEXT,
                    password_hash TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS usage_events (
                    id TEXT PRIMARY KEY,
                    user_id TEXT REFERENCES profiles(id) ON DELETE SET NULL,
                    kind TEXT NOT NULL CHECK (kind IN ('auth', 'charter', 'generator', 'kb')),
                    meta TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS kb_entries (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
                    title TEXT NOT NULL CHECK (length(title) BETWEEN 1 AND 200),
                    url_original TEXT NOT NULL,
                    url_canonical TEXT,
                    tags TEXT NOT NULL DEFAULT '[]',
                    is_public INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS charters (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
                    goal TEXT NOT NULL CHECK (length(goal) BETWEEN 1 AND 500),
                    hypotheses TEXT,
                    summary_notes TEXT,
                    status TEXT NOT NULL CHECK (status IN ('active', 'closed')),
                    started_at TEXT NOT NULL,
                    ended_at TEXT,
                    version INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    CHECK (
                        (status = 'active' AND ended_at IS NULL) OR
                        (status = 'closed' AND ended_at IS NOT NULL AND ended_at >= started_at)
                    )
                );

                CREATE TABLE IF NOT EXISTS charter_notes (
                    id TEXT PRIMARY KEY,
                    charter_id TEXT NOT NULL REFERENCES charters(id) ON DELETE CASCADE,
                    user_id TEXT NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
                    tag TEXT NOT NULL CHECK (tag IN ('bug', 'idea', 'question', 'risk')),
                    body TEXT NOT NULL CHECK (length(body) <= 5000),
                    noted_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS templates (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    scope TEXT NOT NULL CHECK (scope IN ('global', 'user')),
                    owner_id TEXT REFERENCES profiles(id) ON DELETE CASCADE,
                    preset TEXT CHECK (preset IN ('ui_bug', 'api_bug')),
                    fields TEXT NOT NULL,
                    required_fields TEXT NOT NULL DEFAULT '[]',
                    attachments TEXT NOT NULL DEFAULT '[]',
                    origin_template_id TEXT REFERENCES templates(id) ON DELETE SET NULL,
                    is_readonly INTEGER NOT NULL DEFAULT 0,
                    version INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    CHECK (scope != 'global' OR owner_id IS NULL)
                );

                CREATE INDEX IF NOT EXISTS idx_usage_events_user ON usage_events(user_id, created_at DESC);
                CREATE INDEX IF NOT EXISTS idx_kb_entries_user_updated ON kb_entries(user_id, updated_at DESC, id DESC);
                CREATE UNIQUE INDEX IF NOT EXISTS idx_kb_entries_canonical
                    ON kb_entries(user_id, url_canonical) WHERE url_canonical IS NOT NULL;
                CREATE INDEX IF NOT EXISTS idx_charters_user_updated ON charters(user_id, updated_at DESC, id DESC);
                CREATE UNIQUE INDEX IF NOT EXISTS idx_charters_one_active
                    ON charters(user_id) WHERE status = 'active';
                CREATE INDEX IF NOT EXISTS idx_charter_notes_charter ON charter_notes(charter_id, noted_at);
                CREATE UNIQUE INDEX IF NOT EXISTS idx_templates_name
                    ON templates(scope, lower(name), ifnull(owner_id, ''));
                """
            )

        self._seed_global_templates()

    def _seed_global_templates(self) -> None:
        timestamp = serialize_datetime(_current_timestamp())
        with self._connect() as conn:
            for seed in SEED_TEMPLATES:
                conn.execute(
                    """
                    INSERT OR IGNORE INTO templates (
                        id, name, scope, owner_id, preset, fields, required_fields, attachments,
                        origin_template_id, is_readonly, version, created_at, updated_at
                    ) VALUES (?, ?, 'global', NULL, ?, ?, ?, '[]', NULL, 1, 1, ?, ?)
                    """,
                    (
                        _new_id(),
                        seed["name"],
                        seed["preset"],
                        json.dumps(seed["fields"]),
                        json.dumps(seed["required_fields"]),
                        timestamp,
                        timestamp,
                    ),
                )

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------
    def create_profile(self, email: str, password: str, *, role: str = ROLE_USER) -> Profile:
        """Create an account and return its profile."""

        if not password:
            raise ValueError("Password must not be empty")
        if role not in ROLES:
            raise ValueError(f"Unknown role '{role}'")

        normalized_email = email.strip().lower()
        if not normalized_email:
            raise ValueError("Email must not be empty")

        profile_id = _new_id()
        timestamp = serialize_datetime(_current_timestamp())
        with self._connect() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO profiles (id, email, role, org_id, password_hash, created_at, updated_at)
                    VALUES (?, ?, ?, NULL, ?, ?, ?)
                    """,
                    (profile_id, normalized_email, role, _hash_password(password), timestamp, timestamp),
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicateRecordError("A user with that email already exists") from exc

        profile = self.get_profile(profile_id)
        if profile is None:
            raise RuntimeError("Failed to load profile after creation")
        return profile

    def get_profile(self, profile_id: str) -> Optional[Profile]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM profiles WHERE id = ?", (profile_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_profile(row)

    def get_profile_by_email(self, email: str) -> Optional[Profile]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM profiles WHERE email = ?",
                (email.strip().lower(),),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_profile(row)

    def authenticate_profile(self, email: str, password: str) -> Optional[Profile]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM profiles WHERE email = ?",
                (email.strip().lower(),),
            ).fetchone()
        if row is None:
            return None
        if not _verify_password(password, str(row["password_hash"])):
            return None
        return self._row_to_profile(row)

    def set_password(self, profile_id: str, password: str) -> None:
        if not password:
            raise ValueError("Password must not be empty")
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE profiles SET password_hash = ?, updated_at = ? WHERE id = ?",
                (_hash_password(password), serialize_datetime(_current_timestamp()), profile_id),
            )
            if cursor.rowcount == 0:
                raise ValueError("User not found")

    def update_profile_email(self, profile_id: str, email: str) -> Profile:
        normalized_email = email.strip().lower()
        if not normalized_email:
            raise ValueError("Email must not be empty")

        with self._connect() as conn:
            try:
                conn.execute(
                    "UPDATE profiles SET email = ?, updated_at = ? WHERE id = ?",
                    (normalized_email, serialize_datetime(_current_timestamp()), profile_id),
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicateRecordError("A user with that email already exists") from exc

        refreshed = self.get_profile(profile_id)
        if refreshed is None:
            raise ValueError("User not found")
        return refreshed

    def set_profile_role(self, profile_id: str, role: str) -> Profile:
        if role not in ROLES:
            raise ValueError(f"Unknown role '{role}'")
        with self._connect() as conn:
            conn.execute(
                "UPDATE profiles SET role = ?, updated_at = ? WHERE id = ?",
                (role, serialize_datetime(_current_timestamp()), profile_id),
            )
        refreshed = self.get_profile(profile_id)
        if refreshed is None:
            raise ValueError("User not found")
        return refreshed

    def list_profiles(self) -> List[Profile]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM profiles ORDER BY created_at, email").fetchall()
        return [self._row_to_profile(row) for row in rows]

    # ------------------------------------------------------------------
    # Usage events
    # ------------------------------------------------------------------
    def record_usage_event(
        self,
        user_id: Optional[str],
        kind: str,
        meta: Optional[Mapping[str, Any]] = None,
    ) -> UsageEvent:
        event_id = _new_id()
        created_at = _current_timestamp()
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO usage_events (id, user_id, kind, meta, created_at) VALUES (?, ?, ?, ?, ?)",
                (
                    event_id,
                    user_id,
                    kind,
                    json.dumps(dict(meta)) if meta is not None else None,
                    serialize_datetime(created_at),
                ),
            )
        return UsageEvent(
            id=event_id,
            user_id=user_id,
            kind=kind,
            meta=dict(meta or {}),
            created_at=created_at,
        )

    def list_usage_events(self, kind: Optional[str] = None) -> List[UsageEvent]:
        query = "SELECT * FROM usage_events"
        params: List[Any] = []
        if kind is not None:
            query += " WHERE kind = ?"
            params.append(kind)
        query += " ORDER BY created_at, rowid"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_usage_event(row) for row in rows]

    # ------------------------------------------------------------------
    # Knowledge base
    # ------------------------------------------------------------------
    def create_kb_entry(
        self,
        user_id: str,
        *,
        title: str,
        url_original: str,
        tags: Sequence[str] = (),
        is_public: bool = False,
    ) -> KBEntry:
        entry_id = _new_id()
        timestamp = serialize_datetime(_current_timestamp())
        with self._connect() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO kb_entries (
                        id, user_id, title, url_original, url_canonical, tags, is_public, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        entry_id,
                        user_id,
                        title,
                        url_original,
                        canonicalize_url(url_original),
                        json.dumps(list(tags)),
                        int(bool(is_public)),
                        timestamp,
                        timestamp,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicateRecordError("An entry with that URL already exists") from exc

        entry = self.get_kb_entry(entry_id)
        if entry is None:
            raise RuntimeError("Failed to load KB entry after creation")
        return entry

    def get_kb_entry(self, entry_id: str) -> Optional[KBEntry]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM kb_entries WHERE id = ?", (entry_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_kb_entry(row)

    def list_kb_entries(
        self,
        *,
        viewer_id: Optional[str],
        include_all: bool = False,
        after: Optional[Cursor] = None,
        limit: int = 20,
    ) -> List[KBEntry]:
        """Return entries newest first: public ones plus the viewer's own.

        ``include_all`` lifts the visibility filter (administrators).
        """

        if include_all:
            query = "SELECT * FROM kb_entries WHERE 1 = 1"
            params: List[Any] = []
        elif viewer_id is not None:
            query = "SELECT * FROM kb_entries WHERE (user_id = ? OR is_public = 1)"
            params = [viewer_id]
        else:
            query = "SELECT * FROM kb_entries WHERE is_public = 1"
            params = []

        clause, clause_params = _keyset_clause(after)
        query += clause + " ORDER BY updated_at DESC, id DESC LIMIT ?"
        params.extend(clause_params)
        params.append(limit)

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_kb_entry(row) for row in rows]

    def update_kb_entry(self, entry_id: str, **fields: object) -> Optional[KBEntry]:
        if not fields:
            return self.get_kb_entry(entry_id)

        updates: List[str] = []
        values: List[object] = []
        for key in ("title", "url_original", "tags", "is_public"):
            if key not in fields or fields[key] is None:
                continue
            value = fields[key]
            if key == "tags":
                value = json.dumps(list(value))  # type: ignore[arg-type]
            elif key == "is_public":
                value = int(bool(value))
            elif key == "url_original":
                updates.append("url_canonical = ?")
                values.append(canonicalize_url(str(value)))
            updates.append(f"{key} = ?")
            values.append(value)

        if not updates:
            return self.get_kb_entry(entry_id)

        updates.append("updated_at = ?")
        values.append(serialize_datetime(_current_timestamp()))
        values.append(entry_id)
        query = f"UPDATE kb_entries SET {', '.join(updates)} WHERE id = ?"

        with self._connect() as conn:
            try:
                cursor = conn.execute(query, values)
            except sqlite3.IntegrityError as exc:
                raise DuplicateRecordError("An entry with that URL already exists") from exc
            if cursor.rowcount == 0:
                return None

        return self.get_kb_entry(entry_id)

    def delete_kb_entry(self, entry_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM kb_entries WHERE id = ?", (entry_id,))
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Exploration charters
    # ------------------------------------------------------------------
    def create_charter(self, user_id: str, *, goal: str, hypotheses: Optional[str] = None) -> Charter:
        """Open a new active charter; a user may only have one active charter."""

        charter_id = _new_id()
        timestamp = serialize_datetime(_current_timestamp())
        with self._connect() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO charters (
                        id, user_id, goal, hypotheses, summary_notes, status, started_at, ended_at,
                        version, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, NULL, ?, ?, NULL, 1, ?, ?)
                    """,
                    (charter_id, user_id, goal, hypotheses, CHARTER_ACTIVE, timestamp, timestamp, timestamp),
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicateRecordError("An active charter already exists for this user") from exc

        charter = self.get_charter(charter_id)
        if charter is None:
            raise RuntimeError("Failed to load charter after creation")
        return charter

    def get_charter(self, charter_id: str) -> Optional[Charter]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM charters WHERE id = ?", (charter_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_charter(row)

    def list_charters(self, user_id: str, *, after: Optional[Cursor] = None, limit: int = 20) -> List[Charter]:
        clause, clause_params = _keyset_clause(after)
        query = (
            "SELECT * FROM charters WHERE user_id = ?"
            + clause
            + " ORDER BY updated_at DESC, id DESC LIMIT ?"
        )
        with self._connect() as conn:
            rows = conn.execute(query, [user_id, *clause_params, limit]).fetchall()
        return [self._row_to_charter(row) for row in rows]

    def update_charter(self, charter_id: str, **fields: object) -> Optional[Charter]:
        updates: List[str] = []
        values: List[object] = []
        for key in ("goal", "hypotheses", "summary_notes"):
            if key in fields:
                updates.append(f"{key} = ?")
                values.append(fields[key])

        if not updates:
            return self.get_charter(charter_id)

        updates.extend(["version = version + 1", "updated_at = ?"])
        values.extend([serialize_datetime(_current_timestamp()), charter_id])
        with self._connect() as conn:
            cursor = conn.execute(f"UPDATE charters SET {', '.join(updates)} WHERE id = ?", values)
            if cursor.rowcount == 0:
                return None
        return self.get_charter(charter_id)

    def start_charter(self, charter_id: str) -> Optional[Charter]:
        """Re-open a closed charter with a fresh start time."""

        timestamp = serialize_datetime(_current_timestamp())
        with self._connect() as conn:
            try:
                cursor = conn.execute(
                    """
                    UPDATE charters
                       SET status = ?, started_at = ?, ended_at = NULL, version = version + 1, updated_at = ?
                     WHERE id = ?
                    """,
                    (CHARTER_ACTIVE, timestamp, timestamp, charter_id),
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicateRecordError("An active charter already exists for this user") from exc
            if cursor.rowcount == 0:
                return None
        return self.get_charter(charter_id)

    def stop_charter(self, charter_id: str) -> Optional[Charter]:
        timestamp = serialize_datetime(_current_timestamp())
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE charters
                   SET status = ?, ended_at = ?, version = version + 1, updated_at = ?
                 WHERE id = ?
                """,
                (CHARTER_CLOSED, timestamp, timestamp, charter_id),
            )
            if cursor.rowcount == 0:
                return None
        return self.get_charter(charter_id)

    def add_charter_note(self, charter_id: str, user_id: str, *, tag: str, body: str) -> CharterNote:
        note_id = _new_id()
        noted_at = _current_timestamp()
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO charter_notes (id, charter_id, user_id, tag, body, noted_at) VALUES (?, ?, ?, ?, ?, ?)",
                (note_id, charter_id, user_id, tag, body, serialize_datetime(noted_at)),
            )
        return CharterNote(
            id=note_id,
            charter_id=charter_id,
            user_id=user_id,
            tag=tag,
            body=body,
            noted_at=noted_at,
        )

    def list_charter_notes(self, charter_id: str) -> List[CharterNote]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM charter_notes WHERE charter_id = ? ORDER BY noted_at, rowid",
                (charter_id,),
            ).fetchall()
        return [self._row_to_charter_note(row) for row in rows]

    # ------------------------------------------------------------------
    # Defect report templates
    # ------------------------------------------------------------------
    def list_templates(self, viewer_id: str) -> List[Template]:
        """Return global templates plus the viewer's own, most recently updated first."""

        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM templates
                 WHERE scope = 'global' OR (scope = 'user' AND owner_id = ?)
                 ORDER BY updated_at DESC, id DESC
                """,
                (viewer_id,),
            ).fetchall()
        return [self._row_to_template(row) for row in rows]

    def get_template(self, template_id: str) -> Optional[Template]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM templates WHERE id = ?", (template_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_template(row)

    def create_template(
        self,
        *,
        name: str,
        scope: str,
        owner_id: Optional[str],
        fields: Sequence[Mapping[str, Any]],
        required_fields: Sequence[str] = (),
        attachments: Sequence[str] = (),
        preset: Optional[str] = None,
        origin_template_id: Optional[str] = None,
        is_readonly: bool = False,
    ) -> Template:
        if scope == TEMPLATE_SCOPE_GLOBAL:
            owner_id = None
        template_id = _new_id()
        timestamp = serialize_datetime(_current_timestamp())
        with self._connect() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO templates (
                        id, name, scope, owner_id, preset, fields, required_fields, attachments,
                        origin_template_id, is_readonly, version, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?)
                    """,
                    (
                        template_id,
                        name,
                        scope,
                        owner_id,
                        preset,
                        json.dumps([dict(item) for item in fields]),
                        json.dumps(list(required_fields)),
                        json.dumps(list(attachments)),
                        origin_template_id,
                        int(bool(is_readonly)),
                        timestamp,
                        timestamp,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicateRecordError("A template with that name already exists") from exc

        template = self.get_template(template_id)
        if template is None:
            raise RuntimeError("Failed to load template after creation")
        return template

    def update_template(self, template_id: str, **fields: object) -> Optional[Template]:
        allowed = ("name", "fields", "required_fields", "attachments", "preset")
        json_columns = {"fields", "required_fields", "attachments"}

        updates: List[str] = []
        values: List[object] = []
        for key in allowed:
            if key not in fields:
                continue
            value = fields[key]
            if key in json_columns:
                value = json.dumps(value)
            updates.append(f"{key} = ?")
            values.append(value)

        if not updates:
            return self.get_template(template_id)

        updates.extend(["version = version + 1", "updated_at = ?"])
        values.extend([serialize_datetime(_current_timestamp()), template_id])
        with self._connect() as conn:
            try:
                cursor = conn.execute(f"UPDATE templates SET {', '.join(updates)} WHERE id = ?", values)
            except sqlite3.IntegrityError as exc:
                raise DuplicateRecordError("A template with that name already exists") from exc
            if cursor.rowcount == 0:
                return None
        return self.get_template(template_id)

    def delete_template(self, template_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM templates WHERE id = ?", (template_id,))
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _row_to_profile(self, row: sqlite3.Row) -> Profile:
        return Profile(
            id=str(row["id"]),
            email=str(row["email"]),
            role=str(row["role"]),
            org_id=row["org_id"],
            created_at=parse_datetime(str(row["created_at"])),
            updated_at=parse_datetime(str(row["updated_at"])),
        )

    def _row_to_usage_event(self, row: sqlite3.Row) -> UsageEvent:
        meta = row["meta"]
        return UsageEvent(
            id=str(row["id"]),
            user_id=row["user_id"],
            kind=str(row["kind"]),
            meta=json.loads(meta) if meta else {},
            created_at=parse_datetime(str(row["created_at"])),
        )

    def _row_to_kb_entry(self, row: sqlite3.Row) -> KBEntry:
        return KBEntry(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            title=str(row["title"]),
            url_original=str(row["url_original"]),
            url_canonical=row["url_canonical"],
            tags=list(json.loads(row["tags"] or "[]")),
            is_public=bool(row["is_public"]),
            created_at=parse_datetime(str(row["created_at"])),
            updated_at=parse_datetime(str(row["updated_at"])),
        )

    def _row_to_charter(self, row: sqlite3.Row) -> Charter:
        return Charter(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            goal=str(row["goal"]),
            hypotheses=row["hypotheses"],
            summary_notes=row["summary_notes"],
            status=str(row["status"]),
            started_at=parse_datetime(str(row["started_at"])),
            ended_at=_parse_optional_datetime(row["ended_at"]),
            version=int(row["version"]),
            created_at=parse_datetime(str(row["created_at"])),
            updated_at=parse_datetime(str(row["updated_at"])),
        )

    def _row_to_charter_note(self, row: sqlite3.Row) -> CharterNote:
        return CharterNote(
            id=str(row["id"]),
            charter_id=str(row["charter_id"]),
            user_id=str(row["user_id"]),
            tag=str(row["tag"]),
            body=str(row["body"]),
            noted_at=parse_datetime(str(row["noted_at"])),
        )

    def _row_to_template(self, row: sqlite3.Row) -> Template:
        return Template(
            id=str(row["id"]),
            name=str(row["name"]),
            scope=str(row["scope"]),
            owner_id=row["owner_id"],
            preset=row["preset"],
            fields=list(json.loads(row["fields"])),
            required_fields=list(json.loads(row["required_fields"] or "[]")),
            attachments=list(json.loads(row["attachments"] or "[]")),
            origin_template_id=row["origin_template_id"],
            is_readonly=bool(row["is_readonly"]),
            version=int(row["version"]),
            created_at=parse_datetime(str(row["created_at"])),
            updated_at=parse_datetime(str(row["updated_at"])),
        )


__all__ = [
    "Cursor",
    "Database",
    "DuplicateRecordError",
    "canonicalize_url",
    "parse_datetime",
    "resolve_database_path",
    "serialize_datetime",
]
