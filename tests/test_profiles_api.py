from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from toolsmith.config import Settings
from toolsmith.database import Database
from toolsmith.features import FeatureFlags
from toolsmith.service import create_app


@pytest.fixture()
def database(tmp_path: Path) -> Database:
    db = Database(tmp_path / "toolsmith.sqlite3")
    db.initialize()
    return db


@pytest.fixture()
def app(database: Database, tmp_path: Path):
    settings = Settings(env_name="local", database_path=tmp_path / "toolsmith.sqlite3", session_secure=False)
    return create_app(database=database, settings=settings, features=FeatureFlags.all_enabled())


def _bearer(app, profile_id: str) -> dict:
    token = app.state.session_manager.create(profile_id)
    return {"Authorization": f"Bearer {token}"}


def test_profile_requires_authentication(app) -> None:
    with TestClient(app) as client:
        response = client.get("/api/profiles/me")
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "UNAUTHENTICATED"


def test_unknown_token_is_rejected(app) -> None:
    with TestClient(app) as client:
        response = client.get("/api/profiles/me", headers={"Authorization": "Bearer nope"})
    assert response.status_code == 401


def test_get_own_profile(app, database: Database) -> None:
    profile = database.create_profile("me@example.com", "Secret123")
    with TestClient(app) as client:
        response = client.get("/api/profiles/me", headers=_bearer(app, profile.id))
    assert response.status_code == 200
    body = response.json()
    assert body["id"] == profile.id
    assert body["email"] == "me@example.com"
    assert "password_hash" not in body


@pytest.mark.parametrize("field", ["role", "org_id"])
def test_privileged_fields_cannot_be_changed(app, database: Database, field: str) -> None:
    profile = database.create_profile("me@example.com", "Secret123")
    with TestClient(app) as client:
        response = client.patch(
            "/api/profiles/me",
            json={field: "admin"},
            headers=_bearer(app, profile.id),
        )
    assert response.status_code == 403
    error = response.json()["error"]
    assert error["code"] == "FORBIDDEN_FIELD"
    assert error["details"] == {"field": field}
    assert database.get_profile(profile.id).role == "user"


def test_privileged_fields_are_rejected_before_email_checks(app, database: Database) -> None:
    profile = database.create_profile("me@example.com", "Secret123")
    with TestClient(app) as client:
        response = client.patch(
            "/api/profiles/me",
            json={"role": "admin", "email": "bad"},
            headers=_bearer(app, profile.id),
        )
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "FORBIDDEN_FIELD"
    assert database.get_profile(profile.id).email == "me@example.com"


def test_update_rejects_malformed_email(app, database: Database) -> None:
    profile = database.create_profile("me@example.com", "Secret123")
    with TestClient(app) as client:
        response = client.patch(
            "/api/profiles/me",
            json={"email": "not-an-email"},
            headers=_bearer(app, profile.id),
        )
    assert response.status_code == 400
    error = response.json()["error"]
    assert error["code"] == "VALIDATION_ERROR"
    assert error["details"] == {"email": "Nieprawidłowy format email"}


def test_update_without_changes(app, database: Database) -> None:
    profile = database.create_profile("me@example.com", "Secret123")
    headers = _bearer(app, profile.id)
    with TestClient(app) as client:
        empty = client.patch("/api/profiles/me", json={}, headers=headers)
        same = client.patch("/api/profiles/me", json={"email": "ME@example.com"}, headers=headers)
    assert empty.status_code == 400
    assert empty.json()["error"]["code"] == "NO_CHANGES"
    assert same.json()["error"]["code"] == "NO_CHANGES"


def test_update_rejects_unknown_fields(app, database: Database) -> None:
    profile = database.create_profile("me@example.com", "Secret123")
    with TestClient(app) as client:
        response = client.patch(
            "/api/profiles/me",
            json={"nickname": "tester"},
            headers=_bearer(app, profile.id),
        )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


def test_update_email(app, database: Database) -> None:
    profile = database.create_profile("me@example.com", "Secret123")
    database.create_profile("taken@example.com", "Secret123")
    headers = _bearer(app, profile.id)

    with TestClient(app) as client:
        taken = client.patch("/api/profiles/me", json={"email": "taken@example.com"}, headers=headers)
        assert taken.status_code == 409
        assert taken.json()["error"]["code"] == "EMAIL_TAKEN"

        changed = client.patch("/api/profiles/me", json={"email": "New@Example.com"}, headers=headers)
        assert changed.status_code == 200, changed.text
        assert changed.json()["email"] == "new@example.com"


def test_admin_profile_listing(app, database: Database) -> None:
    user = database.create_profile("user@example.com", "Secret123")
    admin = database.create_profile("admin@example.com", "Secret123", role="admin")

    with TestClient(app) as client:
        forbidden = client.get("/api/admin/profiles", headers=_bearer(app, user.id))
        assert forbidden.status_code == 403
        assert forbidden.json()["error"]["code"] == "FORBIDDEN"

        listing = client.get("/api/admin/profiles", headers=_bearer(app, admin.id))
        assert listing.status_code == 200
        emails = {item["email"] for item in listing.json()["profiles"]}
        assert emails == {"user@example.com", "admin@example.com"}
