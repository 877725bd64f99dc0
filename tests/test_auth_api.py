"""End-to-end tests for the authentication endpoints."""

from __future__ import annotations

import tempfile
import unittest
import uuid
from pathlib import Path
from typing import List, Tuple

from fastapi.testclient import TestClient

from toolsmith.config import Settings
from toolsmith.database import Database
from toolsmith.features import FeatureFlags
from toolsmith.models import Profile
from toolsmith.rate_limit import RateLimiter
from toolsmith.security import SESSION_COOKIE
from toolsmith.service import SIGNUP_FAILED_MESSAGE, create_app


class AuthApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tempdir = tempfile.TemporaryDirectory()
        db_path = Path(self._tempdir.name) / "toolsmith.sqlite3"
        self.database = Database(db_path)
        self.database.initialize()
        self.email = "alice@example.com"
        self.password = "Secret123"
        self.profile = self.database.create_profile(self.email, self.password)
        self.reset_requests: List[Tuple[Profile, str]] = []

        settings = Settings(env_name="local", database_path=db_path, session_secure=False)
        self.app = create_app(
            database=self.database,
            settings=settings,
            features=FeatureFlags.all_enabled(),
            rate_limiter=RateLimiter(max_requests=3, window_seconds=60),
            reset_notifier=lambda profile, token: self.reset_requests.append((profile, token)),
        )

    def tearDown(self) -> None:
        self._tempdir.cleanup()

    def _auth_events(self):
        return self.database.list_usage_events(kind="auth")

    def test_login_returns_token_and_audits_success(self) -> None:
        with TestClient(self.app) as client:
            response = client.post(
                "/api/auth/login",
                json={"email": "Alice@Example.com", "password": self.password},
                headers={"X-Client-IP": "203.0.113.57", "User-Agent": "pytest-agent"},
            )
            self.assertEqual(response.status_code, 200, response.text)
            payload = response.json()
            self.assertEqual(payload["profile"]["id"], self.profile.id)
            self.assertEqual(payload["profile"]["role"], "user")
            uuid.UUID(response.headers["X-Request-ID"])

            me = client.get(
                "/api/profiles/me",
                headers={"Authorization": f"Bearer {payload['access_token']}"},
            )
            self.assertEqual(me.status_code, 200, me.text)
            self.assertEqual(me.json()["email"], self.email)

        events = self._auth_events()
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].user_id, self.profile.id)
        self.assertEqual(events[0].meta["status"], "success")
        self.assertEqual(events[0].meta["ip_cidr"], "203.0.113.0/24")
        self.assertEqual(events[0].meta["email_normalized"], self.email)

    def test_login_with_wrong_password_is_rejected(self) -> None:
        with TestClient(self.app) as client:
            response = client.post(
                "/api/auth/login",
                json={"email": self.email, "password": "Wrong1234"},
            )
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["error"]["code"], "INVALID_CREDENTIALS")

        events = self._auth_events()
        self.assertEqual(events[-1].meta["status"], "failure")
        self.assertEqual(events[-1].meta["reason"], "INVALID_CREDENTIALS")
        self.assertIsNone(events[-1].user_id)

    def test_login_is_rate_limited_per_ip(self) -> None:
        with TestClient(self.app) as client:
            for _ in range(3):
                response = client.post(
                    "/api/auth/login",
                    json={"email": self.email, "password": "Wrong1234"},
                )
                self.assertEqual(response.status_code, 401)

            limited = client.post(
                "/api/auth/login",
                json={"email": self.email, "password": self.password},
            )
            self.assertEqual(limited.status_code, 429)
            self.assertEqual(limited.json()["error"]["code"], "RATE_LIMITED")
            self.assertGreater(int(limited.headers["Retry-After"]), 0)

            other_ip = client.post(
                "/api/auth/login",
                json={"email": self.email, "password": self.password},
                headers={"X-Client-IP": "198.51.100.1"},
            )
            self.assertEqual(other_ip.status_code, 200, other_ip.text)

        self.assertEqual(self._auth_events()[3].meta["reason"], "RATE_LIMITED")

    def test_login_requires_json_content_type(self) -> None:
        with TestClient(self.app) as client:
            response = client.post(
                "/api/auth/login",
                content=b"email=alice@example.com",
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        self.assertEqual(response.status_code, 400)
        error = response.json()["error"]
        self.assertEqual(error["code"], "VALIDATION_ERROR")
        self.assertEqual(error["details"], {"body": "invalid_content_type"})

    def test_login_rejects_malformed_json(self) -> None:
        with TestClient(self.app) as client:
            response = client.post(
                "/api/auth/login",
                content=b"{not json",
                headers={"Content-Type": "application/json"},
            )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["details"], {"body": "invalid_json"})

    def test_login_validation_errors_name_the_field(self) -> None:
        request_id = str(uuid.uuid4())
        with TestClient(self.app) as client:
            response = client.post(
                "/api/auth/login",
                json={"email": "not-an-email", "password": "short"},
                headers={"X-Request-ID": request_id},
            )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.headers["X-Request-ID"], request_id)
        details = response.json()["error"]["details"]
        self.assertEqual(details["email"], "Nieprawidłowy format email")
        self.assertEqual(details["password"], "Hasło musi mieć co najmniej 8 znaków")

    def test_signin_sets_session_cookie_and_check_reports_user(self) -> None:
        with TestClient(self.app) as client:
            anonymous = client.get("/api/auth/check")
            self.assertEqual(anonymous.status_code, 401)
            self.assertEqual(anonymous.json(), {"authenticated": False})

            response = client.post(
                "/api/auth/signin",
                json={"email": self.email, "password": self.password},
            )
            self.assertEqual(response.status_code, 200, response.text)
            self.assertEqual(response.json(), {"user": {"id": self.profile.id, "email": self.email}})
            set_cookie = response.headers["set-cookie"]
            self.assertIn(f"{SESSION_COOKIE}=", set_cookie)
            self.assertIn("HttpOnly", set_cookie)
            self.assertIn("SameSite=lax", set_cookie)

            check = client.get("/api/auth/check")
            self.assertEqual(check.status_code, 200)
            self.assertEqual(
                check.json(),
                {"authenticated": True, "user": {"id": self.profile.id, "email": self.email, "role": "user"}},
            )

            signout = client.post("/api/auth/signout")
            self.assertEqual(signout.json(), {"ok": True})

            after = client.get("/api/auth/check")
            self.assertEqual(after.status_code, 401)

    def test_signup_creates_account_and_session(self) -> None:
        with TestClient(self.app) as client:
            response = client.post(
                "/api/auth/signup",
                json={"email": "New@Example.com", "password": "Fresh123", "confirm_password": "Fresh123"},
            )
            self.assertEqual(response.status_code, 200, response.text)
            payload = response.json()
            self.assertEqual(payload["user"]["email"], "new@example.com")
            self.assertFalse(payload["emailConfirmationRequired"])

            check = client.get("/api/auth/check")
            self.assertEqual(check.json()["user"]["email"], "new@example.com")

        self.assertIsNotNone(self.database.authenticate_profile("new@example.com", "Fresh123"))

    def test_signup_password_rules(self) -> None:
        cases = [
            ("abcdefgh", "Hasło musi zawierać co najmniej jedną literę i jedną cyfrę"),
            ("Ab1", "Hasło musi mieć co najmniej 8 znaków"),
            ("12345678", "Hasło musi zawierać co najmniej jedną literę i jedną cyfrę"),
            ("abcdefg٣", "Hasło musi zawierać co najmniej jedną literę i jedną cyfrę"),
        ]
        with TestClient(self.app) as client:
            for password, message in cases:
                with self.subTest(password=password):
                    weak = client.post(
                        "/api/auth/signup",
                        json={"email": "weak@example.com", "password": password},
                    )
                    self.assertEqual(weak.status_code, 400)
                    self.assertEqual(weak.json()["error"]["details"]["password"], message)

            mismatch = client.post(
                "/api/auth/signup",
                json={"email": "weak@example.com", "password": "Fresh123", "confirm_password": "Fresh124"},
            )
            self.assertEqual(mismatch.status_code, 400)
            self.assertIn("Hasła nie są identyczne", mismatch.json()["error"]["message"])

    def test_signup_with_existing_email_is_generic(self) -> None:
        with TestClient(self.app) as client:
            response = client.post(
                "/api/auth/signup",
                json={"email": self.email, "password": "Another123"},
            )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(
            response.json(),
            {"error": {"code": "INVALID_CREDENTIALS", "message": SIGNUP_FAILED_MESSAGE}},
        )

    def test_password_reset_flow_revokes_sessions(self) -> None:
        old_token = self.app.state.session_manager.create(self.profile.id)

        with TestClient(self.app) as client:
            unknown = client.post("/api/auth/reset-request", json={"email": "ghost@example.com"})
            self.assertEqual(unknown.status_code, 200)
            self.assertEqual(self.reset_requests, [])

            known = client.post("/api/auth/reset-request", json={"email": self.email})
            self.assertEqual(known.status_code, 200)
            self.assertEqual(known.json()["message"], unknown.json()["message"])
            self.assertEqual(len(self.reset_requests), 1)
            profile, token = self.reset_requests[0]
            self.assertEqual(profile.id, self.profile.id)

            bad = client.post(
                "/api/auth/reset-change",
                json={"access_token": "not-a-token", "new_password": "Changed456"},
            )
            self.assertEqual(bad.status_code, 400)
            self.assertEqual(bad.json()["error"]["code"], "INVALID_CREDENTIALS")

            changed = client.post(
                "/api/auth/reset-change",
                json={"access_token": token, "new_password": "Changed456"},
            )
            self.assertEqual(changed.status_code, 200, changed.text)
            self.assertTrue(changed.json()["ok"])

            reused = client.post(
                "/api/auth/reset-change",
                json={"access_token": token, "new_password": "Another789"},
            )
            self.assertEqual(reused.status_code, 400)

            revoked = client.get("/api/profiles/me", headers={"Authorization": f"Bearer {old_token}"})
            self.assertEqual(revoked.status_code, 401)

        self.assertIsNone(self.database.authenticate_profile(self.email, self.password))
        self.assertIsNotNone(self.database.authenticate_profile(self.email, "Changed456"))

    def test_password_reset_hidden_when_flag_disabled(self) -> None:
        app = create_app(
            database=self.database,
            settings=Settings(env_name="production", session_secure=False),
            features=FeatureFlags({"auth": {"passwordReset": False}}),
        )
        with TestClient(app) as client:
            response = client.post("/api/auth/reset-request", json={"email": self.email})
        self.assertEqual(response.status_code, 404)


class StatusEndpointTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tempdir = tempfile.TemporaryDirectory()
        self.db_path = Path(self._tempdir.name) / "toolsmith.sqlite3"

    def tearDown(self) -> None:
        self._tempdir.cleanup()

    def test_health_env_check_and_features(self) -> None:
        settings = Settings(
            env_name="production",
            database_path=self.db_path,
            supabase_url="https://example.supabase.co",
            supabase_key="anon",
        )
        flags = FeatureFlags({"collections": {"generators": True}})
        app = create_app(database=Database(self.db_path), settings=settings, features=flags)

        with TestClient(app) as client:
            self.assertEqual(client.get("/api/health").json(), {"status": "ok"})

            env_check = client.get("/api/env-check").json()
            self.assertTrue(env_check["SUPABASE_URL"])
            self.assertFalse(env_check["SUPABASE_SERVICE_KEY"])
            self.assertTrue(env_check["ENV_NAME"])
            self.assertFalse(env_check["all_set"])
            self.assertNotIn("anon", str(env_check))

            features = client.get("/api/features").json()
            self.assertEqual(features["env"], "production")
            self.assertTrue(features["features"]["collections"]["generators"])
            self.assertFalse(features["features"]["collections"]["charters"])


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
