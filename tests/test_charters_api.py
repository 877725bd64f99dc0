"""End-to-end tests for exploration charters."""

from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from fastapi.testclient import TestClient

from toolsmith.config import Settings
from toolsmith.database import Database
from toolsmith.features import FeatureFlags
from toolsmith.service import create_app


class CharterApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tempdir = tempfile.TemporaryDirectory()
        self.db_path = Path(self._tempdir.name) / "toolsmith.sqlite3"
        self.database = Database(self.db_path)
        self.database.initialize()
        self.user = self.database.create_profile("tester@example.com", "Secret123")
        self.other = self.database.create_profile("other@example.com", "Secret123")
        self.app = self._app(FeatureFlags.all_enabled())

    def tearDown(self) -> None:
        self._tempdir.cleanup()

    def _app(self, flags: FeatureFlags):
        settings = Settings(env_name="local", database_path=self.db_path, session_secure=False)
        return create_app(database=self.database, settings=settings, features=flags)

    def _headers(self, profile, app=None) -> dict:
        token = (app or self.app).state.session_manager.create(profile.id)
        return {"Authorization": f"Bearer {token}"}

    def test_charter_lifecycle(self) -> None:
        headers = self._headers(self.user)
        with TestClient(self.app) as client:
            created = client.post(
                "/api/charters",
                json={"goal": "  Explore checkout  ", "hypotheses": "Coupons break totals"},
                headers=headers,
            )
            self.assertEqual(created.status_code, 201, created.text)
            charter = created.json()["data"]
            self.assertEqual(charter["goal"], "Explore checkout")
            self.assertEqual(charter["status"], "active")
            self.assertIsNone(charter["ended_at"])
            charter_id = charter["id"]

            second = client.post("/api/charters", json={"goal": "Another"}, headers=headers)
            self.assertEqual(second.status_code, 409)

            note = client.post(
                f"/api/charters/{charter_id}/notes",
                json={"tag": "bug", "body": "Total goes negative"},
                headers=headers,
            )
            self.assertEqual(note.status_code, 201, note.text)

            bad_tag = client.post(
                f"/api/charters/{charter_id}/notes",
                json={"tag": "todo", "body": "Nope"},
                headers=headers,
            )
            self.assertEqual(bad_tag.status_code, 400)

            stopped = client.post(f"/api/charters/{charter_id}/stop", headers=headers)
            self.assertEqual(stopped.status_code, 200)
            self.assertEqual(stopped.json()["data"]["status"], "closed")
            self.assertIsNotNone(stopped.json()["data"]["ended_at"])

            stopped_again = client.post(f"/api/charters/{charter_id}/stop", headers=headers)
            self.assertEqual(stopped_again.status_code, 409)

            late_note = client.post(
                f"/api/charters/{charter_id}/notes",
                json={"tag": "idea", "body": "Too late"},
                headers=headers,
            )
            self.assertEqual(late_note.status_code, 409)

            resumed = client.post(f"/api/charters/{charter_id}/start", headers=headers)
            self.assertEqual(resumed.status_code, 200)
            self.assertEqual(resumed.json()["data"]["status"], "active")

            started_again = client.post(f"/api/charters/{charter_id}/start", headers=headers)
            self.assertEqual(started_again.status_code, 409)

            notes = client.get(f"/api/charters/{charter_id}/notes", headers=headers)
            self.assertEqual([item["tag"] for item in notes.json()["items"]], ["bug"])

        actions = [event.meta["action"] for event in self.database.list_usage_events(kind="charter")]
        self.assertEqual(actions, ["start", "stop"])

    def test_update_bumps_version(self) -> None:
        headers = self._headers(self.user)
        with TestClient(self.app) as client:
            charter_id = client.post("/api/charters", json={"goal": "Explore search"}, headers=headers).json()["data"]["id"]

            updated = client.patch(
                f"/api/charters/{charter_id}",
                json={"summary_notes": "Found two bugs"},
                headers=headers,
            )
            self.assertEqual(updated.status_code, 200, updated.text)
            self.assertEqual(updated.json()["data"]["summary_notes"], "Found two bugs")
            self.assertEqual(updated.json()["data"]["version"], 2)

            empty = client.patch(f"/api/charters/{charter_id}", json={}, headers=headers)
            self.assertEqual(empty.status_code, 400)
            self.assertEqual(empty.json()["error"]["code"], "NO_CHANGES")

            too_long = client.patch(f"/api/charters/{charter_id}", json={"goal": "x" * 501}, headers=headers)
            self.assertEqual(too_long.status_code, 400)

    def test_charters_are_private_to_their_owner(self) -> None:
        with TestClient(self.app) as client:
            charter_id = client.post(
                "/api/charters",
                json={"goal": "Private session"},
                headers=self._headers(self.user),
            ).json()["data"]["id"]

            intruder = self._headers(self.other)
            self.assertEqual(client.get(f"/api/charters/{charter_id}", headers=intruder).status_code, 404)
            self.assertEqual(client.post(f"/api/charters/{charter_id}/stop", headers=intruder).status_code, 404)
            self.assertEqual(client.get("/api/charters", headers=intruder).json()["items"], [])

            self.assertEqual(client.get("/api/charters").status_code, 401)

    def test_listing_pages_through_history(self) -> None:
        headers = self._headers(self.user)
        with TestClient(self.app) as client:
            for index in range(3):
                charter_id = client.post(
                    "/api/charters", json={"goal": f"Session {index}"}, headers=headers
                ).json()["data"]["id"]
                client.post(f"/api/charters/{charter_id}/stop", headers=headers)

            first = client.get("/api/charters", params={"limit": 2}, headers=headers).json()
            self.assertEqual(len(first["items"]), 2)
            self.assertIsNotNone(first["next_cursor"])

            second = client.get(
                "/api/charters",
                params={"limit": 2, "after": first["next_cursor"]},
                headers=headers,
            ).json()
            self.assertEqual(len(second["items"]), 1)
            self.assertIsNone(second["next_cursor"])
            self.assertEqual(second["items"][0]["goal"], "Session 0")

    def test_export_renders_markdown(self) -> None:
        headers = self._headers(self.user)
        with TestClient(self.app) as client:
            charter_id = client.post(
                "/api/charters",
                json={"goal": "Explore login", "hypotheses": "Lockout is missing"},
                headers=headers,
            ).json()["data"]["id"]
            client.post(
                f"/api/charters/{charter_id}/notes",
                json={"tag": "risk", "body": "No rate limiting on reset"},
                headers=headers,
            )

            exported = client.get(f"/api/charters/{charter_id}/export", headers=headers)
            self.assertEqual(exported.status_code, 200, exported.text)
            markdown = exported.json()["markdown"]
            self.assertTrue(markdown.startswith("# Exploration charter: Explore login"))
            self.assertIn("## Hypotheses", markdown)
            self.assertIn("**[risk]**", markdown)
            self.assertIn("No rate limiting on reset", markdown)

    def test_export_hidden_without_export_flag(self) -> None:
        flags = FeatureFlags({"collections": {"charters": True, "export": False}})
        app = self._app(flags)
        headers = self._headers(self.user, app)
        with TestClient(app) as client:
            charter_id = client.post("/api/charters", json={"goal": "Explore"}, headers=headers).json()["data"]["id"]
            self.assertEqual(client.get(f"/api/charters/{charter_id}/export", headers=headers).status_code, 404)
            self.assertEqual(client.get(f"/api/charters/{charter_id}", headers=headers).status_code, 200)

    def test_routes_hidden_when_flag_disabled(self) -> None:
        app = self._app(FeatureFlags())
        with TestClient(app) as client:
            response = client.get("/api/charters", headers=self._headers(self.user, app))
        self.assertEqual(response.status_code, 404)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
