from __future__ import annotations

import os
from pathlib import Path
import sys
import unittest
import uuid

from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from app.main import create_app


def _guest_headers() -> dict[str, str]:
    return {"X-Guest-ID": f"guest_test_{uuid.uuid4().hex}"}


class TestGuestEndpoints(unittest.TestCase):
    def setUp(self) -> None:
        os.environ["REDIS_URL"] = ""
        self.app = create_app()

    def test_guest_id_header_required(self) -> None:
        with TestClient(self.app) as client:
            res = client.get("/v1/guest/profile")
        self.assertEqual(res.status_code, 400)

    def test_session_start_returns_empty_profile(self) -> None:
        headers = _guest_headers()
        with TestClient(self.app) as client:
            res = client.post("/v1/guest/session", headers=headers)

        self.assertEqual(res.status_code, 200)
        data = res.json()
        self.assertTrue(data["ok"])
        self.assertEqual(data["guest_id"], headers["X-Guest-ID"])
        self.assertIsNone(data["profile"]["skinType"])
        self.assertEqual(data["profile"]["savedProducts"], [])

    def test_patch_then_read_profile(self) -> None:
        headers = _guest_headers()
        with TestClient(self.app) as client:
            patch_res = client.post(
                "/v1/guest/profile/patch",
                headers=headers,
                json={
                    "skinType": "combination",
                    "concerns": ["pores", "dullness"],
                    "preferences": {"budgetRange": "mid"},
                    "location": {"city": "Austin", "state": "TX", "zip": "78701"},
                },
            )
            self.assertEqual(patch_res.status_code, 200)
            res = client.get("/v1/guest/profile", headers=headers)

        profile = res.json()["profile"]
        self.assertEqual(profile["skinType"], "combination")
        self.assertEqual(profile["concerns"], ["pores", "dullness"])
        self.assertEqual(profile["preferences"], {"budgetRange": "mid"})
        self.assertEqual(profile["location"]["city"], "Austin")

    def test_patch_rejects_non_list_concerns(self) -> None:
        with TestClient(self.app) as client:
            res = client.post("/v1/guest/profile/patch", headers=_guest_headers(), json={"concerns": "acne"})
        self.assertEqual(res.status_code, 400)

    def test_unknown_interaction_type_rejected(self) -> None:
        with TestClient(self.app) as client:
            res = client.post(
                "/v1/guest/interactions",
                headers=_guest_headers(),
                json={"type": "hover", "target": "hero"},
            )
        self.assertEqual(res.status_code, 400)

    def test_saved_products_and_routines(self) -> None:
        headers = _guest_headers()
        with TestClient(self.app) as client:
            first = client.post("/v1/guest/products/saved", headers=headers, json={"id": 4, "name": "Niacinamide Serum"})
            again = client.post("/v1/guest/products/saved", headers=headers, json={"product": {"id": 4}})
            routine = client.post(
                "/v1/guest/routines",
                headers=headers,
                json={"routine": {"id": "r1", "name": "AM", "timeOfDay": "morning"}},
            )
            removed = client.delete("/v1/guest/products/saved/4", headers=headers)
            profile = client.get("/v1/guest/profile", headers=headers).json()["profile"]

        self.assertTrue(first.json()["saved"])
        self.assertFalse(again.json()["saved"])
        self.assertEqual(routine.status_code, 200)
        self.assertTrue(routine.json()["routine"]["createdAt"])
        self.assertTrue(removed.json()["removed"])
        self.assertEqual(profile["savedProducts"], [])
        self.assertEqual([r["id"] for r in profile["routines"]], ["r1"])

    def test_clear_reports_whether_anything_was_removed(self) -> None:
        headers = _guest_headers()
        with TestClient(self.app) as client:
            client.post("/v1/guest/search", headers=headers, json={"query": "retinol"})
            first = client.delete("/v1/guest/profile", headers=headers)
            second = client.delete("/v1/guest/profile", headers=headers)

        self.assertTrue(first.json()["cleared"])
        self.assertFalse(second.json()["cleared"])

    def test_behavior_and_context(self) -> None:
        headers = _guest_headers()
        with TestClient(self.app) as client:
            client.post("/v1/guest/session", headers=headers)
            client.post("/v1/guest/navigate", headers=headers, json={"page": "/discover"})
            client.post("/v1/guest/actions", headers=headers, json={"action": "quiz"})
            client.post("/v1/guest/products/viewed", headers=headers, json={"productId": 5})
            behavior = client.get("/v1/guest/behavior", headers=headers)
            context = client.get("/v1/guest/context", headers=headers)

        self.assertEqual(behavior.status_code, 200)
        patterns = behavior.json()
        self.assertIn(patterns["engagementLevel"], {"low", "medium", "high"})
        self.assertEqual(patterns["preferredFeatures"], ["discover"])

        ctx = context.json()
        self.assertEqual(ctx["context"]["currentPage"], "/discover")
        self.assertEqual(ctx["context"]["completedActions"], ["quiz"])
        self.assertEqual(ctx["context"]["viewedProducts"], ["5"])
        self.assertEqual(len(ctx["recentInteractions"]), 3)
