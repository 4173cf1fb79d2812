from __future__ import annotations

import json
from pathlib import Path
import sys
import unittest

import httpx

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from app.errors import RemoteReadError, RemoteWriteError
from app.services.accounts import RestAccountProfiles, RestRoutineCollection
from app.services.guest_profile import EphemeralProfileStore
from app.services.reconciliation import ReconciliationEngine
from app.store.slot_store import InMemorySlotStore


BASE_URL = "https://accounts.test/rest/v1"


class FakeTable:
    """Answers PostgREST calls from a queue of canned responses and records each request."""

    def __init__(self, *responses: httpx.Response) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responses.pop(0)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def calls(self) -> list[str]:
        return [f"{r.method} {r.url.path.rsplit('/', 1)[-1]}?id={r.url.params.get('id')}" for r in self.requests]


class TestRestAccountProfiles(unittest.IsolatedAsyncioTestCase):
    async def test_read_returns_first_row(self) -> None:
        table = FakeTable(httpx.Response(200, json=[{"id": "u1", "skin_type": "oily", "concerns": None, "preferences": None}]))
        profiles = RestAccountProfiles(base_url=BASE_URL, api_key="k", transport=table.transport())

        profile = await profiles.read("u1")

        assert profile is not None
        self.assertEqual(profile.skin_type, "oily")
        self.assertEqual(profile.concerns, [])
        request = table.requests[0]
        self.assertEqual(request.url.params["id"], "eq.u1")
        self.assertEqual(request.headers["apikey"], "k")
        self.assertEqual(request.headers["Authorization"], "Bearer k")

    async def test_read_missing_row(self) -> None:
        table = FakeTable(httpx.Response(200, json=[]))
        profiles = RestAccountProfiles(base_url=BASE_URL, transport=table.transport())
        self.assertIsNone(await profiles.read("nobody"))

    async def test_read_error_status(self) -> None:
        table = FakeTable(httpx.Response(500, json={"message": "database unavailable"}))
        profiles = RestAccountProfiles(base_url=BASE_URL, transport=table.transport())

        with self.assertRaises(RemoteReadError) as ctx:
            await profiles.read("u1")

        self.assertEqual(str(ctx.exception), "database unavailable")
        self.assertEqual(ctx.exception.status, 500)

    async def test_transport_failure_is_a_read_error(self) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        profiles = RestAccountProfiles(base_url=BASE_URL, transport=httpx.MockTransport(refuse))
        with self.assertRaises(RemoteReadError):
            await profiles.read("u1")

    async def test_write_asks_for_updated_rows(self) -> None:
        table = FakeTable(httpx.Response(200, json=[{"id": "u1"}]))
        profiles = RestAccountProfiles(base_url=BASE_URL, transport=table.transport())

        await profiles.write("u1", {"skin_type": "dry"})

        request = table.requests[0]
        self.assertEqual(request.method, "PATCH")
        self.assertEqual(request.headers["Prefer"], "return=representation")
        self.assertEqual(json.loads(request.content), {"skin_type": "dry"})

    async def test_write_matching_no_row_fails(self) -> None:
        for response in (httpx.Response(200, json=[]), httpx.Response(204)):
            table = FakeTable(response)
            profiles = RestAccountProfiles(base_url=BASE_URL, transport=table.transport())
            with self.assertRaises(RemoteWriteError) as ctx:
                await profiles.write("u404", {"skin_type": "dry"})
            self.assertEqual(ctx.exception.status, 404)


class TestRestRoutineCollection(unittest.IsolatedAsyncioTestCase):
    async def test_list_ids(self) -> None:
        table = FakeTable(httpx.Response(200, json=[{"id": "r1"}, {"id": "r2"}, {"other": 1}]))
        routines = RestRoutineCollection(base_url=BASE_URL, transport=table.transport())

        self.assertEqual(await routines.list_ids("u1"), {"r1", "r2"})
        self.assertEqual(table.requests[0].url.params["user_id"], "eq.u1")

    async def test_insert_batch_conflict(self) -> None:
        table = FakeTable(httpx.Response(409, json={"message": "duplicate key value violates unique constraint"}))
        routines = RestRoutineCollection(base_url=BASE_URL, transport=table.transport())

        with self.assertRaises(RemoteWriteError) as ctx:
            await routines.insert_batch([{"id": "r1", "user_id": "u1"}])

        self.assertEqual(ctx.exception.status, 409)
        self.assertEqual(json.loads(table.requests[0].content), [{"id": "r1", "user_id": "u1"}])


class TestMergeAgainstRestProfiles(unittest.IsolatedAsyncioTestCase):
    async def test_guest_data_kept_when_account_row_is_missing(self) -> None:
        table = FakeTable(httpx.Response(200, json=[]), httpx.Response(200, json=[]))
        guest = EphemeralProfileStore(InMemorySlotStore(), "guest_rest")
        await guest.init()
        await guest.set_skin_type("oily")

        engine = ReconciliationEngine(
            guest=guest,
            accounts=RestAccountProfiles(base_url=BASE_URL, transport=table.transport()),
            routines=RestRoutineCollection(base_url=BASE_URL, transport=table.transport()),
        )
        result = await engine.merge_guest_data_to_account("u404")

        self.assertEqual(table.calls(), ["GET users_profiles?id=eq.u404", "PATCH users_profiles?id=eq.u404"])
        self.assertFalse(result.success)
        self.assertEqual(len(result.errors), 1)
        self.assertEqual((await guest.get_profile()).skin_type, "oily")
