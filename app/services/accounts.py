from __future__ import annotations

import asyncio
import copy
import logging
import os
from typing import Any, Mapping, Optional, Protocol

import httpx

from app.errors import RemoteReadError, RemoteWriteError
from app.models import AccountProfile
from app.store.slot_store import env_float


logger = logging.getLogger("glow-core.accounts")

ACCOUNT_API_BASE_URL = (os.getenv("ACCOUNT_API_BASE_URL") or "").strip().rstrip("/") or None
ACCOUNT_API_KEY = (os.getenv("ACCOUNT_API_KEY") or "").strip() or None
ACCOUNT_API_TIMEOUT_S = env_float("ACCOUNT_API_TIMEOUT_S", 10.0)

PROFILES_TABLE = "users_profiles"
ROUTINES_TABLE = "user_routines"


class AccountProfileService(Protocol):
    async def read(self, user_id: str) -> Optional[AccountProfile]: ...

    async def write(self, user_id: str, partial_update: Mapping[str, Any]) -> None: ...


class RoutineCollectionService(Protocol):
    async def list_ids(self, user_id: str) -> set[str]: ...

    async def insert_batch(self, rows: list[dict[str, Any]]) -> None: ...


class InMemoryAccountProfiles(AccountProfileService):
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._rows: dict[str, dict[str, Any]] = {}

    async def read(self, user_id: str) -> Optional[AccountProfile]:
        async with self._lock:
            row = self._rows.get(user_id)
            if row is None:
                return None
            return AccountProfile.model_validate(copy.deepcopy(row))

    async def write(self, user_id: str, partial_update: Mapping[str, Any]) -> None:
        async with self._lock:
            row = self._rows.get(user_id) or {"id": user_id}
            self._rows[user_id] = {**row, **copy.deepcopy(dict(partial_update))}

    async def seed(self, profile: AccountProfile) -> None:
        if not profile.id:
            raise ValueError("profile id required")
        async with self._lock:
            self._rows[profile.id] = profile.model_dump()


class InMemoryRoutineCollection(RoutineCollectionService):
    """Routine rows keyed by id; inserting an id that already exists fails."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._rows: dict[str, dict[str, Any]] = {}

    async def list_ids(self, user_id: str) -> set[str]:
        async with self._lock:
            return {rid for rid, row in self._rows.items() if row.get("user_id") == user_id}

    async def insert_batch(self, rows: list[dict[str, Any]]) -> None:
        async with self._lock:
            ids = [str(row.get("id") or "") for row in rows]
            if any(not rid for rid in ids):
                raise RemoteWriteError(ROUTINES_TABLE, "routine id required")
            dupes = sorted({rid for rid in ids if rid in self._rows or ids.count(rid) > 1})
            if dupes:
                raise RemoteWriteError(ROUTINES_TABLE, f"duplicate routine id: {', '.join(dupes)}", status=409)
            for rid, row in zip(ids, rows):
                self._rows[rid] = copy.deepcopy(row)

    async def rows_for(self, user_id: str) -> list[dict[str, Any]]:
        async with self._lock:
            return [copy.deepcopy(row) for row in self._rows.values() if row.get("user_id") == user_id]


async def _rest_json(
    method: str,
    path: str,
    *,
    base_url: str,
    api_key: Optional[str],
    timeout_s: float,
    params: Optional[dict[str, Any]] = None,
    json_body: Any = None,
    error_cls: type[RemoteReadError] | type[RemoteWriteError] = RemoteReadError,
    prefer: str = "return=minimal",
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Any:
    url = f"{base_url}/{path.lstrip('/')}"
    headers: dict[str, str] = {"Prefer": prefer}
    if json_body is not None:
        headers["Content-Type"] = "application/json"
    if api_key:
        headers["apikey"] = api_key
        headers["Authorization"] = f"Bearer {api_key}"

    try:
        async with httpx.AsyncClient(timeout=timeout_s, transport=transport) as client:
            res = await client.request(method, url, headers=headers, params=params, json=json_body)
    except httpx.HTTPError as exc:
        raise error_cls(path, f"{method} {path} failed: {exc.__class__.__name__}") from exc

    if res.status_code >= 400:
        try:
            body: Any = res.json()
        except ValueError:
            body = {"raw": res.text[:500]}
        message = body.get("message") if isinstance(body, dict) else None
        raise error_cls(path, str(message or f"{method} {path} returned {res.status_code}"), status=res.status_code, detail=body)

    if not res.content:
        return None
    try:
        return res.json()
    except ValueError:
        return None


class _RestTable:
    def __init__(
        self,
        *,
        base_url: str,
        api_key: Optional[str] = None,
        timeout_s: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout_s = timeout_s
        self._transport = transport

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        return await _rest_json(
            method,
            path,
            base_url=self._base_url,
            api_key=self._api_key,
            timeout_s=self._timeout_s,
            transport=self._transport,
            **kwargs,
        )


class RestAccountProfiles(_RestTable, AccountProfileService):
    """PostgREST-style ``users_profiles`` table."""

    async def read(self, user_id: str) -> Optional[AccountProfile]:
        data = await self._request(
            "GET",
            PROFILES_TABLE,
            params={"id": f"eq.{user_id}", "select": "id,skin_type,concerns,preferences,updated_at"},
        )
        if not isinstance(data, list) or not data:
            return None
        return AccountProfile.model_validate(data[0])

    async def write(self, user_id: str, partial_update: Mapping[str, Any]) -> None:
        # PostgREST answers 2xx for a PATCH that matches no row.
        data = await self._request(
            "PATCH",
            PROFILES_TABLE,
            params={"id": f"eq.{user_id}", "select": "id"},
            json_body=dict(partial_update),
            error_cls=RemoteWriteError,
            prefer="return=representation",
        )
        if not isinstance(data, list) or not data:
            logger.warning("account_profile_write_missed user_id=%s", user_id)
            raise RemoteWriteError(PROFILES_TABLE, f"no account profile row for user {user_id}", status=404)


class RestRoutineCollection(_RestTable, RoutineCollectionService):
    """PostgREST-style ``user_routines`` table; ``id`` is its primary key."""

    async def list_ids(self, user_id: str) -> set[str]:
        data = await self._request(
            "GET",
            ROUTINES_TABLE,
            params={"user_id": f"eq.{user_id}", "select": "id"},
        )
        if not isinstance(data, list):
            return set()
        return {str(row["id"]) for row in data if isinstance(row, dict) and row.get("id")}

    async def insert_batch(self, rows: list[dict[str, Any]]) -> None:
        await self._request("POST", ROUTINES_TABLE, json_body=rows, error_cls=RemoteWriteError)


def build_account_backends(
    base_url: Optional[str] = ACCOUNT_API_BASE_URL,
    api_key: Optional[str] = ACCOUNT_API_KEY,
) -> tuple[AccountProfileService, RoutineCollectionService, str]:
    if not base_url:
        logger.info("account_backend=memory reason=missing_ACCOUNT_API_BASE_URL")
        return InMemoryAccountProfiles(), InMemoryRoutineCollection(), "memory"

    logger.info("account_backend=rest base_url=%s", base_url)
    return (
        RestAccountProfiles(base_url=base_url, api_key=api_key, timeout_s=ACCOUNT_API_TIMEOUT_S),
        RestRoutineCollection(base_url=base_url, api_key=api_key, timeout_s=ACCOUNT_API_TIMEOUT_S),
        "rest",
    )


ACCOUNT_PROFILES, ROUTINE_COLLECTION, ACCOUNT_BACKEND_KIND = build_account_backends()
