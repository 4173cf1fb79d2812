from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Optional, Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError


logger = logging.getLogger("glow-core.slot-store")

SLOT_SESSION_STATE = "session_state"
SLOT_SURVEY_ANSWERS = "survey_answers"
SLOT_SAVED_PRODUCTS = "saved_products"
SLOT_ROUTINES = "routines"
SLOT_LOCATION = "location"

GUEST_SLOTS: tuple[str, ...] = (
    SLOT_SESSION_STATE,
    SLOT_SURVEY_ANSWERS,
    SLOT_SAVED_PRODUCTS,
    SLOT_ROUTINES,
    SLOT_LOCATION,
)


class SlotStore(Protocol):
    async def get(self, namespace: str, slot: str) -> Optional[str]: ...

    async def set(self, namespace: str, slot: str, value: str) -> None: ...

    async def remove(self, namespace: str, *slots: str) -> None: ...

    async def close(self) -> None: ...


def _normalize_namespace(namespace: str) -> str:
    if not isinstance(namespace, str):
        raise TypeError("namespace must be a string")
    normalized = namespace.strip()
    if not normalized:
        raise ValueError("namespace must be non-empty")
    if len(normalized) > 200:
        raise ValueError("namespace too long")
    return normalized


def _check_slot(slot: str) -> str:
    if slot not in GUEST_SLOTS:
        raise ValueError(f"unknown slot: {slot}")
    return slot


def _coerce_ttl_seconds(ttl_days: float) -> float:
    if ttl_days <= 0:
        return 0.0
    return ttl_days * 86400.0


class InMemorySlotStore(SlotStore):
    def __init__(self, *, default_ttl_days: float = 30.0) -> None:
        self._ttl_seconds = _coerce_ttl_seconds(default_ttl_days)
        self._lock = asyncio.Lock()
        self._items: dict[tuple[str, str], tuple[str, Optional[float]]] = {}

    async def get(self, namespace: str, slot: str) -> Optional[str]:
        key = (_normalize_namespace(namespace), _check_slot(slot))
        async with self._lock:
            record = self._items.get(key)
            if not record:
                return None
            value, expires_at = record
            if expires_at is not None and time.monotonic() >= expires_at:
                self._items.pop(key, None)
                return None
            return value

    async def set(self, namespace: str, slot: str, value: str) -> None:
        key = (_normalize_namespace(namespace), _check_slot(slot))
        expires_at = None if self._ttl_seconds <= 0 else (time.monotonic() + self._ttl_seconds)
        async with self._lock:
            self._items[key] = (value, expires_at)

    async def remove(self, namespace: str, *slots: str) -> None:
        ns = _normalize_namespace(namespace)
        keys = [(ns, _check_slot(slot)) for slot in (slots or GUEST_SLOTS)]
        async with self._lock:
            for key in keys:
                self._items.pop(key, None)

    async def close(self) -> None:
        return None


class RedisSlotStore(SlotStore):
    def __init__(
        self,
        *,
        redis_url: str,
        default_ttl_days: float = 30.0,
        connect_timeout_s: float = 1.0,
        socket_timeout_s: float = 1.0,
        key_prefix: str = "glow_guest",
    ) -> None:
        self._ttl_seconds = int(max(1.0, _coerce_ttl_seconds(default_ttl_days))) if default_ttl_days > 0 else 0
        self._key_prefix = key_prefix.strip(":") or "glow_guest"
        self._redis = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=connect_timeout_s,
            socket_timeout=socket_timeout_s,
        )

    async def ping(self) -> None:
        await self._redis.ping()

    def _key(self, namespace: str, slot: str) -> str:
        return f"{self._key_prefix}:{_normalize_namespace(namespace)}:{_check_slot(slot)}"

    async def get(self, namespace: str, slot: str) -> Optional[str]:
        raw = await self._redis.get(self._key(namespace, slot))
        return raw or None

    async def set(self, namespace: str, slot: str, value: str) -> None:
        if self._ttl_seconds > 0:
            await self._redis.set(self._key(namespace, slot), value, ex=self._ttl_seconds)
        else:
            await self._redis.set(self._key(namespace, slot), value)

    async def remove(self, namespace: str, *slots: str) -> None:
        keys = [self._key(namespace, slot) for slot in (slots or GUEST_SLOTS)]
        # One DEL so a guest session is never left half-cleared.
        await self._redis.delete(*keys)

    async def close(self) -> None:
        try:
            await self._redis.aclose()
        except RedisError as exc:
            logger.warning("redis_slot_store_close_failed err=%s", exc)


class PersistentSlotStore(SlotStore):
    """Redis when configured and reachable, memory otherwise.

    Redis errors after startup switch the store to memory for the rest of the
    process; reads that hit such an error report the slot as absent.
    """

    def __init__(
        self,
        *,
        redis_url: Optional[str] = None,
        default_ttl_days: Optional[float] = None,
        connect_timeout_s: float = 1.0,
        socket_timeout_s: float = 1.0,
        key_prefix: str = "glow_guest",
    ) -> None:
        self._redis_url = redis_url
        self._default_ttl_days = default_ttl_days
        self._connect_timeout_s = connect_timeout_s
        self._socket_timeout_s = socket_timeout_s
        self._key_prefix = key_prefix

        self._backend: SlotStore = InMemorySlotStore(default_ttl_days=self._ttl_days())
        self._backend_kind = "memory"

    @property
    def backend_kind(self) -> str:
        return self._backend_kind

    def _ttl_days(self) -> float:
        if self._default_ttl_days is not None:
            return self._default_ttl_days
        return env_float("GUEST_SLOT_TTL_DAYS", 30.0)

    async def initialize(self) -> None:
        redis_url = (self._redis_url or os.getenv("REDIS_URL") or "").strip() or None

        if not redis_url:
            self._backend = InMemorySlotStore(default_ttl_days=self._ttl_days())
            self._backend_kind = "memory"
            logger.info("slot_store_backend=memory reason=missing_REDIS_URL")
            return

        try:
            redis_backend = RedisSlotStore(
                redis_url=redis_url,
                default_ttl_days=self._ttl_days(),
                connect_timeout_s=self._connect_timeout_s,
                socket_timeout_s=self._socket_timeout_s,
                key_prefix=self._key_prefix,
            )
            await redis_backend.ping()
        except (RedisError, OSError, ValueError) as exc:
            self._backend = InMemorySlotStore(default_ttl_days=self._ttl_days())
            self._backend_kind = "memory"
            logger.warning("slot_store_backend=memory reason=redis_unavailable err=%s", exc)
            return

        self._backend = redis_backend
        self._backend_kind = "redis"
        logger.info("slot_store_backend=redis")

    async def get(self, namespace: str, slot: str) -> Optional[str]:
        try:
            return await self._backend.get(namespace, slot)
        except RedisError as exc:
            logger.warning("slot_store_get_failed backend=%s slot=%s err=%s", self._backend_kind, slot, exc)
            await self._fallback_to_memory(reason="redis_error")
            return None

    async def set(self, namespace: str, slot: str, value: str) -> None:
        try:
            await self._backend.set(namespace, slot, value)
        except RedisError as exc:
            logger.warning("slot_store_set_failed backend=%s slot=%s err=%s", self._backend_kind, slot, exc)
            await self._fallback_to_memory(reason="redis_error")
            await self._backend.set(namespace, slot, value)

    async def remove(self, namespace: str, *slots: str) -> None:
        try:
            await self._backend.remove(namespace, *slots)
        except RedisError as exc:
            logger.warning("slot_store_remove_failed backend=%s err=%s", self._backend_kind, exc)
            await self._fallback_to_memory(reason="redis_error")
            await self._backend.remove(namespace, *slots)

    async def _fallback_to_memory(self, *, reason: str) -> None:
        if self._backend_kind == "memory":
            return
        await self._backend.close()
        self._backend = InMemorySlotStore(default_ttl_days=self._ttl_days())
        self._backend_kind = "memory"
        logger.warning("slot_store_backend=memory reason=%s", reason)

    async def close(self) -> None:
        await self._backend.close()


def env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


PERSISTENT_SLOT_STORE = PersistentSlotStore()
