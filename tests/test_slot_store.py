from __future__ import annotations

import asyncio
import os
from pathlib import Path
import sys
import unittest

from redis.exceptions import ConnectionError as RedisConnectionError

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from app.store.slot_store import (
    GUEST_SLOTS,
    InMemorySlotStore,
    PersistentSlotStore,
    SLOT_LOCATION,
    SLOT_SAVED_PRODUCTS,
    SLOT_SESSION_STATE,
)


class _BrokenRedisBackend:
    def __init__(self) -> None:
        self.closed = False

    async def get(self, namespace, slot):
        raise RedisConnectionError("connection reset")

    async def set(self, namespace, slot, value):
        raise RedisConnectionError("connection reset")

    async def remove(self, namespace, *slots):
        raise RedisConnectionError("connection reset")

    async def close(self):
        self.closed = True


class TestInMemorySlotStore(unittest.IsolatedAsyncioTestCase):
    async def test_set_get_roundtrip(self) -> None:
        store = InMemorySlotStore(default_ttl_days=30.0)
        await store.set("guest_1", SLOT_LOCATION, '{"city":"Austin"}')
        self.assertEqual(await store.get("guest_1", SLOT_LOCATION), '{"city":"Austin"}')
        self.assertIsNone(await store.get("guest_2", SLOT_LOCATION))

    async def test_unknown_slot_rejected(self) -> None:
        store = InMemorySlotStore()
        with self.assertRaises(ValueError):
            await store.set("guest_1", "cart", "[]")

    async def test_blank_namespace_rejected(self) -> None:
        store = InMemorySlotStore()
        with self.assertRaises(ValueError):
            await store.get("   ", SLOT_LOCATION)

    async def test_remove_without_slots_clears_every_slot(self) -> None:
        store = InMemorySlotStore()
        for slot in GUEST_SLOTS:
            await store.set("guest_1", slot, "{}")
        await store.set("guest_2", SLOT_SESSION_STATE, "{}")

        await store.remove("guest_1")

        for slot in GUEST_SLOTS:
            self.assertIsNone(await store.get("guest_1", slot))
        self.assertEqual(await store.get("guest_2", SLOT_SESSION_STATE), "{}")

    async def test_remove_selected_slots(self) -> None:
        store = InMemorySlotStore()
        await store.set("guest_1", SLOT_LOCATION, "{}")
        await store.set("guest_1", SLOT_SAVED_PRODUCTS, "[]")
        await store.remove("guest_1", SLOT_LOCATION)
        self.assertIsNone(await store.get("guest_1", SLOT_LOCATION))
        self.assertEqual(await store.get("guest_1", SLOT_SAVED_PRODUCTS), "[]")

    async def test_ttl_expires(self) -> None:
        store = InMemorySlotStore(default_ttl_days=1.0 / 86400.0)
        await store.set("guest_1", SLOT_LOCATION, "{}")
        await asyncio.sleep(1.1)
        self.assertIsNone(await store.get("guest_1", SLOT_LOCATION))


class TestPersistentSlotStore(unittest.IsolatedAsyncioTestCase):
    async def test_initialize_without_url_uses_memory(self) -> None:
        os.environ["REDIS_URL"] = ""
        store = PersistentSlotStore(default_ttl_days=30.0)
        await store.initialize()
        self.assertEqual(store.backend_kind, "memory")

    async def test_initialize_falls_back_when_redis_unavailable(self) -> None:
        store = PersistentSlotStore(
            redis_url="redis://localhost:6390/0",
            connect_timeout_s=0.05,
            socket_timeout_s=0.05,
            default_ttl_days=30.0,
        )
        await store.initialize()
        self.assertEqual(store.backend_kind, "memory")

        await store.set("guest_1", SLOT_LOCATION, '{"zip":"78701"}')
        self.assertEqual(await store.get("guest_1", SLOT_LOCATION), '{"zip":"78701"}')

    async def test_redis_error_on_read_degrades_to_absent(self) -> None:
        store = PersistentSlotStore(default_ttl_days=30.0)
        broken = _BrokenRedisBackend()
        store._backend = broken
        store._backend_kind = "redis"

        self.assertIsNone(await store.get("guest_1", SLOT_LOCATION))
        self.assertEqual(store.backend_kind, "memory")
        self.assertTrue(broken.closed)

    async def test_redis_error_on_write_retries_in_memory(self) -> None:
        store = PersistentSlotStore(default_ttl_days=30.0)
        store._backend = _BrokenRedisBackend()
        store._backend_kind = "redis"

        await store.set("guest_1", SLOT_LOCATION, "{}")
        self.assertEqual(store.backend_kind, "memory")
        self.assertEqual(await store.get("guest_1", SLOT_LOCATION), "{}")
