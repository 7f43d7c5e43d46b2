from __future__ import annotations

import aiosqlite
import pytest

from powerguard.domain.errors import StoreError
from powerguard.domain.models import GeofenceRegion
from powerguard.storage.sqlite_repo import SQLiteKeyValueStore
from powerguard.storage.state import KEY_REGION, GeofenceRegionStore, read_or_default


@pytest.fixture
async def kv(tmp_path):
    store = SQLiteKeyValueStore(str(tmp_path / "state.db"))
    await store.init()
    yield store
    await store.close()


class TestSQLiteKeyValueStore:
    async def test_missing_key(self, kv):
        assert await kv.get("nothing") is None

    async def test_set_get_overwrite(self, kv):
        await kv.set("timer.last_seconds", 120)
        await kv.set("timer.last_seconds", 300)
        assert await kv.get("timer.last_seconds") == 300

    async def test_json_values(self, kv):
        value = {"outlets": [{"id": "1", "canonical_state": True}], "cycle": 4}
        await kv.set("blob", value)
        assert await kv.get("blob") == value

    async def test_batch_write(self, kv):
        await kv.set_batch({"a": 1, "b": [1, 2]})
        assert await kv.get("a") == 1
        assert await kv.get("b") == [1, 2]

    async def test_corrupt_value_raises(self, kv, tmp_path):
        async with aiosqlite.connect(str(tmp_path / "state.db")) as db:
            await db.execute(
                "INSERT INTO kv(key, value, updated_at) VALUES (?, ?, ?)",
                ("broken", "{not json", "2026-03-01T08:00:00+00:00"),
            )
            await db.commit()

        with pytest.raises(StoreError):
            await kv.get("broken")
        assert await read_or_default(kv, "broken", 42) == 42

    async def test_unreadable_database_raises(self, tmp_path):
        store = SQLiteKeyValueStore(str(tmp_path / "missing-dir" / "state.db"))
        with pytest.raises(StoreError):
            await store.get("anything")


class TestGeofenceRegionStore:
    async def test_round_trip_through_sqlite(self, kv):
        regions = GeofenceRegionStore(kv)
        await regions.save(GeofenceRegion(center_lat=-6.2, center_lng=106.8, radius_m=150))

        reloaded = GeofenceRegionStore(kv)
        region = await reloaded.load()

        assert region == GeofenceRegion(center_lat=-6.2, center_lng=106.8, radius_m=150, enabled=True)

    async def test_set_enabled(self, kv):
        regions = GeofenceRegionStore(kv)
        assert await regions.set_enabled(False) is None

        await regions.save(GeofenceRegion(center_lat=0, center_lng=0, radius_m=50))
        region = await regions.set_enabled(False)

        assert region.enabled is False
        assert (await kv.get(KEY_REGION))["enabled"] is False
