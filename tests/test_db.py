import asyncio

import pytest
from pymongo import ReturnDocument

from conftest import FakeDb
from ecobites.contributions import CONTRIBUTION_POINTS
from ecobites.db import ActivityStore, ping_db


class FakeStatsCollection:
    """Applies $inc/$set/$setOnInsert in one step, like a single Mongo update."""

    def __init__(self):
        self.docs = {}
        self.calls = []

    async def find_one_and_update(self, query, update, upsert=False, return_document=ReturnDocument.BEFORE):
        self.calls.append(return_document)
        await asyncio.sleep(0)
        key = query["user_id"]
        before = self.docs.get(key)
        doc = dict(before or {"user_id": key})
        if before is None:
            doc.update(update.get("$setOnInsert", {}))
        for field, amount in update.get("$inc", {}).items():
            doc[field] = doc.get(field, 0) + amount
        doc.update(update.get("$set", {}))
        self.docs[key] = doc
        return dict(doc) if return_document == ReturnDocument.AFTER else before


class FakeStatsDb(dict):
    def __missing__(self, name):
        self[name] = FakeStatsCollection()
        return self[name]


@pytest.mark.asyncio
async def test_concurrent_awards_report_post_update_totals():
    db = FakeStatsDb()
    store = ActivityStore(db)
    results = await asyncio.gather(*[store.award_points("u1", CONTRIBUTION_POINTS) for _ in range(3)])
    assert sorted(r["points"] for r in results) == [10, 20, 30]
    stored = store.user_stats.docs["u1"]
    assert stored["points"] == 30
    assert stored["total_contributions"] == 3
    assert "level" not in stored
    assert set(store.user_stats.calls) == {ReturnDocument.AFTER}


@pytest.mark.asyncio
async def test_award_points_failure_is_swallowed():
    class _Broken(FakeStatsCollection):
        async def find_one_and_update(self, *args, **kwargs):
            raise ConnectionError("mongo down")

    db = FakeStatsDb()
    store = ActivityStore(db)
    store.user_stats = _Broken()
    assert await store.award_points("u1", CONTRIBUTION_POINTS) is None


@pytest.mark.asyncio
async def test_ping_db_reports_reachability():
    assert await ping_db(FakeDb()) is True
    assert await ping_db(FakeDb(up=False)) is False


@pytest.mark.asyncio
async def test_ping_db_gives_up_after_timeout():
    class _Hanging:
        async def command(self, name, **kwargs):
            await asyncio.sleep(10)

    assert await ping_db(_Hanging(), timeout=0.05) is False
