import os
import sys
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import itertools
from datetime import datetime, timezone

import httpx
import pytest

from ecobites.cache import ResolverCache
from ecobites.catalog import CatalogClient
from ecobites.vision import ModelVariant


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeVariant(ModelVariant):
    """Replays scripted answers; an Exception instance is raised instead."""

    def __init__(self, name, *answers):
        self.name = name
        self.answers = list(answers)
        self.calls = []

    async def generate(self, prompt, image=None):
        self.calls.append((prompt, image))
        answer = self.answers.pop(0) if len(self.answers) > 1 else self.answers[0]
        if isinstance(answer, BaseException):
            raise answer
        return answer


class FakeSharedStore:
    def __init__(self, shared=None, fail=False):
        self.shared = list(shared or [])
        self.pending = {}
        self.fail = fail
        self.queries = []
        self._ids = itertools.count(1)

    async def query_verified_by_name_prefix(self, prefix, limit=5):
        self.queries.append(prefix)
        if self.fail:
            raise ConnectionError("mongo down")
        hits = [
            r for r in self.shared
            if r.get("verified") and (r.get("product_name_lower") or "").startswith(prefix)
        ]
        return hits[:limit]

    async def insert_pending(self, record):
        pid = f"p{next(self._ids)}"
        doc = {**record, "verified": False, "status": "pending", "id": pid}
        self.pending[pid] = doc
        return dict(doc)

    async def insert_approved(self, record):
        doc = {k: v for k, v in record.items() if k != "id"}
        doc.update({"verified": True, "approved": True, "status": "approved"})
        doc["id"] = f"s{next(self._ids)}"
        self.shared.append(doc)
        return dict(doc)

    async def get_pending(self, pending_id):
        doc = self.pending.get(pending_id)
        return dict(doc) if doc else None

    async def delete_pending(self, pending_id):
        return self.pending.pop(pending_id, None) is not None

    async def list_pending(self, limit=50):
        return list(self.pending.values())[:limit]

    async def count_contributions(self, user_id):
        if self.fail:
            raise ConnectionError("mongo down")
        return sum(1 for r in self.shared if r.get("user_id") == user_id)

    async def recent_contributions(self, user_id, limit=5):
        return [r for r in self.shared if r.get("user_id") == user_id][:limit]


class FakeActivityStore:
    def __init__(self, fail_writes=False):
        self.searches = []
        self.scans = []
        self.points = {}
        self.fail_writes = fail_writes

    async def record_search(self, query, product_id=None, user_id=None):
        if self.fail_writes:
            return None
        doc = {"id": f"h{len(self.searches) + 1}", "query": query, "product_id": product_id,
               "user_id": user_id, "created_at": datetime.now(timezone.utc)}
        self.searches.append(doc)
        return doc

    async def recent_searches(self, limit=10, user_id=None):
        rows = [s for s in self.searches if not user_id or s["user_id"] == user_id]
        return list(reversed(rows))[:limit]

    async def record_scan(self, user_id, product, provenance):
        self.scans.append({"user_id": user_id, "product": product, "provenance": provenance})

    async def count_scans(self, user_id):
        return sum(1 for s in self.scans if s["user_id"] == user_id)

    async def award_points(self, user_id, points):
        if self.fail_writes:
            return None
        self.points[user_id] = self.points.get(user_id, 0) + points
        return {"user_id": user_id, "points": self.points[user_id]}


def verified_record(name, brand=None, **extra):
    record = {
        "id": extra.pop("id", name.lower().replace(" ", "-")),
        "product_name": name,
        "product_name_lower": name.lower(),
        "brand": brand,
        "verified": True,
        "nutrition": {"energy": 400, "fat": 12, "sugars": 20, "salt": 0.3},
        "nutri_score": "C",
        "eco_score": "B",
    }
    record.update(extra)
    return record


class CatalogRouter:
    """httpx.MockTransport handler that counts requests per path."""

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        handler = self.routes.get(request.url.path)
        if handler is None:
            return httpx.Response(404, json={"status": 0})
        if callable(handler):
            return handler(request)
        return httpx.Response(200, json=handler)

    def count(self, path):
        return sum(1 for r in self.calls if r.url.path == path)


def make_catalog(router, cache=None):
    cache = cache or ResolverCache()
    http = httpx.AsyncClient(transport=httpx.MockTransport(router))
    return CatalogClient(cache, http_client=http, base_url="https://off.test")


@pytest.fixture
def clock():
    return FakeClock()


class FakeDb:
    def __init__(self, up=True):
        self.up = up
        self.commands = []

    async def command(self, name, **kwargs):
        self.commands.append(name)
        if not self.up:
            raise ConnectionError("mongo down")
        return {"ok": 1.0}
