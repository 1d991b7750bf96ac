import os
import sys
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
import io

from fastapi.testclient import TestClient
import httpx
from PIL import Image
import pytest

from conftest import CatalogRouter, FakeActivityStore, FakeDb, FakeSharedStore, FakeVariant, make_catalog, verified_record
from ecobites.cache import ResolverCache
from ecobites.main import app
from ecobites.matcher import SharedDatabaseMatcher
from ecobites.resolver import ProductResolver
from ecobites.vision import VisionAdapter

client = TestClient(app)

IDENT = '{"name": "Granola Bar", "brand": "Acme"}'
NUTRITION = '{"nutrition": {"energy": 450, "fat": 18}, "nutriScore": "d", "ecoScore": "b"}'
SEARCH_PAYLOAD = {"products": [
    {"code": "111", "product_name": "Oat Milk", "brands": "Oatly", "nutriscore_grade": "b"},
    {"code": "222", "product_name": ""},
]}


def _png_bytes():
    buf = io.BytesIO()
    Image.new("RGB", (8, 8), (200, 120, 40)).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def services():
    cache = ResolverCache()
    router = CatalogRouter({
        "/cgi/search.pl": SEARCH_PAYLOAD,
        "/api/v0/product/111.json": {"status": 1, "product": {"code": "111", "product_name": "Oat Milk", "brands": "Oatly"}},
    })
    catalog = make_catalog(router, cache)
    shared = FakeSharedStore()
    activity = FakeActivityStore()
    variant = FakeVariant("v1", IDENT, NUTRITION)
    db = FakeDb()
    app.state.db = db
    app.state.cache = cache
    app.state.catalog = catalog
    app.state.shared_store = shared
    app.state.activity_store = activity
    app.state.resolver = ProductResolver(cache, catalog, SharedDatabaseMatcher(shared), VisionAdapter([variant]))
    return {"router": router, "shared": shared, "activity": activity, "variant": variant, "cache": cache, "db": db}


def test_health():
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_health_reports_database_ping(services):
    assert client.get("/health").json()["db"] is True
    assert services["db"].commands == ["ping"]
    services["db"].up = False
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["db"] is False


def test_search(services):
    response = client.get("/api/search", params={"query": "oat milk"})
    assert response.status_code == 200
    products = response.json()["products"]
    assert [p["id"] for p in products] == ["111"]
    assert products[0]["nutriScore"] == "B"
    assert products[0]["ecoScore"] is None


def test_search_empty_query_is_400(services):
    response = client.get("/api/search", params={"query": "  "})
    assert response.status_code == 400
    assert response.json()["kind"] == "ValidationError"
    assert services["router"].calls == []


def test_product_detail(services):
    response = client.get("/api/product/111")
    assert response.status_code == 200
    product = response.json()["product"]
    assert product["name"] == "Oat Milk"
    assert set(product["nutrition"]) >= {"energy", "fat", "sugars", "salt", "protein", "fiber", "sodium"}


def test_product_not_found_and_invalid(services):
    assert client.get("/api/product/999").status_code == 404
    assert client.get("/api/product/bad.id").status_code == 400


def test_catalog_rate_limit_is_429(services):
    services["router"].routes["/cgi/search.pl"] = lambda req: httpx.Response(429)
    response = client.get("/api/search", params={"query": "tea"})
    assert response.status_code == 429
    assert response.json()["kind"] == "RateLimitedError"


def test_analyze_ai_path_records_scan(services):
    response = client.post(
        "/api/analyze",
        files={"image": ("bar.png", _png_bytes(), "image/png")},
        data={"user_id": "u1"},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["provenance"] == "ai"
    assert body["data"]["name"] == "Granola Bar"
    assert body["data"]["nutriScore"] == "D"
    assert services["activity"].scans[0]["provenance"] == "ai"


def test_analyze_shared_database_path(services):
    services["shared"].shared.append(verified_record("Granola Bar", "Acme"))
    response = client.post("/api/analyze", files={"image": ("bar.png", _png_bytes(), "image/png")})
    assert response.status_code == 200
    assert response.json()["provenance"] == "sharedDatabase"
    assert len(services["variant"].calls) == 1
    assert services["activity"].scans == []


def test_analyze_rejects_non_image(services):
    response = client.post("/api/analyze", files={"image": ("notes.txt", b"hello", "text/plain")})
    assert response.status_code == 400
    assert services["variant"].calls == []


def test_analyze_rejects_corrupt_image(services):
    response = client.post("/api/analyze", files={"image": ("bad.jpg", b"not really a jpeg", "image/jpeg")})
    assert response.status_code == 400
    assert "Corrupted image file" in response.json()["error"]


def test_analyze_rejects_large_file(services):
    big = b"0" * (10 * 1024 * 1024 + 1)
    response = client.post("/api/analyze", files={"image": ("large.jpg", big, "image/jpeg")})
    assert response.status_code == 400
    assert "File too large" in response.json()["error"]


def test_analyze_missing_image(services):
    response = client.post("/api/analyze", data={"user_id": "u1"})
    assert response.status_code == 400


def test_analyze_unidentifiable_is_422(services):
    services["variant"].answers = ["I see a blurry photo"]
    response = client.post("/api/analyze", files={"image": ("bar.png", _png_bytes(), "image/png")})
    assert response.status_code == 422
    assert response.json()["kind"] == "UnidentifiableImageError"


def test_analyze_bad_credential_is_503(services):
    services["variant"].answers = [RuntimeError("Error code: 401 - Incorrect API key provided")]
    response = client.post("/api/analyze", files={"image": ("bar.png", _png_bytes(), "image/png")})
    assert response.status_code == 503
    assert response.json()["kind"] == "AuthenticationError"


def test_history_round_trip(services):
    response = client.post("/api/history", json={"query": "oat milk", "productId": "111", "userId": "u1"})
    assert response.status_code == 201
    assert response.json()["history"]["query"] == "oat milk"
    listed = client.get("/api/history", params={"user_id": "u1"}).json()["history"]
    assert [h["query"] for h in listed] == ["oat milk"]


def test_history_write_failure_still_201(services):
    services["activity"].fail_writes = True
    response = client.post("/api/history", json={"query": "tea"})
    assert response.status_code == 201
    assert response.json()["history"] is None


def test_contribution_review_flow(services):
    response = client.post("/api/contributions", json={
        "productName": "Granola Bar", "brand": "Acme", "energy": "450", "allergens": "gluten", "userId": "u1",
    })
    assert response.status_code == 201
    pending_id = response.json()["contribution"]["id"]

    pending = client.get("/api/contributions/pending").json()["contributions"]
    assert [p["id"] for p in pending] == [pending_id]

    approved = client.post(f"/api/contributions/{pending_id}/approve")
    assert approved.status_code == 200
    assert approved.json()["product"]["verified"] is True
    assert services["activity"].points == {"u1": 10}

    again = client.delete(f"/api/contributions/{pending_id}")
    assert again.status_code == 404
    assert again.json()["kind"] == "NotFoundError"


def test_contribution_without_name_is_400(services):
    response = client.post("/api/contributions", json={"productName": " "})
    assert response.status_code == 400


def test_profile(services):
    services["shared"].shared.append(verified_record("Granola Bar", "Acme", user_id="u1"))
    response = client.get("/api/profile/u1")
    assert response.status_code == 200
    body = response.json()
    assert body["totalContributions"] == 1
    assert body["points"] == 10
    assert body["title"] == "New Contributor"


def test_cache_stats_and_clear(services):
    client.get("/api/search", params={"query": "oat milk"})
    stats = client.get("/api/cache").json()
    assert stats["catalog"]["size"] == 1
    assert client.delete("/api/cache").json() == {"cleared": 1}
