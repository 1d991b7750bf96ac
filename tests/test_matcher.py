import pytest

from conftest import FakeSharedStore, verified_record
from ecobites.errors import UpstreamError
from ecobites.matcher import SharedDatabaseMatcher, product_from_shared_record, score_candidate


def test_scores():
    rec = verified_record("Granola Bar", "Acme")
    assert score_candidate("granola bar", "acme", rec).score == 15
    assert score_candidate("granola", "acme", rec).score == 10
    assert score_candidate("granola bar", "acme foods", rec).score == 12
    assert score_candidate("granola bar", None, rec).score == 10


@pytest.mark.asyncio
async def test_exact_name_and_brand_returns_shared_record():
    store = FakeSharedStore([verified_record("Granola Bar", "Acme")])
    matcher = SharedDatabaseMatcher(store)
    product = await matcher.find_best_match("Granola Bar", "Acme")
    assert product is not None
    assert product.name == "Granola Bar"
    assert product.nutri_score == "C"
    assert store.queries == ["granola bar"]


@pytest.mark.asyncio
async def test_brand_overlap_without_name_overlap_is_no_match():
    # Stored name shares the prefix query but not the identified name.
    store = FakeSharedStore([verified_record("Cola", "Acme")])
    store.query_verified_by_name_prefix = _returning(store.shared)
    matcher = SharedDatabaseMatcher(store)
    assert await matcher.find_best_match("Granola Bar", "Acme Foods") is None
    assert await matcher.find_best_match("Granola Bar", "Acme") is None


@pytest.mark.asyncio
async def test_unverified_records_are_never_candidates():
    store = FakeSharedStore([verified_record("Granola Bar", "Acme", verified=False)])
    assert await SharedDatabaseMatcher(store).find_best_match("Granola Bar", "Acme") is None


@pytest.mark.asyncio
async def test_first_candidate_wins_ties():
    store = FakeSharedStore([
        verified_record("Granola Bar Honey", "Acme", id="first"),
        verified_record("Granola Bar Nuts", "Acme", id="second"),
    ])
    product = await SharedDatabaseMatcher(store).find_best_match("Granola Bar", "Acme")
    assert product.id == "first"


@pytest.mark.asyncio
async def test_exact_name_beats_earlier_partial():
    store = FakeSharedStore([
        verified_record("Granola Bar Honey", "Acme", id="partial"),
        verified_record("Granola Bar", "Acme", id="exact"),
    ])
    product = await SharedDatabaseMatcher(store).find_best_match("Granola Bar", "Acme")
    assert product.id == "exact"


@pytest.mark.asyncio
async def test_candidate_limit_respected():
    records = [verified_record(f"Granola Bar {i}", "Other", id=str(i)) for i in range(10)]
    records[7] = verified_record("Granola Bar", "Other", id="exact")
    store = FakeSharedStore(records)
    store.query_verified_by_name_prefix = _returning(records)
    matcher = SharedDatabaseMatcher(store, candidate_limit=5)
    best = await matcher.best_candidate("granola bar", None)
    assert best.record["id"] == "0"
    assert best.score == 5


@pytest.mark.asyncio
async def test_store_failure_surfaces_as_upstream_error():
    matcher = SharedDatabaseMatcher(FakeSharedStore(fail=True))
    with pytest.raises(UpstreamError):
        await matcher.find_best_match("Granola Bar", "Acme")


@pytest.mark.asyncio
async def test_blank_name_skips_lookup():
    store = FakeSharedStore()
    assert await SharedDatabaseMatcher(store).find_best_match("  ", "Acme") is None
    assert store.queries == []


def test_invalid_stored_grades_default_to_a():
    product = product_from_shared_record({"id": "x", "product_name": "Tea", "nutri_score": "Z", "nutrition": {"energy": "12"}})
    assert product.nutri_score == "A"
    assert product.eco_score == "A"
    assert product.nutrition.energy == 12.0
    assert product.description == "Tea"


def _returning(records):
    async def query(prefix, limit=5):
        return list(records)
    return query
