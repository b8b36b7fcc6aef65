"""
Tests for the recommendation service and its profile-hash cache
"""

import json
from datetime import datetime, timedelta

import pytest

import crud
from errors import ExternalServiceError, NotFoundError
from models import RecommendationCache
from recommendations import RecommendationService, parse_recommendations

from conftest import FakeCompletionClient, text

RECOMMENDATIONS = {
    "dream": [{"name": "ETH Zurich", "country": "Switzerland"}],
    "target": [{"name": "TU Munich", "country": "Germany"}],
    "safe": [{"name": "University of Bonn", "country": "Germany"}],
}

BASE_PROFILE = {
    "gpa": 3.6,
    "gpa_scale": 4,
    "budget_range_min": 15000,
    "budget_range_max": 30000,
    "preferred_countries": ["Germany"],
    "intended_degree": "Masters",
    "field_of_study": "Computer Science",
    "sop_status": "draft",
}


# ============ Profile Hash Tests ============

@pytest.mark.parametrize("field,value", [
    ("gpa", 3.8),
    ("gpa_scale", 10),
    ("budget_range_min", 10000),
    ("budget_range_max", 45000),
    ("preferred_countries", ["Canada"]),
    ("intended_degree", "PhD"),
    ("field_of_study", "Physics"),
])
def test_critical_field_changes_hash(field, value):
    changed = {**BASE_PROFILE, field: value}
    assert crud.compute_profile_hash(changed) != crud.compute_profile_hash(BASE_PROFILE)


def test_other_fields_do_not_change_hash():
    changed = {**BASE_PROFILE, "sop_status": "ready", "ielts_status": "completed"}
    assert crud.compute_profile_hash(changed) == crud.compute_profile_hash(BASE_PROFILE)


# ============ Cache Tests ============

def test_cache_hit_requires_matching_hash_and_freshness(db, user):
    profile_hash = crud.compute_profile_hash(user.profile_data)
    entry = crud.save_recommendations(db, user.id, RECOMMENDATIONS, profile_hash)

    assert crud.get_cached_recommendations(db, user.id, profile_hash).id == entry.id
    assert crud.get_cached_recommendations(db, user.id, "other-hash") is None

    later = entry.generated_at + timedelta(hours=23)
    assert crud.get_cached_recommendations(db, user.id, profile_hash, now=later) is not None
    too_late = entry.generated_at + timedelta(hours=24)
    assert crud.get_cached_recommendations(db, user.id, profile_hash, now=too_late) is None


def test_clean_old_removes_stale_entries(db, user):
    stale = crud.save_recommendations(db, user.id, RECOMMENDATIONS, "a")
    fresh = crud.save_recommendations(db, user.id, RECOMMENDATIONS, "b")
    stale.generated_at = datetime.utcnow() - timedelta(days=8)
    db.commit()

    assert crud.clean_old_recommendations(db) == 1
    remaining = [row.id for row in db.query(RecommendationCache).all()]
    assert remaining == [fresh.id]


# ============ Parsing Tests ============

def test_parse_tolerates_surrounding_prose():
    payload = "Here are my picks:\n```json\n" + json.dumps(RECOMMENDATIONS) + "\n```"
    parsed = parse_recommendations(payload)
    assert [u["name"] for u in parsed["target"]] == ["TU Munich"]


def test_parse_drops_entries_without_name():
    parsed = parse_recommendations(json.dumps({"dream": [{"country": "USA"}, {"name": "MIT"}]}))
    assert parsed == {"dream": [{"name": "MIT"}], "target": [], "safe": []}


def test_parse_ignores_categories_that_are_not_lists():
    parsed = parse_recommendations('{"dream": 3, "target": "MIT", "safe": [{"name": "University of Bonn"}]}')
    assert parsed == {"dream": [], "target": [], "safe": [{"name": "University of Bonn"}]}


def test_parse_rejects_non_json():
    with pytest.raises(ExternalServiceError):
        parse_recommendations("I can't help with that.")


# ============ Service Tests ============

@pytest.mark.asyncio
async def test_second_request_is_served_from_cache(session_factory, user):
    client = FakeCompletionClient(responses=[text(json.dumps(RECOMMENDATIONS))])
    service = RecommendationService(client, session_factory)

    first = await service.get_recommendations(user.id)
    second = await service.get_recommendations(user.id)

    assert first["cached"] is False
    assert second["cached"] is True
    assert second["dream"] == RECOMMENDATIONS["dream"]
    assert len(client.calls) == 1


@pytest.mark.asyncio
async def test_refresh_regenerates(session_factory, user):
    client = FakeCompletionClient(responses=[text(json.dumps(RECOMMENDATIONS)), text(json.dumps(RECOMMENDATIONS))])
    service = RecommendationService(client, session_factory)

    await service.get_recommendations(user.id)
    refreshed = await service.get_recommendations(user.id, refresh=True)

    assert refreshed["cached"] is False
    assert len(client.calls) == 2


@pytest.mark.asyncio
async def test_profile_change_misses_cache(session_factory, db, user):
    client = FakeCompletionClient(responses=[text(json.dumps(RECOMMENDATIONS)), text(json.dumps(RECOMMENDATIONS))])
    service = RecommendationService(client, session_factory)

    await service.get_recommendations(user.id)
    crud.update_profile_fields(db, user.id, {"preferred_countries": ["Canada"]})
    result = await service.get_recommendations(user.id)

    assert result["cached"] is False
    assert len(client.calls) == 2
    assert "Canada" in client.calls[1]["messages"][0]["content"]


@pytest.mark.asyncio
async def test_sparse_profile_returns_empty_without_calling_model(session_factory, db):
    sparse = crud.get_or_create_user(db, "new@example.com", "New")
    client = FakeCompletionClient()
    service = RecommendationService(client, session_factory)

    result = await service.get_recommendations(sparse.id)

    assert result["dream"] == [] and result["target"] == [] and result["safe"] == []
    assert client.calls == []


@pytest.mark.asyncio
async def test_unknown_user(session_factory):
    service = RecommendationService(FakeCompletionClient(), session_factory)
    with pytest.raises(NotFoundError):
        await service.get_recommendations(999)
