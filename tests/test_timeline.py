"""
Tests for the application timeline of the locked university
"""

import json
from datetime import date

import pytest

import crud
from errors import CompletionError, ConflictError, NotFoundError
from timeline import TimelineService, default_timeline, months_until_intake, parse_timeline

from conftest import FakeCompletionClient, text

TODAY = date(2026, 3, 15)

TIMELINE = [
    {"phase": "Test Prep", "deadline": "2026-05-01", "tasks": ["Book IELTS"], "status": "current",
     "description": "Sit the IELTS"},
    {"phase": "Visa Process", "deadline": "2026-07-01", "tasks": ["Open blocked account"], "status": "upcoming"},
]


@pytest.fixture
def locked(db, user):
    entry, _ = crud.add_to_shortlist(db, user.id, "TU Munich", country="Germany", category="Target")
    crud.lock_university(db, user.id, entry.id)
    crud.update_profile_fields(db, user.id, {"target_intake_season": "Fall", "target_intake_year": 2026})
    return entry


# ============ Helper Tests ============

@pytest.mark.parametrize("profile,expected", [
    ({"target_intake_season": "Fall", "target_intake_year": 2026}, 6),
    ({"target_intake_season": "Spring", "target_intake_year": 2027}, 10),
    ({"target_intake_season": "Fall", "target_intake_year": 2025}, 0),
    ({"target_intake_season": "Fall"}, None),
])
def test_months_until_intake(profile, expected):
    assert months_until_intake(profile, TODAY) == expected


def test_default_timeline_deadlines():
    phases = default_timeline(TODAY)
    assert [p["phase"] for p in phases] == ["Test Preparation", "Document Preparation", "Application Submission"]
    assert [p["deadline"] for p in phases] == ["2026-05-14", "2026-06-13", "2026-07-13"]


def test_parse_accepts_wrapped_or_bare_arrays():
    assert [p["phase"] for p in parse_timeline(json.dumps({"timeline": TIMELINE}))] == ["Test Prep", "Visa Process"]
    assert [p["phase"] for p in parse_timeline(json.dumps({"milestones": TIMELINE}))] == ["Test Prep", "Visa Process"]
    assert len(parse_timeline(json.dumps(TIMELINE))) == 2


def test_parse_cleans_items():
    phases = parse_timeline(json.dumps({"timeline": [
        {"phase": "Apply", "deadline": 20260901, "tasks": "Submit", "status": "Overdue"},
        {"deadline": "2026-10-01"},
    ]}))
    assert phases == [
        {"phase": "Apply", "deadline": "20260901", "tasks": [], "status": "upcoming", "description": None},
    ]


# ============ Service Tests ============

@pytest.mark.asyncio
async def test_generated_timeline(session_factory, user, locked):
    client = FakeCompletionClient(responses=[text(json.dumps({"timeline": TIMELINE}))])

    result = await TimelineService(client, session_factory).get_timeline(user.id, today=TODAY)

    assert result["generated"] is True
    assert result["university"]["uni_name"] == "TU Munich"
    assert result["months_until_intake"] == 6
    assert result["timeline"][0]["tasks"] == ["Book IELTS"]
    prompt = client.calls[0]["messages"][0]["content"]
    assert "TU Munich, Germany" in prompt and "Fall 2026" in prompt
    assert client.calls[0]["json_mode"] is True


@pytest.mark.asyncio
@pytest.mark.parametrize("response", [CompletionError("down"), text("no timeline today"), text('{"timeline": []}')])
async def test_default_timeline_when_generation_fails(session_factory, user, locked, response):
    client = FakeCompletionClient(responses=[response])

    result = await TimelineService(client, session_factory).get_timeline(user.id, today=TODAY)

    assert result["generated"] is False
    assert result["timeline"] == default_timeline(TODAY)


@pytest.mark.asyncio
async def test_requires_locked_university(session_factory, user):
    client = FakeCompletionClient()
    with pytest.raises(ConflictError):
        await TimelineService(client, session_factory).get_timeline(user.id)
    assert client.calls == []


@pytest.mark.asyncio
async def test_unknown_user(session_factory):
    with pytest.raises(NotFoundError):
        await TimelineService(FakeCompletionClient(), session_factory).get_timeline(999)
