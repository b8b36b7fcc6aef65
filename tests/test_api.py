"""
Tests for the HTTP API
"""

import json

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

import crud
from database import get_db
from main import app, get_orchestrator, get_recommender, get_timeline_service
from orchestrator import Orchestrator
from recommendations import RecommendationService
from timeline import TimelineService

from conftest import TEST_EMAIL, calls, chunk, text


@pytest_asyncio.fixture
async def client(session_factory, fake_client):
    """Async test client wired to the per-test database and scripted model."""
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    recommender = RecommendationService(fake_client, session_factory)
    orchestrator = Orchestrator(fake_client, session_factory, recommender=recommender)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_recommender] = lambda: recommender
    app.dependency_overrides[get_timeline_service] = lambda: TimelineService(fake_client, session_factory)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


def sse_events(body: str):
    return [json.loads(line[len("data: "):]) for line in body.splitlines() if line.startswith("data: ")]


# ============ Health & Onboarding Tests ============

@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    response = await client.get("/")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_onboarding_upsert(client: AsyncClient):
    payload = {"name": "Asha", "email": "asha@example.com", "gpa": 3.4, "preferred_countries": ["Germany"]}
    response = await client.post("/onboarding", json=payload)
    assert response.status_code == 200
    assert response.json()["current_stage"] == 1
    assert response.json()["onboarding_completed"] is False

    response = await client.post("/onboarding", json={
        "name": "Asha", "email": "asha@example.com", "budget_range_max": 25000, "final_submit": True,
    })
    data = response.json()
    assert data["current_stage"] == 2
    assert data["onboarding_completed"] is True
    assert data["profile"]["gpa"] == 3.4
    assert data["profile"]["preferred_countries"] == ["Germany"]


@pytest.mark.asyncio
async def test_onboarding_rejects_bad_email(client: AsyncClient):
    response = await client.post("/onboarding", json={"name": "Asha", "email": "not-an-email"})
    assert response.status_code == 400
    assert response.json()["error"] == "VALIDATION_ERROR"


# ============ Chat Tests ============

@pytest.mark.asyncio
async def test_chat_turn(client: AsyncClient, fake_client, user):
    fake_client.responses.append(calls(("add_task", '{"title": "Book IELTS"}'), content="Added an IELTS task."))

    response = await client.post("/chat", json={"email": TEST_EMAIL, "message": "Remind me to book IELTS"})

    assert response.status_code == 200
    data = response.json()
    assert data["message"] == "Added an IELTS task."
    assert data["actions"][0]["action"] == "add_task"
    assert data["actions"][0]["success"] is True
    assert isinstance(data["conversation_id"], int)


@pytest.mark.asyncio
async def test_chat_unknown_user(client: AsyncClient):
    response = await client.post("/chat", json={"email": "ghost@example.com", "message": "hello"})
    assert response.status_code == 404
    assert response.json()["error"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_chat_requires_message(client: AsyncClient, user):
    response = await client.post("/chat", json={"email": TEST_EMAIL, "message": ""})
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_chat_stream(client: AsyncClient, fake_client, user):
    fake_client.streams.append([chunk("Hello from "), chunk("the stream.")])

    response = await client.post("/chat/stream", json={"email": TEST_EMAIL, "message": "hello"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = sse_events(response.text)
    assert events[0]["type"] == "start"
    assert events[-1]["type"] == "done"
    assert "".join(e["content"] for e in events if e["type"] == "chunk") == "Hello from the stream."
    assert events[-1]["message"] == "Hello from the stream."


# ============ Conversation Tests ============

@pytest.mark.asyncio
async def test_conversation_lifecycle(client: AsyncClient, fake_client, user):
    params = {"email": TEST_EMAIL}
    created = (await client.post("/conversations/new", params=params)).json()
    convo_id = created["id"]

    fake_client.responses.append(text("Happy to help."))
    await client.post("/chat", json={"email": TEST_EMAIL, "message": "Plan my applications", "conversation_id": convo_id})

    listing = (await client.get("/conversations", params=params)).json()
    assert listing["count"] == 1
    assert listing["conversations"][0]["title"] == "Plan my applications"
    assert listing["conversations"][0]["message_count"] == 2

    loaded = (await client.get(f"/conversations/{convo_id}", params=params)).json()
    assert [m["role"] for m in loaded["messages"]] == ["user", "assistant"]

    response = await client.delete(f"/conversations/{convo_id}/messages", params=params)
    assert response.status_code == 200
    assert (await client.get(f"/conversations/{convo_id}", params=params)).json()["messages"] == []

    response = await client.delete(f"/conversations/{convo_id}", params=params)
    assert response.status_code == 200
    assert (await client.get(f"/conversations/{convo_id}", params=params)).status_code == 404


# ============ Shortlist & Task Tests ============

@pytest.mark.asyncio
async def test_shortlist_unlock_and_remove(client: AsyncClient, db, user):
    entry, _ = crud.add_to_shortlist(db, user.id, "TU Munich")
    crud.lock_university(db, user.id, entry.id)
    params = {"email": TEST_EMAIL}

    response = await client.delete(f"/shortlist/{entry.id}", params=params)
    assert response.status_code == 409
    assert response.json() == {"error": "CONFLICT", "message": "Unlock the university before removing it"}

    tasks = (await client.get("/tasks", params=params)).json()
    assert tasks["count"] == len(crud.DEFAULT_APPLICATION_TASKS)

    unlocked = (await client.post(f"/shortlist/{entry.id}/unlock", params=params)).json()
    assert unlocked["is_locked"] is False
    assert (await client.get("/tasks", params=params)).json()["count"] == 0

    assert (await client.delete(f"/shortlist/{entry.id}", params=params)).status_code == 200
    assert (await client.get("/shortlist", params=params)).json()["count"] == 0


@pytest.mark.asyncio
async def test_application_timeline(client: AsyncClient, db, user):
    params = {"email": TEST_EMAIL}
    response = await client.get("/application/timeline", params=params)
    assert response.status_code == 409
    assert response.json()["error"] == "CONFLICT"

    entry, _ = crud.add_to_shortlist(db, user.id, "TU Munich", country="Germany")
    crud.lock_university(db, user.id, entry.id)

    response = await client.get("/application/timeline", params=params)
    assert response.status_code == 200
    data = response.json()
    assert data["university"]["uni_name"] == "TU Munich"
    assert data["generated"] is False
    assert [p["phase"] for p in data["timeline"]][0] == "Test Preparation"


# ============ Recommendation & Account Tests ============

@pytest.mark.asyncio
async def test_recommendations_are_cached(client: AsyncClient, fake_client, user):
    payload = {"dream": [{"name": "ETH Zurich"}], "target": [{"name": "TU Munich"}], "safe": []}
    fake_client.responses.extend([text(json.dumps(payload)), text(json.dumps(payload))])
    params = {"email": TEST_EMAIL}

    first = (await client.get("/recommendations", params=params)).json()
    second = (await client.get("/recommendations", params=params)).json()
    refreshed = (await client.get("/recommendations", params={**params, "refresh": "true"})).json()

    assert first["cached"] is False
    assert second["cached"] is True
    assert second["target"][0]["name"] == "TU Munich"
    assert refreshed["cached"] is False
    assert len(fake_client.calls) == 2


@pytest.mark.asyncio
async def test_delete_account(client: AsyncClient, user):
    response = await client.delete("/users", params={"email": TEST_EMAIL})
    assert response.status_code == 200

    response = await client.post("/chat", json={"email": TEST_EMAIL, "message": "hello"})
    assert response.status_code == 404
