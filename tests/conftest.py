"""
Shared fixtures: a throwaway SQLite database per test and a scripted
completion client.
"""

import pytest
from sqlalchemy.orm import sessionmaker

import crud
from database import create_db_engine, verify_tables_exist
from errors import CompletionError
from llm_client import Completion, CompletionChunk, ToolCall

TEST_EMAIL = "student@example.com"


class FakeCompletionClient:
    """
    Completion client that replays scripted responses.

    `responses` feeds `complete`: each item is a Completion to return or an
    exception to raise. When the script runs out, `complete` raises
    CompletionError. `streams` feeds `stream` the same way, one list of
    CompletionChunk (or a single exception) per call.
    """

    def __init__(self, responses=None, streams=None):
        self.responses = list(responses or [])
        self.streams = list(streams or [])
        self.calls = []
        self.stream_calls = []

    async def complete(self, messages, tools=None, tool_choice="auto", temperature=None, json_mode=False):
        self.calls.append({
            "messages": messages,
            "tools": tools,
            "tool_choice": tool_choice,
            "temperature": temperature,
            "json_mode": json_mode,
        })
        if not self.responses:
            raise CompletionError("No scripted response left")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def stream(self, messages, tools=None, tool_choice="auto", temperature=None):
        self.stream_calls.append({"messages": messages, "tools": tools, "tool_choice": tool_choice})
        script = self.streams.pop(0) if self.streams else []
        if isinstance(script, Exception):
            raise script
        for item in script:
            if isinstance(item, Exception):
                raise item
            yield item


def text(content: str) -> Completion:
    return Completion(text=content)


def calls(*pairs, content: str = "") -> Completion:
    """Completion carrying structured calls given as (name, arguments_json) pairs."""
    return Completion(text=content, tool_calls=[ToolCall(name=name, arguments=args) for name, args in pairs])


def chunk(content: str = "", *tool_calls) -> CompletionChunk:
    return CompletionChunk(text=content, tool_calls=list(tool_calls))


@pytest.fixture
def engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'test.db'}")
    verify_tables_exist(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@pytest.fixture
def db(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture
def user(db):
    """Onboarded student with a usable profile."""
    return crud.upsert_profile(
        db,
        TEST_EMAIL,
        "Asha",
        {
            "gpa": 3.6,
            "gpa_scale": 4,
            "intended_degree": "Masters",
            "field_of_study": "Computer Science",
            "preferred_countries": ["Germany", "Canada"],
            "budget_range_min": 15000,
            "budget_range_max": 30000,
        },
        final_submit=True,
    )


@pytest.fixture
def fake_client():
    return FakeCompletionClient()
