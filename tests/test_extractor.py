"""
Tests for tool-call extraction
"""

import pytest

from actions import registry
from extractor import (
    SOURCE_RECOVERED,
    SOURCE_STRUCTURED,
    SOURCE_TEXT,
    StreamingTextFilter,
    extract,
    find_matching_brace,
    parse_arguments,
    recover_failed_generation,
    strip_pseudo_calls,
)
from llm_client import ToolCall
from normalizer import normalize_arguments

NAMES = registry.names


def _normalized(call):
    return {"name": call.name, "args": normalize_arguments(registry.get(call.name).args, call.arguments)}


# ============ Channel Equivalence Tests ============

@pytest.mark.parametrize("text,tool_calls,source", [
    ("", [ToolCall("add_task", '{"title": "Draft SOP"}')], SOURCE_STRUCTURED),
    ('<function=add_task>{"title": "Draft SOP"}</function>', [], SOURCE_RECOVERED),
    ('<function=add_task{"title": "Draft SOP"}>', [], SOURCE_RECOVERED),
    ('<tool_call>{"name": "add_task", "arguments": {"title": "Draft SOP"}}</tool_call>', [], SOURCE_RECOVERED),
    ('<add_task>{"title": "Draft SOP"}</add_task>', [], SOURCE_RECOVERED),
    ('add_task {"title": "Draft SOP"}', [], SOURCE_TEXT),
])
def test_every_channel_yields_the_same_call(text, tool_calls, source):
    calls, found = extract(text, tool_calls, NAMES)
    assert found == source
    assert [_normalized(c) for c in calls] == [{"name": "add_task", "args": {"title": "Draft SOP"}}]


def test_structured_calls_take_priority():
    calls, source = extract(
        'add_task {"title": "From text"}',
        [ToolCall("add_task", '{"title": "From structure"}')],
        NAMES,
    )
    assert source == SOURCE_STRUCTURED
    assert [c.arguments["title"] for c in calls] == ["From structure"]


def test_bad_structured_json_does_not_drop_other_calls():
    calls, _ = extract("", [
        ToolCall("add_task", '{"title": "Draft SOP", '),
        ToolCall("add_task", '{"title": "Book IELTS"}'),
    ], NAMES)
    assert [c.arguments.get("title") for c in calls] == ["Draft SOP", "Book IELTS"]


def test_unterminated_pseudo_call_is_scraped():
    calls, _ = extract('<function=add_task>{"title": "Draft SOP", "priority": "high"</function>', [], NAMES)
    assert calls[0].name == "add_task"
    assert calls[0].arguments["title"] == "Draft SOP"
    assert calls[0].arguments["priority"] == "high"


def test_bare_fragment_requires_registry_name():
    calls, source = extract('launch_rocket {"target": "moon"}', [], NAMES)
    assert calls == []
    assert source is None


def test_multiple_pseudo_calls_keep_order():
    text = (
        '<function=shortlist_university>{"uni_name": "MIT"}</function>'
        '<function=lock_university>{"uni_name": "MIT"}</function>'
    )
    calls, _ = extract(text, [], NAMES)
    assert [c.name for c in calls] == ["shortlist_university", "lock_university"]


# ============ Low-level Parsing Tests ============

def test_brace_scan_skips_braces_in_strings():
    text = '{"title": "use {braces}", "n": {"x": 1}} tail'
    assert find_matching_brace(text, 0) == text.index(" tail") - 1


def test_double_encoded_arguments():
    args, strict = parse_arguments('"{\\"title\\": \\"Draft SOP\\"}"')
    assert strict
    assert args == {"title": "Draft SOP"}


# ============ Failed Generation Tests ============

def test_recover_from_json_payload():
    calls = recover_failed_generation('{"name": "add_task", "arguments": {"title": "Draft SOP"}}', NAMES)
    assert [(c.name, c.arguments) for c in calls] == [("add_task", {"title": "Draft SOP"})]


def test_recover_from_pseudo_syntax():
    calls = recover_failed_generation('<function=add_task>{"title": "Draft SOP"}</function>', NAMES)
    assert calls[0].name == "add_task"


def test_recover_nothing_from_prose():
    assert recover_failed_generation("I could not do that.", NAMES) == []
    assert recover_failed_generation(None, NAMES) == []


# ============ Stripping Tests ============

def test_strip_removes_call_syntax():
    text = 'Sure!\n<function=add_task>{"title": "Draft SOP"}</function>\nGood luck.'
    cleaned = strip_pseudo_calls(text, NAMES)
    assert "function" not in cleaned
    assert "Draft SOP" not in cleaned
    assert cleaned.startswith("Sure!")
    assert cleaned.endswith("Good luck.")


def test_strip_leaves_plain_text_alone():
    assert strip_pseudo_calls("Your SOP is due Friday.", NAMES) == "Your SOP is due Friday."


def test_streaming_filter_never_leaks_call_syntax():
    text_filter = StreamingTextFilter(NAMES)
    pieces = ["Here you go. ", "<function=add_", 'task>{"title": ', '"Draft SOP"}', "</function>", " Anything else?"]
    shown = "".join(text_filter.feed(piece) for piece in pieces) + text_filter.flush()

    assert "<" not in shown
    assert "Draft SOP" not in shown
    assert "Here you go." in shown
    assert "Anything else?" in shown
    assert "add_task" in text_filter.raw


def test_streaming_filter_emits_long_text_early():
    sentence = "A long sentence about deadlines."
    text_filter = StreamingTextFilter(NAMES, holdback=5)
    assert text_filter.feed(sentence) == sentence[:-5]
    assert text_filter.flush() == sentence[-5:]
