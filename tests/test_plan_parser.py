"""Tests for agent.plan_parser: pulling a ToolCall out of free-form planner text."""

import json

import pytest

from agent.contracts import ToolCall
from agent.plan_parser import extract_json_object, parse_tool_call

# ---------------------------------------------------------------------------
# extract_json_object
# ---------------------------------------------------------------------------


def test_plain_object() -> None:
    assert extract_json_object('{"a": 1}') == {"a": 1}


def test_prose_around_object() -> None:
    text = 'Sure! Here is the plan:\n```json\n{"tool": "market.quote", "args": {}}\n```\nGood luck.'
    assert extract_json_object(text) == {"tool": "market.quote", "args": {}}


def test_first_balanced_block_wins() -> None:
    text = '{"tool": "a", "args": {"x": {"y": 1}}} then {"tool": "b"}'
    assert extract_json_object(text)["tool"] == "a"


def test_braces_inside_strings_do_not_count() -> None:
    text = 'note {"tool": "risk.analyze", "args": {"prompt_context": "use {curly} } braces"}, "success_criteria": ""}'
    data = extract_json_object(text)
    assert data["args"]["prompt_context"] == "use {curly} } braces"


def test_escaped_quote_in_string() -> None:
    text = r'{"thought": "he said \"hi}\"", "tool": "x"}'
    assert extract_json_object(text)["tool"] == "x"


def test_skips_undecodable_block() -> None:
    text = "{not json} and then {\"ok\": true}"
    assert extract_json_object(text) == {"ok": True}


@pytest.mark.parametrize("text", ["", "no braces at all", "{unterminated", "[1, 2, 3]"])
def test_no_object(text: str) -> None:
    assert extract_json_object(text) is None


# ---------------------------------------------------------------------------
# parse_tool_call
# ---------------------------------------------------------------------------


def test_full_tool_call() -> None:
    reply = (
        '{"thought": "check price", "tool": "market.quote", '
        '"args": {"security_id": "13", "segment": "INDEX"}, "success_criteria": "quote retrieved"}'
    )
    call = parse_tool_call(reply)
    assert call == ToolCall(
        tool="market.quote",
        args={"security_id": "13", "segment": "INDEX"},
        success_criteria="quote retrieved",
        thought="check price",
    )


def test_null_args_become_empty() -> None:
    call = parse_tool_call('{"tool": "positions.list", "args": null, "success_criteria": "listed"}')
    assert call.args == {}


@pytest.mark.parametrize("criteria,expected", [(None, ""), (True, "True"), (3, "3")])
def test_criteria_coerced_to_text(criteria, expected: str) -> None:
    reply = json.dumps({"tool": "positions.list", "args": {}, "success_criteria": criteria})
    assert parse_tool_call(reply).success_criteria == expected


def test_unknown_tool_name_still_parses() -> None:
    call = parse_tool_call('{"tool": "orders.teleport", "args": {}, "success_criteria": ""}')
    assert call.tool == "orders.teleport"


def test_extra_keys_ignored() -> None:
    call = parse_tool_call('{"tool": "positions.list", "args": {}, "success_criteria": "", "confidence": 0.9}')
    assert call.tool == "positions.list"


@pytest.mark.parametrize(
    "reply",
    [
        '{"args": {}, "success_criteria": ""}',
        '{"tool": "market.quote", "success_criteria": ""}',
        '{"tool": "market.quote", "args": {}}',
        '{"tool": "", "args": {}, "success_criteria": ""}',
        '{"tool": "market.quote", "args": [1], "success_criteria": ""}',
        '{"tool": 7, "args": {}, "success_criteria": ""}',
        "I will not answer in JSON.",
        '{"tool": "market.quote", "args": {',
    ],
)
def test_malformed_replies(reply: str, caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level("WARNING", logger="tradeloop.planner"):
        assert parse_tool_call(reply) is None
    assert any(r.name == "tradeloop.planner" for r in caplog.records)
