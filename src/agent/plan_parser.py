"""
Planner reply -> ToolCall.

The reply is free text. The first balanced ``{...}`` block that decodes as a
JSON object is taken and validated against ``tool_call.schema.json``. Anything
else (no object, bad JSON, missing keys) is a malformed plan: ``None``.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Iterator

import jsonschema

from agent.contracts import ToolCall

logger = logging.getLogger("tradeloop.planner")

SCHEMA_PATH = Path(__file__).resolve().parent / "tool_call.schema.json"

_validator: jsonschema.protocols.Validator | None = None


def _schema_validator() -> jsonschema.protocols.Validator:
    global _validator
    if _validator is None:
        with open(SCHEMA_PATH) as f:
            schema = json.load(f)
        cls = jsonschema.validators.validator_for(schema)
        cls.check_schema(schema)
        _validator = cls(schema)
    return _validator


def _balanced_blocks(text: str) -> Iterator[str]:
    """Yield each balanced {...} candidate, in order of its opening brace.

    Braces inside JSON string literals do not count.
    """
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        end = None
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    end = i
                    break
        if end is None:
            return
        yield text[start : end + 1]
        start = text.find("{", start + 1)


def extract_json_object(text: str) -> dict[str, Any] | None:
    """First balanced block in *text* that decodes to a JSON object."""
    if not text:
        return None
    for block in _balanced_blocks(text):
        try:
            data = json.loads(block)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    return None


def parse_tool_call(text: str) -> ToolCall | None:
    data = extract_json_object(text)
    if data is None:
        logger.warning("Planner reply holds no JSON object")
        return None
    try:
        _schema_validator().validate(data)
    except jsonschema.ValidationError as exc:
        logger.warning("Planner reply rejected: %s", exc.message)
        return None

    criteria = data.get("success_criteria")
    thought = data.get("thought")
    return ToolCall(
        tool=data["tool"],
        args=dict(data.get("args") or {}),
        success_criteria="" if criteria is None else str(criteria),
        thought=str(thought) if thought is not None else None,
    )
