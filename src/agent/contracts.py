"""
Data contracts for the decision loop: ToolCall, Observation, StepRecord, RunResult.

The planner produces ToolCalls, the dispatcher answers with Observations, and
the runner keeps the ordered StepRecords as the run's audit trail.
No I/O; these are plain dataclasses.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any


def _jsonable(obj: Any) -> Any:
    if isinstance(obj, (datetime,)):
        return obj.isoformat()
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return str(obj)


def to_json(obj: Any) -> str:
    return json.dumps(obj, default=_jsonable, ensure_ascii=False)


class ToolName(str, Enum):
    """The closed set of tools the planner may call."""

    MARKET_QUOTE = "market.quote"
    MARKET_OHLC = "market.ohlc"
    MARKET_OPTION_CHAIN = "market.option_chain"
    POSITIONS_LIST = "positions.list"
    RISK_ANALYZE = "risk.analyze"
    ORDERS_PLACE = "orders.place"
    ORDERS_PLACE_BRACKET = "orders.place_bracket"
    ORDERS_MODIFY_SL = "orders.modify_sl"
    ORDERS_EXIT = "orders.exit"

    @classmethod
    def parse(cls, name: str) -> "ToolName | None":
        try:
            return cls(name)
        except ValueError:
            return None


class StopReason(str, Enum):
    MARKET_CLOSED = "market_closed"
    MALFORMED_PLAN = "malformed_plan"
    STOP_CONDITION = "stop_condition"
    CRITICAL_FAILURE = "critical_failure"
    MAX_STEPS = "max_steps"
    DEADLINE = "deadline"
    ERROR = "error"


@dataclass(frozen=True)
class ToolCall:
    """One planner decision: which tool, with what arguments, and what counts as done."""

    tool: str
    args: dict[str, Any]
    success_criteria: str
    thought: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.thought is not None:
            out["thought"] = self.thought
        out.update({"tool": self.tool, "args": self.args, "success_criteria": self.success_criteria})
        return out


@dataclass(frozen=True)
class Observation:
    """Uniform tool outcome. ``ok=False`` always carries a classifying hint."""

    tool: str
    ok: bool
    result: Any
    hint: str

    def to_dict(self) -> dict[str, Any]:
        return {"tool": self.tool, "ok": self.ok, "result": self.result, "hint": self.hint}

    def text(self) -> str:
        """result and hint flattened to one string for pattern checks."""
        parts = []
        for value in (self.result, self.hint):
            if value is None:
                continue
            parts.append(value if isinstance(value, str) else to_json(value))
        return " ".join(parts)


@dataclass(frozen=True)
class StepRecord:
    step: int
    requested_at: datetime
    tool_call: ToolCall
    observation: Observation

    def to_dict(self) -> dict[str, Any]:
        return {
            "step": self.step,
            "requested_at": self.requested_at.isoformat(),
            "tool_call": self.tool_call.to_dict(),
            "observation": self.observation.to_dict(),
        }


@dataclass
class RunResult:
    ok: bool
    goal: str
    steps_taken: int
    steps: list[StepRecord] = field(default_factory=list)
    stop_reason: StopReason | None = None
    note: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "ok": self.ok,
            "goal": self.goal,
            "steps_taken": self.steps_taken,
            "steps": [s.to_dict() for s in self.steps],
            "stop_reason": self.stop_reason.value if self.stop_reason else None,
        }
        if self.note is not None:
            out["note"] = self.note
        if self.error is not None:
            out["error"] = self.error
        return out
