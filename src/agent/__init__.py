"""
Decision loop: planner conversation, tool-call parsing, the closed tool
dispatcher and the bounded plan -> act -> observe runner.
"""

from agent.contracts import Observation, RunResult, StepRecord, StopReason, ToolCall, ToolName
from agent.dispatcher import ToolDispatcher, summarize_candles
from agent.market_hours import is_market_open, next_market_open
from agent.plan_parser import extract_json_object, parse_tool_call
from agent.planner import OllamaPlanner, Planner, PlannerError, ScriptedPlanner
from agent.runner import AgentRunner, critical_failure, stop_condition

__all__ = [
    "AgentRunner",
    "Observation",
    "OllamaPlanner",
    "Planner",
    "PlannerError",
    "RunResult",
    "ScriptedPlanner",
    "StepRecord",
    "StopReason",
    "ToolCall",
    "ToolDispatcher",
    "ToolName",
    "critical_failure",
    "extract_json_object",
    "is_market_open",
    "next_market_open",
    "parse_tool_call",
    "stop_condition",
    "summarize_candles",
]
