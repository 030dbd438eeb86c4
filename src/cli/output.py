"""
Human-readable terminal output for runs and positions.

The loop must explain itself: every step prints the tool called, whether it
worked and the hint it came back with.
"""

from __future__ import annotations

from agent.contracts import RunResult
from execution.models import Position


def format_run_result(result: RunResult) -> str:
    reason = result.stop_reason.value if result.stop_reason else "-"
    lines = [
        f"=== Run: {result.goal} ===",
        f"Status       : {'OK' if result.ok else 'FAILED'}",
        f"Steps taken  : {result.steps_taken}",
        f"Stop reason  : {reason}",
    ]
    if result.note:
        lines.append(f"Note         : {result.note}")
    if result.error:
        lines.append(f"Error        : {result.error}")
    for record in result.steps:
        obs = record.observation
        call = record.tool_call
        mark = "ok" if obs.ok else "FAIL"
        lines.append(f"  [{record.step:>2d}] {call.tool:22s} {mark:4s} {obs.hint}")
        if call.thought:
            lines.append(f"       thought: {call.thought}")
    lines.append("===")
    return "\n".join(lines)


def format_position(p: Position) -> str:
    base = (
        f"  #{p.id:<4d} {p.segment}:{p.security_id:<10s} {p.symbol or '':16s} "
        f"{p.side:4s} qty {p.quantity:>6d} @ {p.avg_price}"
    )
    if p.is_active:
        return base + ("  [paper]" if p.paper else "")
    return base + f" -> {p.exit_price}  pnl {p.realized_pnl}"


def format_positions(active: list[Position], closed: list[Position]) -> str:
    lines = []
    for title, group in (("Active positions", active), ("Recently closed", closed)):
        lines.append(f"--- {title} ---")
        if group:
            lines.extend(format_position(p) for p in group)
        else:
            lines.append("  (none)")
    return "\n".join(lines)
