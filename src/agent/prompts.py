"""Opening turns of the planner conversation."""

from __future__ import annotations

from datetime import datetime

from config.loader import AppConfig

SYSTEM_PROMPT = """\
You are a looped trading agent for Indian index options (CE/PE buying).
Act in the sequence Plan -> Act -> Observe and keep iterating until the goal is satisfied,
a hard stop is met, or you decide no-trade is safer.

Available tools:
- market.quote, market.ohlc, market.option_chain, positions.list
- risk.analyze
- orders.place, orders.place_bracket, orders.modify_sl, orders.exit

Rules:
- Start by confirming instrument ids before trading.
- Use bracket orders when entering trades; populate stop_loss_value and profit_value.
- Pass an idempotency_key with every order so a retried step never places twice.
- Enforce the risk budget and respect market hours (IST {open}-{close}).
- If there is no edge, emit risk.analyze with success_criteria containing "no-trade".
- Respond with JSON only. No markdown, no comments.
"""


def system_prompt(config: AppConfig) -> str:
    return SYSTEM_PROMPT.format(open=config.market_hours.open, close=config.market_hours.close)


def render_user_goal(goal: str, now: datetime, config: AppConfig) -> str:
    """*now* is expected in the exchange timezone."""
    return (
        f"Goal: {goal}\n"
        f"Current time IST: {now:%H:%M}\n"
        f"Risk config: {config.risk_context()}.\n"
        "Emit exactly one JSON tool call per response with keys thought, tool, args, success_criteria.\n"
    )


def bootstrap_messages(goal: str, now: datetime, config: AppConfig, system: str | None = None) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": system or system_prompt(config)},
        {"role": "user", "content": render_user_goal(goal, now, config)},
    ]
