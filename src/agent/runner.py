"""
AgentRunner: the bounded plan -> act -> observe loop.

One run turns a natural-language goal into at most ``max_steps`` tool calls:

  Gated -> (Planning -> Dispatching -> Observing)* -> Terminated

The loop ends on: market closed (no planner call at all), a malformed plan,
the stop condition, a critical failure, the deadline, or step exhaustion.
Anything that escapes all of that is caught at the top and reported as
``RunResult(ok=False, error=...)`` with the steps taken so far.
"""

from __future__ import annotations

import logging
import re
import time
from datetime import datetime, timezone
from typing import Any, Callable

from config.loader import AppConfig

from agent.contracts import Observation, RunResult, StepRecord, StopReason, ToolCall, to_json
from agent.dispatcher import ToolDispatcher
from agent.market_hours import is_market_open, market_now, next_market_open
from agent.plan_parser import parse_tool_call
from agent.planner import Planner
from agent.prompts import bootstrap_messages

logger = logging.getLogger("tradeloop.agent")

DEFAULT_MAX_STEPS = 10
MARKET_CLOSED_NOTE = "Market is currently closed; skipping run."

SUCCESS_SIGNALS = tuple(
    re.compile(p)
    for p in (r"order.*placed", r"filled", r"bracket.*placed", r"exit(ed)?", r"no-trade", r"idle")
)
CRITICAL_MARKERS = ("unauthorized", "authentication", "rate limit", "invalid credentials")


def stop_condition(call: ToolCall, observation: Observation) -> bool:
    criteria = call.success_criteria.lower()
    if not criteria:
        return False
    if "stop" in criteria or "complete" in criteria:
        return True
    if not observation.ok:
        return False
    for value in (observation.result, observation.hint):
        if value is None:
            continue
        text = (value if isinstance(value, str) else to_json(value)).lower()
        if any(p.search(text) for p in SUCCESS_SIGNALS):
            return True
    return False


def critical_failure(observation: Observation) -> bool:
    if observation.ok:
        return False
    message = observation.text().lower()
    return any(marker in message for marker in CRITICAL_MARKERS)


class AgentRunner:
    """
    Drive one run of the decision loop.

    Parameters
    ----------
    goal:
        Natural-language trading goal.
    planner:
        Planner backend (OllamaPlanner, ScriptedPlanner).
    dispatcher:
        ToolDispatcher bound to this run.
    config:
        Read once; market hours, cooldown, step budget and risk figures.
    max_steps:
        Overrides ``agent.max_steps_per_run``.
    ignore_market_hours:
        Skip the market-hours gate (dry runs).
    clock, monotonic, sleep:
        Injectable time sources for tests.
    journal, events:
        Optional JournalWriter / StructuredEventLogger sinks.
    """

    def __init__(
        self,
        goal: str,
        planner: Planner,
        dispatcher: ToolDispatcher,
        config: AppConfig,
        *,
        system_prompt: str | None = None,
        max_steps: int | None = None,
        ignore_market_hours: bool = False,
        clock: Callable[[], datetime] | None = None,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        journal: Any = None,
        events: Any = None,
    ) -> None:
        self.goal = goal
        self._planner = planner
        self._dispatcher = dispatcher
        self._config = config
        self._system_prompt = system_prompt
        self._max_steps = max_steps or config.agent.max_steps_per_run or DEFAULT_MAX_STEPS
        self._ignore_hours = ignore_market_hours
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._monotonic = monotonic
        self._sleep = sleep
        self._journal = journal
        self._events = events
        self._steps: list[StepRecord] = []
        self._last_step_started: float | None = None

    @property
    def max_steps(self) -> int:
        return self._max_steps

    def run(self) -> RunResult:
        self._steps = []
        self._last_step_started = None
        try:
            result = self._run()
        except Exception as exc:
            logger.exception("AgentRunner failed after %d step(s)", len(self._steps))
            if self._events is not None:
                self._events.error("run failed", detail=str(exc))
            result = RunResult(
                ok=False,
                goal=self.goal,
                steps_taken=len(self._steps),
                steps=list(self._steps),
                stop_reason=StopReason.ERROR,
                error=str(exc),
            )
        self._finish(result)
        return result

    def _within_market_hours(self) -> bool:
        if self._ignore_hours:
            return True
        try:
            return is_market_open(self._config.market_hours, self._clock())
        except Exception as exc:
            logger.warning("Market hours check failed, assuming open: %s", exc)
            return True

    def _enforce_cooldown(self) -> None:
        seconds = self._config.cooldowns.step
        try:
            if self._last_step_started is None:
                return
            elapsed = self._monotonic() - self._last_step_started
            if elapsed < seconds:
                self._sleep(seconds - elapsed)
        finally:
            self._last_step_started = self._monotonic()

    def _market_closed(self) -> RunResult:
        hours = self._config.market_hours
        now = market_now(hours, self._clock())
        nxt = next_market_open(hours, now)
        logger.info("Market closed at %s; next open %s", now.isoformat(), nxt.isoformat())
        if self._events is not None:
            self._events.market_closed(nxt.isoformat(), (nxt - now).total_seconds() / 3600)
        return RunResult(
            ok=True,
            goal=self.goal,
            steps_taken=0,
            stop_reason=StopReason.MARKET_CLOSED,
            note=MARKET_CLOSED_NOTE,
        )

    def _run(self) -> RunResult:
        if self._journal is not None:
            self._journal.run_start(self.goal, self._max_steps, self._dispatcher_live())
        if self._events is not None:
            self._events.run_start(self.goal, self._max_steps, self._dispatcher_live())

        if not self._within_market_hours():
            return self._market_closed()

        hours = self._config.market_hours
        messages = bootstrap_messages(self.goal, market_now(hours, self._clock()), self._config, self._system_prompt)
        deadline = self._config.agent.deadline_seconds
        started = self._monotonic()
        stop_reason = StopReason.MAX_STEPS

        for index in range(self._max_steps):
            if deadline is not None and self._monotonic() - started >= deadline:
                logger.info("Deadline of %.1fs reached after %d step(s)", deadline, len(self._steps))
                stop_reason = StopReason.DEADLINE
                break

            self._enforce_cooldown()

            reply = self._planner.plan(messages)
            call = parse_tool_call(reply)
            if call is None:
                logger.warning("Malformed plan at step %d; stopping", index + 1)
                stop_reason = StopReason.MALFORMED_PLAN
                break

            observation = self._dispatcher.dispatch(call)
            record = StepRecord(
                step=index + 1,
                requested_at=self._clock(),
                tool_call=call,
                observation=observation,
            )
            self._steps.append(record)
            self._record_step(record)

            messages.append({"role": "assistant", "content": to_json(call.to_dict())})
            messages.append({"role": "user", "content": to_json(observation.to_dict())})

            if stop_condition(call, observation):
                stop_reason = StopReason.STOP_CONDITION
                break
            if critical_failure(observation):
                logger.error("Critical failure from %s: %s", observation.tool, observation.text())
                if self._events is not None:
                    self._events.critical_failure(record.step, observation.tool, observation.text())
                stop_reason = StopReason.CRITICAL_FAILURE
                break

        return RunResult(
            ok=True,
            goal=self.goal,
            steps_taken=len(self._steps),
            steps=list(self._steps),
            stop_reason=stop_reason,
        )

    def _dispatcher_live(self) -> bool:
        return self._config.execution.live

    def _record_step(self, record: StepRecord) -> None:
        obs = record.observation
        logger.info("Step %d %s ok=%s hint=%s", record.step, obs.tool, obs.ok, obs.hint)
        if self._journal is not None:
            self._journal.step(record)
        if self._events is not None:
            self._events.step(record.step, obs.tool, obs.ok, obs.hint)

    def _finish(self, result: RunResult) -> None:
        reason = result.stop_reason.value if result.stop_reason else None
        logger.info("Run finished ok=%s steps=%d reason=%s", result.ok, result.steps_taken, reason)
        try:
            if self._journal is not None:
                self._journal.run_end(result)
            if self._events is not None:
                self._events.run_complete(result.ok, result.steps_taken, reason)
        except OSError as exc:
            logger.error("Could not record run end: %s", exc)
