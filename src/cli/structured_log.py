"""
Run events as JSON lines for the decision loop.

Each loop milestone (run start, step, order, rejection, market closed,
critical failure, completion) is written as one JSON object per line to
stderr, tagged with the run id.

When a webhook URL is configured, order and failure events are also POSTed
to it as JSON.
"""

from __future__ import annotations

import json
import logging
import sys
import urllib.request
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger("tradeloop.events")


class StructuredEventLogger:
    """Emit structured JSON events to stderr and optional webhook."""

    _ALERT_EVENTS = frozenset({"order_submitted", "order_rejected", "critical_failure", "error"})

    def __init__(
        self,
        run_id: str,
        *,
        enabled: bool = True,
        webhook_url: str = "",
        stream: Any = None,
    ) -> None:
        self._run_id = run_id
        self._enabled = enabled
        self._webhook_url = webhook_url.strip()
        self._stream = stream or sys.stderr

    def _emit(self, event_type: str, **fields: Any) -> dict:
        record = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "event": event_type,
            "run_id": self._run_id,
            **fields,
        }
        if self._enabled:
            self._stream.write(json.dumps(record, default=str) + "\n")
            self._stream.flush()

        if self._webhook_url and event_type in self._ALERT_EVENTS:
            self._post_webhook(record)

        return record

    def _post_webhook(self, record: dict) -> None:
        try:
            data = json.dumps(record, default=str).encode("utf-8")
            req = urllib.request.Request(
                self._webhook_url,
                data=data,
                headers={"Content-Type": "application/json"},
                method="POST",
            )
            urllib.request.urlopen(req, timeout=5)
        except Exception as exc:
            logger.warning("Webhook POST failed: %s", exc)

    def run_start(self, goal: str, max_steps: int, live: bool) -> dict:
        return self._emit("run_start", goal=goal, max_steps=max_steps, live=live)

    def step(self, step: int, tool: str, ok: bool, hint: str) -> dict:
        return self._emit("step", step=step, tool=tool, ok=ok, hint=hint)

    def order_submitted(self, tool: str, order_id: str, status: str, paper: bool) -> dict:
        return self._emit("order_submitted", tool=tool, order_id=order_id, status=status, paper=paper)

    def order_rejected(self, tool: str, reason: str) -> dict:
        return self._emit("order_rejected", tool=tool, reason=reason)

    def critical_failure(self, step: int, tool: str, detail: str) -> dict:
        return self._emit("critical_failure", step=step, tool=tool, detail=detail)

    def market_closed(self, next_open: str, wait_hours: float) -> dict:
        return self._emit(
            "market_closed",
            next_open=next_open,
            wait_hours=round(wait_hours, 1),
        )

    def run_complete(self, ok: bool, steps_taken: int, stop_reason: str | None) -> dict:
        return self._emit("run_complete", ok=ok, steps_taken=steps_taken, stop_reason=stop_reason)

    def error(self, message: str, detail: str = "") -> dict:
        return self._emit("error", message=message, detail=detail)
