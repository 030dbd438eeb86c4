"""
Planner backends: take the conversation so far, return the model's raw reply.

OllamaPlanner talks to a local Ollama server (``POST {host}/api/chat``).
ScriptedPlanner replays canned replies for tests and ``--dry-run``.
"""

from __future__ import annotations

import json
import logging
import socket
import urllib.error
import urllib.request
from typing import Any, Iterable, Protocol

logger = logging.getLogger("tradeloop.planner")


class PlannerError(Exception):
    """The planner backend did not produce a reply (HTTP error, timeout, bad body)."""


class Planner(Protocol):
    def plan(self, messages: list[dict[str, str]]) -> str: ...


class OllamaPlanner:
    """Non-streaming chat call against an Ollama-compatible endpoint."""

    def __init__(self, host: str, model: str, *, timeout: float = 60.0) -> None:
        self._url = host.rstrip("/") + "/api/chat"
        self._model = model
        self._timeout = timeout

    def _payload(self, messages: list[dict[str, str]]) -> bytes:
        body = {
            "model": self._model,
            "stream": False,
            "messages": [{"role": m["role"], "content": m["content"]} for m in messages],
        }
        return json.dumps(body).encode("utf-8")

    def plan(self, messages: list[dict[str, str]]) -> str:
        req = urllib.request.Request(
            self._url,
            data=self._payload(messages),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self._timeout) as resp:
                body = resp.read()
        except urllib.error.HTTPError as exc:
            logger.error("Planner HTTP error %s from %s", exc.code, self._url)
            raise PlannerError(f"LLM error {exc.code}") from exc
        except (urllib.error.URLError, socket.timeout, TimeoutError, ConnectionError) as exc:
            logger.error("Planner unreachable at %s: %s", self._url, exc)
            raise PlannerError(f"LLM unreachable: {exc}") from exc

        try:
            parsed = json.loads(body)
        except json.JSONDecodeError as exc:
            raise PlannerError(f"LLM returned non-JSON body: {exc}") from exc
        message = parsed.get("message") if isinstance(parsed, dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        return "" if content is None else str(content)


class ScriptedPlanner:
    """Returns the given replies in order, then empty strings."""

    def __init__(self, replies: Iterable[Any]) -> None:
        self._replies = [r if isinstance(r, str) else json.dumps(r) for r in replies]
        self.calls: list[list[dict[str, str]]] = []

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def plan(self, messages: list[dict[str, str]]) -> str:
        index = len(self.calls)
        self.calls.append([dict(m) for m in messages])
        if index < len(self._replies):
            return self._replies[index]
        return ""
