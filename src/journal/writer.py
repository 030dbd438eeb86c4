"""
Structured journal: append-only JSON lines. One line per run start/end, loop
step, order, fill and closed position, each stamped with the run id.
"""

import json
import threading
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any


def _serialize(obj: Any) -> Any:
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    if hasattr(obj, "to_dict"):
        return _serialize(obj.to_dict())
    if hasattr(obj, "__dict__") and not isinstance(obj, type):
        return {k: _serialize(v) for k, v in vars(obj).items() if not k.startswith("_")}
    if isinstance(obj, dict):
        return {k: _serialize(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_serialize(x) for x in obj]
    return obj


class JournalWriter:
    """Append-only journal. Each line is a JSON object with event type and payload."""

    def __init__(self, path: str | Path, *, run_id: str = "", echo_stdout: bool = False) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._run_id = run_id
        self._echo = echo_stdout
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _write(self, event_type: str, payload: dict) -> None:
        record = {"ts_utc": datetime.now(timezone.utc).isoformat(), "event": event_type, "run_id": self._run_id, **payload}
        line = json.dumps(_serialize(record)) + "\n"
        with self._lock:
            with open(self._path, "a") as f:
                f.write(line)
        if self._echo:
            print(line.rstrip())

    def run_start(self, goal: str, max_steps: int, live: bool, **extra: Any) -> None:
        self._write("run_start", {"goal": goal, "max_steps": max_steps, "live": live, **extra})

    def step(self, record: Any) -> None:
        self._write("step", {"record": record})

    def order(self, tool: str, idempotency_key: str, result: Any, **extra: Any) -> None:
        self._write("order", {"tool": tool, "idempotency_key": idempotency_key, "result": result, **extra})

    def fill(self, order_id: str, segment: str, security_id: str, side: str, qty: int, price: Any, **extra: Any) -> None:
        self._write(
            "fill",
            {"order_id": order_id, "segment": segment, "security_id": security_id, "side": side, "qty": qty, "price": price, **extra},
        )

    def position_closed(self, position: Any, **extra: Any) -> None:
        self._write("position_closed", {"position": position, **extra})

    def run_end(self, result: Any) -> None:
        payload = _serialize(result)
        if isinstance(payload, dict):
            # steps were already journaled one by one
            payload = {k: v for k, v in payload.items() if k != "steps"}
        self._write("run_end", {"result": payload})
