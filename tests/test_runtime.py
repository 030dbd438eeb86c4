"""Tests for runtime wiring: one dispatcher graph per run over shared state files."""

import io
import json
from pathlib import Path

from agent.contracts import ToolCall
from cli.runtime import build_runtime, new_run_id
from config.loader import build_config
from conftest import FakeBroker


def _config(tmp_path: Path, **overrides):
    raw = {
        "cooldowns": {"step": 0, "option_chain_cache": 45},
        "execution": {
            "ledger_path": str(tmp_path / "ledger.db"),
            "idempotency_path": str(tmp_path / "idem.db"),
        },
        "journal": {"path": str(tmp_path / "journal.jsonl")},
        "instruments": [{"segment": "NSE_FNO", "security_id": "43210", "instrument_type": "OPTIDX"}],
    }
    raw.update(overrides)
    return build_config(raw)


def test_new_run_id() -> None:
    a, b = new_run_id(), new_run_id()
    assert a != b
    assert len(a) == 12


def test_runtime_wires_config(tmp_path: Path) -> None:
    stream = io.StringIO()
    rt = build_runtime(_config(tmp_path), broker=FakeBroker(), run_id="abc", events_stream=stream)
    assert rt.run_id == "abc"
    assert rt.gate.live is False
    assert rt.market.option_chain_ttl == 45
    assert rt.guard.kill_switch is False
    assert rt.journal.path == tmp_path / "journal.jsonl"


def test_catalog_from_instruments(tmp_path: Path) -> None:
    broker = FakeBroker()
    rt = build_runtime(_config(tmp_path), broker=broker, run_id="abc", events_stream=io.StringIO())
    obs = rt.dispatcher.dispatch(ToolCall("market.ohlc", {"security_id": "43210", "segment": "NSE_FNO"}, ""))
    assert obs.ok is True, obs.result
    assert broker.calls[-1][1][2] == "OPTIDX"


def test_orders_reach_journal_and_events(tmp_path: Path) -> None:
    stream = io.StringIO()
    rt = build_runtime(_config(tmp_path), broker=FakeBroker(), run_id="abc", events_stream=stream)
    args = {"symbol": "RELIANCE", "security_id": "2885", "quantity": 1, "segment": "NSE", "idempotency_key": "k"}
    assert rt.dispatcher.dispatch(ToolCall("orders.place", args, "")).ok is True

    events = [json.loads(line) for line in stream.getvalue().splitlines()]
    assert [e["event"] for e in events] == ["order_submitted"]
    assert events[0]["run_id"] == "abc"
    with open(tmp_path / "journal.jsonl") as f:
        journal = [json.loads(line)["event"] for line in f]
    assert journal == ["fill", "order"]


def test_state_shared_across_runs(tmp_path: Path) -> None:
    cfg = _config(tmp_path)
    args = {"symbol": "RELIANCE", "security_id": "2885", "quantity": 1, "segment": "NSE", "idempotency_key": "k"}
    first = build_runtime(cfg, broker=FakeBroker(), run_id="r1", events_stream=io.StringIO())
    first.dispatcher.dispatch(ToolCall("orders.place", args, ""))
    second = build_runtime(cfg, broker=FakeBroker(), run_id="r2", events_stream=io.StringIO())
    obs = second.dispatcher.dispatch(ToolCall("orders.place", args, ""))
    assert obs.result["replayed"] is True
    assert second.ledger.fill_count("NSE", "2885") == 1
