"""
Paper adapter: drop-in stand-in for the broker's order endpoints when live
trading is off. Fabricates order ids, echoes the payload, never touches the
network.
"""

import secrets
from typing import Any, Callable


def _paper_id() -> str:
    return f"PAPER_{secrets.token_hex(4).upper()}"


class PaperAdapter:
    """Simulated order endpoints. ``id_factory`` makes ids deterministic in tests."""

    def __init__(self, id_factory: Callable[[], str] = _paper_id) -> None:
        self._new_id = id_factory

    def place_order(self, params: dict[str, Any]) -> dict[str, Any]:
        return {"orderId": self._new_id(), "orderStatus": "PAPER_SIMULATED", "payload": dict(params)}

    def place_bracket(self, params: dict[str, Any]) -> dict[str, Any]:
        return {"orderId": self._new_id(), "orderStatus": "BRACKET_SIMULATED", "payload": dict(params)}

    def modify_order(self, order_id: str, params: dict[str, Any]) -> dict[str, Any]:
        return {"orderId": order_id, "orderStatus": "PAPER_MODIFIED", "payload": dict(params)}

    def cancel_order(self, order_id: str) -> dict[str, Any]:
        return {"orderId": order_id, "orderStatus": "PAPER_EXITED"}
