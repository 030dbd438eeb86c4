"""
Execution: idempotent order gate (live or paper), position ledger with
weighted-average fills, and pre-placement safety checks. Restart-safe.
"""

from execution.idempotency import IdempotencyStore
from execution.ledger import LedgerError, PositionLedger
from execution.models import (
    BracketPlan,
    OrderPayloadError,
    OrderRequest,
    OrderResult,
    Position,
    PositionStatus,
)
from execution.order_gate import OrderGate
from execution.paper_adapter import PaperAdapter
from execution.safety import SafetyGuard, SafetyResult

__all__ = [
    "BracketPlan",
    "IdempotencyStore",
    "LedgerError",
    "OrderGate",
    "OrderPayloadError",
    "OrderRequest",
    "OrderResult",
    "PaperAdapter",
    "Position",
    "PositionLedger",
    "PositionStatus",
    "SafetyGuard",
    "SafetyResult",
]
